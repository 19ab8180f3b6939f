"""
PayPal Payouts Integration Service

Sends money to a creator's PayPal account using the PayPal Payouts REST API.

PayPal Payouts Flow:
1. Get OAuth access token (client credentials)
2. POST /v1/payments/payouts with a single-item batch
3. PayPal returns payout_batch_id immediately (batch_status PENDING/SUCCESS)
4. Items settle asynchronously on PayPal's side

Every request carries a bounded timeout. Errors are raised as
PayPalAPIError with PayPal's error *name* (e.g. INSUFFICIENT_FUNDS) so the
adapter can classify on codes rather than message text.
"""

import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class PayPalAuthError(Exception):
    """OAuth token could not be obtained (bad credentials or PayPal unreachable)."""


class PayPalAPIError(Exception):
    """Non-2xx response from the Payouts API."""

    def __init__(self, status_code: Optional[int], name: Optional[str], message: str,
                 debug_id: Optional[str] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(f"PayPal Error: {name or 'UNKNOWN'} - {message}")
        self.status_code = status_code
        self.name = name
        self.message = message
        self.debug_id = debug_id
        self.payload = payload or {}

    @classmethod
    def from_response(cls, response: requests.Response) -> "PayPalAPIError":
        try:
            data = response.json()
        except ValueError:
            data = {}
        return cls(
            status_code=response.status_code,
            name=data.get("name"),
            message=data.get("message") or response.text or response.reason or "PayPal request failed",
            debug_id=data.get("debug_id"),
            payload=data,
        )


class PayPalPayoutsClient:
    """PayPal Payouts REST client."""

    SANDBOX_URL = "https://api-m.sandbox.paypal.com"
    LIVE_URL = "https://api-m.paypal.com"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.mode = mode
        self.timeout = timeout
        self.session = session or requests.Session()
        self.base_url = self.LIVE_URL if mode == "live" else self.SANDBOX_URL

        self.access_token: Optional[str] = None
        self.token_expiry: float = 0.0

    def get_access_token(self) -> str:
        """
        Get OAuth access token from PayPal, reusing it until shortly before expiry.

        Raises:
            PayPalAuthError: token request failed
        """
        if self.access_token and time.monotonic() < self.token_expiry:
            return self.access_token

        try:
            response = self.session.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"PayPal: Failed to get access token: {e}")
            raise PayPalAuthError(f"Failed to authenticate with PayPal: {e}") from e

        self.access_token = data["access_token"]
        # Refresh one minute early
        self.token_expiry = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        logger.info("PayPal: Access token obtained successfully")
        return self.access_token

    def create_payout(
        self,
        sender_batch_id: str,
        receiver_email: str,
        amount: Decimal,
        currency: str,
        note: str,
        sender_item_id: str,
    ) -> Dict[str, Any]:
        """
        Create a single-item payout batch.

        Args:
            sender_batch_id: Unique per attempt (also sent as PayPal-Request-Id)
            receiver_email: Creator's PayPal email
            amount: Amount in currency units
            currency: Three-letter currency code
            note: Note shown to the receiver
            sender_item_id: Our reference for the item

        Returns:
            PayPal response JSON (batch_header, links)

        Raises:
            PayPalAuthError, PayPalAPIError, requests.Timeout, requests.ConnectionError
        """
        access_token = self.get_access_token()

        payload = {
            "sender_batch_header": {
                "sender_batch_id": sender_batch_id,
                "email_subject": "You have received a payout!",
                "email_message": f"You have received a payout for {amount:.2f} {currency.upper()}",
            },
            "items": [{
                "recipient_type": "EMAIL",
                "amount": {
                    "value": f"{amount:.2f}",
                    "currency": currency.upper(),
                },
                "receiver": receiver_email,
                "note": note,
                "sender_item_id": sender_item_id,
            }],
        }

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "PayPal-Request-Id": sender_batch_id,
        }

        response = self.session.post(
            f"{self.base_url}/v1/payments/payouts",
            json=payload,
            headers=headers,
            timeout=self.timeout,
        )

        if response.status_code >= 400:
            raise PayPalAPIError.from_response(response)

        data = response.json()
        logger.info(f"PayPal: Payout batch created - {data.get('batch_header', {}).get('payout_batch_id')}")
        return data
