"""
Payout Provider Adapters

One adapter per payout rail. Every adapter satisfies the same contract:

    adapter.payout(destination, amount, currency, reference, description)
        -> PayoutResult(success=True, transaction_id=..., provider_response=...)
        -> PayoutResult(success=False, error=<tagged PayoutError>)

Provider-specific success and error shapes never leak past an adapter.
PaymentProcessor only sees PayoutResult and does not know which rails are
real and which are simulated.

Rails:
- paypal:    PayPalPayoutAdapter (services.paypal_payouts)
- etransfer: AccountTransferAdapter (Stripe Connect transfer)
- wire:      WireTransferAdapter (simulated, services.simulated_rails)
- crypto:    CryptoPayoutAdapter (simulated, services.simulated_rails)

`reference` is the attempt key of the current dispatch. Adapters use it as
the provider idempotency key, so a fresh reference is a fresh attempt.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import requests

from database.models import PayoutMethod, PayoutSetting
from services.errors import (
    AmbiguousError,
    ConfigurationError,
    FailureCode,
    PayoutError,
    PreconditionError,
    ProviderError,
    unclassified,
)
from services.paypal_payouts import PayPalAPIError, PayPalAuthError, PayPalPayoutsClient
from services.stripe_connect import ConnectedAccountService

logger = logging.getLogger(__name__)


@dataclass
class PayoutResult:
    success: bool
    transaction_id: Optional[str] = None
    provider_response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[PayoutError] = None

    @classmethod
    def ok(cls, transaction_id: str, provider_response: Dict[str, Any]) -> "PayoutResult":
        return cls(success=True, transaction_id=transaction_id, provider_response=provider_response)

    @classmethod
    def failed(cls, error: PayoutError) -> "PayoutResult":
        return cls(success=False, error=error, provider_response=dict(error.provider_payload))

    def as_dict(self) -> Dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "transaction_id": self.transaction_id,
                "provider_response": self.provider_response,
            }
        return {"success": False, "error": self.error.as_dict() if self.error else None}


@dataclass(frozen=True)
class PayoutDestination:
    """Where a payee wants to receive money (the payee handle for an adapter)."""

    payee_id: str
    method: PayoutMethod
    paypal_email: Optional[str] = None
    payout_email: Optional[str] = None
    stripe_account_id: Optional[str] = None
    bank_routing_number: Optional[str] = None
    bank_account_number: Optional[str] = None
    crypto_wallet_address: Optional[str] = None
    crypto_network: Optional[str] = None

    @classmethod
    def from_setting(cls, setting: PayoutSetting) -> "PayoutDestination":
        return cls(
            payee_id=setting.user_id,
            method=PayoutMethod(setting.payout_method),
            paypal_email=setting.paypal_email,
            payout_email=setting.payout_email,
            stripe_account_id=setting.stripe_account_id,
            bank_routing_number=setting.bank_routing_number,
            bank_account_number=setting.bank_account_number,
            crypto_wallet_address=setting.crypto_wallet_address,
            crypto_network=setting.crypto_network,
        )

    @property
    def masked_account_number(self) -> Optional[str]:
        if not self.bank_account_number:
            return None
        return f"****{self.bank_account_number[-4:]}"


@runtime_checkable
class PayoutAdapter(Protocol):
    """Contract every payout rail implements."""

    method: PayoutMethod

    def payout(
        self,
        destination: PayoutDestination,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str = "",
    ) -> PayoutResult:
        ...


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# PAYPAL
# ============================================================================

# PayPal error names -> (error class, code, payee/operator message)
PAYPAL_ERRORS = {
    "INSUFFICIENT_FUNDS": (
        ProviderError,
        FailureCode.INSUFFICIENT_FUNDS,
        "Insufficient funds in PayPal business account. Please add funds to your PayPal account and retry.",
    ),
    "AUTHORIZATION_ERROR": (
        ConfigurationError,
        FailureCode.PERMISSION_DENIED,
        "PayPal credentials are not authorized for Payouts. Enable Payouts on the PayPal business account.",
    ),
    "PERMISSION_DENIED": (
        ConfigurationError,
        FailureCode.PERMISSION_DENIED,
        "PayPal credentials are not authorized for Payouts. Enable Payouts on the PayPal business account.",
    ),
    "RECEIVER_UNREGISTERED": (
        ConfigurationError,
        FailureCode.RECEIVER_INVALID,
        "The PayPal email on file is not registered with PayPal. Update the PayPal email in Payment Settings.",
    ),
    "RECEIVER_ACCOUNT_LOCKED": (
        ConfigurationError,
        FailureCode.RECEIVER_INVALID,
        "The receiving PayPal account is locked or inactive. Use a different payout method in Payment Settings.",
    ),
    "RECEIVER_UNCONFIRMED": (
        ConfigurationError,
        FailureCode.RECEIVER_INVALID,
        "The receiving PayPal account is unconfirmed. Confirm the PayPal account, then retry.",
    ),
    "CURRENCY_NOT_SUPPORTED_FOR_RECEIVER": (
        ConfigurationError,
        FailureCode.RECEIVER_INVALID,
        "The receiving PayPal account cannot accept this currency.",
    ),
}


class PayPalPayoutAdapter:
    """
    PayPal Payouts rail.

    Creates a single-item payout batch. The batch id is the transaction id.
    Every call uses a new sender_batch_id derived from the attempt reference,
    so a retry is never collapsed by PayPal into the earlier (failed) batch.
    """

    method = PayoutMethod.PAYPAL

    def __init__(self, client: Optional[PayPalPayoutsClient], simulate: bool = False):
        if client is None and not simulate:
            raise ConfigurationError(
                "PayPal credentials not configured. Please set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET.",
                code=FailureCode.MISSING_CREDENTIALS,
            )
        self.client = client
        self.simulate = simulate

    def payout(
        self,
        destination: PayoutDestination,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str = "",
    ) -> PayoutResult:
        if not destination.paypal_email:
            return PayoutResult.failed(ConfigurationError(
                "PayPal email is missing", code=FailureCode.MISSING_PAYOUT_DETAILS,
            ))

        sender_batch_id = f"batch_{reference}"
        logger.info(f"PayPal Payout: Sending {amount:.2f} {currency} to {destination.paypal_email}")

        if self.simulate:
            batch_id = f"SANDBOX-{reference[:13].upper()}"
            logger.info(f"PayPal Mock: Simulated payout batch {batch_id}")
            return PayoutResult.ok(batch_id, {
                "method": "paypal",
                "batch_id": batch_id,
                "batch_status": "SUCCESS",
                "sender_batch_id": sender_batch_id,
                "email": destination.paypal_email,
                "amount": f"{amount:.2f}",
                "simulated": True,
                "timestamp": timestamp(),
            })

        try:
            response = self.client.create_payout(
                sender_batch_id=sender_batch_id,
                receiver_email=destination.paypal_email,
                amount=amount,
                currency=currency,
                note=description or "Creator payout",
                sender_item_id=reference,
            )
        except PayPalAPIError as e:
            return PayoutResult.failed(self._classify_api_error(e))
        except PayPalAuthError as e:
            return PayoutResult.failed(ConfigurationError(
                f"PayPal configuration error: {e}",
                code=FailureCode.MISSING_CREDENTIALS,
            ))
        except requests.ConnectTimeout as e:
            # Never reached PayPal: safe to retry later
            return PayoutResult.failed(ProviderError(
                f"PayPal unreachable: {e}", code=FailureCode.PROVIDER_UNAVAILABLE,
            ))
        except (requests.Timeout, requests.ConnectionError) as e:
            return PayoutResult.failed(AmbiguousError(
                f"PayPal payout request did not complete: {e}",
                provider_payload={"sender_batch_id": sender_batch_id},
            ))
        except Exception as e:
            logger.exception("PayPal Payout: unexpected error")
            return PayoutResult.failed(unclassified(e))

        batch_header = response.get("batch_header", {})
        batch_id = batch_header.get("payout_batch_id")
        batch_status = batch_header.get("batch_status")

        if not batch_id or batch_status == "DENIED":
            return PayoutResult.failed(ProviderError(
                f"PayPal rejected payout batch (status: {batch_status or 'unknown'})",
                code=FailureCode.PROVIDER_REJECTED,
                provider_payload=response,
            ))

        logger.info(f"PayPal Payout: SUCCESS - Batch ID: {batch_id}, Status: {batch_status}")
        return PayoutResult.ok(batch_id, {
            "method": "paypal",
            "batch_id": batch_id,
            "batch_status": batch_status,
            "sender_batch_id": batch_header.get("sender_batch_header", {}).get("sender_batch_id", sender_batch_id),
            "email": destination.paypal_email,
            "amount": f"{amount:.2f}",
            "timestamp": timestamp(),
        })

    @staticmethod
    def _classify_api_error(error: PayPalAPIError) -> PayoutError:
        payload = {"name": error.name, "message": error.message, "debug_id": error.debug_id,
                   "status_code": error.status_code}
        mapped = PAYPAL_ERRORS.get(error.name or "")
        if mapped:
            error_cls, code, message = mapped
            logger.error(f"PayPal Payout: Failed: PayPal Error: {error.name} - {error.message}")
            return error_cls(message, code=code, provider_payload=payload)

        logger.error(f"PayPal Payout: Failed: PayPal API Error ({error.status_code}): {error.name} - {error.message}")
        if error.status_code is not None and error.status_code >= 500:
            return ProviderError(
                f"PayPal API Error ({error.status_code}): {error.message}",
                code=FailureCode.PROVIDER_UNAVAILABLE,
                provider_payload=payload,
            )
        return ProviderError(
            error.message or f"PayPal API Error ({error.status_code})",
            code=FailureCode.PROVIDER_REJECTED,
            provider_payload=payload,
        )


# ============================================================================
# E-TRANSFER (STRIPE CONNECT ACCOUNT TRANSFER)
# ============================================================================

class AccountTransferAdapter:
    """
    Bank-transfer-via-connected-account rail.

    The payee must already hold a connected account. The minimum amount,
    account readiness and the transfer itself are delegated to
    ConnectedAccountService, which raises tagged PayoutErrors that are
    returned here as failures.
    """

    method = PayoutMethod.ETRANSFER

    def __init__(self, connect_service: ConnectedAccountService):
        self.connect = connect_service

    def payout(
        self,
        destination: PayoutDestination,
        amount: Decimal,
        currency: str,
        reference: str,
        description: str = "",
    ) -> PayoutResult:
        account_id = destination.stripe_account_id
        if not account_id:
            logger.error(f"E-Transfer: Creator {destination.payee_id} has not connected their Stripe account")
            return PayoutResult.failed(ConfigurationError(
                "Creator has not connected their Stripe account for e-transfers. "
                "Please complete Stripe onboarding first.",
                code=FailureCode.ACCOUNT_NOT_CONNECTED,
            ))

        logger.info(f"E-Transfer: Sending {amount:.2f} {currency.upper()} to {destination.payout_email} "
                    f"via account {account_id}")
        try:
            # Minimum amount and account readiness are checked before any money moves
            transfer = self.connect.create_transfer(
                account_id=account_id,
                amount=amount,
                currency=currency,
                description=description,
                metadata={
                    "payment_reference": reference,
                    "payout_method": "etransfer",
                    "payout_email": destination.payout_email or "",
                },
                idempotency_key=reference,
                transfer_group=reference,
            )
        except PayoutError as e:
            logger.error(f"E-Transfer: {e.kind.value} error: {e.message}")
            return PayoutResult.failed(e)
        except Exception as e:
            logger.exception("E-Transfer: unexpected error")
            return PayoutResult.failed(unclassified(e))

        logger.info(f"E-Transfer: SUCCESS - Stripe Transfer ID: {transfer['id']}")
        return PayoutResult.ok(transfer["id"], {
            "method": "etransfer",
            "email": destination.payout_email,
            "amount": f"{amount:.2f}",
            "currency": currency.lower(),
            "transfer_id": transfer["id"],
            "stripe_account_id": account_id,
            "simulated": transfer.get("simulated", False),
            "timestamp": timestamp(),
        })


def build_precondition_message(error: PayoutError) -> str:
    """Payee-facing sentence for an error, with its remediation."""
    if isinstance(error, (ConfigurationError, PreconditionError)):
        return f"{error.message} {error.remediation}"
    return error.message
