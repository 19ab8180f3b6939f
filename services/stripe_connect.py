"""
Stripe Connect Service

Manages creator connected accounts for the e-transfer payout rail and moves
money from the platform balance to them.

Connected account states:
1. created           - account exists, capabilities requested
2. details_submitted - creator finished the onboarding form
3. payouts_enabled   - ready to receive transfers (terminal-ready)

An account can stay stuck before payouts_enabled with outstanding
requirements (e.g. identity document). check_account_status returns the raw
requirement keys so callers can tell the creator exactly what is missing.

Transfers:
- amounts below the per-currency minimum are rejected before calling Stripe
- accounts without payouts enabled are rejected before calling Stripe
- each transfer carries an idempotency key and a transfer_group equal to
  the attempt reference, which is what reconciliation looks up later

In sandbox mode (PAYMENT_SANDBOX_MODE=true) account status and transfers are
simulated and no money moves.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import stripe

from services.errors import (
    AmbiguousError,
    ConfigurationError,
    FailureCode,
    PayoutError,
    PreconditionError,
    ProviderError,
)

logger = logging.getLogger(__name__)

# Stripe typically requires a $1.00 minimum transfer
MINIMUM_TRANSFER_AMOUNTS = {
    "usd": Decimal("1.00"),
    "cad": Decimal("1.00"),
    "eur": Decimal("1.00"),
    "gbp": Decimal("1.00"),
}
DEFAULT_MINIMUM_TRANSFER_AMOUNT = Decimal("1.00")

REQUIREMENT_DESCRIPTIONS = {
    "individual.verification.proof_of_liveness": "identity verification (photo/video)",
    "individual.verification.document": "identity document upload",
    "individual.verification.additional_document": "additional identity document",
    "business_profile.url": "business website",
    "tos_acceptance.date": "terms of service acceptance",
    "external_account": "bank account for payouts",
}

# Stripe error codes that mean the platform balance cannot cover the transfer
INSUFFICIENT_BALANCE_CODES = {"balance_insufficient", "insufficient_funds"}
ACCOUNT_INVALID_CODES = {"account_invalid", "account_closed"}


def describe_requirements(requirements: List[str]) -> str:
    """Turn Stripe requirement keys into a readable list."""
    return ", ".join(
        REQUIREMENT_DESCRIPTIONS.get(req, req.replace(".", " ").replace("_", " "))
        for req in requirements
    )


def minimum_transfer_amount(currency: str) -> Decimal:
    return MINIMUM_TRANSFER_AMOUNTS.get(currency.lower(), DEFAULT_MINIMUM_TRANSFER_AMOUNT)


class AccountState(str, enum.Enum):
    CREATED = "created"
    DETAILS_SUBMITTED = "details_submitted"
    PAYOUTS_ENABLED = "payouts_enabled"


@dataclass
class AccountStatus:
    account_id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False
    requirements: List[str] = field(default_factory=list)

    @property
    def state(self) -> AccountState:
        if self.payouts_enabled:
            return AccountState.PAYOUTS_ENABLED
        if self.details_submitted:
            return AccountState.DETAILS_SUBMITTED
        return AccountState.CREATED

    def remediation_message(self) -> str:
        message = "Creator Stripe account is not yet enabled for payouts."
        if self.requirements:
            return (
                f"{message} Missing: {describe_requirements(self.requirements)}. "
                f"Please return to Payment Settings and complete Stripe Connect onboarding."
            )
        return f"{message} Please complete all required onboarding steps in Payment Settings."

    def as_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "state": self.state.value,
            "details_submitted": self.details_submitted,
            "charges_enabled": self.charges_enabled,
            "payouts_enabled": self.payouts_enabled,
            "requirements": list(self.requirements),
        }


def classify_stripe_error(error: "stripe.StripeError", moves_money: bool = False) -> PayoutError:
    """
    Map a Stripe exception to a tagged PayoutError using its type and code.

    A lost connection while creating a transfer is ambiguous (the transfer may
    exist); the same error on a read-only call is just an unavailable provider.
    """
    code = getattr(error, "code", None)
    message = getattr(error, "user_message", None) or str(error) or type(error).__name__
    payload = {
        "type": type(error).__name__,
        "code": code,
        "http_status": getattr(error, "http_status", None),
        "request_id": getattr(error, "request_id", None),
        "message": message,
    }

    if isinstance(error, (stripe.PermissionError, stripe.AuthenticationError)):
        return ConfigurationError(
            "Stripe API key does not have the required permissions. "
            "Please ensure you are using a Stripe Connect enabled API key.",
            code=FailureCode.PERMISSION_DENIED,
            provider_payload=payload,
        )
    if code in INSUFFICIENT_BALANCE_CODES:
        return ProviderError(
            "Insufficient balance in platform Stripe account. Please add funds to process payouts.",
            code=FailureCode.INSUFFICIENT_FUNDS,
            provider_payload=payload,
        )
    if code in ACCOUNT_INVALID_CODES:
        return PreconditionError(
            "Connected account is invalid or not properly configured. "
            "The creator may need to complete their Stripe onboarding.",
            code=FailureCode.ACCOUNT_INVALID,
            provider_payload=payload,
        )
    if code == "amount_too_small":
        return PreconditionError(
            f"Transfer amount is below Stripe's minimum: {message}",
            code=FailureCode.BELOW_MINIMUM,
            provider_payload=payload,
        )
    if isinstance(error, stripe.APIConnectionError):
        if moves_money:
            return AmbiguousError(
                f"Stripe request did not complete, the transfer may or may not exist: {message}",
                provider_payload=payload,
            )
        return ProviderError(
            f"Stripe is unreachable: {message}",
            code=FailureCode.PROVIDER_UNAVAILABLE,
            provider_payload=payload,
        )
    if isinstance(error, stripe.RateLimitError):
        return ProviderError(
            f"Stripe rate limit reached: {message}",
            code=FailureCode.PROVIDER_UNAVAILABLE,
            provider_payload=payload,
        )
    return ProviderError(
        f"Stripe rejected the request: {message}",
        code=FailureCode.PROVIDER_REJECTED,
        provider_payload=payload,
    )


def build_stripe_client(secret_key: str, timeout: float) -> "stripe.StripeClient":
    """Stripe client with a bounded timeout and no automatic network retries."""
    return stripe.StripeClient(
        secret_key,
        http_client=stripe.RequestsClient(timeout=timeout),
        max_network_retries=0,
    )


class ConnectedAccountService:
    """
    Stripe Connect service for creator payouts.

    Args:
        client: StripeClient built once at startup (None only in sandbox mode)
        sandbox_mode: simulate account status and transfers
    """

    def __init__(self, client: Optional["stripe.StripeClient"], sandbox_mode: bool = False):
        if client is None and not sandbox_mode:
            raise ConfigurationError(
                "Stripe credentials not configured. Please set STRIPE_SECRET_KEY in your .env file",
                code=FailureCode.MISSING_CREDENTIALS,
            )
        self.client = client
        self.sandbox_mode = sandbox_mode

        if self.sandbox_mode:
            logger.info("Stripe Connect: SANDBOX MODE - transfers will be simulated")

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------

    def create_connected_account(
        self,
        user_id: str,
        email: str,
        country: str = "CA",
        existing_account_id: Optional[str] = None,
    ) -> str:
        """
        Create a Stripe Connect Express account for a creator.

        If the creator already holds an account that is fully enabled it is
        reused; an account that no longer exists is replaced.

        Returns:
            Connected account id (acct_...)
        """
        logger.info(f"Stripe Connect: Creating connected account for user {user_id}")

        if existing_account_id:
            try:
                status = self.check_account_status(existing_account_id)
                if status.charges_enabled and status.payouts_enabled:
                    logger.info(f"Stripe Connect: User already has account {existing_account_id}")
                    return existing_account_id
            except PayoutError:
                logger.warning(
                    f"Stripe Connect: Existing account {existing_account_id} no longer valid, creating new one"
                )

        if self.client is None:
            account_id = f"acct_sandbox_{uuid.uuid4().hex[:16]}"
            logger.info(f"Stripe Connect: SANDBOX MODE - simulated account {account_id}")
            return account_id

        try:
            account = self.client.accounts.create(params={
                "type": "express",
                "country": country,
                "email": email,
                # In CA, requesting transfers alone triggers a service agreement error
                "capabilities": {
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                "business_type": "individual",
                "settings": {"payouts": {"schedule": {"interval": "manual"}}},
                "metadata": {"user_id": user_id},
            })
        except stripe.StripeError as e:
            logger.error(f"Stripe Connect: Error creating connected account: {e}")
            raise classify_stripe_error(e)

        logger.info(f"Stripe Connect: Created account {account.id}")
        return account.id

    def create_account_link(self, account_id: str, return_url: str, refresh_url: str) -> str:
        """Onboarding URL where the creator completes their Stripe setup."""
        if self.client is None:
            return f"{return_url}?sandbox_account={account_id}"
        try:
            link = self.client.account_links.create(params={
                "account": account_id,
                "refresh_url": refresh_url,
                "return_url": return_url,
                "type": "account_onboarding",
            })
        except stripe.StripeError as e:
            logger.error(f"Stripe Connect: Error creating account link: {e}")
            raise classify_stripe_error(e)

        logger.info(f"Stripe Connect: Created account link for {account_id}")
        return link.url

    def create_login_link(self, account_id: str) -> str:
        """Link to the creator's Stripe Express dashboard."""
        if self.client is None:
            return f"https://connect.stripe.com/express/sandbox/{account_id}"
        try:
            link = self.client.accounts.login_links.create(account_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe Connect: Error creating login link: {e}")
            raise classify_stripe_error(e)
        return link.url

    def delete_connected_account(self, account_id: str) -> bool:
        if self.client is None:
            return True
        try:
            self.client.accounts.delete(account_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe Connect: Error deleting account: {e}")
            raise classify_stripe_error(e)
        logger.info(f"Stripe Connect: Deleted account {account_id}")
        return True

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def check_account_status(self, account_id: str) -> AccountStatus:
        """
        Read onboarding state of a connected account.

        Returns:
            AccountStatus with the raw list of currently-due requirement keys
        """
        if self.sandbox_mode:
            logger.info(f"Stripe Connect: SANDBOX MODE - simulating ready account {account_id}")
            return AccountStatus(
                account_id=account_id,
                details_submitted=True,
                charges_enabled=True,
                payouts_enabled=True,
            )

        try:
            account = self.client.accounts.retrieve(account_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe Connect: Error checking account status: {e}")
            raise classify_stripe_error(e)

        requirements = account.get("requirements") or {}
        return AccountStatus(
            account_id=account_id,
            details_submitted=bool(account.get("details_submitted")),
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            requirements=list(requirements.get("currently_due") or []),
        )

    def ensure_payouts_enabled(self, account_id: str) -> AccountStatus:
        """
        Raises:
            PreconditionError: account is not payout-enabled yet (message lists requirements)
        """
        status = self.check_account_status(account_id)
        logger.info(
            f"Stripe Connect: Account {account_id} status: detailsSubmitted={status.details_submitted}, "
            f"payoutsEnabled={status.payouts_enabled}"
        )
        if not status.payouts_enabled:
            logger.error(
                f"Stripe Connect: Account {account_id} payouts not enabled. Requirements: {status.requirements}"
            )
            raise PreconditionError(
                status.remediation_message(),
                code=FailureCode.ACCOUNT_NOT_READY,
                remediation="Complete Stripe Connect onboarding in Payment Settings.",
                provider_payload=status.as_dict(),
            )
        return status

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------

    def create_transfer(
        self,
        account_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        transfer_group: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Transfer from the platform balance to a connected account.

        Returns:
            Dict with transfer id, amount (cents), currency, destination

        Raises:
            PreconditionError: below minimum amount / account not ready
            ProviderError: insufficient balance, provider rejection
            AmbiguousError: connection lost mid-request
        """
        currency = currency.lower()
        minimum = minimum_transfer_amount(currency)
        if amount < minimum:
            logger.error(
                f"Stripe Connect: Transfer amount {amount:.2f} {currency.upper()} is below minimum {minimum:.2f}"
            )
            raise PreconditionError(
                f"Transfer amount {amount:.2f} {currency.upper()} is below the minimum required amount of "
                f"{minimum:.2f} {currency.upper()}.",
                code=FailureCode.BELOW_MINIMUM,
                remediation=f"Payouts on this rail must be at least {minimum:.2f} {currency.upper()}.",
            )

        logger.info(f"Stripe Connect: Verifying account {account_id} for transfer of {amount:.2f} {currency.upper()}")
        self.ensure_payouts_enabled(account_id)

        amount_cents = int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))

        if self.sandbox_mode:
            transfer_id = f"sandbox_tr_{uuid.uuid4().hex[:16]}"
            logger.info(f"Stripe Connect: SANDBOX MODE - simulated transfer {transfer_id}, no money moved")
            return {
                "id": transfer_id,
                "amount": amount_cents,
                "currency": currency,
                "destination": account_id,
                "simulated": True,
            }

        params = {
            "amount": amount_cents,
            "currency": currency,
            "destination": account_id,
            "description": description,
            "metadata": metadata,
        }
        if transfer_group:
            params["transfer_group"] = transfer_group

        try:
            transfer = self.client.transfers.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe Connect: Error creating transfer: type={type(e).__name__}, "
                         f"code={getattr(e, 'code', None)}, message={e}")
            raise classify_stripe_error(e, moves_money=True)

        logger.info(f"Stripe Connect: Created transfer {transfer.id} for {amount:.2f} {currency.upper()}")
        return {
            "id": transfer.id,
            "amount": transfer.get("amount", amount_cents),
            "currency": transfer.get("currency", currency),
            "destination": account_id,
            "simulated": False,
        }

    def find_transfer(self, transfer_group: str) -> Optional[Dict[str, Any]]:
        """Look up the transfer created for a dispatch attempt, if any."""
        if self.sandbox_mode:
            return None
        try:
            transfers = self.client.transfers.list(params={"transfer_group": transfer_group, "limit": 1})
        except stripe.StripeError as e:
            logger.error(f"Stripe Connect: Error listing transfers for {transfer_group}: {e}")
            raise classify_stripe_error(e)

        data = list(transfers.get("data") or [])
        if not data:
            return None
        transfer = data[0]
        return {"id": transfer.get("id"), "amount": transfer.get("amount"), "currency": transfer.get("currency")}
