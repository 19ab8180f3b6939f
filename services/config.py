"""
Payout Configuration

Reads provider credentials and engine settings from the environment
(.env supported via python-dotenv).

Credentials are validated once, when the payout services are built at
startup. A missing credential is a configuration error that stops the
process from starting, never a per-payment failure.

Environment:
- PAYMENT_SANDBOX_MODE: "true" to simulate providers that have no credentials
- PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET / PAYPAL_MODE (sandbox|live)
- STRIPE_SECRET_KEY
- PAYOUT_PROVIDER_TIMEOUT_SECONDS: bound on every provider call (default 30)
- PAYOUT_STALE_AFTER_MINUTES: processing age before reconciliation (default 60)
- OPERATOR_USER_IDS: comma separated user ids that receive failure alerts
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from services.errors import ConfigurationError, FailureCode


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class PayoutSettings:
    sandbox_mode: bool = False
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_mode: str = "sandbox"
    stripe_secret_key: Optional[str] = None
    provider_timeout_seconds: float = 30.0
    stale_after_minutes: int = 60
    operator_user_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "PayoutSettings":
        load_dotenv()
        return cls(
            sandbox_mode=_env_bool("PAYMENT_SANDBOX_MODE"),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID") or None,
            paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET") or None,
            paypal_mode=os.getenv("PAYPAL_MODE", "sandbox"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            provider_timeout_seconds=float(os.getenv("PAYOUT_PROVIDER_TIMEOUT_SECONDS", "30")),
            stale_after_minutes=int(os.getenv("PAYOUT_STALE_AFTER_MINUTES", "60")),
            operator_user_ids=_env_list("OPERATOR_USER_IDS"),
        )

    @property
    def paypal_configured(self) -> bool:
        return bool(self.paypal_client_id and self.paypal_client_secret)

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.paypal_client_id:
            missing.append("PAYPAL_CLIENT_ID")
        if not self.paypal_client_secret:
            missing.append("PAYPAL_CLIENT_SECRET")
        if not self.stripe_secret_key:
            missing.append("STRIPE_SECRET_KEY")
        return missing

    def validate(self) -> None:
        """
        Fail fast on unusable configuration.

        Raises:
            ConfigurationError: credentials missing outside sandbox mode,
                or an invalid PayPal mode / timeout
        """
        if self.paypal_mode not in ("sandbox", "live"):
            raise ConfigurationError(
                f"PAYPAL_MODE must be 'sandbox' or 'live', got '{self.paypal_mode}'",
                code=FailureCode.MISSING_CREDENTIALS,
            )
        if self.provider_timeout_seconds <= 0:
            raise ConfigurationError(
                "PAYOUT_PROVIDER_TIMEOUT_SECONDS must be positive",
                code=FailureCode.MISSING_CREDENTIALS,
            )
        missing = self.missing_credentials()
        if missing and not self.sandbox_mode:
            raise ConfigurationError(
                f"Payment provider credentials not configured: {', '.join(missing)}. "
                f"Set them in your .env file or enable PAYMENT_SANDBOX_MODE.",
                code=FailureCode.MISSING_CREDENTIALS,
                remediation="Set the missing environment variables and restart the server.",
            )
