"""
Payout Error Taxonomy

Every failure the payout engine can produce is a PayoutError carrying:
- kind: which class of problem it is (drives who has to act)
- code: the specific, provider-independent failure
- message: what went wrong, phrased for the payee or operator
- remediation: what to do about it
- provider_payload: raw provider data kept for reconciliation

Kinds:
- configuration: missing payout method, missing details, missing credentials.
  Never retried automatically, needs a human (payee or operator).
- precondition: connected account not payout-enabled, amount below minimum.
  Needs onboarding completion or an amount change.
- provider: insufficient platform balance, provider rejection.
  Retryable after remediation, always with a fresh idempotency key.
- ambiguous: timeout / unknown response. Money may have moved.
  Requires manual reconciliation before any retry.
- unknown: unclassified exception.
"""

import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    CONFIGURATION = "configuration"
    PRECONDITION = "precondition"
    PROVIDER = "provider"
    AMBIGUOUS = "ambiguous"
    UNKNOWN = "unknown"


class FailureCode(str, enum.Enum):
    # configuration
    MISSING_PAYOUT_METHOD = "missing_payout_method"
    MISSING_PAYOUT_DETAILS = "missing_payout_details"
    UNSUPPORTED_METHOD = "unsupported_method"
    MISSING_CREDENTIALS = "missing_credentials"
    PERMISSION_DENIED = "permission_denied"
    RECEIVER_INVALID = "receiver_invalid"
    ACCOUNT_NOT_CONNECTED = "account_not_connected"
    # precondition
    ACCOUNT_NOT_READY = "account_not_ready"
    ACCOUNT_INVALID = "account_invalid"
    BELOW_MINIMUM = "below_minimum"
    # provider
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PROVIDER_REJECTED = "provider_rejected"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    # ambiguous
    TIMEOUT = "timeout"
    # unknown
    UNCLASSIFIED = "unclassified"


DEFAULT_REMEDIATION = {
    ErrorKind.CONFIGURATION: "Update the payout configuration, then process the payment again.",
    ErrorKind.PRECONDITION: "Complete payout account onboarding or adjust the amount before retrying.",
    ErrorKind.PROVIDER: "Resolve the provider issue, then retry the payment.",
    ErrorKind.AMBIGUOUS: (
        "The provider outcome is unknown. Reconcile this payment against the "
        "provider dashboard before any retry."
    ),
    ErrorKind.UNKNOWN: "Check the server logs for this payment and contact support.",
}


class PayoutError(Exception):
    """Base class for every classified payout failure."""

    kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        code: FailureCode = FailureCode.UNCLASSIFIED,
        remediation: Optional[str] = None,
        provider_payload: Optional[Dict[str, Any]] = None,
        kind: Optional[ErrorKind] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        if kind is not None:
            self.kind = kind
        self.remediation = remediation or DEFAULT_REMEDIATION[self.kind]
        self.provider_payload = provider_payload or {}

    @property
    def outcome_unknown(self) -> bool:
        return self.kind is ErrorKind.AMBIGUOUS

    @property
    def retryable(self) -> bool:
        """Only provider errors may be retried without human action first."""
        return self.kind is ErrorKind.PROVIDER

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code.value,
            "message": self.message,
            "remediation": self.remediation,
            "outcome_unknown": self.outcome_unknown,
            "provider_payload": self.provider_payload,
        }

    def __repr__(self):
        return f"<{type(self).__name__}(code={self.code.value}, message={self.message!r})>"


class ConfigurationError(PayoutError):
    kind = ErrorKind.CONFIGURATION


class PreconditionError(PayoutError):
    kind = ErrorKind.PRECONDITION


class ProviderError(PayoutError):
    kind = ErrorKind.PROVIDER


class AmbiguousError(PayoutError):
    kind = ErrorKind.AMBIGUOUS

    def __init__(self, message: str, code: FailureCode = FailureCode.TIMEOUT, **kwargs):
        super().__init__(message, code=code, **kwargs)


def unclassified(exc: Exception) -> PayoutError:
    """Wrap an unexpected exception so callers always see a PayoutError."""
    return PayoutError(
        f"Unexpected payout error: {exc}",
        code=FailureCode.UNCLASSIFIED,
        provider_payload={"exception": type(exc).__name__},
    )
