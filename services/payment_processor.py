"""
Payment Processor

Moves a Payment or RetainerPayment through its lifecycle and sends the
money to the creator through the payout rail of their default method.

Lifecycle of a dispatch (from pending):
1. Look up the creator's default payout method (flagged default, else the
   oldest on file) and check the method-specific fields.
   - Nothing usable: NO provider call. The record stays pending with
     "PENDING: <reason>" appended to its description and the creator is
     asked to configure payment. Pending is not a failure.
2. Move to processing with a fresh attempt key (persisted before dispatch).
3. Call the rail adapter with the net amount.
   - success: completed + provider_transaction_id + completed_at,
     creator notified with the fee breakdown
   - failure: failed + failed_at + "FAILED: <reason>" in the description,
     failure kind/code stored, operators alerted. Timeouts with unknown
     outcome also set outcome_unknown and are never retried automatically.

Notification failures are swallowed (SafeNotifier). A ledger write that
fails after the provider already accepted the payout is logged as critical
and left to reconciliation; it never turns a sent payout into a failure.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from database.ledger import PaymentLedger, PayoutRecord, append_note
from database.models import PaymentStatus, PayoutMethod, PayoutSetting, RetainerPayment, utcnow
from services.errors import ConfigurationError, ErrorKind, FailureCode, PayoutError, unclassified
from services.notifications import PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_RECEIVED, SafeNotifier
from services.payment_state import InvalidTransitionError
from services.payout_adapters import (
    PayoutAdapter,
    PayoutDestination,
    PayoutResult,
    build_precondition_message,
)

logger = logging.getLogger(__name__)

# The e-transfer rail pays out in Canadian dollars
RAIL_CURRENCIES = {
    PayoutMethod.ETRANSFER: "CAD",
}

# (field, message, code) checked in order for each method
REQUIRED_FIELDS = {
    PayoutMethod.PAYPAL: [
        ("paypal_email", "PayPal email is missing", FailureCode.MISSING_PAYOUT_DETAILS),
    ],
    PayoutMethod.ETRANSFER: [
        ("payout_email", "E-Transfer email is missing", FailureCode.MISSING_PAYOUT_DETAILS),
        (
            "stripe_account_id",
            "Stripe account not connected. Please complete Stripe Connect onboarding in Payment Settings.",
            FailureCode.ACCOUNT_NOT_CONNECTED,
        ),
    ],
    PayoutMethod.WIRE: [
        ("bank_routing_number", "Bank account details are missing", FailureCode.MISSING_PAYOUT_DETAILS),
        ("bank_account_number", "Bank account details are missing", FailureCode.MISSING_PAYOUT_DETAILS),
    ],
    PayoutMethod.CRYPTO: [
        ("crypto_wallet_address", "Crypto wallet details are missing", FailureCode.MISSING_PAYOUT_DETAILS),
        ("crypto_network", "Crypto wallet details are missing", FailureCode.MISSING_PAYOUT_DETAILS),
    ],
}

NO_PAYOUT_METHOD_MESSAGE = (
    "No payment method configured. Creator must add payment details in Settings > Payment Methods."
)


class PaymentNotFoundError(LookupError):
    """No Payment or RetainerPayment with this id."""


class RetryNotAllowedError(Exception):
    """Payment cannot be retried in its current state."""


@dataclass
class ValidationResult:
    valid: bool
    setting: Optional[PayoutSetting] = None
    error: Optional[PayoutError] = None

    @property
    def destination(self) -> Optional[PayoutDestination]:
        if self.setting is None:
            return None
        return PayoutDestination.from_setting(self.setting)


@dataclass
class PaymentResult:
    success: bool
    payment_id: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    provider_response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[PayoutError] = None
    dispatched: bool = False
    ledger_synced: bool = True

    @property
    def outcome_unknown(self) -> bool:
        return bool(self.error and self.error.outcome_unknown)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "payment_id": self.payment_id,
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "provider_response": self.provider_response,
            "error": self.error.as_dict() if self.error else None,
            "dispatched": self.dispatched,
            "outcome_unknown": self.outcome_unknown,
            "ledger_synced": self.ledger_synced,
        }


class PaymentProcessor:
    """
    Payment lifecycle state machine.

    Args:
        ledger: PaymentLedger bound to the current session
        adapters: payout rail per method (built once at startup)
        notifier: fire-and-forget notification wrapper
        sandbox_mode: only used for logging; simulation lives in the adapters
        clock: returns the current naive-UTC time
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        adapters: Dict[PayoutMethod, PayoutAdapter],
        notifier: SafeNotifier,
        sandbox_mode: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.adapters = dict(adapters)
        self.notifier = notifier
        self.sandbox_mode = sandbox_mode
        self.clock = clock

    # ------------------------------------------------------------------
    # Payout settings
    # ------------------------------------------------------------------

    def get_default_payout_setting(self, payee_id: str) -> Optional[PayoutSetting]:
        """Flagged default method, else the first one on file."""
        settings: List[PayoutSetting] = self.ledger.get_payout_settings(payee_id)
        if not settings:
            return None
        for setting in settings:
            if setting.is_default:
                return setting
        return settings[0]

    def validate_payee_payout_settings(self, payee_id: str) -> ValidationResult:
        """
        Check the creator has a usable payout method.

        Returns:
            ValidationResult with the chosen setting, or a ConfigurationError
        """
        logger.info(f"Validation: Checking payment settings for creator {payee_id}...")
        setting = self.get_default_payout_setting(payee_id)
        if setting is None:
            logger.error(f"Validation: Creator {payee_id} has no payment settings configured")
            return ValidationResult(False, error=ConfigurationError(
                NO_PAYOUT_METHOD_MESSAGE,
                code=FailureCode.MISSING_PAYOUT_METHOD,
                remediation="Add a payout method in Settings > Payment Methods.",
            ))

        method = PayoutMethod(setting.payout_method)
        if method not in self.adapters:
            return ValidationResult(False, setting=setting, error=ConfigurationError(
                f"Unsupported payment method: {method.value}",
                code=FailureCode.UNSUPPORTED_METHOD,
                remediation="Choose PayPal, e-transfer, wire or crypto in Payment Settings.",
            ))

        for field_name, message, code in REQUIRED_FIELDS.get(method, []):
            if not getattr(setting, field_name):
                logger.error(f"Validation: ERROR: {message}")
                return ValidationResult(False, setting=setting, error=ConfigurationError(
                    message,
                    code=code,
                    remediation="Complete your payout details in Settings > Payment Methods.",
                ))

        logger.info(f"Validation: {method.value} payout method validated for creator {payee_id}")
        return ValidationResult(True, setting=setting)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def process_payment(self, payment_id: str) -> PaymentResult:
        """Dispatch a pending one-off commission payment."""
        payment = self.ledger.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return self.process_record(payment)

    def process_retainer_payment(self, retainer_payment_id: str) -> PaymentResult:
        """Dispatch a pending retainer invoice."""
        retainer_payment = self.ledger.get_retainer_payment(retainer_payment_id)
        if retainer_payment is None:
            raise PaymentNotFoundError(f"Retainer payment {retainer_payment_id} not found")
        return self.process_record(retainer_payment)

    def retry_payment(self, record_id: str) -> PaymentResult:
        """
        Re-dispatch a failed payment with a fresh attempt key.

        Raises:
            PaymentNotFoundError: unknown id
            RetryNotAllowedError: not failed, or failed with an unknown outcome
                (money may have moved; reconcile first)
        """
        record = self.ledger.get_payment_or_retainer_payment(record_id)
        if record is None:
            raise PaymentNotFoundError(f"Payment {record_id} not found")
        if record.status != PaymentStatus.FAILED:
            raise RetryNotAllowedError(
                f"Only failed payments can be retried (payment {record.id} is {record.status.value})"
            )

        logger.info(f"Payment Processor: Retrying {record.record_type} {record.id} "
                    f"(attempt {record.attempt_count + 1})")
        return self.process_record(record)

    def process_record(self, record: PayoutRecord, validation: Optional[ValidationResult] = None) -> PaymentResult:
        """
        Run one dispatch for a pending (or failed, via retry) record.

        Every entry point goes through here, so a failed record whose provider
        outcome is unknown is refused whichever way it arrives.

        Raises:
            InvalidTransitionError: record is not in a dispatchable state
            RetryNotAllowedError: failed with an unknown outcome
        """
        if record.status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise InvalidTransitionError(record.status, PaymentStatus.PROCESSING)
        if record.status == PaymentStatus.FAILED and record.outcome_unknown:
            raise RetryNotAllowedError(
                f"Payment {record.id} has an unknown provider outcome. "
                f"Reconcile it against the provider before retrying."
            )

        if self.sandbox_mode:
            logger.info("Payment Processor: SANDBOX MODE ENABLED - payouts are simulated where credentials are missing")

        validation = validation or self.validate_payee_payout_settings(record.creator_id)
        if not validation.valid:
            return self.hold_for_configuration(record, validation.error)

        method = PayoutMethod(validation.setting.payout_method)
        return self._dispatch(record, method, validation.destination)

    # ------------------------------------------------------------------
    # Non-terminal pending
    # ------------------------------------------------------------------

    def hold_for_configuration(self, record: PayoutRecord, error: PayoutError) -> PaymentResult:
        """
        Leave the record undispatched and ask the creator to fix their settings.

        Pending records are annotated "PENDING: ..."; a failed record being
        retried keeps its status and only the notification goes out.
        """
        logger.warning(
            f"Payment Processor: {record.record_type} {record.id} held for configuration: {error.message}"
        )
        ledger_synced = True
        if record.status == PaymentStatus.PENDING:
            try:
                self.ledger.update_status(
                    record,
                    PaymentStatus.PENDING,
                    description=append_note(record.description, f"PENDING: {error.message}"),
                    failure_kind=error.kind.value,
                    failure_code=error.code.value,
                )
            except Exception as e:
                ledger_synced = False
                logger.error(f"Payment Processor: could not annotate pending {record.record_type} {record.id}: {e}")

        self.notifier.notify(
            record.creator_id,
            PAYMENT_PENDING,
            "Payment Method Required",
            f"Your payment of ${record.net_amount:.2f} {self._subject(record)} is pending. "
            f"{build_precondition_message(error)}",
            {"payment_id": record.id, "reason": error.as_dict(), "linkUrl": "/settings/payment"},
        )
        return PaymentResult(False, payment_id=record.id, status=PaymentStatus(record.status), error=error,
                             ledger_synced=ledger_synced)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, record: PayoutRecord, method: PayoutMethod, destination: PayoutDestination) -> PaymentResult:
        adapter = self.adapters[method]
        attempt_key = uuid.uuid4().hex
        currency = RAIL_CURRENCIES.get(method, record.currency or "USD")
        description = record.description or self._default_description(record)

        # The attempt key is durable before any money can move
        self.ledger.update_status(
            record,
            PaymentStatus.PROCESSING,
            payment_method=method,
            attempt_key=attempt_key,
            attempt_count=(record.attempt_count or 0) + 1,
            initiated_at=self.clock(),
            outcome_unknown=False,
            failure_kind=None,
            failure_code=None,
        )
        logger.info(
            f"Payment Processor: Dispatching {record.record_type} {record.id} via {method.value}: "
            f"{record.net_amount:.2f} {currency} (attempt {attempt_key})"
        )

        try:
            result = adapter.payout(destination, record.net_amount, currency, attempt_key, description)
        except Exception as e:
            logger.exception(f"Payment Processor: Adapter {method.value} raised for {record.id}")
            result = PayoutResult.failed(unclassified(e))

        if result.success:
            return self._complete(record, result, description)
        return self._fail(record, result.error or unclassified(RuntimeError("Adapter returned no error")),
                          description)

    def _complete(self, record: PayoutRecord, result: PayoutResult, description: str) -> PaymentResult:
        ledger_synced = True
        try:
            self.ledger.update_status(
                record,
                PaymentStatus.COMPLETED,
                provider_transaction_id=result.transaction_id,
                provider_response=result.provider_response,
                completed_at=self.clock(),
            )
        except Exception as e:
            ledger_synced = False
            logger.critical(
                f"Payment Processor: payout {result.transaction_id} SENT for {record.record_type} {record.id} "
                f"but the ledger update failed: {e}. Reconciliation will settle this record."
            )

        logger.info(f"Payment Processor: Successfully processed {record.id} - TX: {result.transaction_id}")

        self.notifier.notify(
            record.creator_id,
            PAYMENT_RECEIVED,
            "Monthly Retainer Payment Received!" if isinstance(record, RetainerPayment) else "Payment Received!",
            f"${record.net_amount:.2f} has been sent to your payment method {self._subject(record)}. "
            f"Transaction ID: {result.transaction_id}",
            {
                "payment_id": record.id,
                "transaction_id": result.transaction_id,
                "amount": f"${record.net_amount:.2f}",
                "grossAmount": f"${record.gross_amount:.2f}",
                "platformFee": f"${record.platform_fee_amount:.2f}",
                "processingFee": f"${record.processing_fee_amount:.2f}",
                "linkUrl": f"/payments/{record.id}",
            },
        )
        return PaymentResult(
            True,
            payment_id=record.id,
            status=PaymentStatus.COMPLETED,
            transaction_id=result.transaction_id,
            provider_response=result.provider_response,
            dispatched=True,
            ledger_synced=ledger_synced,
        )

    def _fail(self, record: PayoutRecord, error: PayoutError, description: str) -> PaymentResult:
        logger.error(
            f"Payment Processor: Failed to process {record.record_type} {record.id}: "
            f"[{error.kind.value}/{error.code.value}] {error.message}"
        )
        ledger_synced = True
        try:
            self.ledger.update_status(
                record,
                PaymentStatus.FAILED,
                failed_at=self.clock(),
                failure_kind=error.kind.value,
                failure_code=error.code.value,
                outcome_unknown=error.outcome_unknown,
                provider_response=error.as_dict(),
                description=append_note(description, f"FAILED: {error.message}"),
            )
        except Exception as e:
            ledger_synced = False
            logger.critical(
                f"Payment Processor: could not record failure of {record.record_type} {record.id}: {e}"
            )

        title = "Payout outcome unknown - reconcile before retry" if error.outcome_unknown else "Payout failed"
        self.notifier.notify_operators(
            PAYMENT_FAILED,
            title,
            f"{record.record_type} {record.id} for creator {record.creator_id}: {error.message}. "
            f"{error.remediation}",
            {"payment_id": record.id, "attempt_key": record.attempt_key, "error": error.as_dict()},
        )

        # Creators can fix configuration and onboarding problems themselves
        if error.kind in (ErrorKind.CONFIGURATION, ErrorKind.PRECONDITION):
            self.notifier.notify(
                record.creator_id,
                PAYMENT_FAILED,
                "Action Required to Receive Payment",
                f"We could not send your payment of ${record.net_amount:.2f} {self._subject(record)}. "
                f"{build_precondition_message(error)}",
                {"payment_id": record.id, "reason": error.code.value, "linkUrl": "/settings/payment"},
            )

        return PaymentResult(
            False,
            payment_id=record.id,
            status=PaymentStatus.FAILED,
            error=error,
            dispatched=True,
            ledger_synced=ledger_synced,
        )

    @staticmethod
    def _subject(record: PayoutRecord) -> str:
        if isinstance(record, RetainerPayment):
            title = record.contract.title if record.contract is not None else "your retainer"
            return f"for month {record.month_number} of \"{title}\""
        return "for your completed offer"

    @staticmethod
    def _default_description(record: PayoutRecord) -> str:
        if isinstance(record, RetainerPayment):
            return f"Retainer payment - Month {record.month_number or 'N/A'}"
        return "Creator payout"
