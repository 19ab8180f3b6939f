"""
Payout Reconciliation

Settles records whose provider outcome is unknown:
- stuck in processing longer than the stale threshold (crash or ledger
  failure between the provider call and the status write)
- failed with outcome_unknown (timeout / lost connection mid-request), once
  the failure is older than the same threshold

E-transfer attempts can be checked automatically: every Stripe transfer is
created with transfer_group = attempt_key.
- transfer found     -> completed with its transfer id
- no transfer found  -> failed, outcome known, retryable with a new key

Other rails have no lookup; those records are flagged outcome_unknown and
operators are alerted to check the provider dashboard and resolve them with
resolve_manually(). Reconciliation never re-dispatches a payout.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from database.ledger import PaymentLedger, PayoutRecord, append_note
from database.models import PaymentStatus, PayoutMethod, utcnow
from services.errors import ErrorKind, FailureCode, PayoutError
from services.notifications import RECONCILIATION_REQUIRED, SafeNotifier
from services.payment_processor import PaymentNotFoundError
from services.stripe_connect import ConnectedAccountService

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Manual resolution requested for a record that is not unresolved."""


@dataclass
class ReconciliationReport:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    flagged: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "failed": self.failed,
            "flagged": self.flagged,
            "errors": list(self.errors),
        }


class ReconciliationService:
    def __init__(
        self,
        ledger: PaymentLedger,
        connect: ConnectedAccountService,
        notifier: SafeNotifier,
        stale_after_minutes: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.connect = connect
        self.notifier = notifier
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.clock = clock

    def reconcile(self, older_than: Optional[datetime] = None) -> ReconciliationReport:
        """Check every unresolved record once. Never raises for a single record."""
        threshold = older_than or (self.clock() - self.stale_after)
        report = ReconciliationReport()

        records = self.ledger.list_unresolved(threshold)
        logger.info(f"Reconciliation: {len(records)} unresolved payout record(s) older than {threshold}")

        for record in records:
            record_id = record.id
            report.checked += 1
            try:
                outcome = self._reconcile_record(record)
            except Exception as e:
                logger.exception(f"Reconciliation: error on {record_id}")
                report.errors.append({"payment_id": record_id, "error": str(e)})
                continue

            if outcome == PaymentStatus.COMPLETED:
                report.completed += 1
            elif outcome == PaymentStatus.FAILED:
                report.failed += 1
            else:
                report.flagged += 1

        logger.info(
            f"Reconciliation complete: checked={report.checked}, completed={report.completed}, "
            f"failed={report.failed}, flagged={report.flagged}"
        )
        return report

    def _reconcile_record(self, record: PayoutRecord) -> Optional[PaymentStatus]:
        """Returns the settled status, or None when the record was only flagged."""
        if record.payment_method == PayoutMethod.ETRANSFER and record.attempt_key:
            try:
                transfer = self.connect.find_transfer(record.attempt_key)
            except PayoutError as e:
                logger.warning(f"Reconciliation: transfer lookup failed for {record.id}: {e.message}")
                self._flag(record, f"transfer lookup failed: {e.message}")
                return None

            if transfer:
                self.ledger.update_status(
                    record,
                    PaymentStatus.COMPLETED,
                    provider_transaction_id=transfer["id"],
                    provider_response={**transfer, "method": "etransfer", "reconciled": True},
                    completed_at=self.clock(),
                    outcome_unknown=False,
                    failure_kind=None,
                    failure_code=None,
                )
                logger.info(f"Reconciliation: {record.id} completed, found transfer {transfer['id']}")
                return PaymentStatus.COMPLETED

            self.ledger.update_status(
                record,
                PaymentStatus.FAILED,
                failed_at=record.failed_at or self.clock(),
                outcome_unknown=False,
                failure_kind=ErrorKind.PROVIDER.value,
                failure_code=FailureCode.PROVIDER_REJECTED.value,
                description=append_note(
                    record.description,
                    f"FAILED: no transfer found for attempt {record.attempt_key}, safe to retry",
                ),
            )
            logger.info(f"Reconciliation: {record.id} has no transfer, marked failed (retryable)")
            return PaymentStatus.FAILED

        self._flag(record, "no automatic lookup for this payout rail")
        return None

    def _flag(self, record: PayoutRecord, reason: str) -> None:
        if record.status == PaymentStatus.PROCESSING:
            self.ledger.update_status(
                record,
                PaymentStatus.FAILED,
                failed_at=self.clock(),
                outcome_unknown=True,
                failure_kind=ErrorKind.AMBIGUOUS.value,
                failure_code=FailureCode.TIMEOUT.value,
                description=append_note(record.description, "FAILED: provider outcome unknown"),
            )

        self.notifier.notify_operators(
            RECONCILIATION_REQUIRED,
            "Payout needs manual reconciliation",
            f"{record.record_type} {record.id} ({record.payment_method.value if record.payment_method else 'unknown'}, "
            f"attempt {record.attempt_key}): {reason}. Check the provider dashboard, then resolve it manually.",
            {"payment_id": record.id, "attempt_key": record.attempt_key},
        )

    def resolve_manually(
        self,
        record_id: str,
        sent: bool,
        transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PayoutRecord:
        """
        Operator verdict for a record with an unknown outcome.

        sent=True completes it with the provider transaction id; sent=False
        marks the attempt as failed with a known outcome so it can be retried.
        """
        record = self.ledger.get_payment_or_retainer_payment(record_id)
        if record is None:
            raise PaymentNotFoundError(f"Payment {record_id} not found")
        if not (record.outcome_unknown or record.status == PaymentStatus.PROCESSING):
            raise ReconciliationError(f"Payment {record_id} has no unknown provider outcome")

        note = f"RECONCILED: {'sent' if sent else 'not sent'}"
        if notes:
            note = f"{note} ({notes})"

        if sent:
            return self.ledger.update_status(
                record,
                PaymentStatus.COMPLETED,
                provider_transaction_id=transaction_id or record.provider_transaction_id,
                completed_at=self.clock(),
                outcome_unknown=False,
                description=append_note(record.description, note),
            )
        return self.ledger.update_status(
            record,
            PaymentStatus.FAILED,
            failed_at=record.failed_at or self.clock(),
            outcome_unknown=False,
            description=append_note(record.description, note),
        )
