"""
Payment Disputes

A company can dispute one of its payments; an admin resolves the dispute.
Disputes are first-class statuses with structured metadata (reason, who
raised it, when, resolution, notes), validated by the payment state machine.

Resolutions:
- refund   -> refunded (money returned to the company)
- complete -> completed (payment approved as-is)
- cancel   -> dispute_resolved (dispute withdrawn, no money movement)
"""

import logging
from typing import Callable, List, Optional, Union

from database.ledger import PaymentLedger, PayoutRecord
from database.models import DisputeResolution, PaymentStatus, RetainerPayment, utcnow
from services.notifications import PAYMENT_DISPUTE_RESOLVED, PAYMENT_DISPUTED, SafeNotifier
from services.payment_processor import PaymentNotFoundError

logger = logging.getLogger(__name__)

RESOLUTION_STATUS = {
    DisputeResolution.REFUND: PaymentStatus.REFUNDED,
    DisputeResolution.COMPLETE: PaymentStatus.COMPLETED,
    DisputeResolution.CANCEL: PaymentStatus.DISPUTE_RESOLVED,
}

RESOLUTION_NOTES = {
    DisputeResolution.REFUND: "Refunded to company",
    DisputeResolution.COMPLETE: "Payment approved",
    DisputeResolution.CANCEL: "Dispute cancelled",
}


class DisputeNotAllowedError(PermissionError):
    """The caller may not dispute this payment (it belongs to another company)."""


class DisputeService:
    def __init__(self, ledger: PaymentLedger, notifier: SafeNotifier, clock: Callable = utcnow):
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock

    def _get(self, record_id: str) -> PayoutRecord:
        record = self.ledger.get_payment_or_retainer_payment(record_id)
        if record is None:
            raise PaymentNotFoundError(f"Payment {record_id} not found")
        return record

    def raise_dispute(
        self,
        record_id: str,
        reason: Optional[str],
        disputed_by: str,
        company_id: Optional[str] = None,
    ) -> PayoutRecord:
        """
        Mark a payment as disputed.

        Args:
            record_id: Payment or RetainerPayment id
            reason: free text from the company
            disputed_by: user raising the dispute
            company_id: when given, the payment must belong to this company

        Raises:
            PaymentNotFoundError, DisputeNotAllowedError, InvalidTransitionError
        """
        record = self._get(record_id)
        if company_id is not None and record.company_id != company_id:
            raise DisputeNotAllowedError(f"Payment {record_id} does not belong to company {company_id}")

        reason = reason or "No reason provided"
        record = self.ledger.update_status(
            record,
            PaymentStatus.DISPUTED,
            dispute_reason=reason,
            disputed_by=disputed_by,
            disputed_at=self.clock(),
        )
        logger.info(f"Disputes: {record.record_type} {record.id} disputed by {disputed_by}: {reason}")

        self.notifier.notify(
            record.creator_id,
            PAYMENT_DISPUTED,
            "Payment Disputed",
            f"Your payment for \"{self._title(record)}\" has been disputed. Reason: {reason}. "
            f"Please contact the company for more information.",
            {"payment_id": record.id, "amount": f"${record.net_amount:.2f}", "linkUrl": "/messages"},
        )
        return record

    def resolve_dispute(
        self,
        record_id: str,
        resolution: Union[DisputeResolution, str],
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> PayoutRecord:
        """
        Close a dispute.

        Raises:
            ValueError: unknown resolution
            PaymentNotFoundError, InvalidTransitionError (not disputed)
        """
        resolution = DisputeResolution(resolution)
        record = self._get(record_id)
        new_status = RESOLUTION_STATUS[resolution]

        record = self.ledger.update_status(
            record,
            new_status,
            dispute_resolution=resolution,
            dispute_notes=notes,
            dispute_resolved_by=resolved_by,
            dispute_resolved_at=self.clock(),
        )
        logger.info(
            f"Disputes: {record.record_type} {record.id} resolved by {resolved_by}: "
            f"{RESOLUTION_NOTES[resolution]} -> {new_status.value}"
        )

        message = f"Resolution: {resolution.value}. {notes or ''}".strip()
        self.notifier.notify(
            record.creator_id,
            PAYMENT_DISPUTE_RESOLVED,
            "Payment Dispute Resolved",
            f"The dispute on your payment has been resolved. {message}",
            {"payment_id": record.id},
        )
        company = self.ledger.get_company_profile(record.company_id)
        if company is not None and company.user_id:
            self.notifier.notify(
                company.user_id,
                PAYMENT_DISPUTE_RESOLVED,
                "Payment Dispute Resolved",
                f"The payment dispute has been resolved. {message}",
                {"payment_id": record.id},
            )
        return record

    def list_disputed(self, limit: int = 50, offset: int = 0) -> List[PayoutRecord]:
        return self.ledger.list_disputed(limit=limit, offset=offset)

    @staticmethod
    def _title(record: PayoutRecord) -> str:
        if isinstance(record, RetainerPayment) and record.contract is not None:
            return record.contract.title
        return "Affiliate Offer"
