"""
Payment Ledger

Persistence for Payment and RetainerPayment records, plus the read-only
lookups the payout engine needs (contracts, payout settings, company fee
overrides, platform fee settings).

Every write commits on its own so the next step of a payout only starts
once the previous write is durable. Status updates are atomic with the
metadata they carry (transaction id, timestamps, description).
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Union

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models import (
    CompanyProfile,
    ContractStatus,
    Payment,
    PaymentStatus,
    PayoutSetting,
    PlatformSetting,
    RetainerContract,
    RetainerPayment,
    RetainerPaymentType,
    utcnow,
)
from services.payment_state import ensure_transition

logger = logging.getLogger(__name__)

PayoutRecord = Union[Payment, RetainerPayment]


class DuplicateInvoiceError(Exception):
    """A monthly invoice for this contract-month already exists."""

    def __init__(self, contract_id: str, month_number: int):
        self.contract_id = contract_id
        self.month_number = month_number
        super().__init__(
            f"Monthly retainer payment already exists for contract {contract_id}, month {month_number}"
        )


def append_note(description: Optional[str], note: str) -> str:
    """Append an annotation to a free-text description."""
    if not description:
        return note
    return f"{description}. {note}"


class PaymentLedger:
    """
    Ledger collaborator backed by a SQLAlchemy session.

    Usage:
        ledger = PaymentLedger(db)
        payment = ledger.create_retainer_payment(contract_id=..., ...)
        ledger.update_status(payment, PaymentStatus.COMPLETED, provider_transaction_id="tr_123")
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_payment(self, **fields) -> Payment:
        """Create a one-off commission payment in pending."""
        fields.setdefault("status", PaymentStatus.PENDING)
        payment = Payment(**fields)
        self._commit(payment)
        logger.info(f"Ledger: created payment {payment.id} ({payment.net_amount} net)")
        return payment

    def create_retainer_payment(self, **fields) -> RetainerPayment:
        """
        Create a retainer invoice in pending.

        For monthly invoices the insert itself is the idempotency check: the
        partial unique index on (contract_id, month_number, payment_type)
        rejects a second monthly invoice for the same contract-month, even
        when two batch runs race past the application-level lookup.

        Raises:
            DuplicateInvoiceError: monthly invoice already exists
        """
        fields.setdefault("status", PaymentStatus.PENDING)
        fields.setdefault("payment_type", RetainerPaymentType.MONTHLY)
        payment = RetainerPayment(**fields)
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if fields["payment_type"] == RetainerPaymentType.MONTHLY:
                raise DuplicateInvoiceError(fields.get("contract_id"), fields.get("month_number")) from e
            raise
        logger.info(
            f"Ledger: created retainer payment {payment.id} for contract {payment.contract_id}, "
            f"month {payment.month_number}"
        )
        return payment

    def update_status(self, record: PayoutRecord, status: PaymentStatus, **fields) -> PayoutRecord:
        """
        Move a record to a new status together with its metadata.

        The transition is validated against the payment state machine and
        the status and all fields are committed in one transaction; on
        failure nothing is written.
        """
        ensure_transition(record.status, status)
        try:
            record.status = status
            for name, value in fields.items():
                if not hasattr(type(record), name):
                    raise AttributeError(f"{type(record).__name__} has no field '{name}'")
                setattr(record, name, value)
            record.updated_at = utcnow()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(record)
        logger.info(f"Ledger: {record.record_type} {record.id} -> {status.value}")
        return record

    def _commit(self, obj):
        self.db.add(obj)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(obj)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.id == payment_id).first()

    def get_retainer_payment(self, retainer_payment_id: str) -> Optional[RetainerPayment]:
        return self.db.query(RetainerPayment).filter(RetainerPayment.id == retainer_payment_id).first()

    def get_payment_or_retainer_payment(self, record_id: str) -> Optional[PayoutRecord]:
        return self.get_payment(record_id) or self.get_retainer_payment(record_id)

    def get_payments_by_creator(self, creator_id: str) -> List[PayoutRecord]:
        payments = self.db.query(Payment).filter(Payment.creator_id == creator_id).all()
        retainers = self.db.query(RetainerPayment).filter(RetainerPayment.creator_id == creator_id).all()
        return sorted(payments + retainers, key=lambda p: p.created_at, reverse=True)

    def get_retainer_payments_by_contract(self, contract_id: str) -> List[RetainerPayment]:
        return (
            self.db.query(RetainerPayment)
            .filter(RetainerPayment.contract_id == contract_id)
            .order_by(RetainerPayment.created_at)
            .all()
        )

    def get_monthly_retainer_payment(self, contract_id: str, month_number: int) -> Optional[RetainerPayment]:
        return (
            self.db.query(RetainerPayment)
            .filter(
                RetainerPayment.contract_id == contract_id,
                RetainerPayment.month_number == month_number,
                RetainerPayment.payment_type == RetainerPaymentType.MONTHLY,
            )
            .first()
        )

    def get_retainer_contract(self, contract_id: str) -> Optional[RetainerContract]:
        return self.db.query(RetainerContract).filter(RetainerContract.id == contract_id).first()

    def get_retainer_contracts(self, status: Optional[ContractStatus] = None) -> List[RetainerContract]:
        query = self.db.query(RetainerContract)
        if status is not None:
            query = query.filter(RetainerContract.status == status)
        return query.order_by(RetainerContract.created_at, RetainerContract.id).all()

    def get_payout_settings(self, user_id: str) -> List[PayoutSetting]:
        """All payout methods for a user, oldest first."""
        return (
            self.db.query(PayoutSetting)
            .filter(PayoutSetting.user_id == user_id)
            .order_by(PayoutSetting.created_at, PayoutSetting.id)
            .all()
        )

    def get_company_profile(self, company_id: str) -> Optional[CompanyProfile]:
        return self.db.query(CompanyProfile).filter(CompanyProfile.id == company_id).first()

    def get_platform_settings(self, category: str) -> Dict[str, str]:
        rows = self.db.query(PlatformSetting).filter(PlatformSetting.category == category).all()
        return {row.key: row.value for row in rows}

    def list_disputed(self, limit: int = 50, offset: int = 0) -> List[PayoutRecord]:
        """Disputed payments of both kinds, newest first."""
        payments = self.db.query(Payment).filter(Payment.status == PaymentStatus.DISPUTED).all()
        retainers = (
            self.db.query(RetainerPayment)
            .filter(RetainerPayment.status == PaymentStatus.DISPUTED)
            .all()
        )
        records = sorted(payments + retainers, key=lambda p: p.disputed_at or p.created_at, reverse=True)
        return records[offset:offset + limit]

    def list_unresolved(self, older_than: datetime) -> List[PayoutRecord]:
        """
        Records whose provider outcome is not settled: stuck in processing
        since before `older_than`, or failed with an unknown outcome since before it.
        """
        records: List[PayoutRecord] = []
        for model in (Payment, RetainerPayment):
            records.extend(
                self.db.query(model)
                .filter(
                    or_(
                        (model.status == PaymentStatus.PROCESSING) & (model.initiated_at < older_than),
                        (model.status == PaymentStatus.FAILED) & (model.outcome_unknown.is_(True))
                        & (model.failed_at < older_than),
                    )
                )
                .all()
            )
        return records
