"""
Payout Engine Database Models

This module defines the SQLAlchemy models the payment disbursement and
recurring-billing engine reads and writes.

Architecture:
- Payments: one-off commission payouts (affiliate offers)
- Retainer Contracts: monthly retainers between a company and a creator
- Retainer Payments: monthly/bonus invoices generated for a contract
- Payment Settings: creator payout methods (PayPal, e-transfer, wire, crypto)
- Company Profiles: payer records (only the custom fee override is used here)
- Platform Settings: key/value fee configuration
- Notifications: messages for payees/payers/operators

Amounts are Numeric(12, 2) and surface as Decimal, never float.
Payment records are never deleted (financial audit trail).
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Numeric, Boolean, DateTime, Integer,
    Text, ForeignKey, JSON, Index, text, Enum as SQLEnum
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all columns store UTC without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _values(enum_cls):
    return [member.value for member in enum_cls]


class PaymentStatus(str, enum.Enum):
    """
    Payment lifecycle.

    pending -> processing -> completed | failed
    completed -> refunded (external collaborator)
    disputed / dispute_resolved are first-class dispute states.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    DISPUTE_RESOLVED = "dispute_resolved"


class PayoutMethod(str, enum.Enum):
    PAYPAL = "paypal"
    ETRANSFER = "etransfer"  # Stripe Connect transfer to a connected account
    WIRE = "wire"
    CRYPTO = "crypto"


class RetainerPaymentType(str, enum.Enum):
    MONTHLY = "monthly"
    BONUS = "bonus"


class ContractStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DisputeResolution(str, enum.Enum):
    REFUND = "refund"
    COMPLETE = "complete"
    CANCEL = "cancel"


class PayoutRecordMixin:
    """
    Columns shared by Payment and RetainerPayment.

    Fee fields are written once from FeeCalculator output.
    Lifecycle fields are written by PaymentLedger.update_status only.
    """
    id = Column(String(36), primary_key=True, default=new_id)

    creator_id = Column(String(36), nullable=False, index=True)  # payee
    company_id = Column(String(36), nullable=False, index=True)  # payer

    # Fee split
    gross_amount = Column(Numeric(12, 2), nullable=False)
    platform_fee_amount = Column(Numeric(12, 2), nullable=False)
    processing_fee_amount = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)

    # Lifecycle
    status = Column(
        SQLEnum(PaymentStatus, values_callable=_values, native_enum=False, length=20),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_method = Column(
        SQLEnum(PayoutMethod, values_callable=_values, native_enum=False, length=20)
    )
    description = Column(Text)

    # Provider tracking
    provider_transaction_id = Column(String(100), index=True)
    provider_response = Column(JSON)
    attempt_key = Column(String(64), index=True)  # idempotency key of the latest dispatch
    attempt_count = Column(Integer, default=0, nullable=False)
    failure_kind = Column(String(20))
    failure_code = Column(String(40))
    outcome_unknown = Column(Boolean, default=False, nullable=False)

    # Dispute metadata
    dispute_reason = Column(Text)
    disputed_by = Column(String(36))
    disputed_at = Column(DateTime)
    dispute_resolution = Column(
        SQLEnum(DisputeResolution, values_callable=_values, native_enum=False, length=20)
    )
    dispute_notes = Column(Text)
    dispute_resolved_by = Column(String(36))
    dispute_resolved_at = Column(DateTime)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    initiated_at = Column(DateTime)
    completed_at = Column(DateTime)
    failed_at = Column(DateTime)

    record_type = "payment"

    def fee_breakdown(self) -> dict:
        return {
            "gross_amount": f"{self.gross_amount:.2f}",
            "platform_fee_amount": f"{self.platform_fee_amount:.2f}",
            "processing_fee_amount": f"{self.processing_fee_amount:.2f}",
            "net_amount": f"{self.net_amount:.2f}",
        }


class Payment(PayoutRecordMixin, Base):
    """
    One-off commission payout to a creator for an affiliate offer.
    """
    __tablename__ = "payments"

    application_id = Column(String(36), index=True)
    offer_id = Column(String(36), index=True)

    record_type = "payment"

    def __repr__(self):
        return f"<Payment(id={self.id}, net={self.net_amount}, status={self.status})>"


class RetainerContract(Base):
    """
    Monthly retainer between a company (payer) and a creator (payee).

    Eligible for monthly billing only when:
    - status is active
    - a creator has been assigned
    - start_date <= now and (end_date is null or end_date >= now)
    """
    __tablename__ = "retainer_contracts"

    id = Column(String(36), primary_key=True, default=new_id)
    company_id = Column(String(36), nullable=False, index=True)
    assigned_creator_id = Column(String(36), index=True)  # null until an application is approved
    title = Column(String(255), nullable=False)
    monthly_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(
        SQLEnum(ContractStatus, values_callable=_values, native_enum=False, length=20),
        default=ContractStatus.OPEN,
        nullable=False,
    )
    start_date = Column(DateTime)
    end_date = Column(DateTime)  # null = open-ended
    created_at = Column(DateTime, default=utcnow)

    payments = relationship("RetainerPayment", back_populates="contract")

    def __repr__(self):
        return f"<RetainerContract(id={self.id}, title={self.title!r}, status={self.status})>"


class RetainerPayment(PayoutRecordMixin, Base):
    """
    Invoice generated for a retainer contract.

    At most one monthly invoice may exist per (contract_id, month_number);
    the partial unique index below is what makes the scheduler idempotent
    under concurrent triggers. Bonus payments are not constrained.
    """
    __tablename__ = "retainer_payments"
    __table_args__ = (
        Index(
            "uq_retainer_payments_monthly",
            "contract_id", "month_number", "payment_type",
            unique=True,
            sqlite_where=text("payment_type = 'monthly'"),
            postgresql_where=text("payment_type = 'monthly'"),
        ),
    )

    contract_id = Column(String(36), ForeignKey("retainer_contracts.id"), nullable=False, index=True)
    month_number = Column(Integer)  # 1-based, contract-relative
    payment_type = Column(
        SQLEnum(RetainerPaymentType, values_callable=_values, native_enum=False, length=20),
        default=RetainerPaymentType.MONTHLY,
        nullable=False,
    )

    contract = relationship("RetainerContract", back_populates="payments")

    record_type = "retainer_payment"

    def __repr__(self):
        return (
            f"<RetainerPayment(id={self.id}, contract={self.contract_id}, "
            f"month={self.month_number}, status={self.status})>"
        )


class PayoutSetting(Base):
    """
    A creator's payout method. A creator may hold several; the one flagged
    is_default wins, otherwise the oldest one on file is used.
    """
    __tablename__ = "payment_settings"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    payout_method = Column(
        SQLEnum(PayoutMethod, values_callable=_values, native_enum=False, length=20),
        nullable=False,
    )
    is_default = Column(Boolean, default=False, nullable=False)

    # PayPal
    paypal_email = Column(String(255))

    # E-transfer via Stripe Connect
    payout_email = Column(String(255))
    stripe_account_id = Column(String(100))  # acct_...

    # Wire
    bank_routing_number = Column(String(50))
    bank_account_number = Column(String(50))

    # Crypto
    crypto_wallet_address = Column(String(255))
    crypto_network = Column(String(50))

    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<PayoutSetting(user={self.user_id}, method={self.payout_method}, default={self.is_default})>"


class CompanyProfile(Base):
    """Payer profile. custom_platform_fee_percentage is a fraction (0.07 = 7%), NULL = default."""
    __tablename__ = "company_profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), index=True)
    company_name = Column(String(255))
    custom_platform_fee_percentage = Column(Numeric(5, 4))
    created_at = Column(DateTime, default=utcnow)


class PlatformSetting(Base):
    """Key/value platform configuration. Fee values are percents ("4" = 4%)."""
    __tablename__ = "platform_settings"

    id = Column(String(36), primary_key=True, default=new_id)
    key = Column(String(100), unique=True, nullable=False)
    value = Column(String(255), nullable=False)
    category = Column(String(50), default="general", index=True)
    description = Column(Text)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Notification(Base):
    """Persisted notification (delivery transport is handled elsewhere)."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
