"""
Retainer Payment Scheduler

Generates and pays monthly retainer invoices for active contracts. Meant to
run once per billing cycle (Celery beat, 1st of the month) and safe to run
again: a contract-month is invoiced at most once.

Per eligible contract, strictly in order:
1. month number = full calendar months since start_date + 1 (minimum 1)
2. existing monthly invoice for that month -> skipped
3. fees via FeeCalculator (payer override honoured)
4. create the invoice in pending (unique index: a racing duplicate -> skipped)
5. validate creator payout settings; invalid -> invoice stays pending,
   creator notified, counted as skipped (the invoice exists, it was just
   not dispatched)
6. dispatch through PaymentProcessor -> processed or failed

Contracts are processed sequentially and one contract failing never stops
the batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from database.ledger import DuplicateInvoiceError, PaymentLedger
from database.models import ContractStatus, PaymentStatus, RetainerContract, RetainerPaymentType, utcnow
from services.fee_calculator import FeeBreakdown, FeeCalculator, format_fee_percentage
from services.payment_processor import PaymentProcessor

logger = logging.getLogger(__name__)


def get_current_month_number(start_date: Optional[datetime], now: datetime) -> int:
    """
    Which month of the contract `now` falls in (1-based).

    A month counts once the same day-of-month is reached: started Jan 15,
    on Feb 14 it is month 1, on Feb 15 month 2.
    """
    if start_date is None:
        return 1
    months = (now.year - start_date.year) * 12 + (now.month - start_date.month)
    if now.day < start_date.day:
        months -= 1
    return max(1, months + 1)


def ineligibility_reason(contract: RetainerContract, now: datetime) -> Optional[str]:
    """Why a contract must not be billed now, or None when it is eligible."""
    if contract.status != ContractStatus.ACTIVE:
        return "Contract is not active"
    if not contract.assigned_creator_id:
        return "Contract has no assigned creator"
    if contract.start_date is None or contract.start_date > now:
        return "Contract has not started"
    if contract.end_date is not None and contract.end_date < now:
        return "Contract has ended"
    return None


def is_eligible(contract: RetainerContract, now: datetime) -> bool:
    return ineligibility_reason(contract, now) is None


def fee_label(fees: FeeBreakdown) -> str:
    """Platform fee as logged on a new invoice, e.g. "4%" or "Custom 7%"."""
    label = format_fee_percentage(fees.platform_fee_percentage)
    return f"Custom {label}" if fees.is_custom_fee else label


@dataclass
class ContractResult:
    """
    Outcome for one contract.

    invoice_created and dispatched are tracked separately: an invoice can be
    created and left pending without any dispatch attempt.
    """
    contract_id: str
    success: bool = False
    payment_id: Optional[str] = None
    month_number: Optional[int] = None
    status: Optional[PaymentStatus] = None
    invoice_created: bool = False
    dispatched: bool = False
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "success": self.success,
            "payment_id": self.payment_id,
            "month_number": self.month_number,
            "status": self.status.value if self.status else None,
            "invoice_created": self.invoice_created,
            "dispatched": self.dispatched,
            "transaction_id": self.transaction_id,
            "error": self.error,
            "error_detail": self.error_detail,
        }


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    results: List[ContractResult] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "results": [r.as_dict() for r in self.results],
        }


class RetainerPaymentScheduler:
    """
    Recurring billing driver.

    Usage:
        scheduler = RetainerPaymentScheduler(ledger, processor)
        result = scheduler.process_monthly_batch()
        result.processed, result.failed, result.skipped
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        processor: PaymentProcessor,
        fee_calculator: Optional[FeeCalculator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.processor = processor
        self.fee_calculator = fee_calculator or FeeCalculator(ledger)
        self.clock = clock

    def get_active_contracts(self, now: datetime) -> List[RetainerContract]:
        return [c for c in self.ledger.get_retainer_contracts(ContractStatus.ACTIVE) if is_eligible(c, now)]

    def process_monthly_batch(self) -> BatchResult:
        """Bill every eligible contract for the current month. Never raises for a single contract."""
        logger.info("Retainer Scheduler: Starting monthly payment processing...")
        now = self.clock()
        batch = BatchResult()

        contracts = self.get_active_contracts(now)
        logger.info(f"Retainer Scheduler: Found {len(contracts)} active retainer contracts")

        for contract in contracts:
            contract_id = contract.id
            try:
                result = self._bill_contract(contract, now)
            except Exception as e:
                logger.exception(f"Retainer Scheduler: Error processing contract {contract_id}")
                result = ContractResult(contract_id, error=str(e) or type(e).__name__)
                batch.failed += 1
                batch.errors.append({"contract_id": contract_id, "error": result.error})
                batch.results.append(result)
                continue

            batch.results.append(result)
            if not result.dispatched:
                batch.skipped += 1
            elif result.success:
                batch.processed += 1
            else:
                batch.failed += 1
                batch.errors.append({"contract_id": contract_id, "error": result.error or "Payment failed"})

        logger.info(
            f"Retainer Scheduler: Monthly payment processing complete: processed={batch.processed}, "
            f"failed={batch.failed}, skipped={batch.skipped}"
        )
        return batch

    def process_single_contract(self, contract_id: str) -> ContractResult:
        """Manual / support equivalent of the batch for one contract."""
        contract = self.ledger.get_retainer_contract(contract_id)
        if contract is None:
            return ContractResult(contract_id, error="Contract not found")

        now = self.clock()
        reason = ineligibility_reason(contract, now)
        if reason:
            return ContractResult(contract_id, error=reason)

        try:
            return self._bill_contract(contract, now)
        except Exception as e:
            logger.exception(f"Retainer Scheduler: Error processing contract {contract_id}")
            return ContractResult(contract_id, error=str(e) or type(e).__name__)

    def _bill_contract(self, contract: RetainerContract, now: datetime) -> ContractResult:
        month_number = get_current_month_number(contract.start_date, now)

        existing = self.ledger.get_monthly_retainer_payment(contract.id, month_number)
        if existing is not None:
            logger.info(
                f"Retainer Scheduler: Payment already exists for contract {contract.id}, "
                f"month {month_number} - skipping"
            )
            return ContractResult(
                contract.id,
                payment_id=existing.id,
                month_number=month_number,
                status=existing.status,
                error=f"Payment already exists for month {month_number}",
            )

        logger.info(f"Retainer Scheduler: Creating monthly payment for contract {contract.id}, month {month_number}")
        fees = self.fee_calculator.calculate_fees(contract.monthly_amount, payer_id=contract.company_id)

        try:
            payment = self.ledger.create_retainer_payment(
                contract_id=contract.id,
                creator_id=contract.assigned_creator_id,
                company_id=contract.company_id,
                month_number=month_number,
                payment_type=RetainerPaymentType.MONTHLY,
                description=f"Monthly retainer payment for {contract.title} - Month {month_number}",
                **fees.ledger_fields(),
            )
        except DuplicateInvoiceError as e:
            logger.info(f"Retainer Scheduler: {e} (created concurrently) - skipping")
            return ContractResult(contract.id, month_number=month_number, error=str(e))

        logger.info(
            f"Retainer Scheduler: Created payment {payment.id} of ${fees.net_amount:.2f} (net) - "
            f"Platform Fee: {fee_label(fees)}"
        )

        validation = self.processor.validate_payee_payout_settings(contract.assigned_creator_id)
        if not validation.valid:
            logger.warning(
                f"Retainer Scheduler: Creator {contract.assigned_creator_id} has no usable payment method - "
                f"payment created as pending"
            )
            held = self.processor.hold_for_configuration(payment, validation.error)
            return ContractResult(
                contract.id,
                payment_id=payment.id,
                month_number=month_number,
                status=held.status,
                invoice_created=True,
                error=validation.error.message,
                error_detail=validation.error.as_dict(),
            )

        result = self.processor.process_record(payment, validation)
        return ContractResult(
            contract.id,
            success=result.success,
            payment_id=payment.id,
            month_number=month_number,
            status=result.status,
            invoice_created=True,
            dispatched=result.dispatched,
            transaction_id=result.transaction_id,
            error=result.error.message if result.error else None,
            error_detail=result.error.as_dict() if result.error else None,
        )
