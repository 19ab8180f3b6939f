"""
Test the payment ledger (SQLAlchemy persistence).
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from database.ledger import DuplicateInvoiceError, append_note
from database.models import PaymentStatus, RetainerPaymentType
from services.payment_state import InvalidTransitionError
from tests.conftest import NOW


def invoice_fields(contract, month_number, payment_type=RetainerPaymentType.MONTHLY):
    return {
        "contract_id": contract.id,
        "creator_id": contract.assigned_creator_id,
        "company_id": contract.company_id,
        "month_number": month_number,
        "payment_type": payment_type,
        "gross_amount": Decimal("1000.00"),
        "platform_fee_amount": Decimal("40.00"),
        "processing_fee_amount": Decimal("30.00"),
        "net_amount": Decimal("930.00"),
    }


class TestRetainerInvoices:
    def test_one_monthly_invoice_per_contract_month(self, ledger, make_contract):
        contract = make_contract()
        ledger.create_retainer_payment(**invoice_fields(contract, 1))

        with pytest.raises(DuplicateInvoiceError) as exc_info:
            ledger.create_retainer_payment(**invoice_fields(contract, 1))

        assert exc_info.value.month_number == 1
        assert len(ledger.get_retainer_payments_by_contract(contract.id)) == 1

    def test_next_month_and_bonus_are_allowed(self, ledger, make_contract):
        contract = make_contract()
        ledger.create_retainer_payment(**invoice_fields(contract, 1))
        ledger.create_retainer_payment(**invoice_fields(contract, 2))
        ledger.create_retainer_payment(**invoice_fields(contract, 1, RetainerPaymentType.BONUS))
        ledger.create_retainer_payment(**invoice_fields(contract, 1, RetainerPaymentType.BONUS))

        assert len(ledger.get_retainer_payments_by_contract(contract.id)) == 4
        assert ledger.get_monthly_retainer_payment(contract.id, 2).payment_type == RetainerPaymentType.MONTHLY

    def test_amounts_are_decimal(self, ledger, make_contract):
        contract = make_contract()
        invoice = ledger.create_retainer_payment(**invoice_fields(contract, 1))

        stored = ledger.get_retainer_payment(invoice.id)
        assert isinstance(stored.net_amount, Decimal)
        assert stored.net_amount == Decimal("930.00")
        assert stored.status == PaymentStatus.PENDING


class TestUpdateStatus:
    def test_status_and_fields_written_together(self, ledger, make_payment):
        payment = make_payment()

        ledger.update_status(payment, PaymentStatus.PROCESSING, attempt_key="k1", attempt_count=1)

        stored = ledger.get_payment(payment.id)
        assert stored.status == PaymentStatus.PROCESSING
        assert stored.attempt_key == "k1"

    def test_invalid_transition_writes_nothing(self, ledger, make_payment):
        payment = make_payment()

        with pytest.raises(InvalidTransitionError):
            ledger.update_status(payment, PaymentStatus.COMPLETED, provider_transaction_id="TX")

        stored = ledger.get_payment(payment.id)
        assert stored.status == PaymentStatus.PENDING
        assert stored.provider_transaction_id is None

    def test_unknown_field_rolls_back(self, ledger, make_payment):
        payment = make_payment()

        with pytest.raises(AttributeError):
            ledger.update_status(payment, PaymentStatus.PROCESSING, not_a_column="x")

        assert ledger.get_payment(payment.id).status == PaymentStatus.PENDING


class TestQueries:
    def test_list_unresolved(self, ledger, make_payment):
        stale = make_payment()
        ledger.update_status(stale, PaymentStatus.PROCESSING, initiated_at=NOW - timedelta(hours=3))
        fresh = make_payment()
        ledger.update_status(fresh, PaymentStatus.PROCESSING, initiated_at=NOW)
        unknown = make_payment()
        ledger.update_status(unknown, PaymentStatus.PROCESSING, initiated_at=NOW)
        ledger.update_status(unknown, PaymentStatus.FAILED, outcome_unknown=True, failed_at=NOW - timedelta(hours=2))
        just_timed_out = make_payment()
        ledger.update_status(just_timed_out, PaymentStatus.PROCESSING, initiated_at=NOW - timedelta(hours=2))
        ledger.update_status(just_timed_out, PaymentStatus.FAILED, outcome_unknown=True, failed_at=NOW)
        known = make_payment()
        ledger.update_status(known, PaymentStatus.PROCESSING, initiated_at=NOW)
        ledger.update_status(known, PaymentStatus.FAILED)

        ids = {r.id for r in ledger.list_unresolved(NOW - timedelta(hours=1))}

        assert ids == {stale.id, unknown.id}

    def test_payments_by_creator_include_retainers(self, ledger, make_payment, make_contract):
        contract = make_contract(assigned_creator_id="creator-1")
        ledger.create_retainer_payment(**invoice_fields(contract, 1))
        make_payment(creator_id="creator-1")
        make_payment(creator_id="creator-2")

        records = ledger.get_payments_by_creator("creator-1")

        assert sorted(r.record_type for r in records) == ["payment", "retainer_payment"]


class TestAppendNote:
    def test_append(self):
        assert append_note("Monthly retainer", "PENDING: x") == "Monthly retainer. PENDING: x"
        assert append_note(None, "FAILED: y") == "FAILED: y"
