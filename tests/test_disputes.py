"""
Test Payment Disputes

Disputes are first-class statuses validated by the payment state machine.
"""

import pytest

from database.models import DisputeResolution, PaymentStatus
from services.disputes import DisputeNotAllowedError, DisputeService
from services.notifications import PAYMENT_DISPUTE_RESOLVED, PAYMENT_DISPUTED
from services.payment_processor import PaymentNotFoundError
from services.payment_state import InvalidTransitionError
from tests.conftest import NOW


@pytest.fixture
def disputes(ledger, notifier):
    return DisputeService(ledger, notifier, clock=lambda: NOW)


@pytest.fixture
def completed_payment(make_payment, ledger):
    payment = make_payment()
    ledger.update_status(payment, PaymentStatus.PROCESSING)
    return ledger.update_status(payment, PaymentStatus.COMPLETED, provider_transaction_id="TX-1")


class TestRaiseDispute:
    def test_dispute_metadata(self, disputes, completed_payment, notifications):
        record = disputes.raise_dispute(completed_payment.id, "Content never delivered", "company-user-1")

        assert record.status == PaymentStatus.DISPUTED
        assert record.dispute_reason == "Content never delivered"
        assert record.disputed_by == "company-user-1"
        assert record.disputed_at == NOW

        [sent] = notifications.of_type(PAYMENT_DISPUTED)
        assert sent["user_id"] == "creator-1"
        assert "Content never delivered" in sent["message"]

    def test_default_reason(self, disputes, completed_payment):
        record = disputes.raise_dispute(completed_payment.id, None, "company-user-1")
        assert record.dispute_reason == "No reason provided"

    def test_pending_payment_can_be_disputed(self, disputes, make_payment):
        payment = make_payment()
        assert disputes.raise_dispute(payment.id, "wrong amount", "u").status == PaymentStatus.DISPUTED

    def test_other_company_cannot_dispute(self, disputes, completed_payment):
        with pytest.raises(DisputeNotAllowedError):
            disputes.raise_dispute(completed_payment.id, "x", "u", company_id="company-other")

    def test_refunded_payment_cannot_be_disputed(self, disputes, completed_payment, ledger):
        ledger.update_status(completed_payment, PaymentStatus.REFUNDED)

        with pytest.raises(InvalidTransitionError):
            disputes.raise_dispute(completed_payment.id, "x", "u")

    def test_unknown_payment(self, disputes):
        with pytest.raises(PaymentNotFoundError):
            disputes.raise_dispute("missing", "x", "u")


class TestResolveDispute:
    @pytest.mark.parametrize("resolution,status", [
        ("refund", PaymentStatus.REFUNDED),
        ("complete", PaymentStatus.COMPLETED),
        ("cancel", PaymentStatus.DISPUTE_RESOLVED),
    ])
    def test_resolution_status(self, disputes, completed_payment, resolution, status):
        disputes.raise_dispute(completed_payment.id, "x", "company-user-1")

        record = disputes.resolve_dispute(completed_payment.id, resolution, "admin-1", notes="checked")

        assert record.status == status
        assert record.dispute_resolution == DisputeResolution(resolution)
        assert record.dispute_resolved_by == "admin-1"
        assert record.dispute_resolved_at == NOW
        assert record.dispute_notes == "checked"

    def test_notifies_creator_and_company(self, disputes, completed_payment, company_with_fee, notifications):
        company_with_fee(None, company_id="company-1", user_id="company-user-1")
        disputes.raise_dispute(completed_payment.id, "x", "company-user-1")

        disputes.resolve_dispute(completed_payment.id, DisputeResolution.REFUND, "admin-1")

        recipients = [n["user_id"] for n in notifications.of_type(PAYMENT_DISPUTE_RESOLVED)]
        assert recipients == ["creator-1", "company-user-1"]

    def test_only_disputed_payments_can_be_resolved(self, disputes, completed_payment):
        with pytest.raises(InvalidTransitionError):
            disputes.resolve_dispute(completed_payment.id, "cancel", "admin-1")

    def test_unknown_resolution(self, disputes, completed_payment):
        disputes.raise_dispute(completed_payment.id, "x", "u")
        with pytest.raises(ValueError):
            disputes.resolve_dispute(completed_payment.id, "chargeback", "admin-1")

    def test_resolved_dispute_is_terminal(self, disputes, completed_payment):
        disputes.raise_dispute(completed_payment.id, "x", "u")
        disputes.resolve_dispute(completed_payment.id, "cancel", "admin-1")

        with pytest.raises(InvalidTransitionError):
            disputes.raise_dispute(completed_payment.id, "again", "u")

    def test_list_disputed(self, disputes, completed_payment, make_payment):
        make_payment()
        disputes.raise_dispute(completed_payment.id, "x", "u")

        assert [r.id for r in disputes.list_disputed()] == [completed_payment.id]
