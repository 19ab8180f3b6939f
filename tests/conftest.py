"""
Shared pytest fixtures for the payout engine tests.

Every test gets a fresh in-memory SQLite database. Provider rails are
replaced by FakeAdapter instances that record their calls.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.ledger import PaymentLedger
from database.models import (
    Base,
    CompanyProfile,
    ContractStatus,
    PayoutMethod,
    PayoutSetting,
    RetainerContract,
)
from services.notifications import SafeNotifier
from services.payment_processor import PaymentProcessor
from services.payout_adapters import PayoutResult

NOW = datetime(2025, 3, 15, 12, 0, 0)

OPERATOR_ID = "operator-1"


class FakeAdapter:
    """Payout rail double. Queued outcomes are PayoutResults or exceptions to raise."""

    def __init__(self, method, outcomes=None):
        self.method = method
        self.outcomes = list(outcomes or [])
        self.calls = []

    def payout(self, destination, amount, currency, reference, description=""):
        self.calls.append({
            "destination": destination,
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "description": description,
        })
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        transaction_id = f"{self.method.value.upper()}-TX-{len(self.calls)}"
        return PayoutResult.ok(transaction_id, {"method": self.method.value, "amount": f"{amount:.2f}"})


class RecordingNotificationService:
    """Notification sink that keeps everything it was asked to send."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_notification(self, user_id, type, title, message, data=None):
        if self.fail:
            raise RuntimeError("notification transport down")
        self.sent.append({"user_id": user_id, "type": type, "title": title, "message": message, "data": data})

    def of_type(self, type):
        return [n for n in self.sent if n["type"] == type]


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    Session = sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def ledger(db_session):
    return PaymentLedger(db_session)


@pytest.fixture
def notifications():
    return RecordingNotificationService()


@pytest.fixture
def notifier(notifications):
    return SafeNotifier(notifications, operator_user_ids=[OPERATOR_ID])


@pytest.fixture
def adapters():
    return {method: FakeAdapter(method) for method in PayoutMethod}


@pytest.fixture
def processor(ledger, adapters, notifier):
    return PaymentProcessor(ledger, adapters, notifier, clock=lambda: NOW)


@pytest.fixture
def add_payout_setting(db_session):
    """Add a payout method for a creator. Defaults to a complete PayPal setting."""

    def _add(user_id, method=PayoutMethod.PAYPAL, **fields):
        defaults = {
            PayoutMethod.PAYPAL: {"paypal_email": f"{user_id}@paypal.test"},
            PayoutMethod.ETRANSFER: {"payout_email": f"{user_id}@bank.test", "stripe_account_id": "acct_test123"},
            PayoutMethod.WIRE: {"bank_routing_number": "021000021", "bank_account_number": "000123456789"},
            PayoutMethod.CRYPTO: {"crypto_wallet_address": "0xabc123", "crypto_network": "ethereum"},
        }[method]
        values = {**defaults, **fields}
        values.setdefault("created_at", NOW)
        setting = PayoutSetting(user_id=user_id, payout_method=method, **values)
        db_session.add(setting)
        db_session.commit()
        return setting

    return _add


@pytest.fixture
def make_contract(db_session):
    """Create a retainer contract, active and billable by default."""
    counter = {"n": 0}

    def _make(**fields):
        counter["n"] += 1
        values = {
            "company_id": "company-1",
            "assigned_creator_id": f"creator-{counter['n']}",
            "title": f"Retainer {counter['n']}",
            "monthly_amount": Decimal("1000.00"),
            "status": ContractStatus.ACTIVE,
            "start_date": NOW - timedelta(days=40),
            "end_date": None,
            "created_at": NOW - timedelta(days=60) + timedelta(minutes=counter["n"]),
        }
        values.update(fields)
        contract = RetainerContract(**values)
        db_session.add(contract)
        db_session.commit()
        return contract

    return _make


@pytest.fixture
def make_payment(ledger):
    """Create a pending one-off payment with a default 4% / 3% split of 1000."""

    def _make(**fields):
        values = {
            "creator_id": "creator-1",
            "company_id": "company-1",
            "gross_amount": Decimal("1000.00"),
            "platform_fee_amount": Decimal("40.00"),
            "processing_fee_amount": Decimal("30.00"),
            "net_amount": Decimal("930.00"),
            "description": "Commission payout",
        }
        values.update(fields)
        return ledger.create_payment(**values)

    return _make


@pytest.fixture
def company_with_fee(db_session):
    def _make(percentage, company_id="company-1", user_id="company-user-1"):
        company = CompanyProfile(id=company_id, user_id=user_id, custom_platform_fee_percentage=percentage)
        db_session.add(company)
        db_session.commit()
        return company

    return _make
