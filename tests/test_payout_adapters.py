"""
Test Payout Provider Adapters

PayPal, account transfer (Stripe Connect) and the simulated wire/crypto
rails all return PayoutResult with tagged errors built from provider codes.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from database.models import PayoutMethod
from services.errors import (
    AmbiguousError,
    ConfigurationError,
    ErrorKind,
    FailureCode,
    PreconditionError,
    ProviderError,
)
from services.payout_adapters import (
    AccountTransferAdapter,
    PayoutAdapter,
    PayoutDestination,
    PayPalPayoutAdapter,
)
from services.paypal_payouts import PayPalAPIError, PayPalAuthError
from services.simulated_rails import CryptoPayoutAdapter, WireTransferAdapter
from services.stripe_connect import AccountStatus


def paypal_destination(email="creator@paypal.test"):
    return PayoutDestination(payee_id="creator-1", method=PayoutMethod.PAYPAL, paypal_email=email)


def etransfer_destination(account_id="acct_123"):
    return PayoutDestination(
        payee_id="creator-1",
        method=PayoutMethod.ETRANSFER,
        payout_email="creator@bank.test",
        stripe_account_id=account_id,
    )


class TestPayPalAdapter:
    """PayPal Payouts rail"""

    def test_success_uses_batch_id_as_transaction_id(self):
        client = MagicMock()
        client.create_payout.return_value = {
            "batch_header": {"payout_batch_id": "BATCH123", "batch_status": "PENDING"}
        }
        adapter = PayPalPayoutAdapter(client)

        result = adapter.payout(paypal_destination(), Decimal("930.00"), "USD", "ref1")

        assert result.success
        assert result.transaction_id == "BATCH123"
        assert result.provider_response["batch_status"] == "PENDING"
        kwargs = client.create_payout.call_args.kwargs
        assert kwargs["receiver_email"] == "creator@paypal.test"
        assert kwargs["amount"] == Decimal("930.00")

    def test_each_attempt_uses_its_own_batch_id(self):
        """A retry must never be deduplicated into the earlier batch"""
        client = MagicMock()
        client.create_payout.return_value = {"batch_header": {"payout_batch_id": "B", "batch_status": "SUCCESS"}}
        adapter = PayPalPayoutAdapter(client)

        adapter.payout(paypal_destination(), Decimal("10"), "USD", "attempt-a")
        adapter.payout(paypal_destination(), Decimal("10"), "USD", "attempt-b")

        batch_ids = [c.kwargs["sender_batch_id"] for c in client.create_payout.call_args_list]
        assert batch_ids == ["batch_attempt-a", "batch_attempt-b"]

    def test_insufficient_funds_is_provider_error(self):
        client = MagicMock()
        client.create_payout.side_effect = PayPalAPIError(422, "INSUFFICIENT_FUNDS", "Sender does not have funds")
        adapter = PayPalPayoutAdapter(client)

        result = adapter.payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert not result.success
        assert isinstance(result.error, ProviderError)
        assert result.error.code is FailureCode.INSUFFICIENT_FUNDS
        assert "Insufficient funds" in result.error.message
        assert result.error.retryable

    def test_unregistered_receiver_is_configuration_error(self):
        client = MagicMock()
        client.create_payout.side_effect = PayPalAPIError(422, "RECEIVER_UNREGISTERED", "Receiver unregistered")
        adapter = PayPalPayoutAdapter(client)

        result = adapter.payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert result.error.kind is ErrorKind.CONFIGURATION
        assert result.error.code is FailureCode.RECEIVER_INVALID

    def test_server_error_is_provider_unavailable(self):
        client = MagicMock()
        client.create_payout.side_effect = PayPalAPIError(503, "SERVICE_UNAVAILABLE", "Try later")
        result = PayPalPayoutAdapter(client).payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert result.error.code is FailureCode.PROVIDER_UNAVAILABLE

    def test_unknown_error_name_is_rejected(self):
        client = MagicMock()
        client.create_payout.side_effect = PayPalAPIError(400, "VALIDATION_ERROR", "Invalid request")
        result = PayPalPayoutAdapter(client).payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert result.error.code is FailureCode.PROVIDER_REJECTED
        assert result.error.provider_payload["name"] == "VALIDATION_ERROR"

    def test_read_timeout_is_ambiguous(self):
        """The request may have reached PayPal: outcome unknown"""
        client = MagicMock()
        client.create_payout.side_effect = requests.ReadTimeout("read timed out")
        result = PayPalPayoutAdapter(client).payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert isinstance(result.error, AmbiguousError)
        assert result.error.outcome_unknown
        assert not result.error.retryable

    def test_connect_timeout_is_not_ambiguous(self):
        """Never connected: nothing was sent"""
        client = MagicMock()
        client.create_payout.side_effect = requests.ConnectTimeout("connect timed out")
        result = PayPalPayoutAdapter(client).payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert result.error.kind is ErrorKind.PROVIDER
        assert not result.error.outcome_unknown

    def test_auth_failure_is_configuration_error(self):
        client = MagicMock()
        client.create_payout.side_effect = PayPalAuthError("bad client secret")
        result = PayPalPayoutAdapter(client).payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert result.error.code is FailureCode.MISSING_CREDENTIALS

    def test_denied_batch_is_rejected(self):
        client = MagicMock()
        client.create_payout.return_value = {"batch_header": {"payout_batch_id": "B1", "batch_status": "DENIED"}}
        result = PayPalPayoutAdapter(client).payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert not result.success
        assert result.error.code is FailureCode.PROVIDER_REJECTED

    def test_unexpected_exception_is_unclassified(self):
        client = MagicMock()
        client.create_payout.side_effect = KeyError("boom")
        result = PayPalPayoutAdapter(client).payout(paypal_destination(), Decimal("10"), "USD", "ref")

        assert result.error.kind is ErrorKind.UNKNOWN
        assert result.error.code is FailureCode.UNCLASSIFIED

    def test_missing_email_makes_no_call(self):
        client = MagicMock()
        result = PayPalPayoutAdapter(client).payout(paypal_destination(email=None), Decimal("10"), "USD", "ref")

        assert result.error.code is FailureCode.MISSING_PAYOUT_DETAILS
        client.create_payout.assert_not_called()

    def test_requires_client_unless_simulated(self):
        with pytest.raises(ConfigurationError):
            PayPalPayoutAdapter(None)

    def test_simulated_payout(self):
        adapter = PayPalPayoutAdapter(None, simulate=True)
        result = adapter.payout(paypal_destination(), Decimal("10"), "USD", "abcdef0123456789")

        assert result.success
        assert result.transaction_id == "SANDBOX-ABCDEF0123456"
        assert result.provider_response["simulated"] is True

    def test_satisfies_adapter_protocol(self):
        assert isinstance(PayPalPayoutAdapter(None, simulate=True), PayoutAdapter)


class TestAccountTransferAdapter:
    """E-transfer via Stripe Connect"""

    def test_missing_connected_account(self):
        connect = MagicMock()
        adapter = AccountTransferAdapter(connect)

        result = adapter.payout(etransfer_destination(account_id=None), Decimal("50"), "CAD", "ref")

        assert result.error.code is FailureCode.ACCOUNT_NOT_CONNECTED
        connect.create_transfer.assert_not_called()

    def test_success(self):
        connect = MagicMock()
        connect.create_transfer.return_value = {"id": "tr_123", "simulated": False}
        adapter = AccountTransferAdapter(connect)

        result = adapter.payout(etransfer_destination(), Decimal("50.00"), "CAD", "attempt-1", "Retainer")

        assert result.success
        assert result.transaction_id == "tr_123"
        assert result.provider_response["stripe_account_id"] == "acct_123"
        kwargs = connect.create_transfer.call_args.kwargs
        assert kwargs["idempotency_key"] == "attempt-1"
        assert kwargs["transfer_group"] == "attempt-1"
        assert kwargs["currency"] == "CAD"

    def test_account_not_ready_is_precondition(self):
        connect = MagicMock()
        connect.create_transfer.side_effect = PreconditionError(
            AccountStatus("acct_123", requirements=["individual.verification.document"]).remediation_message(),
            code=FailureCode.ACCOUNT_NOT_READY,
        )
        result = AccountTransferAdapter(connect).payout(etransfer_destination(), Decimal("50"), "CAD", "ref")

        assert result.error.kind is ErrorKind.PRECONDITION
        assert "identity document upload" in result.error.message


class TestSimulatedRails:
    """Wire and crypto rails are simulated with deterministic ids"""

    def test_wire_transaction_id_is_deterministic(self):
        destination = PayoutDestination(
            payee_id="c1", method=PayoutMethod.WIRE,
            bank_routing_number="021000021", bank_account_number="000123456789",
        )
        adapter = WireTransferAdapter()

        first = adapter.payout(destination, Decimal("100"), "USD", "ref-1")
        again = adapter.payout(destination, Decimal("100"), "USD", "ref-1")
        other = adapter.payout(destination, Decimal("100"), "USD", "ref-2")

        assert first.transaction_id.startswith("WIRE-")
        assert first.transaction_id == again.transaction_id
        assert first.transaction_id != other.transaction_id
        assert first.provider_response["account_number"] == "****6789"
        assert first.provider_response["simulated"] is True

    def test_wire_missing_details(self):
        destination = PayoutDestination(payee_id="c1", method=PayoutMethod.WIRE, bank_routing_number="021000021")
        result = WireTransferAdapter().payout(destination, Decimal("100"), "USD", "ref")
        assert result.error.code is FailureCode.MISSING_PAYOUT_DETAILS

    def test_crypto_tx_hash(self):
        destination = PayoutDestination(
            payee_id="c1", method=PayoutMethod.CRYPTO,
            crypto_wallet_address="0xabc", crypto_network="ethereum",
        )
        result = CryptoPayoutAdapter().payout(destination, Decimal("100"), "USD", "ref-1")

        assert result.success
        assert result.transaction_id.startswith("0x")
        assert len(result.transaction_id) == 66
        assert result.provider_response["network"] == "ethereum"

    def test_crypto_missing_network(self):
        destination = PayoutDestination(payee_id="c1", method=PayoutMethod.CRYPTO, crypto_wallet_address="0xabc")
        result = CryptoPayoutAdapter().payout(destination, Decimal("100"), "USD", "ref")
        assert result.error.kind is ErrorKind.CONFIGURATION
