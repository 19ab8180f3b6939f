"""
Test PayPal Payouts REST client

HTTP is mocked at the requests.Session level.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from services.paypal_payouts import PayPalAPIError, PayPalAuthError, PayPalPayoutsClient


def response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body or {}
    resp.text = ""
    resp.reason = "OK" if status_code < 400 else "Error"
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error")
    return resp


TOKEN = response(body={"access_token": "token-abc", "expires_in": 32400})


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return PayPalPayoutsClient("client-id", "client-secret", mode="sandbox", timeout=10, session=session)


class TestAccessToken:
    def test_token_is_cached(self, client, session):
        session.post.return_value = TOKEN

        assert client.get_access_token() == "token-abc"
        assert client.get_access_token() == "token-abc"

        assert session.post.call_count == 1
        call = session.post.call_args
        assert call.args[0] == "https://api-m.sandbox.paypal.com/v1/oauth2/token"
        assert call.kwargs["auth"] == ("client-id", "client-secret")
        assert call.kwargs["timeout"] == 10

    def test_bad_credentials(self, client, session):
        session.post.return_value = response(401, {"error": "invalid_client"})

        with pytest.raises(PayPalAuthError):
            client.get_access_token()

    def test_live_mode_url(self, session):
        live = PayPalPayoutsClient("id", "secret", mode="live", session=session)
        assert live.base_url == "https://api-m.paypal.com"


class TestCreatePayout:
    def test_single_item_batch(self, client, session):
        session.post.side_effect = [
            TOKEN,
            response(201, {"batch_header": {"payout_batch_id": "BATCH1", "batch_status": "PENDING"}}),
        ]

        data = client.create_payout(
            sender_batch_id="batch_ref1",
            receiver_email="creator@paypal.test",
            amount=Decimal("930.00"),
            currency="usd",
            note="Retainer",
            sender_item_id="ref1",
        )

        assert data["batch_header"]["payout_batch_id"] == "BATCH1"
        call = session.post.call_args
        assert call.args[0].endswith("/v1/payments/payouts")
        assert call.kwargs["headers"]["PayPal-Request-Id"] == "batch_ref1"
        assert call.kwargs["headers"]["Authorization"] == "Bearer token-abc"
        item = call.kwargs["json"]["items"][0]
        assert item["amount"] == {"value": "930.00", "currency": "USD"}
        assert item["receiver"] == "creator@paypal.test"
        assert call.kwargs["json"]["sender_batch_header"]["sender_batch_id"] == "batch_ref1"

    def test_error_response_carries_error_name(self, client, session):
        session.post.side_effect = [
            TOKEN,
            response(422, {"name": "INSUFFICIENT_FUNDS", "message": "Sender has insufficient funds",
                           "debug_id": "dbg1"}),
        ]

        with pytest.raises(PayPalAPIError) as exc_info:
            client.create_payout("batch_r", "a@b.test", Decimal("1"), "USD", "n", "r")

        error = exc_info.value
        assert error.status_code == 422
        assert error.name == "INSUFFICIENT_FUNDS"
        assert error.debug_id == "dbg1"

    def test_timeout_propagates(self, client, session):
        session.post.side_effect = [TOKEN, requests.ReadTimeout("timed out")]

        with pytest.raises(requests.ReadTimeout):
            client.create_payout("batch_r", "a@b.test", Decimal("1"), "USD", "n", "r")
