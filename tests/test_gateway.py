"""
Tests for the payment gateway client

Tests the authenticate -> order -> payment key -> pay handshake, token caching and
refresh, authentication retries, and the mapping of gateway failures to typed errors.
"""

import httpx
import pytest
from decimal import Decimal
from unittest.mock import Mock, patch

from contract_billing.config import GatewaySettings
from contract_billing.currency import Currency, Money
from contract_billing.exceptions import (
    AuthFailed, ErrorCategory, GatewayUnavailable, KeyRequestFailed,
    OrderCreationFailed, PaymentDeclined
)
from contract_billing.gateway import (
    BillingData, GatewayClient, GatewayPaymentRequest, PaymentSource
)

BASE_URL = "https://gateway.test/api"


def make_response(status_code, body=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.text = str(body)
    return response


def auth_ok(token="auth-token", **extra):
    return make_response(200, {"token": token, **extra})


def order_ok(order_id=5501):
    return make_response(201, {"id": order_id})


def key_ok(key="payment-key"):
    return make_response(201, {"token": key})


def pay_ok(transaction_id=9001):
    return make_response(200, {"success": True, "pending": False, "id": transaction_id,
                               "data": {"bill_reference": "B-1"}})


def called_urls(mock_post):
    return [call[0][0] for call in mock_post.call_args_list]


@pytest.fixture
def settings():
    return GatewaySettings(
        base_url=BASE_URL,
        api_key="api-key",
        secret_key="secret",
        merchant_id="merchant-1",
        integration_id=42,
        timeout_seconds=5.0,
        auth_retries=2,
        auth_backoff_seconds=0.1,
        token_ttl_seconds=3000
    )


@pytest.fixture
def sleep():
    return Mock()


@pytest.fixture
def clock():
    now = {"value": 1000.0}
    fake = Mock(side_effect=lambda: now["value"])
    fake.now = now
    return fake


@pytest.fixture
def client(settings, sleep, clock):
    gateway = GatewayClient(settings, sleep=sleep, clock=clock)
    yield gateway
    gateway.close()


@pytest.fixture
def payment_request():
    return GatewayPaymentRequest(
        transaction_id="txn-1",
        attempt=1,
        amount=Money(Decimal('1000.00'), Currency.EGP),
        billing_data=BillingData(first_name="Mona", last_name="Adel",
                                 email="accounts@hospital.test", phone_number="+201000000000"),
        source=PaymentSource(identifier="card-token-1", subtype="TOKEN")
    )


class TestHandshake:
    """Test the full payment handshake"""

    @patch('httpx.Client.post')
    def test_steps_run_in_order(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), order_ok(), key_ok(), pay_ok()]

        outcome = client.pay(payment_request)

        assert called_urls(mock_post) == [
            f"{BASE_URL}/auth",
            f"{BASE_URL}/orders",
            f"{BASE_URL}/acceptance/payment_keys",
            f"{BASE_URL}/acceptance/payments/pay",
        ]
        assert outcome.pending is False
        assert outcome.gateway_reference == "9001"
        assert outcome.order_id == "5501"

    @patch('httpx.Client.post')
    def test_wire_payloads(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), order_ok(), key_ok(), pay_ok()]

        client.pay(payment_request)

        calls = mock_post.call_args_list
        assert calls[0].kwargs["json"] == {"api_key": "api-key"}

        order = calls[1].kwargs["json"]
        assert order["auth_token"] == "auth-token"
        assert order["amount_cents"] == 100000
        assert order["currency"] == "EGP"
        assert order["merchant_order_id"] == "txn-1-1"

        key = calls[2].kwargs["json"]
        assert key["order_id"] == "5501"
        assert key["integration_id"] == 42
        assert key["amount_cents"] == 100000
        assert key["billing_data"]["email"] == "accounts@hospital.test"

        pay = calls[3].kwargs["json"]
        assert pay == {"source": {"identifier": "card-token-1", "subtype": "TOKEN"},
                       "payment_token": "payment-key"}

    @patch('httpx.Client.post')
    def test_pending_payment(self, mock_post, client, payment_request):
        mock_post.side_effect = [
            auth_ok(), order_ok(), key_ok(),
            make_response(200, {"success": False, "pending": True, "id": 77,
                                "redirect_url": "https://3ds.test/challenge"})
        ]

        outcome = client.pay(payment_request)

        assert outcome.pending is True
        assert outcome.redirect_url == "https://3ds.test/challenge"
        assert outcome.gateway_reference == "77"

    @patch('httpx.Client.post')
    def test_declined_payment(self, mock_post, client, payment_request):
        mock_post.side_effect = [
            auth_ok(), order_ok(), key_ok(),
            make_response(200, {"success": False, "pending": False, "id": 78,
                                "data": {"message": "Insufficient funds"}})
        ]

        with pytest.raises(PaymentDeclined) as exc_info:
            client.pay(payment_request)

        error = exc_info.value
        assert error.step == "submit_payment"
        assert error.retryable is False
        assert error.category == ErrorCategory.PROVIDER_DECLINED
        assert "Insufficient funds" in error.message

    @patch('httpx.Client.post')
    def test_pay_rejected_with_client_error(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), order_ok(), key_ok(), make_response(400, {"detail": "bad card"})]

        with pytest.raises(PaymentDeclined):
            client.pay(payment_request)


class TestStepFailures:
    """Test that a failing step aborts the remaining steps"""

    @patch('httpx.Client.post')
    def test_order_timeout_is_retryable_and_stops_handshake(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), httpx.TimeoutException("read timed out")]

        with pytest.raises(OrderCreationFailed) as exc_info:
            client.pay(payment_request)

        error = exc_info.value
        assert error.step == "create_order"
        assert error.retryable is True
        assert error.category == ErrorCategory.DEPENDENCY_UNAVAILABLE
        # No payment key was requested
        assert mock_post.call_count == 2

    @patch('httpx.Client.post')
    def test_order_rejected_is_not_retryable(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), make_response(422, {"detail": "duplicate merchant order"})]

        with pytest.raises(OrderCreationFailed) as exc_info:
            client.pay(payment_request)

        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 422

    @patch('httpx.Client.post')
    def test_key_request_failure(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), order_ok(), make_response(400, {"detail": "bad billing data"})]

        with pytest.raises(KeyRequestFailed) as exc_info:
            client.pay(payment_request)

        assert exc_info.value.step == "request_payment_key"
        assert mock_post.call_count == 3

    @patch('httpx.Client.post')
    def test_pay_server_error_is_unavailable(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), order_ok(), key_ok(), make_response(502, {"detail": "upstream"})]

        with pytest.raises(GatewayUnavailable) as exc_info:
            client.pay(payment_request)

        assert exc_info.value.step == "submit_payment"
        assert exc_info.value.retryable is True

    @patch('httpx.Client.post')
    def test_order_and_key_failures_are_not_retried(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), make_response(503, {})]

        with pytest.raises(OrderCreationFailed):
            client.pay(payment_request)

        assert called_urls(mock_post).count(f"{BASE_URL}/orders") == 1


class TestAuthentication:
    """Test token caching, refresh and retries"""

    @patch('httpx.Client.post')
    def test_token_is_cached(self, mock_post, client, payment_request):
        mock_post.side_effect = [auth_ok(), order_ok(), key_ok(), pay_ok(),
                                 order_ok(5502), key_ok(), pay_ok(9002)]

        client.pay(payment_request)
        client.pay(payment_request)

        assert called_urls(mock_post).count(f"{BASE_URL}/auth") == 1

    @patch('httpx.Client.post')
    def test_expired_token_is_refreshed(self, mock_post, client, clock):
        mock_post.side_effect = [auth_ok("first", expires_in=60), auth_ok("second")]

        assert client.authenticate() == "first"
        clock.now["value"] += 30
        assert client.authenticate() == "first"
        clock.now["value"] += 31
        assert client.authenticate() == "second"

    @patch('httpx.Client.post')
    def test_token_refreshed_on_401(self, mock_post, client, payment_request):
        mock_post.side_effect = [
            auth_ok("stale"), make_response(401, {"detail": "token expired"}),
            auth_ok("fresh"), order_ok(), key_ok(), pay_ok()
        ]

        outcome = client.pay(payment_request)

        assert outcome.gateway_reference == "9001"
        assert called_urls(mock_post).count(f"{BASE_URL}/auth") == 2
        assert mock_post.call_args_list[3].kwargs["json"]["auth_token"] == "fresh"

    @patch('httpx.Client.post')
    def test_auth_retried_with_backoff(self, mock_post, client, sleep):
        mock_post.side_effect = [
            httpx.ConnectError("connection refused"),
            make_response(503, {}),
            auth_ok()
        ]

        assert client.authenticate() == "auth-token"
        assert mock_post.call_count == 3
        assert [call[0][0] for call in sleep.call_args_list] == [0.1, 0.2]

    @patch('httpx.Client.post')
    def test_auth_gives_up_after_retries(self, mock_post, client):
        mock_post.side_effect = httpx.TimeoutException("timed out")

        with pytest.raises(GatewayUnavailable) as exc_info:
            client.authenticate()

        assert exc_info.value.step == "authenticate"
        assert mock_post.call_count == 3

    @patch('httpx.Client.post')
    def test_bad_credentials_not_retried(self, mock_post, client, sleep):
        mock_post.return_value = make_response(401, {"detail": "invalid api key"})

        with pytest.raises(AuthFailed):
            client.authenticate()

        assert mock_post.call_count == 1
        sleep.assert_not_called()
