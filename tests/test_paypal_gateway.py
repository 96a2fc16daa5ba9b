"""
Tests for the PayPal REST adapter, driven through httpx.MockTransport.
"""
import json

import httpx
import pytest

from app.core.errors import BillingError, ErrorKind
from app.core.retry import RetryPolicy
from app.services.paypal_gateway import PayPalGateway, SubscriptionStatus, parse_subscription

NO_WAIT_RETRY = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, jitter=0)

BASE_URL = "https://api-m.sandbox.paypal.com"

SIGNED_HEADERS = {
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-CERT-ID": "cert",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-TIME": "2026-03-01T00:00:00Z",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT",
}


class PayPalStub:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []
        self.token_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": 32400})
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
        if callable(handler):
            return handler(request)
        # Fresh copy per call; httpx binds a response to the request that received it
        return httpx.Response(handler.status_code, content=handler.content, headers=handler.headers)


def _gateway(stub, webhook_id="WH-ID", retry_policy=NO_WAIT_RETRY) -> PayPalGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub), base_url=BASE_URL)
    return PayPalGateway(
        client_id="client-id",
        client_secret="client-secret",
        base_url=BASE_URL,
        webhook_id=webhook_id,
        retry_policy=retry_policy,
        http_client=client,
    )


def _subscription(status="ACTIVE", **extra):
    data = {"id": "I-SUB1", "status": status, "plan_id": "P-1"}
    data.update(extra)
    return data


class TestParseSubscription:
    def test_reads_subscriber_and_custom_id(self):
        details = parse_subscription(
            _subscription(custom_id="42", subscriber={"email_address": "payer@example.com"})
        )
        assert details.status is SubscriptionStatus.ACTIVE
        assert details.custom_id == "42"
        assert details.subscriber_email == "payer@example.com"
        assert details.is_active

    def test_unknown_status_is_internal_error(self):
        with pytest.raises(BillingError) as exc_info:
            parse_subscription(_subscription(status="WEIRD"))
        assert exc_info.value.kind is ErrorKind.INTERNAL


class TestCreateSubscription:
    @pytest.mark.asyncio
    async def test_returns_approval_link(self):
        created_body = _subscription(
            status="APPROVAL_PENDING",
            links=[
                {"rel": "self", "href": f"{BASE_URL}/v1/billing/subscriptions/I-SUB1"},
                {"rel": "approve", "href": "https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token=BA-1"},
            ],
        )
        stub = PayPalStub({("POST", "/v1/billing/subscriptions"): httpx.Response(201, json=created_body)})
        gateway = _gateway(stub)

        created = await gateway.create_subscription(
            "P-1", custom_id="7", return_url="https://app/return", cancel_url="https://app/cancel"
        )

        assert created.id == "I-SUB1"
        assert created.status is SubscriptionStatus.APPROVAL_PENDING
        assert created.approval_url.endswith("ba_token=BA-1")

        sent = stub.requests[-1]
        assert sent.headers["Authorization"] == "Bearer token-1"
        assert sent.headers["PayPal-Request-Id"]
        payload = json.loads(sent.content)
        assert payload["plan_id"] == "P-1"
        assert payload["custom_id"] == "7"
        assert payload["application_context"]["return_url"] == "https://app/return"
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_missing_approval_link_is_an_error(self):
        stub = PayPalStub({("POST", "/v1/billing/subscriptions"): httpx.Response(201, json=_subscription(links=[]))})
        gateway = _gateway(stub)

        with pytest.raises(BillingError) as exc_info:
            await gateway.create_subscription("P-1")
        assert exc_info.value.kind is ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_blank_plan_is_rejected_without_calling_paypal(self):
        stub = PayPalStub({})
        gateway = _gateway(stub)

        with pytest.raises(BillingError) as exc_info:
            await gateway.create_subscription("  ")
        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_retries_keep_the_same_request_id(self):
        responses = iter([
            httpx.Response(503, text="busy"),
            httpx.Response(201, json=_subscription(links=[{"rel": "approve", "href": "https://approve"}])),
        ])
        stub = PayPalStub({("POST", "/v1/billing/subscriptions"): lambda request: next(responses)})
        gateway = _gateway(stub)

        created = await gateway.create_subscription("P-1")

        assert created.approval_url == "https://approve"
        posts = [r for r in stub.requests if r.url.path == "/v1/billing/subscriptions"]
        assert len(posts) == 2
        assert posts[0].headers["PayPal-Request-Id"] == posts[1].headers["PayPal-Request-Id"]


class TestErrorClassification:
    @pytest.mark.asyncio
    async def test_server_errors_are_retryable_and_exhaust_attempts(self):
        stub = PayPalStub({("GET", "/v1/billing/subscriptions/I-SUB1"): httpx.Response(500, text="oops")})
        gateway = _gateway(stub)

        with pytest.raises(BillingError) as exc_info:
            await gateway.get_subscription_details("I-SUB1")

        assert exc_info.value.kind is ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE
        assert exc_info.value.retryable
        calls = [r for r in stub.requests if r.url.path == "/v1/billing/subscriptions/I-SUB1"]
        assert len(calls) == NO_WAIT_RETRY.max_attempts

    @pytest.mark.asyncio
    async def test_not_found(self):
        gateway = _gateway(PayPalStub({}))

        with pytest.raises(BillingError) as exc_info:
            await gateway.get_subscription_details("I-MISSING")
        assert exc_info.value.kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_declined_instrument_is_payment_failed(self):
        body = {
            "name": "UNPROCESSABLE_ENTITY",
            "details": [{"issue": "INSTRUMENT_DECLINED", "description": "The instrument was declined."}],
        }
        stub = PayPalStub({("POST", "/v1/billing/subscriptions"): httpx.Response(422, json=body)})
        gateway = _gateway(stub)

        with pytest.raises(BillingError) as exc_info:
            await gateway.create_subscription("P-1")
        assert exc_info.value.kind is ErrorKind.PAYMENT_FAILED
        assert exc_info.value.status_code == 402

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        def raise_timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        stub = PayPalStub({("GET", "/v1/billing/subscriptions/I-SUB1"): raise_timeout})
        gateway = _gateway(stub)

        with pytest.raises(BillingError) as exc_info:
            await gateway.get_subscription_details("I-SUB1")
        assert exc_info.value.kind is ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_once(self):
        responses = iter([httpx.Response(401, json={"error": "invalid_token"}), httpx.Response(200, json=_subscription())])
        stub = PayPalStub({("GET", "/v1/billing/subscriptions/I-SUB1"): lambda request: next(responses)})
        gateway = _gateway(stub)

        details = await gateway.get_subscription_details("I-SUB1")

        assert details.status is SubscriptionStatus.ACTIVE
        assert stub.token_calls == 2

    @pytest.mark.asyncio
    async def test_missing_credentials_is_configuration_error(self):
        gateway = PayPalGateway(client_id="", client_secret="", retry_policy=NO_WAIT_RETRY)

        with pytest.raises(BillingError) as exc_info:
            await gateway.get_subscription_details("I-SUB1")
        assert exc_info.value.kind is ErrorKind.CONFIGURATION
        assert "PAYPAL_CLIENT_ID" in gateway.missing_config_message()
        await gateway.aclose()


class TestCancelSubscription:
    @pytest.mark.asyncio
    async def test_posts_truncated_reason(self):
        stub = PayPalStub({("POST", "/v1/billing/subscriptions/I-SUB1/cancel"): httpx.Response(204)})
        gateway = _gateway(stub)

        await gateway.cancel_subscription("I-SUB1", "x" * 300)

        payload = json.loads(stub.requests[-1].content)
        assert len(payload["reason"]) == 128


class TestVerifyWebhookSignature:
    @pytest.mark.asyncio
    async def test_success(self):
        def verify(request):
            payload = json.loads(request.content)
            assert payload["webhook_id"] == "WH-ID"
            assert payload["transmission_id"] == "tx-1"
            assert payload["webhook_event"]["event_type"] == "BILLING.SUBSCRIPTION.CREATED"
            return httpx.Response(200, json={"verification_status": "SUCCESS"})

        stub = PayPalStub({("POST", "/v1/notifications/verify-webhook-signature"): verify})
        gateway = _gateway(stub)
        body = json.dumps({"event_type": "BILLING.SUBSCRIPTION.CREATED"}).encode()

        assert await gateway.verify_webhook_signature(SIGNED_HEADERS, body) is True

    @pytest.mark.asyncio
    async def test_failure_status(self):
        stub = PayPalStub({
            ("POST", "/v1/notifications/verify-webhook-signature"): httpx.Response(
                200, json={"verification_status": "FAILURE"}
            )
        })
        gateway = _gateway(stub)

        assert await gateway.verify_webhook_signature(SIGNED_HEADERS, b"{}") is False

    @pytest.mark.asyncio
    async def test_missing_headers_never_call_paypal(self):
        stub = PayPalStub({})
        gateway = _gateway(stub)
        headers = dict(SIGNED_HEADERS)
        del headers["PAYPAL-TRANSMISSION-SIG"]

        assert await gateway.verify_webhook_signature(headers, b"{}") is False
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_missing_webhook_id(self):
        stub = PayPalStub({})
        gateway = _gateway(stub, webhook_id="")

        assert await gateway.verify_webhook_signature(SIGNED_HEADERS, b"{}") is False
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_paypal_outage_fails_closed(self):
        stub = PayPalStub({
            ("POST", "/v1/notifications/verify-webhook-signature"): httpx.Response(503, text="down")
        })
        gateway = _gateway(stub)

        assert await gateway.verify_webhook_signature(SIGNED_HEADERS, b"{}") is False
