"""
Tests for the shared retry policy.
"""
from unittest.mock import MagicMock

import pytest

from app.core.errors import BillingError, ErrorKind, database_error, external_service_unavailable, validation_error
from app.core.retry import RetryPolicy, is_retryable

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, jitter=0)


class TestIsRetryable:
    def test_only_retryable_billing_errors(self):
        assert is_retryable(database_error("load"))
        assert is_retryable(external_service_unavailable("get"))
        assert not is_retryable(validation_error("user_id"))
        assert not is_retryable(RuntimeError("boom"))


class TestCall:
    def test_retries_until_success(self):
        fn = MagicMock(side_effect=[database_error("load"), database_error("load"), "ok"])

        assert NO_WAIT.call(fn, 1, key="v") == "ok"
        assert fn.call_count == 3
        fn.assert_called_with(1, key="v")

    def test_gives_up_after_max_attempts_with_original_error(self):
        error = database_error("load")
        fn = MagicMock(side_effect=error)

        with pytest.raises(BillingError) as exc_info:
            NO_WAIT.call(fn)

        assert exc_info.value is error
        assert fn.call_count == 3

    def test_non_retryable_error_fails_immediately(self):
        fn = MagicMock(side_effect=validation_error("plan_id"))

        with pytest.raises(BillingError) as exc_info:
            NO_WAIT.call(fn)

        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert fn.call_count == 1

    def test_unexpected_exceptions_are_not_retried(self):
        fn = MagicMock(side_effect=KeyError("missing"))

        with pytest.raises(KeyError):
            NO_WAIT.call(fn)
        assert fn.call_count == 1


class TestAsyncCall:
    @pytest.mark.asyncio
    async def test_retries_coroutines(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise external_service_unavailable("get_subscription_details")
            return "done"

        assert await NO_WAIT.acall(flaky) == "done"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_respects_max_attempts(self):
        policy = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0, jitter=0)
        attempts = []

        async def always_down():
            attempts.append(1)
            raise external_service_unavailable("create_subscription")

        with pytest.raises(BillingError) as exc_info:
            await policy.acall(always_down)

        assert exc_info.value.kind is ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE
        assert len(attempts) == 2
