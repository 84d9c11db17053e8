import httpx
import pytest

from syncengine.errors import DeadlineExceededError, ProviderRequestError, RetryExhaustedError
from syncengine.utils.retry import Deadline, RetryPolicy, retry_after_seconds, send_with_retry


def responder(*responses):
    calls = []
    queue = list(responses)

    async def send():
        calls.append(1)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    return send, calls


@pytest.mark.asyncio
async def test_rate_limited_request_is_tried_max_retries_plus_one(no_sleep, sleeps):
    send, calls = responder(httpx.Response(429, headers={"Retry-After": "7"}))
    policy = RetryPolicy(max_retries=3, base_delay=1.0)
    with pytest.raises(RetryExhaustedError) as excinfo:
        await send_with_retry(send, policy, context="orders page 1", sleep=no_sleep)
    assert len(calls) == 4
    assert excinfo.value.attempts == 4
    assert excinfo.value.last_status == 429
    assert sleeps == [7.0, 7.0, 7.0]


@pytest.mark.asyncio
async def test_non_retryable_status_fails_immediately(no_sleep, sleeps):
    send, calls = responder(httpx.Response(400, text="bad query"))
    with pytest.raises(ProviderRequestError) as excinfo:
        await send_with_retry(send, RetryPolicy(), context="campaign 12 on 2024-03-01", sleep=no_sleep)
    assert len(calls) == 1
    assert excinfo.value.status_code == 400
    assert "campaign 12 on 2024-03-01" in str(excinfo.value)
    assert sleeps == []


@pytest.mark.asyncio
async def test_server_error_backs_off_then_succeeds(no_sleep, sleeps):
    send, calls = responder(httpx.Response(503), httpx.Response(502), httpx.Response(200, json={"ok": True}))
    response = await send_with_retry(send, RetryPolicy(base_delay=0.5), context="x", sleep=no_sleep)
    assert response.json() == {"ok": True}
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_transport_errors_are_retried(no_sleep):
    send, calls = responder(httpx.ConnectError("reset"), httpx.Response(200))
    response = await send_with_retry(send, RetryPolicy(base_delay=0), context="x", sleep=no_sleep)
    assert response.status_code == 200
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_expired_deadline_stops_before_calling(no_sleep):
    send, calls = responder(httpx.Response(200))
    with pytest.raises(DeadlineExceededError):
        await send_with_retry(send, RetryPolicy(), context="x", sleep=no_sleep, deadline=Deadline(0))
    assert calls == []


def test_backoff_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
    assert [policy.backoff(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_retry_after_parsing():
    assert retry_after_seconds("3") == 3.0
    assert retry_after_seconds(None) is None
    assert retry_after_seconds("soon") is None
    assert retry_after_seconds("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
