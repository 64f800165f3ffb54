"""Retry classification and bounds."""

import asyncio
import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mosaic.config import ProviderConfig, RetrySettings
from mosaic.errors import AIError, AIErrorType, TurnCancelled
from mosaic.interrupt import CancelToken
from mosaic.providers import OpenAIBackend
from mosaic.retry import RetryPolicy

FAST = RetrySettings(max_attempts=3, timeout=5.0, initial_delay=0.0, max_delay=0.0)
USER = [{"role": "user", "content": "hi"}]


def backend_with(handler, settings=FAST):
    return OpenAIBackend(
        ProviderConfig(type="openai", model="gpt-4o", api_key="k"),
        retry=RetryPolicy(settings),
        transport=httpx.MockTransport(handler),
    )


def send(backend):
    async def _run():
        async with backend:
            return await backend.send_message(USER)
    return asyncio.run(_run())


class CountingHandler:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        item = self.responses[min(self.calls, len(self.responses)) - 1]
        if isinstance(item, Exception):
            raise item
        # Fresh response per call; httpx binds each one to its request
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)


OK = httpx.Response(200, json={"choices": [{"message": {"content": "fine"}}]})


class TestClassification:

    def test_401_never_retries(self):
        handler = CountingHandler(httpx.Response(401, json={"error": {"message": "bad key"}}))
        with pytest.raises(AIError) as exc:
            send(backend_with(handler))
        assert exc.value.type == AIErrorType.AUTHENTICATION_FAILURE
        assert exc.value.status_code == 401
        assert "bad key" in exc.value.message
        assert handler.calls == 1

    def test_network_timeout_retries_to_bound(self):
        handler = CountingHandler(httpx.ReadTimeout("slow"))
        with pytest.raises(AIError) as exc:
            send(backend_with(handler))
        assert exc.value.type == AIErrorType.TIMEOUT
        assert handler.calls == 3

    def test_empty_200_is_retried(self):
        handler = CountingHandler(httpx.Response(200, content=b""), OK)
        response = send(backend_with(handler))
        assert response.content == "fine"
        assert handler.calls == 2

    def test_rate_limit_then_success(self):
        handler = CountingHandler(httpx.Response(429, json={"error": "slow down"}), OK)
        assert send(backend_with(handler)).content == "fine"
        assert handler.calls == 2

    def test_server_errors_exhaust_and_surface_last(self):
        handler = CountingHandler(
            httpx.Response(500, json={"error": {"message": "first"}}),
            httpx.Response(503, json={"error": {"message": "last"}}),
        )
        with pytest.raises(AIError) as exc:
            send(backend_with(handler))
        assert exc.value.type == AIErrorType.SERVER_ERROR
        assert exc.value.status_code == 503
        assert handler.calls == 3

    @pytest.mark.parametrize("status,body,kind", [
        (400, {"error": {"message": "maximum context length exceeded"}}, AIErrorType.CONTEXT_LENGTH_EXCEEDED),
        (400, {"error": {"message": "model does not exist"}}, AIErrorType.MODEL_NOT_FOUND),
        (400, {"error": {"message": "messages must be an array"}}, AIErrorType.INVALID_REQUEST),
        (404, {"error": {"message": "The model gpt-9 was not found"}}, AIErrorType.MODEL_NOT_FOUND),
        (403, "forbidden", AIErrorType.AUTHENTICATION_FAILURE),
    ])
    def test_from_status(self, status, body, kind):
        err = AIError.from_status(status, body, "openai", "gpt-4o")
        assert err.type == kind
        assert not err.retryable


class TestRetryPolicy:

    def test_backoff_is_capped(self):
        policy = RetryPolicy(RetrySettings(initial_delay=1.0, backoff_multiplier=2.0, max_delay=3.0))
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]

    def test_per_attempt_timeout_unblocks_hung_call(self):
        attempts = []

        async def hang():
            attempts.append(1)
            await asyncio.sleep(10)

        policy = RetryPolicy(RetrySettings(max_attempts=2, timeout=0.05, initial_delay=0.0, max_delay=0.0))
        with pytest.raises(AIError) as exc:
            asyncio.run(policy.execute_with_retry(hang, label="hang"))
        assert exc.value.type == AIErrorType.TIMEOUT
        assert exc.value.message == "hang timed out after 0.05s"
        assert len(attempts) == 2

    def test_timeout_hook_replaces_the_error(self):
        attempts = []

        async def hang():
            attempts.append(1)
            await asyncio.sleep(10)

        def final(message):
            return AIError(AIErrorType.STREAM_FAILURE, message, retryable=False)

        policy = RetryPolicy(RetrySettings(max_attempts=3, timeout=0.05, initial_delay=0.0, max_delay=0.0))
        with pytest.raises(AIError) as exc:
            asyncio.run(policy.execute_with_retry(hang, label="hang", on_timeout=final))
        assert exc.value.type == AIErrorType.STREAM_FAILURE
        assert len(attempts) == 1

    def test_cancellation_stops_retries(self):
        attempts = []
        token = CancelToken()

        async def failing():
            attempts.append(1)
            token.cancel("test")
            raise AIError(AIErrorType.SERVER_ERROR, "boom", retryable=True)

        policy = RetryPolicy(RetrySettings(max_attempts=5, initial_delay=0.5, max_delay=0.5))
        with pytest.raises(TurnCancelled):
            asyncio.run(policy.execute_with_retry(failing, cancel_token=token))
        assert len(attempts) == 1

    def test_non_ai_errors_propagate_unretried(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            asyncio.run(RetryPolicy(FAST).execute_with_retry(broken))
        assert len(attempts) == 1


def test_stream_request_body_is_sent_once_per_attempt():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(502, json={"error": "bad gateway"})

    backend = backend_with(handler, RetrySettings(max_attempts=2, initial_delay=0.0, max_delay=0.0))

    async def _run():
        async with backend:
            await backend.send_message_stream(USER, lambda _: None)

    with pytest.raises(AIError) as exc:
        asyncio.run(_run())
    assert exc.value.type == AIErrorType.SERVER_ERROR
    assert len(bodies) == 2
    assert all(b["stream"] for b in bodies)
