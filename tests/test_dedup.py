"""Tests for single-flight request deduplication."""

import asyncio

import pytest

from fastapi import Request

from careerguard.app.exceptions import DeduplicationTimeoutError
from careerguard.app.middleware.dedup import CapturedResponse, _replay_body, default_key_generator
from careerguard.app.services.dedup import DeduplicationCoordinator


class Handler:
    """Slow operation that counts its executions."""

    def __init__(self, delay: float = 0.05, result="done", error: Exception = None):
        self.delay = delay
        self.result = result
        self.error = error
        self.executions = 0

    async def __call__(self):
        self.executions += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"value": self.result, "execution": self.executions}


class TestDeduplicationCoordinator:

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_execution(self):
        coordinator = DeduplicationCoordinator()
        handler = Handler()

        results = await asyncio.gather(*(coordinator.run("k", handler) for _ in range(10)))

        assert handler.executions == 1
        assert all(r == results[0] for r in results)
        assert coordinator.get_stats() == {"in_flight": 0, "executions": 1, "coalesced": 9}

    @pytest.mark.asyncio
    async def test_call_after_completion_runs_again(self):
        coordinator = DeduplicationCoordinator()
        handler = Handler(delay=0)

        first = await coordinator.run("k", handler)
        second = await coordinator.run("k", handler)

        assert handler.executions == 2
        assert first["execution"] == 1
        assert second["execution"] == 2

    @pytest.mark.asyncio
    async def test_different_keys_run_separately(self):
        coordinator = DeduplicationCoordinator()
        handler = Handler()

        await asyncio.gather(coordinator.run("a", handler), coordinator.run("b", handler))
        assert handler.executions == 2

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self):
        coordinator = DeduplicationCoordinator()
        handler = Handler(error=ValueError("business rule"))

        results = await asyncio.gather(
            *(coordinator.run("k", handler) for _ in range(3)), return_exceptions=True
        )

        assert handler.executions == 1
        assert all(isinstance(r, ValueError) and str(r) == "business rule" for r in results)
        assert coordinator.in_flight == 0

    @pytest.mark.asyncio
    async def test_key_is_released_after_failure(self):
        coordinator = DeduplicationCoordinator()
        failing = Handler(delay=0, error=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await coordinator.run("k", failing)

        assert not coordinator.is_pending("k")
        assert await coordinator.run("k", Handler(delay=0, result="ok")) == {"value": "ok", "execution": 1}

    @pytest.mark.asyncio
    async def test_cancelled_first_caller_does_not_cancel_execution(self):
        coordinator = DeduplicationCoordinator()
        handler = Handler(delay=0.05)

        first = asyncio.create_task(coordinator.run("k", handler))
        await asyncio.sleep(0)
        second = asyncio.create_task(coordinator.run("k", handler))
        await asyncio.sleep(0)

        first.cancel()
        result = await second

        assert result["value"] == "done"
        assert handler.executions == 1
        assert first.cancelled()

    @pytest.mark.asyncio
    async def test_execution_timeout_fails_all_waiters(self):
        coordinator = DeduplicationCoordinator(execution_timeout=0.01)
        handler = Handler(delay=1.0)

        results = await asyncio.gather(
            coordinator.run("k", handler), coordinator.run("k", handler), return_exceptions=True
        )

        assert all(isinstance(r, DeduplicationTimeoutError) for r in results)
        assert results[0].status_code == 504
        assert coordinator.in_flight == 0

    @pytest.mark.asyncio
    async def test_handler_timeout_error_is_not_relabelled(self):
        coordinator = DeduplicationCoordinator(execution_timeout=5.0)
        handler = Handler(delay=0, error=TimeoutError("upstream"))

        with pytest.raises(TimeoutError) as exc_info:
            await coordinator.run("k", handler)

        assert not isinstance(exc_info.value, DeduplicationTimeoutError)

    @pytest.mark.asyncio
    async def test_in_flight_while_running(self):
        coordinator = DeduplicationCoordinator()
        handler = Handler(delay=0.05)

        task = asyncio.create_task(coordinator.run("k", handler))
        await asyncio.sleep(0)
        assert coordinator.in_flight == 1
        assert coordinator.is_pending("k")
        await task

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_executions(self):
        coordinator = DeduplicationCoordinator()
        handler = Handler(delay=10)

        task = asyncio.create_task(coordinator.run("k", handler))
        await asyncio.sleep(0)
        await coordinator.shutdown()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert coordinator.in_flight == 0

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            DeduplicationCoordinator(execution_timeout=0)


def make_request(method="POST", path="/api/resume", body=b'{"a": 1}', headers=None, query=b"", client=("10.0.0.1", 1234)):
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query,
        "headers": raw_headers,
        "client": client,
    }
    return Request(scope, receive=_replay_body(body))


class TestDefaultKeyGenerator:

    @pytest.mark.asyncio
    async def test_safe_methods_are_not_coalesced(self):
        assert await default_key_generator(make_request(method="GET")) is None

    @pytest.mark.asyncio
    async def test_identical_requests_share_a_key(self):
        first = await default_key_generator(make_request())
        second = await default_key_generator(make_request())

        assert first == second
        assert first.startswith("dedup:POST:/api/resume:")

    @pytest.mark.asyncio
    async def test_body_changes_key(self):
        first = await default_key_generator(make_request(body=b'{"a": 1}'))
        second = await default_key_generator(make_request(body=b'{"a": 2}'))

        assert first != second

    @pytest.mark.asyncio
    async def test_callers_are_kept_apart(self):
        by_ip = await default_key_generator(make_request(client=("10.0.0.2", 1)))
        other_ip = await default_key_generator(make_request(client=("10.0.0.3", 1)))
        token_a = await default_key_generator(make_request(headers={"Authorization": "Bearer a"}))
        token_b = await default_key_generator(make_request(headers={"Authorization": "Bearer b"}))

        assert by_ip != other_ip
        assert token_a != token_b

    @pytest.mark.asyncio
    async def test_query_changes_key(self):
        first = await default_key_generator(make_request(query=b"page=1"))
        second = await default_key_generator(make_request(query=b"page=2"))

        assert first != second


class TestCapturedResponse:

    @pytest.mark.asyncio
    async def test_replay(self):
        sent = []

        async def send(message):
            sent.append(message)

        captured = CapturedResponse(status=201, headers=[(b"content-type", b"application/json")], body=b"{}")
        await captured.replay(send)

        assert sent[0] == {"type": "http.response.start", "status": 201, "headers": [(b"content-type", b"application/json")]}
        assert sent[1] == {"type": "http.response.body", "body": b"{}", "more_body": False}

    @pytest.mark.asyncio
    async def test_replay_body_defers_to_receive(self):
        async def receive():
            return {"type": "http.disconnect"}

        wrapped = _replay_body(b"payload", receive)

        assert (await wrapped())["body"] == b"payload"
        assert (await wrapped())["type"] == "http.disconnect"
