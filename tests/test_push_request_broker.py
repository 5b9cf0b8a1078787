"""
Push Request Broker Tests

Tests for answer correlation:
- Fulfill before and after the caller awaits
- Exactly one AnswerTimeout, late fulfill is a no-op
- Explicit failure and per-target failure
"""

import asyncio

import pytest

from camsignal.exceptions import AnswerTimeout, SessionClosed
from camsignal.services.push_request_broker import PushRequestBroker


class TestFulfill:
    """Answer delivery"""

    @pytest.mark.asyncio
    async def test_fulfill_resolves_waiter(self):
        broker = PushRequestBroker()
        future = broker.register("r1", "cam1", timeout_ms=1000)

        assert broker.fulfill("r1", "answer-sdp") is True
        assert await future == "answer-sdp"
        assert broker.pending_count == 0

    @pytest.mark.asyncio
    async def test_fulfill_before_await_is_kept(self):
        """The entry exists as soon as register returns"""
        broker = PushRequestBroker()
        future = broker.register("r1", "cam1")
        broker.fulfill("r1", "early")
        await asyncio.sleep(0)
        assert await future == "early"

    @pytest.mark.asyncio
    async def test_unknown_request(self):
        broker = PushRequestBroker()
        assert broker.fulfill("nope", "x") is False
        assert broker.fail("nope", SessionClosed("cam1")) is False

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self):
        broker = PushRequestBroker()
        broker.register("r1", "cam1")
        with pytest.raises(ValueError):
            broker.register("r1", "cam2")
        broker.shutdown(SessionClosed("cam1", "test over"))


class TestTimeout:
    """Deadlines"""

    @pytest.mark.asyncio
    async def test_single_timeout_then_late_fulfill_noop(self):
        broker = PushRequestBroker()
        future = broker.register("r1", "cam1", timeout_ms=20)

        with pytest.raises(AnswerTimeout) as exc_info:
            await future
        assert exc_info.value.target_id == "cam1"
        assert exc_info.value.request_id == "r1"

        assert broker.fulfill("r1", "too late") is False
        assert broker.get("r1") is None

    @pytest.mark.asyncio
    async def test_default_timeout_used(self):
        broker = PushRequestBroker(default_timeout_ms=10)
        future = broker.register("r1", "cam1")
        with pytest.raises(AnswerTimeout):
            await asyncio.wait_for(future, timeout=1.0)

    @pytest.mark.asyncio
    async def test_fulfill_cancels_deadline(self):
        broker = PushRequestBroker()
        future = broker.register("r1", "cam1", timeout_ms=20)
        broker.fulfill("r1", "ok")
        await asyncio.sleep(0.05)
        assert future.result() == "ok"


class TestFail:
    """Explicit failures"""

    @pytest.mark.asyncio
    async def test_fail_propagates_error(self):
        broker = PushRequestBroker()
        future = broker.register("r1", "cam1")
        broker.fail("r1", SessionClosed("cam1", "teardown"))
        with pytest.raises(SessionClosed):
            await future

    @pytest.mark.asyncio
    async def test_fail_target_only_touches_that_target(self):
        broker = PushRequestBroker()
        first = broker.register("r1", "cam1")
        second = broker.register("r2", "cam2")

        assert broker.fail_target("cam1", SessionClosed("cam1")) == 1
        assert first.done()
        assert not second.done()
        assert [req.request_id for req in broker.pending_for("cam2")] == ["r2"]

        broker.fulfill("r2", "answer")
        assert await second == "answer"
        with pytest.raises(SessionClosed):
            await first

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_skipped(self):
        broker = PushRequestBroker()
        future = broker.register("r1", "cam1")
        future.cancel()
        assert broker.fulfill("r1", "answer") is False
