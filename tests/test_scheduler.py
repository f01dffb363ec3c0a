from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from src.genorch.errors import (
    QueueFullError,
    QueueTimeoutError,
    RateLimitedError,
    RequestTimeoutError,
    TaskCancelledError,
    TransportError,
)
from src.genorch.providers import OpenAICompatProvider
from src.genorch.router import ProviderDef
from src.genorch.scheduler import CancelOutcome, RequestScheduler
from src.genorch.settings import SchedulerSettings
from src.genorch.types import GenerationConfig, ProgressChannel, QueueStatus


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_settings(**overrides: Any) -> SchedulerSettings:
    values: dict[str, Any] = dict(
        max_concurrent=1,
        request_timeout_s=5.0,
        queue_timeout_s=5.0,
        retry_attempts=1,
        retry_delay_s=0.01,
        user_rate_limit=100,
        user_rate_window_s=60.0,
        max_queue_size=100,
        status_initial_delay_s=0.01,
        status_interval_s=0.05,
    )
    values.update(overrides)
    return SchedulerSettings(**values)


def gated(name: str, order: list[str], gate: asyncio.Event | None = None):
    async def work() -> str:
        order.append(name)
        if gate is not None:
            await gate.wait()
        return name

    return work


@pytest.mark.anyio
async def test_dispatch_follows_priority_then_arrival(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings())
    gate = asyncio.Event()
    order: list[str] = []

    blocker = scheduler.enqueue("blocker", gated("blocker", order, gate), owner="u0")
    basic_first = scheduler.enqueue("basic-1", gated("basic-1", order), owner="u1", tier="basic")
    plain = scheduler.enqueue("plain", gated("plain", order), owner="u2")
    basic_second = scheduler.enqueue("basic-2", gated("basic-2", order), owner="u3", tier="basic")
    elite = scheduler.enqueue("elite", gated("elite", order), owner="u4", tier="elite")

    assert scheduler.active_count == 1
    assert scheduler.queued_count == 4
    assert scheduler.position("elite") == 1
    assert scheduler.position("plain") == 4
    assert scheduler.position("blocker") is None

    gate.set()
    results = [await handle for handle in (blocker, basic_first, plain, basic_second, elite)]

    assert results == ["blocker", "basic-1", "plain", "basic-2", "elite"]
    assert order == ["blocker", "elite", "basic-1", "basic-2", "plain"]
    assert scheduler.active_count == 0
    assert scheduler.queued_count == 0


@pytest.mark.anyio
async def test_late_high_priority_request_overtakes_waiting_one(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings())
    gate = asyncio.Event()
    order: list[str] = []

    running = scheduler.enqueue("running", gated("running", order, gate), owner="u0")
    a = scheduler.enqueue("a", gated("a", order), owner="u1")
    b = scheduler.enqueue("b", gated("b", order), owner="u2", tier="premium")
    gate.set()
    await running
    await a
    await b

    assert order == ["running", "b", "a"]


@pytest.mark.anyio
async def test_active_count_never_exceeds_max_concurrent(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(max_concurrent=2))
    current = 0
    peak = 0

    async def work() -> None:
        nonlocal current, peak
        current += 1
        peak = max(peak, current)
        await asyncio.sleep(0.01)
        current -= 1

    handles = [scheduler.enqueue(f"t{i}", work, owner=f"user-{i}") for i in range(6)]
    assert scheduler.active_count == 2
    for handle in handles:
        await handle

    assert peak == 2


@pytest.mark.anyio
async def test_duplicate_task_id_is_rejected(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings())
    gate = asyncio.Event()
    handle = scheduler.enqueue("same", gated("same", [], gate), owner="alice")

    with pytest.raises(ValueError):
        scheduler.enqueue("same", gated("same", []), owner="alice")

    gate.set()
    assert await handle == "same"


@pytest.mark.anyio
async def test_retryable_failure_is_retried_until_success(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(retry_attempts=2))
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise TransportError("upstream network error")
        return "ok"

    assert await scheduler.schedule("flaky", flaky, owner="alice") == "ok"
    assert calls == 2


@pytest.mark.anyio
async def test_plain_exception_with_retry_marker_is_retried(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(retry_attempts=2))
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("503 Service Unavailable")
        return "ok"

    assert await scheduler.schedule("flaky", flaky, owner="alice") == "ok"
    assert calls == 2


@pytest.mark.anyio
async def test_non_retryable_failure_is_not_retried(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(retry_attempts=3))
    calls = 0

    async def broken() -> None:
        nonlocal calls
        calls += 1
        raise ValueError("invalid prompt")

    with pytest.raises(ValueError, match="invalid prompt"):
        await scheduler.schedule("broken", broken, owner="alice")
    assert calls == 1


@pytest.mark.anyio
async def test_retry_attempts_bound_total_calls(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(retry_attempts=3))
    calls = 0

    async def always_down() -> None:
        nonlocal calls
        calls += 1
        raise TransportError("upstream timed out")

    with pytest.raises(TransportError):
        await scheduler.schedule("down", always_down, owner="alice")
    assert calls == 3


@pytest.mark.anyio
async def test_queue_timeout_rejects_waiting_task(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(queue_timeout_s=0.05))
    gate = asyncio.Event()
    blocker = scheduler.enqueue("blocker", gated("blocker", [], gate), owner="u0")
    waiting = scheduler.enqueue("waiting", gated("waiting", []), owner="u1")

    with pytest.raises(QueueTimeoutError, match="Request timed out in queue"):
        await waiting
    assert scheduler.queued_count == 0

    gate.set()
    assert await blocker == "blocker"


@pytest.mark.anyio
async def test_queue_timeout_does_not_apply_to_retry_wait(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(
        make_settings(queue_timeout_s=0.05, retry_attempts=2, retry_delay_s=0.1)
    )
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise TransportError("temporary failure")
        return "done"

    assert await scheduler.schedule("flaky", flaky, owner="alice") == "done"
    assert calls == 2


@pytest.mark.anyio
async def test_request_timeout_frees_the_slot(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(request_timeout_s=0.05))
    stuck_cancelled = asyncio.Event()

    async def stuck() -> None:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            stuck_cancelled.set()
            raise

    slow = scheduler.enqueue("slow", stuck, owner="u0")
    with pytest.raises(RequestTimeoutError, match="AI generation request timed out"):
        await slow
    await asyncio.wait_for(stuck_cancelled.wait(), timeout=1.0)
    assert scheduler.active_count == 0

    assert await scheduler.schedule("next", gated("next", []), owner="u1") == "next"


@pytest.mark.anyio
async def test_cancel_outcomes(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings())
    gate = asyncio.Event()
    active = scheduler.enqueue("active", gated("active", [], gate), owner="alice")
    queued = scheduler.enqueue("queued", gated("queued", []), owner="alice")

    assert scheduler.cancel("missing", "alice") is CancelOutcome.NOT_FOUND
    assert scheduler.cancel("queued", "mallory") is CancelOutcome.NOT_OWNER
    assert scheduler.cancel("active", "alice") is CancelOutcome.NOT_CANCELLABLE
    assert scheduler.cancel("queued", "alice") is CancelOutcome.CANCELLED
    assert scheduler.cancel("queued", "alice") is CancelOutcome.NOT_FOUND

    with pytest.raises(TaskCancelledError, match="Request was cancelled"):
        await queued
    gate.set()
    assert await active == "active"


@pytest.mark.anyio
async def test_task_waiting_for_retry_can_be_cancelled(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(retry_attempts=2, retry_delay_s=5.0))
    failed = asyncio.Event()
    calls = 0

    async def flaky() -> None:
        nonlocal calls
        calls += 1
        failed.set()
        raise TransportError("network down")

    handle = scheduler.enqueue("flaky", flaky, owner="alice")
    await failed.wait()

    assert scheduler.active_count == 0
    assert scheduler.cancel("flaky", "alice") is CancelOutcome.CANCELLED
    with pytest.raises(TaskCancelledError):
        await handle
    assert calls == 1


@pytest.mark.anyio
async def test_clear_queue_rejects_everything_waiting(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings())
    gate = asyncio.Event()
    active = scheduler.enqueue("active", gated("active", [], gate), owner="u0")
    first = scheduler.enqueue("first", gated("first", []), owner="u1")
    second = scheduler.enqueue("second", gated("second", []), owner="u2")

    assert scheduler.clear_queue() == 2
    assert scheduler.queued_count == 0
    for handle in (first, second):
        with pytest.raises(TaskCancelledError, match="Queue cleared"):
            await handle

    gate.set()
    assert await active == "active"


@pytest.mark.anyio
async def test_rate_limited_request_is_rejected_with_message(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(user_rate_limit=1, user_rate_window_s=60.0))
    assert await scheduler.schedule("one", gated("one", []), owner="alice") == "one"

    with pytest.raises(RateLimitedError) as excinfo:
        scheduler.enqueue("two", gated("two", []), owner="alice")

    exc = excinfo.value
    assert "You can make 1 requests per 1 minutes" in exc.message
    assert exc.limit == 1
    assert exc.retry_after is not None and 0 < exc.retry_after <= 60
    assert scheduler.queued_count == 0


@pytest.mark.anyio
async def test_tier_raises_user_limit(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(user_rate_limit=2, max_concurrent=10))

    handles = [
        scheduler.enqueue(f"t{i}", gated(f"t{i}", []), owner="vip", tier="elite") for i in range(6)
    ]
    with pytest.raises(RateLimitedError):
        scheduler.enqueue("t6", gated("t6", []), owner="vip", tier="elite")
    for handle in handles:
        await handle


@pytest.mark.anyio
async def test_full_queue_rejects_and_refunds_rate_slot(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(max_queue_size=1))
    gate = asyncio.Event()
    active = scheduler.enqueue("active", gated("active", [], gate), owner="u0")
    queued = scheduler.enqueue("queued", gated("queued", []), owner="u1")

    with pytest.raises(QueueFullError, match="Queue is full"):
        scheduler.enqueue("overflow", gated("overflow", []), owner="u2")
    state = scheduler.rate_limiter.peek("u2")
    assert state is not None and state.count == 0

    gate.set()
    await active
    await queued


@pytest.mark.anyio
async def test_status_channel_reports_position_then_processing(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(avg_task_seconds=30.0))
    gate = asyncio.Event()
    active = scheduler.enqueue("active", gated("active", [], gate), owner="u0")
    channel: ProgressChannel[QueueStatus] = ProgressChannel()
    waiting = scheduler.enqueue("waiting", gated("waiting", []), owner="u1", status_channel=channel)

    await asyncio.sleep(0.03)
    gate.set()
    await active
    await waiting
    updates = [update async for update in channel]

    assert channel.closed
    assert updates[0].state == "queued"
    assert updates[0].position == 1
    assert updates[0].total_in_system == 2
    assert updates[0].eta_seconds == pytest.approx(45.0)
    assert updates[-1].state == "processing"
    assert updates[-1].position is None


@pytest.mark.anyio
async def test_stats_snapshot(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(max_concurrent=1))
    gate = asyncio.Event()
    active = scheduler.enqueue("active", gated("active", [], gate), owner="u0")
    queued = scheduler.enqueue("queued", gated("queued", []), owner="u1")

    stats = scheduler.stats()
    assert stats["active"] == 1
    assert stats["queued"] == 1
    assert stats["oldest_queued_age_s"] is not None
    assert stats["tracked_users"] == 2

    gate.set()
    await active
    await queued
    assert scheduler.stats()["oldest_queued_age_s"] is None


@pytest.mark.anyio
async def test_start_and_close_background_jobs(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(sweep_interval_s=0.01, stats_interval_s=0.01))
    scheduler.start()
    scheduler.start()
    await asyncio.sleep(0.03)
    await scheduler.aclose()


@pytest.mark.anyio
async def test_retried_task_goes_to_front_of_queue(anyio_backend: str) -> None:
    _ = anyio_backend
    scheduler = RequestScheduler(make_settings(retry_attempts=2, retry_delay_s=0.05))
    gate = asyncio.Event()
    failed = asyncio.Event()
    order: list[str] = []

    async def flaky() -> str:
        order.append("x")
        if not failed.is_set():
            failed.set()
            raise TransportError("upstream network error")
        return "x"

    x = scheduler.enqueue("x", flaky, owner="u0")
    await failed.wait()
    y = scheduler.enqueue("y", gated("y", order, gate), owner="u1", tier="basic")
    z = scheduler.enqueue("z", gated("z", order), owner="u2", tier="basic")
    await asyncio.sleep(0.1)

    assert scheduler.position("x") == 1
    assert scheduler.position("z") == 2
    gate.set()
    assert [await handle for handle in (x, y, z)] == ["x", "y", "z"]
    assert order == ["x", "y", "x", "z"]


@pytest.mark.anyio
async def test_adapter_error_with_transient_message_is_retried(
    anyio_backend: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    _ = anyio_backend
    provider = OpenAICompatProvider(
        ProviderDef(name="router", type="openai", base_url="https://api.example.com/v1", requires_key=False)
    )
    bodies: list[dict[str, Any]] = [
        {"error": {"message": "Rate limit exceeded"}},
        {"choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}], "model": "m"},
    ]
    calls = 0

    async def fake_post(self: httpx.AsyncClient, url: str, **kwargs: Any) -> httpx.Response:
        nonlocal calls
        body = bodies[calls]
        calls += 1
        return httpx.Response(200, json=body, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    scheduler = RequestScheduler(make_settings(retry_attempts=2))

    result = await scheduler.schedule(
        "chat", lambda: provider.generate_text("hi", "m", GenerationConfig()), owner="alice"
    )

    assert result.payload == "hello"
    assert calls == 2
