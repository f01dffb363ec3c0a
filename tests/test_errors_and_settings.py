import asyncio

import pytest

from src.genorch.errors import (
    ContentBlockedError,
    ErrorCode,
    ProviderError,
    ProviderMisconfiguredError,
    ProviderUnavailableError,
    QueueFullError,
    RateLimitedError,
    TaskCancelledError,
    TransportError,
    WorkflowError,
    WorkflowTimeoutError,
    should_retry,
)
from src.genorch.settings import DEFAULT_TIER, SchedulerSettings
from src.genorch.types import GenerationConfig, ProgressChannel, WorkflowProgress


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (TransportError("boom"), True),
        (WorkflowTimeoutError("slow"), True),
        (WorkflowError("bad graph"), False),
        (QueueFullError("Queue is full"), False),
        (ProviderError("busy", status=429), True),
        (ProviderError("down", status=502), True),
        (ProviderError("bad request", status=400), False),
        (ProviderError("forced", status=400, retryable=True), True),
        (ContentBlockedError("nope", status=500), False),
        (ProviderError("router error: Rate limit exceeded"), True),
        (ProviderError("alpha failed: temporary failure in name resolution"), True),
        (WorkflowError("engine returned 503"), True),
        (ContentBlockedError("blocked after request timed out"), False),
        (ProviderMisconfiguredError("network backend has no model"), False),
        (ProviderUnavailableError("no backend is available, network down"), False),
        (RateLimitedError("Rate limit exceeded.", limit=1, window_s=60.0), False),
        (TaskCancelledError("Request was cancelled"), False),
        (RuntimeError("Network unreachable"), True),
        (RuntimeError("Request Timed Out"), True),
        (RuntimeError("HTTP 504 from gateway"), True),
        (RuntimeError("invalid prompt"), False),
        (RuntimeError(""), False),
    ],
)
def test_should_retry(exc, expected):
    assert should_retry(exc) is expected


def test_error_codes_and_backend_tagging():
    error = TransportError("boom")
    assert error.error_class == "transport_error"
    assert error.with_backend("alpha").backend == "alpha"
    assert error.with_backend("beta").backend == "alpha"
    assert str(error) == "boom"
    assert ErrorCode.from_error_type("queue_full") is ErrorCode.QUEUE_FULL
    assert ErrorCode.from_error_type("nonsense") is None
    assert ContentBlockedError("nope").category == "content_blocked"


def test_settings_from_env_converts_milliseconds(monkeypatch):
    monkeypatch.setenv("GENORCH_MAX_CONCURRENT", "7")
    monkeypatch.setenv("GENORCH_REQUEST_TIMEOUT_MS", "2500")
    monkeypatch.setenv("GENORCH_QUEUE_TIMEOUT_MS", "oops")
    monkeypatch.setenv("GENORCH_RETRY_ATTEMPTS", "0")
    monkeypatch.setenv("GENORCH_USER_RATE_WINDOW_MS", "60000")
    monkeypatch.setenv("GENORCH_TIER_MULTIPLIERS", "basic=1.5, premium=2, gold=4, broken")
    monkeypatch.setenv("GENORCH_TIER_PRIORITIES", "gold=5")

    settings = SchedulerSettings.from_env()

    assert settings.max_concurrent == 7
    assert settings.request_timeout_s == pytest.approx(2.5)
    assert settings.queue_timeout_s == pytest.approx(600.0)
    assert settings.retry_attempts == 2
    assert settings.user_rate_window_s == pytest.approx(60.0)
    gold = settings.tier("GOLD")
    assert gold.multiplier == pytest.approx(4.0)
    assert gold.priority == 5
    assert settings.tier("premium").priority == 0
    assert settings.tier(None) is DEFAULT_TIER
    assert settings.tier("unknown") is DEFAULT_TIER


def test_default_tiers():
    settings = SchedulerSettings()
    assert [(t.name, t.multiplier, t.priority) for t in sorted(settings.tiers.values(), key=lambda t: t.priority)] == [
        ("basic", 1.5, 1),
        ("premium", 2.0, 2),
        ("elite", 3.0, 3),
    ]


def test_generation_config_keeps_extra_fields():
    config = GenerationConfig(aspect_ratio="1:1", quality="hd")
    assert config.extras() == {"quality": "hd"}


def test_progress_channel_drops_oldest_when_full():
    async def scenario():
        channel: ProgressChannel[int] = ProgressChannel(maxsize=2)
        for value in range(4):
            channel.publish(value)
        channel.close()
        assert not channel.publish(99)
        return [value async for value in channel], channel.dropped

    values, dropped = asyncio.run(scenario())

    assert values == [3]
    assert dropped == 3


def test_progress_channel_drain_and_iterate():
    async def scenario():
        channel: ProgressChannel[WorkflowProgress] = ProgressChannel()
        channel.publish(WorkflowProgress(run_id="r", status="executing", value=5, maximum=10))
        drained = channel.drain()
        channel.publish(WorkflowProgress(run_id="r", status="completed"))
        channel.close()
        channel.close()
        rest = [item async for item in channel]
        again = [item async for item in channel]
        return drained, rest, again

    drained, rest, again = asyncio.run(scenario())

    assert [item.percent for item in drained] == [50.0]
    assert [item.status for item in rest] == ["completed"]
    assert again == []
