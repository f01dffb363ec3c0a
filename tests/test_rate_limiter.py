import threading

import pytest

import src.genorch.rate_limiter as rate_limiter
from src.genorch.rate_limiter import BackendGuard, BackendGuards, UserRateLimiter, effective_limit
from src.genorch.router import ProviderDef
from src.genorch.settings import DEFAULT_TIER, SchedulerSettings, TierPolicy


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class FakeClock:
  def __init__(self, now: float = 0.0) -> None:
    self.now = now

  def __call__(self) -> float:
    return self.now


def test_effective_limit_floors_tier_multiplier() -> None:
  tiers = SchedulerSettings().tiers
  assert effective_limit(50, DEFAULT_TIER) == 50
  assert effective_limit(50, tiers["basic"]) == 75
  assert effective_limit(5, tiers["basic"]) == 7
  assert effective_limit(50, tiers["premium"]) == 100
  assert effective_limit(50, tiers["elite"]) == 150


def test_user_limiter_rejects_after_limit_and_reports_wait() -> None:
  clock = FakeClock(100.0)
  limiter = UserRateLimiter(2, 300.0, clock=clock)

  assert limiter.try_acquire("alice").allowed
  clock.now = 130.0
  second = limiter.try_acquire("alice")
  assert second.allowed
  assert second.remaining == 0

  clock.now = 160.0
  rejected = limiter.try_acquire("alice")
  assert not rejected.allowed
  assert rejected.limit == 2
  assert rejected.retry_after == pytest.approx(240.0)

  # other users are unaffected
  assert limiter.try_acquire("bob").allowed


def test_user_limiter_window_resets_after_expiry() -> None:
  clock = FakeClock(0.0)
  limiter = UserRateLimiter(1, 60.0, clock=clock)

  assert limiter.try_acquire("alice").allowed
  assert not limiter.try_acquire("alice").allowed

  clock.now = 60.0
  decision = limiter.try_acquire("alice")
  assert decision.allowed
  state = limiter.peek("alice")
  assert state is not None
  assert state.count == 1
  assert state.window_start == 60.0


def test_user_limiter_applies_tier_multiplier() -> None:
  limiter = UserRateLimiter(2, 60.0, clock=FakeClock())
  premium = TierPolicy("premium", 2.0, 2)

  allowed = [limiter.try_acquire("carol", premium).allowed for _ in range(5)]

  assert allowed == [True, True, True, True, False]
  state = limiter.peek("carol")
  assert state is not None
  assert state.tier == "premium"


def test_zero_limit_rejects_everyone() -> None:
  limiter = UserRateLimiter(0, 60.0, clock=FakeClock())
  assert not limiter.try_acquire("alice").allowed


def test_refund_returns_slot() -> None:
  limiter = UserRateLimiter(1, 60.0, clock=FakeClock())
  assert limiter.try_acquire("alice").allowed
  limiter.refund("alice")
  assert limiter.try_acquire("alice").allowed
  limiter.refund("nobody")
  assert limiter.peek("nobody") is None


def test_sweep_drops_expired_windows_only() -> None:
  clock = FakeClock(0.0)
  limiter = UserRateLimiter(5, 60.0, clock=clock)
  limiter.try_acquire("old")
  clock.now = 30.0
  limiter.try_acquire("fresh")

  clock.now = 61.0
  removed = limiter.sweep()

  assert removed == 1
  assert limiter.peek("old") is None
  assert limiter.peek("fresh") is not None
  assert len(limiter) == 1


def test_concurrent_acquires_never_exceed_limit() -> None:
  limiter = UserRateLimiter(10, 60.0)
  barrier = threading.Barrier(8)
  results: list[bool] = []
  results_lock = threading.Lock()

  def worker() -> None:
    barrier.wait()
    for _ in range(5):
      decision = limiter.try_acquire("shared")
      with results_lock:
        results.append(decision.allowed)

  threads = [threading.Thread(target=worker) for _ in range(8)]
  for thread in threads:
    thread.start()
  for thread in threads:
    thread.join()

  assert results.count(True) == 10
  assert len(results) == 40


@pytest.mark.anyio
async def test_backend_guard_waits_for_next_minute(
  monkeypatch: pytest.MonkeyPatch, anyio_backend: str
) -> None:
  _ = anyio_backend
  fake_time = 0.0
  sleeps: list[float] = []

  async def fake_sleep(delay: float) -> None:
    sleeps.append(delay)
    nonlocal fake_time
    fake_time += delay

  def fake_time_func() -> float:
    return fake_time

  monkeypatch.setattr(rate_limiter.time, "time", fake_time_func)
  monkeypatch.setattr(rate_limiter.asyncio, "sleep", fake_sleep)

  guard = BackendGuard(rpm=1, concurrency=1)

  async def acquire_once() -> None:
    async with guard:
      pass

  await acquire_once()
  assert sleeps == []

  await acquire_once()
  assert sleeps == [60.0]


def test_backend_guards_follow_provider_limits() -> None:
  providers = {
    "alpha": ProviderDef(name="alpha", type="dummy", base_url="", rpm=30, concurrency=2),
  }

  guards = BackendGuards(providers)

  assert guards.get("alpha").bucket.capacity == 30
  unknown = guards.get("missing")
  assert unknown is guards.get("missing")
  assert unknown.bucket.capacity == 60
