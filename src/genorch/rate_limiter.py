import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .router import ProviderDef
from .settings import DEFAULT_TIER, TierPolicy


@dataclass
class UserRateState:
  count: int
  window_start: float
  tier: str


@dataclass(frozen=True)
class RateDecision:
  allowed: bool
  limit: int
  remaining: int
  retry_after: float


def effective_limit(base_limit: int, tier: TierPolicy) -> int:
  return int(math.floor(base_limit * tier.multiplier))


class UserRateLimiter:
  def __init__(self, limit: int, window_s: float, *, clock: Callable[[], float] = time.monotonic):
    self.limit = max(0, limit)
    self.window_s = window_s
    self._clock = clock
    self._lock = threading.Lock()
    self._states: Dict[str, UserRateState] = {}

  def _current(self, user_id: str, tier: TierPolicy, now: float) -> UserRateState:
    state = self._states.get(user_id)
    if state is None or now - state.window_start >= self.window_s:
      state = UserRateState(count=0, window_start=now, tier=tier.name)
      self._states[user_id] = state
    else:
      state.tier = tier.name
    return state

  def try_acquire(self, user_id: str, tier: TierPolicy = DEFAULT_TIER) -> RateDecision:
    limit = effective_limit(self.limit, tier)
    with self._lock:
      now = self._clock()
      state = self._current(user_id, tier, now)
      retry_after = max(state.window_start + self.window_s - now, 0.0)
      if state.count >= limit:
        return RateDecision(False, limit, 0, retry_after)
      state.count += 1
      return RateDecision(True, limit, limit - state.count, retry_after)

  def refund(self, user_id: str) -> None:
    with self._lock:
      state = self._states.get(user_id)
      if state is not None and state.count > 0:
        state.count -= 1

  def peek(self, user_id: str) -> UserRateState | None:
    with self._lock:
      state = self._states.get(user_id)
      if state is None:
        return None
      return UserRateState(state.count, state.window_start, state.tier)

  def sweep(self) -> int:
    with self._lock:
      now = self._clock()
      expired = [
        user_id
        for user_id, state in self._states.items()
        if now - state.window_start >= self.window_s
      ]
      for user_id in expired:
        del self._states[user_id]
    return len(expired)

  def __len__(self) -> int:
    return len(self._states)


class TokenBucket:
  def __init__(self, rpm: int):
    self.capacity = max(1, rpm)
    self.tokens = self.capacity
    self.window_start = int(time.time() // 60)

  def try_take(self) -> float:
    now_min = int(time.time() // 60)
    if now_min != self.window_start:
      self.window_start = now_min
      self.tokens = self.capacity
    if self.tokens > 0:
      self.tokens -= 1
      return 0.0
    now = time.time()
    return 60 - (now % 60)


class BackendGuard:
  def __init__(self, rpm: int, concurrency: int):
    self.bucket = TokenBucket(rpm)
    self.sem = asyncio.Semaphore(max(1, concurrency))

  async def __aenter__(self) -> "BackendGuard":
    while True:
      delay = self.bucket.try_take()
      if delay <= 0:
        break
      await asyncio.sleep(delay)
    await self.sem.acquire()
    return self

  async def __aexit__(self, exc_type, exc, tb):
    self.sem.release()


class BackendGuards:
  def __init__(self, providers: Dict[str, ProviderDef]):
    self.guards: Dict[str, BackendGuard] = {
      name: BackendGuard(p.rpm, p.concurrency) for name, p in providers.items()
    }

  def get(self, name: str) -> BackendGuard:
    guard = self.guards.get(name)
    if guard is None:
      guard = self.guards[name] = BackendGuard(60, 4)
    return guard
