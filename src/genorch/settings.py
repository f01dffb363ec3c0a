import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "GENORCH_"
TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

DEFAULT_TIER_MULTIPLIERS: Dict[str, float] = {"basic": 1.5, "premium": 2.0, "elite": 3.0}
DEFAULT_TIER_PRIORITIES: Dict[str, int] = {"basic": 1, "premium": 2, "elite": 3}


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("ignoring invalid value for %s: %r", name, raw)
        return default
    return value if value >= 0 else default


def _env_var_as_int(name: str, *, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("ignoring invalid value for %s: %r", name, raw)
        return default
    return value if value >= minimum else default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_tier_table(name: str, default: Mapping[str, float]) -> Dict[str, float]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return dict(default)
    table: Dict[str, float] = {}
    for item in _parse_env_list(raw):
        tier, sep, value = item.partition("=")
        if not sep or not tier.strip():
            logger.warning("ignoring malformed tier entry in %s: %r", name, item)
            continue
        try:
            table[tier.strip().lower()] = float(value)
        except ValueError:
            logger.warning("ignoring malformed tier entry in %s: %r", name, item)
    return table or dict(default)


@dataclass(frozen=True)
class TierPolicy:
    name: str
    multiplier: float = 1.0
    priority: int = 0


DEFAULT_TIER = TierPolicy(name="default")


@dataclass
class SchedulerSettings:
    max_concurrent: int = 100
    request_timeout_s: float = 120.0
    queue_timeout_s: float = 600.0
    retry_attempts: int = 2
    retry_delay_s: float = 1.0
    user_rate_limit: int = 50
    user_rate_window_s: float = 300.0
    max_queue_size: int = 1000
    status_initial_delay_s: float = 0.1
    status_interval_s: float = 5.0
    avg_task_seconds: float = 30.0
    sweep_interval_s: float = 300.0
    stats_interval_s: float = 60.0
    tiers: Dict[str, TierPolicy] = field(
        default_factory=lambda: {
            name: TierPolicy(name, DEFAULT_TIER_MULTIPLIERS[name], DEFAULT_TIER_PRIORITIES[name])
            for name in DEFAULT_TIER_MULTIPLIERS
        }
    )

    def tier(self, name: str | None) -> TierPolicy:
        if not name:
            return DEFAULT_TIER
        return self.tiers.get(name.strip().lower(), DEFAULT_TIER)

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        defaults = cls()
        multipliers = _parse_tier_table(f"{ENV_PREFIX}TIER_MULTIPLIERS", DEFAULT_TIER_MULTIPLIERS)
        priorities = _parse_tier_table(
            f"{ENV_PREFIX}TIER_PRIORITIES",
            {k: float(v) for k, v in DEFAULT_TIER_PRIORITIES.items()},
        )
        tiers = {
            name: TierPolicy(name, multipliers.get(name, 1.0), int(priorities.get(name, 0)))
            for name in sorted(set(multipliers) | set(priorities))
        }
        return cls(
            max_concurrent=_env_var_as_int(f"{ENV_PREFIX}MAX_CONCURRENT", default=defaults.max_concurrent, minimum=1),
            request_timeout_s=_env_var_as_float(
                f"{ENV_PREFIX}REQUEST_TIMEOUT_MS", default=defaults.request_timeout_s * 1000
            ) / 1000.0,
            queue_timeout_s=_env_var_as_float(
                f"{ENV_PREFIX}QUEUE_TIMEOUT_MS", default=defaults.queue_timeout_s * 1000
            ) / 1000.0,
            retry_attempts=_env_var_as_int(f"{ENV_PREFIX}RETRY_ATTEMPTS", default=defaults.retry_attempts, minimum=1),
            retry_delay_s=_env_var_as_float(
                f"{ENV_PREFIX}RETRY_DELAY_MS", default=defaults.retry_delay_s * 1000
            ) / 1000.0,
            user_rate_limit=_env_var_as_int(f"{ENV_PREFIX}USER_RATE_LIMIT", default=defaults.user_rate_limit),
            user_rate_window_s=_env_var_as_float(
                f"{ENV_PREFIX}USER_RATE_WINDOW_MS", default=defaults.user_rate_window_s * 1000
            ) / 1000.0,
            max_queue_size=_env_var_as_int(f"{ENV_PREFIX}MAX_QUEUE_SIZE", default=defaults.max_queue_size),
            status_interval_s=_env_var_as_float(
                f"{ENV_PREFIX}STATUS_INTERVAL_MS", default=defaults.status_interval_s * 1000
            ) / 1000.0,
            avg_task_seconds=_env_var_as_float(f"{ENV_PREFIX}AVG_TASK_SECONDS", default=defaults.avg_task_seconds),
            tiers=tiers,
        )
