"""Telemetry for backend generations, scheduled tasks and workflow runs.

Each backend call is appended to a daily JSONL audit file. Counters and
histograms for generations, task outcomes (queue wait, retries, final
outcome by error class) and workflow terminal states are kept in a
Prometheus text file and, when enabled, mirrored to OpenTelemetry.

Set ``GENORCH_METRICS_EXPORT_MODE`` to ``prom`` (default), ``otel`` or
``both``; ``GENORCH_OTEL_METRICS_EXPORT`` is a shorthand for ``both``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from typing import Any, NamedTuple, Optional, TYPE_CHECKING

from .settings import _env_var_as_bool

if TYPE_CHECKING:  # pragma: no cover
    from opentelemetry.sdk.metrics.export import MetricReader  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

_FLAG = "GENORCH_OTEL_METRICS_EXPORT"
_MODE_FLAG = "GENORCH_METRICS_EXPORT_MODE"
_PROM_FILE = "prometheus.prom"
_PROM_MODE = "prom"
_OTEL_MODE = "otel"
_BOTH_MODE = "both"
_MODE_VALUES = {_PROM_MODE, _OTEL_MODE, _BOTH_MODE}
_DEFAULT_MODE = _PROM_MODE
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class _MetricSpec(NamedTuple):
    name: str
    help: str
    labels: tuple[str, ...]
    buckets: tuple[float, ...] = ()

    @property
    def is_histogram(self) -> bool:
        return bool(self.buckets)

    @property
    def otel_name(self) -> str:
        return self.name.removeprefix("genorch_")


GENERATIONS = _MetricSpec(
    "genorch_generations_total",
    "Backend generation calls",
    ("backend", "feature", "ok", "error_class"),
)
GENERATION_LATENCY = _MetricSpec(
    "genorch_generation_latency_seconds",
    "Backend generation latency",
    ("backend", "ok"),
    (0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)
TASKS = _MetricSpec(
    "genorch_tasks_total",
    "Scheduled tasks by final outcome",
    ("tier", "outcome"),
)
TASK_RETRIES = _MetricSpec(
    "genorch_task_retries_total",
    "Task attempts that were requeued after a transient failure",
    ("tier", "error_class"),
)
QUEUE_WAIT = _MetricSpec(
    "genorch_queue_wait_seconds",
    "Time from admission to first dispatch",
    ("tier",),
    (0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0),
)
WORKFLOW_RUNS = _MetricSpec(
    "genorch_workflow_runs_total",
    "Workflow runs by terminal state",
    ("backend", "status"),
)
_SPECS = (GENERATIONS, GENERATION_LATENCY, TASKS, TASK_RETRIES, QUEUE_WAIT, WORKFLOW_RUNS)


def _metrics_mode_from_env() -> str:
    raw = os.environ.get(_MODE_FLAG)
    if raw is not None:
        normalized = raw.strip().lower()
        if normalized in _MODE_VALUES:
            return normalized
    if _env_var_as_bool(_FLAG):
        return _BOTH_MODE
    return _DEFAULT_MODE


def _format_labels(names: tuple[str, ...], values: tuple[str, ...]) -> str:
    return ",".join(f'{name}="{value}"' for name, value in zip(names, values))


class _PromMetrics:
    __slots__ = ("_dir", "_lock", "_series")

    def __init__(self, dirpath: str) -> None:
        self._dir = dirpath
        self._lock = threading.Lock()
        self._series: dict[str, dict[tuple[str, ...], Any]] = {spec.name: {} for spec in _SPECS}

    def emit(self, spec: _MetricSpec, labels: tuple[str, ...], value: float) -> None:
        with self._lock:
            series = self._series[spec.name]
            if spec.is_histogram:
                state = series.setdefault(labels, {"buckets": [0] * len(spec.buckets), "count": 0, "sum": 0.0})
                for idx, bound in enumerate(spec.buckets):
                    if value <= bound:
                        state["buckets"][idx] += 1
                state["count"] += 1
                state["sum"] += value
            else:
                series[labels] = series.get(labels, 0) + value
            self._write_locked()

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines: list[str] = []
        for spec in _SPECS:
            lines.append(f"# HELP {spec.name} {spec.help}")
            lines.append(f"# TYPE {spec.name} {'histogram' if spec.is_histogram else 'counter'}")
            for labels, state in sorted(self._series[spec.name].items()):
                rendered = _format_labels(spec.labels, labels)
                if not spec.is_histogram:
                    lines.append(f"{spec.name}{{{rendered}}} {state:g}")
                    continue
                for bound, count in zip(spec.buckets, state["buckets"]):
                    lines.append(f'{spec.name}_bucket{{{rendered},le="{bound:g}"}} {count}')
                lines.append(f'{spec.name}_bucket{{{rendered},le="+Inf"}} {state["count"]}')
                lines.append(f"{spec.name}_count{{{rendered}}} {state['count']}")
                lines.append(f"{spec.name}_sum{{{rendered}}} {state['sum']:g}")
        return "\n".join(lines) + "\n"

    def _write_locked(self) -> None:
        os.makedirs(self._dir, exist_ok=True)
        prom_path = os.path.join(self._dir, _PROM_FILE)
        tmp_path = f"{prom_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self._render_locked())
        os.replace(tmp_path, prom_path)


class _OtelMetrics:
    __slots__ = ("_provider", "_instruments")

    def __init__(self, reader: Optional["MetricReader"] = None):
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]

        self._provider = MeterProvider(
            resource=Resource.create({"service.name": "gen-orch"}),
            metric_readers=[reader or InMemoryMetricReader()],
        )
        meter = self._provider.get_meter("genorch.metrics")
        self._instruments: dict[str, Any] = {}
        for spec in _SPECS:
            if spec.is_histogram:
                self._instruments[spec.name] = meter.create_histogram(spec.otel_name, unit="s", description=spec.help)
            else:
                self._instruments[spec.name] = meter.create_counter(spec.otel_name, description=spec.help)

    def emit(self, spec: _MetricSpec, labels: tuple[str, ...], value: float) -> None:
        attrs = {name: label for name, label in zip(spec.labels, labels) if label}
        instrument = self._instruments[spec.name]
        if spec.is_histogram:
            instrument.record(value, attributes=attrs)
        else:
            instrument.add(value, attributes=attrs)

    async def flush(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._provider.force_flush)


class MetricsLogger:
    def __init__(self, dirpath: str, *, reader: Optional["MetricReader"] = None):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self._mode = _metrics_mode_from_env()
        self._prom = _PromMetrics(self.dir) if self._mode in (_PROM_MODE, _BOTH_MODE) else None
        self._otel: Optional[_OtelMetrics] = None
        if self._mode in (_OTEL_MODE, _BOTH_MODE):
            try:
                self._otel = _OtelMetrics(reader)
            except ImportError:
                logger.warning("opentelemetry-sdk is not installed; metrics stay local")

    def _emit(self, spec: _MetricSpec, value: float, **labels: Any) -> None:
        values = tuple(str(labels.get(name) or "") for name in spec.labels)
        if self._prom is not None:
            self._prom.emit(spec, values, value)
        if self._otel is not None:
            self._otel.emit(spec, values, value)

    def _file(self) -> str:
        return os.path.join(self.dir, f"generations-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        """Append one generation record and count it."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        ok = "true" if record.get("ok") else "false"
        backend = record.get("backend") or "unknown"
        self._emit(
            GENERATIONS,
            1,
            backend=backend,
            feature=record.get("feature") or "unknown",
            ok=ok,
            error_class=record.get("error_class"),
        )
        latency_s = max(float(record.get("latency_ms") or 0.0) / 1000.0, 0.0)
        self._emit(GENERATION_LATENCY, latency_s, backend=backend, ok=ok)

    def observe_queue_wait(self, *, tier: str, seconds: float) -> None:
        self._emit(QUEUE_WAIT, max(seconds, 0.0), tier=tier)

    def observe_retry(self, *, tier: str, error_class: str) -> None:
        self._emit(TASK_RETRIES, 1, tier=tier, error_class=error_class)

    def observe_task(self, *, tier: str, outcome: str) -> None:
        # outcome is "completed" or the error class the caller received
        self._emit(TASKS, 1, tier=tier, outcome=outcome)

    def observe_workflow(self, *, backend: str, status: str) -> None:
        self._emit(WORKFLOW_RUNS, 1, backend=backend, status=status)

    def render_prometheus(self) -> bytes:
        if self._prom is None:
            return b""
        return self._prom.render().encode("utf-8")

    async def flush(self) -> None:
        if self._otel is not None:
            await self._otel.flush()
