from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from .errors import (
    ContentBlockedError,
    GenerationError,
    ProviderMisconfiguredError,
    ProviderUnavailableError,
    WorkflowError,
    WorkflowTimeoutError,
)
from .metrics import MetricsLogger
from .providers import ProviderRegistry, normalize_http_error
from .rate_limiter import BackendGuards
from .router import BackendRegistry, OrchestratorMode
from .types import GenerationConfig, GenerationKind, GenerationResult, ProgressChannel
from .workflow import WorkflowStatus

logger = logging.getLogger(__name__)


def feature_for(kind: GenerationKind, config: GenerationConfig) -> str:
    if kind == "text":
        return "text"
    if kind == "image":
        return "restricted_image" if config.restricted else "image"
    raise ValueError(f"unknown generation kind '{kind}'")


def _wrap_error(exc: Exception, backend: str) -> GenerationError:
    if isinstance(exc, GenerationError):
        return exc.with_backend(backend)
    return normalize_http_error(exc, backend)


def _workflow_status(result: GenerationResult | None, error: GenerationError | None) -> WorkflowStatus | None:
    if isinstance(error, WorkflowTimeoutError):
        return WorkflowStatus.TIMED_OUT
    if isinstance(error, WorkflowError):
        return WorkflowStatus.ERRORED
    if result is not None and result.metadata.get("run_id"):
        return WorkflowStatus.COMPLETED
    return None


def _log_generation_event(
    level: int,
    *,
    event: str,
    backend: str,
    model: str | None,
    feature: str,
    latency_ms: float | None = None,
    detail: str | None = None,
) -> None:
    message = f"{event} backend={backend} model={model or 'unknown'} feature={feature}"
    if latency_ms is not None:
        message = f"{message} latency_ms={latency_ms:.1f}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


class Orchestrator:
    def __init__(
        self,
        registry: BackendRegistry,
        *,
        providers: ProviderRegistry | None = None,
        guards: BackendGuards | None = None,
        metrics: MetricsLogger | None = None,
        mode: OrchestratorMode | None = None,
    ):
        self.registry = registry
        self.providers = providers or ProviderRegistry(registry.providers)
        self.guards = guards or BackendGuards(registry.providers)
        self.metrics = metrics
        self._mode = mode

    @property
    def mode(self) -> OrchestratorMode:
        return self._mode or self.registry.mode

    def reload(self) -> None:
        self.providers = ProviderRegistry(self.registry.providers)
        self.guards = BackendGuards(self.registry.providers)

    def select_backend(self, feature: str, backend: str | None = None) -> str:
        if backend is not None:
            defn = self.registry.get(backend)
            if defn is None:
                raise ProviderMisconfiguredError(f"unknown backend '{backend}'", backend=backend)
            if not defn.enabled:
                raise ProviderMisconfiguredError(f"backend '{backend}' is disabled", backend=backend)
            if not defn.has_credentials:
                raise ProviderMisconfiguredError(
                    f"backend '{backend}' has no credential configured ({defn.auth_env or 'auth_env unset'})",
                    backend=backend,
                )
            return backend
        chosen = self.registry.select(feature)
        if chosen is None:
            raise ProviderUnavailableError(f"no backend is available for {feature.replace('_', ' ')} generation")
        return chosen

    async def _record(
        self,
        *,
        backend: str,
        model: str,
        feature: str,
        started: float,
        error: GenerationError | None,
        result: GenerationResult | None = None,
    ) -> None:
        latency_ms = (time.perf_counter() - started) * 1000.0
        if error is None:
            _log_generation_event(
                logging.INFO, event="generation_ok", backend=backend, model=model, feature=feature, latency_ms=latency_ms
            )
        else:
            _log_generation_event(
                logging.WARNING,
                event="generation_failed",
                backend=backend,
                model=model,
                feature=feature,
                latency_ms=latency_ms,
                detail=error.error_class,
            )
        if self.metrics is None:
            return
        status = _workflow_status(result, error)
        if status is not None:
            self.metrics.observe_workflow(backend=backend, status=status.value)
        record: dict[str, Any] = {
            "ts": time.time(),
            "backend": backend,
            "model": model,
            "feature": feature,
            "latency_ms": round(latency_ms, 3),
            "ok": error is None,
            "error_class": error.error_class if error is not None else None,
        }
        try:
            await self.metrics.write(record)
        except OSError:
            logger.exception("failed to write generation metrics")

    async def _attempt(
        self,
        backend: str,
        kind: GenerationKind,
        feature: str,
        prompt: str,
        config: GenerationConfig,
        progress: ProgressChannel | None,
    ) -> GenerationResult:
        model = self.registry.resolve_model(backend, feature)
        adapter = self.providers.get(backend)
        started = time.perf_counter()
        try:
            async with self.guards.get(backend):
                if kind == "image":
                    result = await adapter.generate_image(prompt, model, config, progress)
                else:
                    result = await adapter.generate_text(prompt, model, config, progress)
        except Exception as exc:
            error = _wrap_error(exc, backend)
            await self._record(backend=backend, model=model, feature=feature, started=started, error=error)
            if error is exc:
                raise
            raise error from exc
        await self._record(backend=backend, model=model, feature=feature, started=started, error=None, result=result)
        return result

    async def generate(
        self,
        kind: GenerationKind,
        prompt: str,
        config: GenerationConfig | None = None,
        *,
        backend: str | None = None,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        config = config or GenerationConfig()
        feature = feature_for(kind, config)
        first = self.select_backend(feature, backend)
        if backend is not None or self.mode != "fallback":
            return await self._attempt(first, kind, feature, prompt, config, progress)
        candidates = self.registry.fallback_order(feature)
        if first not in candidates:
            candidates.insert(0, first)
        *earlier, last = candidates
        for index, name in enumerate(earlier):
            try:
                return await self._attempt(name, kind, feature, prompt, config, progress)
            except ContentBlockedError:
                raise
            except GenerationError as exc:
                _log_generation_event(
                    logging.WARNING,
                    event="fallback",
                    backend=name,
                    model=None,
                    feature=feature,
                    detail=f"next={candidates[index + 1]} error={exc.error_class}",
                )
        # the last candidate's failure is the one the caller sees
        return await self._attempt(last, kind, feature, prompt, config, progress)

    async def stream_text(
        self,
        prompt: str,
        config: GenerationConfig | None = None,
        *,
        backend: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        config = config or GenerationConfig()
        feature = "text"
        name = self.select_backend(feature, backend)
        model = self.registry.resolve_model(name, feature)
        adapter = self.providers.get(name)
        started = time.perf_counter()
        try:
            async with self.guards.get(name):
                async for event in adapter.stream_text(prompt, model, config):
                    yield event
        except Exception as exc:
            error = _wrap_error(exc, name)
            await self._record(backend=name, model=model, feature=feature, started=started, error=error)
            if error is exc:
                raise
            raise error from exc
        await self._record(backend=name, model=model, feature=feature, started=started, error=None)
