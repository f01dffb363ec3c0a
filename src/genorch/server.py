import asyncio
import base64
import json
import logging
import math
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    ErrorCode,
    GenerationError,
    ProviderError,
    RateLimitedError,
)
from .metrics import PROM_CONTENT_TYPE, MetricsLogger
from .orchestrator import Orchestrator
from .router import BackendRegistry
from .scheduler import CancelOutcome, RequestScheduler
from .settings import (
    ENV_PREFIX,
    SchedulerSettings,
    _env_var_as_bool,
    _env_var_as_float,
    _parse_env_list,
)
from .types import GenerationConfig, GenerationResult, ProgressChannel, QueueStatus

logger = logging.getLogger(__name__)

CONFIG_DIR = os.environ.get(
    f"{ENV_PREFIX}CONFIG_DIR",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config"),
)
METRICS_DIR = os.environ.get(f"{ENV_PREFIX}METRICS_DIR", "metrics")
USE_DUMMY: bool = _env_var_as_bool(f"{ENV_PREFIX}USE_DUMMY")
CONFIG_REFRESH_INTERVAL: float = _env_var_as_float(f"{ENV_PREFIX}CONFIG_REFRESH_INTERVAL", default=30.0)
INBOUND_API_KEYS = frozenset(_parse_env_list(os.environ.get(f"{ENV_PREFIX}INBOUND_API_KEYS", "")))
API_KEY_HEADER = os.environ.get(f"{ENV_PREFIX}API_KEY_HEADER", "x-api-key")
ALLOWED_ORIGINS = _parse_env_list(os.environ.get(f"{ENV_PREFIX}CORS_ALLOW_ORIGINS", ""))

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.QUEUE_FULL: 503,
    ErrorCode.PROVIDER_UNAVAILABLE: 503,
    ErrorCode.PROVIDER_MISCONFIGURED: 500,
    ErrorCode.REQUEST_TIMEOUT: 504,
    ErrorCode.QUEUE_TIMEOUT: 504,
    ErrorCode.WORKFLOW_TIMEOUT: 504,
    ErrorCode.CANCELLED: 409,
    ErrorCode.DUPLICATE_TASK: 409,
    ErrorCode.CONTENT_BLOCKED: 422,
    ErrorCode.WORKFLOW_ERROR: 502,
    ErrorCode.TRANSPORT_ERROR: 502,
    ErrorCode.PROVIDER_ERROR: 502,
}

registry = BackendRegistry.from_dir(CONFIG_DIR, use_dummy=USE_DUMMY)
metrics = MetricsLogger(METRICS_DIR)
orchestrator = Orchestrator(registry, metrics=metrics)
scheduler = RequestScheduler(SchedulerSettings.from_env(), metrics=metrics)
_config_refresh_task: Optional[asyncio.Task[None]] = None


class _GenerationBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1)
    owner: str = Field(min_length=1)
    tier: Optional[str] = None
    task_id: Optional[str] = None
    backend: Optional[str] = None
    config: GenerationConfig = Field(default_factory=GenerationConfig)


class ImageGenerationRequest(_GenerationBody):
    pass


class TextGenerationRequest(_GenerationBody):
    stream: bool = False


def _make_error_body(
    *,
    message: str,
    error_type: str,
    code: str,
    retry_after: int | None = None,
    backend: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"message": message, "type": error_type, "code": code}
    if retry_after is not None:
        payload["retry_after"] = retry_after
    if backend is not None:
        payload["backend"] = backend
    return {"error": payload}


def _error_response(exc: GenerationError) -> JSONResponse:
    status_code = _STATUS_BY_CODE.get(exc.code, 500)
    if isinstance(exc, ProviderError) and exc.category == "prompt":
        status_code = 422
    retry_after: int | None = None
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        retry_after = max(int(math.ceil(exc.retry_after)), 0)
        headers["Retry-After"] = str(retry_after)
    body = _make_error_body(
        message=exc.message,
        error_type=type(exc).__name__,
        code=exc.error_class,
        retry_after=retry_after,
        backend=exc.backend,
    )
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _require_api_key(req: Request) -> None:
    if not INBOUND_API_KEYS:
        return
    candidate = req.headers.get(API_KEY_HEADER)
    if candidate is None:
        auth_header = req.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            candidate = auth_header[7:]
    if candidate and candidate in INBOUND_API_KEYS:
        return
    raise HTTPException(status_code=401, detail="missing or invalid api key")


def reload_configuration() -> None:
    orchestrator.reload()
    logger.info("backends reloaded: %s", ", ".join(sorted(registry.providers)))


async def _config_refresh_loop() -> None:
    while True:
        try:
            if registry.refresh():
                reload_configuration()
        except (OSError, ValueError):
            logger.exception("configuration reload failed; keeping previous configuration")
        await asyncio.sleep(CONFIG_REFRESH_INTERVAL if CONFIG_REFRESH_INTERVAL > 0 else 30.0)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    global _config_refresh_task
    scheduler.start()
    if CONFIG_REFRESH_INTERVAL > 0:
        _config_refresh_task = asyncio.create_task(_config_refresh_loop())
    try:
        yield
    finally:
        task, _config_refresh_task = _config_refresh_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await scheduler.aclose()
        await metrics.flush()


app = FastAPI(title="gen-orch", lifespan=lifespan)

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(GenerationError)
async def _generation_error_handler(_: Request, exc: GenerationError) -> JSONResponse:
    return _error_response(exc)


def _result_body(task_id: str, result: GenerationResult) -> dict[str, Any]:
    body: dict[str, Any] = {
        "task_id": task_id,
        "backend": result.backend,
        "model": result.model,
        "seed": result.seed,
        "usage": result.usage,
        "metadata": result.metadata,
    }
    if isinstance(result.payload, bytes):
        body["mime_type"] = result.mime_type
        body["b64_json"] = base64.b64encode(result.payload).decode("ascii")
    else:
        body["text"] = result.payload
    return body


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {
        "status": "ok",
        "mode": orchestrator.mode,
        "backends": {
            name: {"type": d.type, "enabled": d.enabled, "qualifies": d.qualifies}
            for name, d in sorted(registry.providers.items())
        },
        "scheduler": scheduler.stats(),
    }


@app.get("/metrics")
async def metrics_endpoint(req: Request) -> Response:
    _require_api_key(req)
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)


@app.get("/v1/queue")
async def queue_stats(req: Request) -> dict[str, Any]:
    _require_api_key(req)
    return scheduler.stats()


@app.post("/v1/images/generations")
async def image_generations(req: Request, body: ImageGenerationRequest) -> dict[str, Any]:
    _require_api_key(req)
    task_id = body.task_id or uuid.uuid4().hex

    async def work() -> GenerationResult:
        return await orchestrator.generate("image", body.prompt, body.config, backend=body.backend)

    result = await scheduler.schedule(task_id, work, owner=body.owner, tier=body.tier)
    return _result_body(task_id, result)


@app.post("/v1/text/generations", response_model=None)
async def text_generations(req: Request, body: TextGenerationRequest) -> Any:
    _require_api_key(req)
    task_id = body.task_id or uuid.uuid4().hex
    if body.stream:
        return _stream_text(task_id, body)

    async def work() -> GenerationResult:
        return await orchestrator.generate("text", body.prompt, body.config, backend=body.backend)

    result = await scheduler.schedule(task_id, work, owner=body.owner, tier=body.tier)
    return _result_body(task_id, result)


def _sse(payload: Any) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _stream_text(task_id: str, body: TextGenerationRequest) -> StreamingResponse:
    # queue status and text deltas share one unbounded channel; settling the task closes it
    channel: ProgressChannel[Any] = ProgressChannel(maxsize=0)
    attempts = 0

    async def work() -> GenerationResult:
        nonlocal attempts
        attempts += 1
        if attempts > 1:
            channel.publish({"task_id": task_id, "restart": attempts})
        result: GenerationResult | None = None
        async for event in orchestrator.stream_text(body.prompt, body.config, backend=body.backend):
            if event["event"] == "delta":
                channel.publish({"task_id": task_id, "delta": event["data"]})
            else:
                result = event["data"]
        if result is None:
            raise ProviderError("stream ended without a result", backend=body.backend)
        return result

    handle = scheduler.enqueue(task_id, work, owner=body.owner, tier=body.tier, status_channel=channel)

    async def events() -> AsyncIterator[bytes]:
        async for item in channel:
            if isinstance(item, QueueStatus):
                yield _sse({"task_id": task_id, "queue": item.model_dump()})
            else:
                yield _sse(item)
        try:
            result = await handle
        except GenerationError as exc:
            error = _make_error_body(
                message=exc.message, error_type=type(exc).__name__, code=exc.error_class, backend=exc.backend
            )
            error["error"]["status"] = _STATUS_BY_CODE.get(exc.code, 500)
            yield _sse(error)
        else:
            yield _sse(_result_body(task_id, result))
        yield b"data: [DONE]\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


@app.delete("/v1/tasks/{task_id}")
async def cancel_task(req: Request, task_id: str, owner: str) -> JSONResponse:
    _require_api_key(req)
    outcome = scheduler.cancel(task_id, owner)
    status_code = {
        CancelOutcome.CANCELLED: 200,
        CancelOutcome.NOT_FOUND: 404,
        CancelOutcome.NOT_OWNER: 403,
        CancelOutcome.NOT_CANCELLABLE: 409,
    }[outcome]
    return JSONResponse(status_code=status_code, content={"task_id": task_id, "outcome": outcome.value})
