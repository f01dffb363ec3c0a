from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import aiohttp
import httpx

from ..errors import GenerationError, TransportError, WorkflowError, WorkflowTimeoutError
from ..types import GenerationConfig, GenerationResult, ProgressChannel, WorkflowProgress
from ..workflow import (
    DEFAULT_CFG,
    DEFAULT_FILENAME_PREFIX,
    DEFAULT_SAMPLER,
    DEFAULT_SCHEDULER,
    DEFAULT_STEPS,
    CompletionLatch,
    WorkflowRun,
    WorkflowSignal,
    WorkflowStatus,
    build_two_pass_workflow,
    extract_model_name,
    extract_workflow_error,
    final_sampler_node,
    normalize_workflow_error,
    parse_aspect_ratio,
    resolve_seed,
)
from . import BaseProvider, MIN_IMAGE_BYTES, normalize_http_error, sniff_image_mime

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 1.0
DEFAULT_MAX_WAIT_S = 300.0
DEFAULT_COMPLETION_GRACE_S = 0.5
DEFAULT_NEGATIVE_PROMPT = "lowres, bad anatomy, blurry, watermark, text"


def _float_option(options: dict[str, Any], key: str, default: float) -> float:
    raw = options.get(key)
    if raw is None:
        return default
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


async def _iter_ws_messages(ws: aiohttp.ClientWebSocketResponse) -> AsyncIterator[dict[str, Any]]:
    async for msg in ws:
        if msg.type == aiohttp.WSMsgType.TEXT:
            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError:
                logger.debug("ignoring malformed push message: %r", msg.data[:200])
                continue
            if isinstance(data, dict):
                yield data
        elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
            break


class ComfyWorkflowProvider(BaseProvider):
    """Queue-based node-graph engine driven over push events with a poll fallback."""

    def __init__(self, defn):
        super().__init__(defn)
        options = dict(defn.options)
        self.push_enabled = bool(options.get("push", True))
        self.poll_interval_s = _float_option(options, "poll_interval_s", DEFAULT_POLL_INTERVAL_S)
        self.max_wait_s = _float_option(options, "max_wait_s", DEFAULT_MAX_WAIT_S)
        self.completion_grace_s = _float_option(options, "completion_grace_s", DEFAULT_COMPLETION_GRACE_S)
        self.negative_prompt = str(options.get("negative_prompt", DEFAULT_NEGATIVE_PROMPT))
        self.filename_prefix = str(options.get("filename_prefix", DEFAULT_FILENAME_PREFIX))
        self.default_steps = int(options.get("steps", DEFAULT_STEPS))
        self.default_cfg = float(options.get("cfg_scale", DEFAULT_CFG))
        self.default_sampler = str(options.get("sampler", DEFAULT_SAMPLER))
        self.default_scheduler = str(options.get("scheduler", DEFAULT_SCHEDULER))

    @property
    def base_url(self) -> str:
        return self.defn.base_url.strip().rstrip("/")

    def _ws_url(self, client_id: str) -> str:
        base = self.base_url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/ws?clientId={client_id}"

    def build_workflow(self, prompt: str, model: str, config: GenerationConfig) -> tuple[dict[str, Any], int]:
        if config.width and config.height:
            width, height = int(config.width), int(config.height)
        else:
            width, height = parse_aspect_ratio(config.aspect_ratio)
        seed = resolve_seed(config.seed)
        workflow = build_two_pass_workflow(
            prompt,
            negative_prompt=config.negative_prompt or self.negative_prompt,
            width=width,
            height=height,
            steps=config.steps or self.default_steps,
            cfg=config.cfg_scale if config.cfg_scale is not None else self.default_cfg,
            sampler=config.sampler or self.default_sampler,
            scheduler=config.scheduler or self.default_scheduler,
            seed=seed,
            checkpoint=model,
            filename_prefix=self.filename_prefix,
        )
        return workflow, seed

    @asynccontextmanager
    async def _open_event_stream(self, client_id: str) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        async with aiohttp.ClientSession(headers=self._auth_headers()) as session:
            async with session.ws_connect(self._ws_url(client_id), heartbeat=30) as ws:
                yield _iter_ws_messages(ws)

    async def _submit(self, workflow: dict[str, Any], client_id: str) -> str:
        url = f"{self.base_url}/prompt"
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.post(
                    url,
                    headers=self._auth_headers(),
                    json={"prompt": workflow, "client_id": client_id},
                )
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        try:
            body = response.json()
        except ValueError:
            body = response.text
        if response.status_code >= 400:
            detail = extract_workflow_error(body)
            if response.status_code >= 500:
                raise TransportError(
                    f"{self.name} rejected submission ({response.status_code}): {normalize_workflow_error(detail)}",
                    backend=self.name,
                    status=response.status_code,
                )
            raise WorkflowError(normalize_workflow_error(detail), backend=self.name)
        if not isinstance(body, dict):
            raise WorkflowError("engine returned a malformed submission response", backend=self.name)
        if body.get("error"):
            raise WorkflowError(normalize_workflow_error(extract_workflow_error(body)), backend=self.name)
        prompt_id = body.get("prompt_id")
        if not prompt_id:
            raise WorkflowError("engine did not return a run id", backend=self.name)
        return str(prompt_id)

    async def _fetch_history(self, run_id: str) -> dict[str, Any]:
        url = f"{self.base_url}/history/{run_id}"
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.get(url, headers=self._auth_headers())
                if response.status_code == 404:
                    # not registered yet
                    return {}
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        return data if isinstance(data, dict) else {}

    async def _fetch_state(self, run_id: str) -> dict[str, Any]:
        return await self._fetch_history(run_id)

    def _apply_state(self, run: WorkflowRun, state: dict[str, Any]) -> bool:
        return run.apply_history(state)

    async def _fetch_output(self, run: WorkflowRun) -> tuple[bytes, str | None]:
        ref = run.output_ref or {}
        params = {
            "filename": str(ref.get("filename", "")),
            "subfolder": str(ref.get("subfolder", "")),
            "type": str(ref.get("type", "output")),
        }
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.get(
                    f"{self.base_url}/view", params=params, headers=self._auth_headers()
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        data = response.content
        if len(data) < MIN_IMAGE_BYTES:
            raise WorkflowError(
                f"engine returned an image payload of {len(data)} bytes",
                backend=self.name,
                run_id=run.run_id,
            )
        return data, response.headers.get("content-type") or sniff_image_mime(data)

    def _publish(self, progress: ProgressChannel | None, run: WorkflowRun) -> None:
        if progress is None:
            return
        progress.publish(
            WorkflowProgress(
                run_id=run.run_id,
                status=run.status.value,
                value=run.value,
                maximum=run.maximum,
                node=run.node,
            )
        )

    async def _confirm(self, run: WorkflowRun) -> bool:
        if self.completion_grace_s > 0:
            await asyncio.sleep(self.completion_grace_s)
        try:
            history = await self._fetch_history(run.run_id)
        except GenerationError as exc:
            if not exc.retryable:
                raise
            logger.info("confirmation fetch failed for run %s: %s", run.run_id, exc)
            return False
        return run.apply_history(history)

    async def _watch_push(
        self,
        run: WorkflowRun,
        events: AsyncIterator[dict[str, Any]],
        latch: CompletionLatch,
        progress: ProgressChannel | None,
    ) -> None:
        async for message in events:
            signal = run.handle_event(message)
            self._publish(progress, run)
            if signal is WorkflowSignal.FAILED:
                return
            if signal is WorkflowSignal.COMPLETE and latch.claim("push"):
                if await self._confirm(run):
                    self._publish(progress, run)
                if run.terminal:
                    return
                # not in history yet; a later event or the poller settles it
                latch.release("push")
        logger.info("push channel closed before run %s finished; switching to polling", run.run_id)

    async def _poll(
        self,
        run: WorkflowRun,
        latch: CompletionLatch,
        progress: ProgressChannel | None,
        deadline: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        while not run.terminal:
            delay = self.poll_interval_s
            try:
                state = await self._fetch_state(run.run_id)
            except GenerationError as exc:
                if not exc.retryable:
                    raise
                logger.warning("poll failed for run %s: %s", run.run_id, exc)
                delay = self.poll_interval_s * 2
            else:
                previous = run.status
                if self._apply_state(run, state):
                    latch.claim("poll")
                if run.status != previous:
                    self._publish(progress, run)
                if run.terminal:
                    return
            remaining = deadline - loop.time()
            if remaining <= 0:
                run.time_out(self.max_wait_s)
                self._publish(progress, run)
                return
            await asyncio.sleep(min(delay, remaining))

    async def _drive(
        self,
        run: WorkflowRun,
        events: AsyncIterator[dict[str, Any]] | None,
        progress: ProgressChannel | None,
        deadline: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        latch = CompletionLatch()
        if events is not None:
            try:
                await asyncio.wait_for(
                    self._watch_push(run, events, latch, progress),
                    timeout=max(deadline - loop.time(), 0.0),
                )
            except asyncio.TimeoutError:
                run.time_out(self.max_wait_s)
                self._publish(progress, run)
                return
            except (aiohttp.ClientError, OSError) as exc:
                logger.warning("push channel failed for run %s (%s); switching to polling", run.run_id, exc)
        if not run.terminal:
            await self._poll(run, latch, progress, deadline)

    async def generate_image(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        workflow, seed = self.build_workflow(prompt, model, config)
        loop = asyncio.get_running_loop()
        max_wait = config.timeout_s if config.timeout_s else self.max_wait_s
        run = await self._execute(workflow, progress, loop.time() + max_wait)
        logger.info("workflow settled backend=%s run_id=%s seed=%s status=%s", self.name, run.run_id, seed, run.status.value)
        if run.status is WorkflowStatus.TIMED_OUT:
            raise WorkflowTimeoutError(run.error or "workflow timed out", backend=self.name, run_id=run.run_id)
        if run.status is not WorkflowStatus.COMPLETED:
            raise WorkflowError(run.error or "workflow failed", backend=self.name, run_id=run.run_id)
        payload, mime = await self._fetch_output(run)
        return GenerationResult(
            payload=payload,
            backend=self.name,
            model=extract_model_name(workflow),
            seed=seed,
            mime_type=mime,
            metadata=self._result_metadata(run, workflow),
        )

    async def _execute(
        self,
        workflow: dict[str, Any],
        progress: ProgressChannel | None,
        deadline: float,
    ) -> WorkflowRun:
        client_id = uuid.uuid4().hex
        async with AsyncExitStack() as stack:
            events: AsyncIterator[dict[str, Any]] | None = None
            if self.push_enabled:
                try:
                    events = await stack.enter_async_context(self._open_event_stream(client_id))
                except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                    logger.warning("push channel unavailable for %s (%s); using polling", self.name, exc)
                    events = None
            run_id = await self._submit(workflow, client_id)
            run = WorkflowRun(run_id=run_id, final_node=final_sampler_node(workflow))
            self._publish(progress, run)
            await self._drive(run, events, progress, deadline)
        return run

    def _result_metadata(self, run: WorkflowRun, workflow: dict[str, Any]) -> dict[str, Any]:
        return {
            "run_id": run.run_id,
            "width": workflow["5"]["inputs"]["width"],
            "height": workflow["5"]["inputs"]["height"],
        }


__all__ = ["ComfyWorkflowProvider"]
