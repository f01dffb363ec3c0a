from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..errors import WorkflowError
from ..types import ProgressChannel
from ..workflow import CompletionLatch, WorkflowRun, WorkflowStatus, final_sampler_node
from . import decode_image_reference, normalize_http_error
from .comfy import ComfyWorkflowProvider, _float_option

logger = logging.getLogger(__name__)

__all__ = ["ServerlessWorkflowProvider"]

DEFAULT_JOB_POLL_INTERVAL_S = 2.0


class ServerlessWorkflowProvider(ComfyWorkflowProvider):
    """Node-graph engine hosted behind a serverless job queue.

    The graph is submitted to ``{base_url}/run`` and the job is polled at
    ``{base_url}/status/{id}`` until it reports COMPLETED, FAILED,
    TIMED_OUT or CANCELLED. There is no push channel.
    """

    def __init__(self, defn):
        super().__init__(defn)
        self.push_enabled = False
        self.poll_interval_s = _float_option(dict(defn.options), "poll_interval_s", DEFAULT_JOB_POLL_INTERVAL_S)

    async def _submit(self, workflow: dict[str, Any], client_id: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.post(
                    f"{self.base_url}/run",
                    headers=self._auth_headers(),
                    json={"input": {"workflow": workflow}},
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        except ValueError as exc:
            raise WorkflowError("job queue returned a malformed submission response", backend=self.name) from exc
        job_id = body.get("id") if isinstance(body, dict) else None
        if not job_id:
            raise WorkflowError("job queue did not return a job id", backend=self.name)
        return str(job_id)

    async def _fetch_state(self, run_id: str) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.get(f"{self.base_url}/status/{run_id}", headers=self._auth_headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        return data if isinstance(data, dict) else {}

    def _apply_state(self, run: WorkflowRun, state: dict[str, Any]) -> bool:
        if run.apply_job(state):
            for key in ("executionTime", "delayTime"):
                if isinstance(state.get(key), (int, float)):
                    run.output_ref = {**(run.output_ref or {}), key: state[key]}
            return True
        return False

    async def _cancel(self, run_id: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.post(f"{self.base_url}/cancel/{run_id}", headers=self._auth_headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("could not cancel job %s on %s: %s", run_id, self.name, exc)

    async def _execute(
        self,
        workflow: dict[str, Any],
        progress: ProgressChannel | None,
        deadline: float,
    ) -> WorkflowRun:
        run_id = await self._submit(workflow, "")
        run = WorkflowRun(run_id=run_id, final_node=final_sampler_node(workflow))
        self._publish(progress, run)
        await self._poll(run, CompletionLatch(), progress, deadline)
        if run.status is WorkflowStatus.TIMED_OUT and asyncio.get_running_loop().time() >= deadline:
            # gave up locally while the job may still hold a worker
            await self._cancel(run_id)
        return run

    async def _fetch_output(self, run: WorkflowRun) -> tuple[bytes, str | None]:
        reference = str((run.output_ref or {}).get("reference", ""))
        return await decode_image_reference(reference, backend=self.name, timeout=self.defn.timeout_s)

    def _result_metadata(self, run: WorkflowRun, workflow: dict[str, Any]) -> dict[str, Any]:
        metadata = super()._result_metadata(run, workflow)
        ref = run.output_ref or {}
        if "executionTime" in ref:
            metadata["execution_ms"] = ref["executionTime"]
        if "delayTime" in ref:
            metadata["queue_delay_ms"] = ref["delayTime"]
        return metadata
