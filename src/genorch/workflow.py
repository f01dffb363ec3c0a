"""Node-graph workflows and the run state machine for queue-based engines.

A submitted workflow is tracked by a :class:`WorkflowRun`. Push events
(``handle_event``) and poll responses (``apply_history``) drive the same
transitions, and a :class:`CompletionLatch` makes sure only one of the two
completion triggers proceeds to fetch the result.
"""

from __future__ import annotations

import math
import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping

DEFAULT_CHECKPOINT = "AnythingXL_xl.safetensors"
DEFAULT_FILENAME_PREFIX = "genorch"
DEFAULT_STEPS = 30
DEFAULT_CFG = 7.0
DEFAULT_SAMPLER = "dpmpp_2m"
DEFAULT_SCHEDULER = "karras"
UPSCALE_FACTOR = 1.23
REFINE_STEP_RATIO = 0.6
REFINE_DENOISE = 0.65
MAX_SEED = 999_999_999
BASE_EDGE = 832
MIN_EDGE = 768

_RATIO_SIZES: Dict[str, tuple[int, int]] = {
    "1:1": (832, 832),
    "16:9": (1088, 640),
    "9:16": (640, 1088),
    "4:3": (960, 704),
    "3:4": (704, 960),
    "3:2": (960, 640),
    "2:3": (640, 960),
}

_MAX_ERROR_LENGTH = 500


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _round_to_64(value: float) -> int:
    return _round_half_up(value / 64) * 64


def parse_aspect_ratio(ratio: str | None) -> tuple[int, int]:
    if not ratio:
        return _RATIO_SIZES["1:1"]
    known = _RATIO_SIZES.get(ratio)
    if known is not None:
        return known
    left, sep, right = ratio.partition(":")
    try:
        w = int(left)
        h = int(right)
    except ValueError:
        return _RATIO_SIZES["1:1"]
    if not sep or w <= 0 or h <= 0:
        return _RATIO_SIZES["1:1"]
    aspect = w / h
    height = math.sqrt(BASE_EDGE * BASE_EDGE / aspect)
    width = _round_to_64(height * aspect)
    height_px = _round_to_64(height)
    if width < MIN_EDGE:
        width = MIN_EDGE
        height_px = _round_to_64(MIN_EDGE / aspect)
    if height_px < MIN_EDGE:
        height_px = MIN_EDGE
        width = _round_to_64(MIN_EDGE * aspect)
    return width, height_px


def resolve_seed(seed: int | None, rng: random.Random | None = None) -> int:
    if seed is None or seed < 0:
        source = rng or random
        return source.randint(0, MAX_SEED)
    return seed


def build_two_pass_workflow(
    prompt: str,
    *,
    negative_prompt: str = "",
    width: int,
    height: int,
    steps: int = DEFAULT_STEPS,
    cfg: float = DEFAULT_CFG,
    sampler: str = DEFAULT_SAMPLER,
    scheduler: str = DEFAULT_SCHEDULER,
    seed: int,
    checkpoint: str = DEFAULT_CHECKPOINT,
    filename_prefix: str = DEFAULT_FILENAME_PREFIX,
) -> dict[str, dict[str, Any]]:
    upscale_width = _round_half_up(width * UPSCALE_FACTOR)
    upscale_height = _round_half_up(height * UPSCALE_FACTOR)
    refine_steps = max(1, _round_half_up(steps * REFINE_STEP_RATIO))
    return {
        "2": {
            "class_type": "CheckpointLoaderSimple",
            "inputs": {"ckpt_name": checkpoint},
        },
        "3": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": prompt, "clip": ["2", 1]},
        },
        "4": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": negative_prompt, "clip": ["2", 1]},
        },
        "5": {
            "class_type": "EmptyLatentImage",
            "inputs": {"width": width, "height": height, "batch_size": 1},
        },
        "6": {
            "class_type": "KSampler",
            "inputs": {
                "seed": seed,
                "steps": steps,
                "cfg": cfg,
                "sampler_name": sampler,
                "scheduler": scheduler,
                "denoise": 1.0,
                "model": ["2", 0],
                "positive": ["3", 0],
                "negative": ["4", 0],
                "latent_image": ["5", 0],
            },
        },
        "8": {
            "class_type": "LatentUpscale",
            "inputs": {
                "upscale_method": "nearest-exact",
                "width": upscale_width,
                "height": upscale_height,
                "crop": "disabled",
                "samples": ["6", 0],
            },
        },
        "10": {
            "class_type": "KSampler",
            "inputs": {
                "seed": seed,
                "steps": refine_steps,
                "cfg": cfg,
                "sampler_name": sampler,
                "scheduler": scheduler,
                "denoise": REFINE_DENOISE,
                "model": ["2", 0],
                "positive": ["3", 0],
                "negative": ["4", 0],
                "latent_image": ["8", 0],
            },
        },
        "12": {
            "class_type": "VAEDecode",
            "inputs": {"samples": ["10", 0], "vae": ["2", 2]},
        },
        "13": {
            "class_type": "SaveImage",
            "inputs": {"filename_prefix": filename_prefix, "images": ["12", 0]},
        },
    }


def extract_model_name(workflow: Mapping[str, Any]) -> str:
    for node in workflow.values():
        if isinstance(node, dict) and node.get("class_type") == "CheckpointLoaderSimple":
            name = (node.get("inputs") or {}).get("ckpt_name")
            if name:
                return str(name)
    return "unknown"


def final_sampler_node(workflow: Mapping[str, Any]) -> str | None:
    """Id of the sampler whose latent reaches the decoder, else the last sampler."""
    samplers = [
        str(node_id)
        for node_id, node in workflow.items()
        if isinstance(node, dict) and node.get("class_type") in ("KSampler", "KSamplerAdvanced")
    ]
    for node in workflow.values():
        if isinstance(node, dict) and node.get("class_type") == "VAEDecode":
            source = (node.get("inputs") or {}).get("samples")
            if isinstance(source, list) and source and str(source[0]) in samplers:
                return str(source[0])
    return samplers[-1] if samplers else None


def _node_error_summary(node_errors: Mapping[str, Any]) -> str | None:
    for node_id, node_error in node_errors.items():
        if not isinstance(node_error, dict):
            continue
        class_type = node_error.get("class_type")
        label = f"node {node_id}" + (f" ({class_type})" if class_type else "")
        for item in node_error.get("errors") or ():
            if not isinstance(item, dict):
                continue
            message = item.get("message") or item.get("type") or "error"
            details = item.get("details")
            if details:
                return f"{label}: {message}: {details}"
            return f"{label}: {message}"
    return None


def extract_workflow_error(payload: Any) -> str:
    """Pick the most specific message out of a nested engine error payload."""
    if isinstance(payload, str):
        return payload or "workflow failed"
    if not isinstance(payload, Mapping):
        return "workflow failed"
    node_errors = payload.get("node_errors")
    if isinstance(node_errors, Mapping) and node_errors:
        summary = _node_error_summary(node_errors)
        if summary:
            return summary
    exception_message = payload.get("exception_message")
    if isinstance(exception_message, str) and exception_message.strip():
        node_type = payload.get("node_type")
        if node_type:
            return f"{node_type}: {exception_message.strip()}"
        return exception_message.strip()
    error = payload.get("error")
    if isinstance(error, Mapping):
        message = error.get("message") or error.get("type")
        details = error.get("details")
        if message and details:
            return f"{message}: {details}"
        if message:
            return str(message)
    elif isinstance(error, str) and error:
        return error
    message = payload.get("message")
    if isinstance(message, str) and message:
        return message
    return "workflow failed"


def normalize_workflow_error(message: str) -> str:
    text = re.sub(r"\s+", " ", message).strip()
    lowered = text.lower()
    if "out of memory" in lowered:
        return f"Image engine ran out of GPU memory ({text[:200]})"
    if "value not in list" in lowered and "ckpt_name" in lowered:
        return f"Image engine does not have the requested model installed ({text[:200]})"
    if len(text) > _MAX_ERROR_LENGTH:
        text = text[: _MAX_ERROR_LENGTH - 3] + "..."
    return text or "workflow failed"


class WorkflowStatus(str, Enum):
    SUBMITTED = "submitted"
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.ERRORED, WorkflowStatus.TIMED_OUT}
)


# serverless job states that are still in flight
_JOB_PENDING_STATUSES = {
    "IN_QUEUE": WorkflowStatus.QUEUED,
    "IN_PROGRESS": WorkflowStatus.EXECUTING,
}


def extract_job_image(output: Any) -> str | None:
    """Find the image reference (URL, data URI or bare base64) in a job's output."""
    if not isinstance(output, Mapping):
        return None
    message = output.get("message")
    if isinstance(message, str) and message.startswith(("http://", "https://", "data:image")):
        return message
    for key in ("image_url", "image"):
        value = output.get(key)
        if isinstance(value, str) and value:
            return value
    images = output.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, str) and first:
            return first
        if isinstance(first, Mapping):
            for key in ("data", "url", "image"):
                value = first.get(key)
                if isinstance(value, str) and value:
                    return value
    return None


class WorkflowSignal(str, Enum):
    NONE = "none"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class WorkflowRun:
    run_id: str
    status: WorkflowStatus = WorkflowStatus.SUBMITTED
    value: int | None = None
    maximum: int | None = None
    node: str | None = None
    output_ref: Dict[str, Any] | None = None
    error: str | None = None
    final_node: str | None = None
    history: list[WorkflowStatus] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def percent(self) -> float | None:
        if self.value is None or not self.maximum:
            return None
        return min(100.0, 100.0 * self.value / self.maximum)

    def transition(self, status: WorkflowStatus) -> bool:
        if self.terminal or status == self.status:
            return False
        self.history.append(self.status)
        self.status = status
        return True

    def fail(self, message: str) -> None:
        if self.terminal:
            return
        self.error = normalize_workflow_error(message)
        self.transition(WorkflowStatus.ERRORED)

    def time_out(self, waited_s: float) -> None:
        if self.terminal:
            return
        self.error = f"workflow {self.run_id} did not finish within {waited_s:.0f}s"
        self.transition(WorkflowStatus.TIMED_OUT)

    def _on_final_node(self) -> bool:
        return self.final_node is None or self.node == self.final_node

    def _owns(self, data: Mapping[str, Any]) -> bool:
        prompt_id = data.get("prompt_id")
        return prompt_id is None or prompt_id == self.run_id

    def handle_event(self, message: Mapping[str, Any]) -> WorkflowSignal:
        if self.terminal:
            return WorkflowSignal.NONE
        event_type = message.get("type")
        data = message.get("data")
        if not isinstance(data, Mapping):
            data = {}
        if not self._owns(data):
            return WorkflowSignal.NONE
        if event_type == "status":
            if self.status == WorkflowStatus.SUBMITTED:
                self.transition(WorkflowStatus.QUEUED)
            return WorkflowSignal.NONE
        if event_type in ("execution_start", "execution_cached"):
            self.transition(WorkflowStatus.EXECUTING)
            return WorkflowSignal.NONE
        if event_type == "progress":
            self.transition(WorkflowStatus.EXECUTING)
            if data.get("node") is not None:
                self.node = str(data["node"])
            value = data.get("value")
            maximum = data.get("max")
            if isinstance(value, int) and isinstance(maximum, int):
                self.value = value
                self.maximum = maximum
                # earlier samplers also reach value == max
                if maximum > 0 and value >= maximum and self._on_final_node():
                    return WorkflowSignal.COMPLETE
            return WorkflowSignal.NONE
        if event_type == "executing":
            node = data.get("node")
            if node is None:
                return WorkflowSignal.COMPLETE
            self.transition(WorkflowStatus.EXECUTING)
            self.node = str(node)
            return WorkflowSignal.NONE
        if event_type == "executed":
            images = ((data.get("output") or {}).get("images")) or []
            if images and isinstance(images[0], dict) and self.output_ref is None:
                self.output_ref = dict(images[0])
            return WorkflowSignal.NONE
        if event_type == "execution_success":
            return WorkflowSignal.COMPLETE
        if event_type in ("execution_error", "execution_interrupted"):
            if event_type == "execution_interrupted":
                self.fail("workflow was interrupted")
            else:
                self.fail(extract_workflow_error(data))
            return WorkflowSignal.FAILED
        return WorkflowSignal.NONE

    def apply_history(self, history: Mapping[str, Any]) -> bool:
        """Fold one poll response in; returns True once the run is terminal."""
        if self.terminal:
            return True
        entry = history.get(self.run_id) if isinstance(history, Mapping) else None
        if not isinstance(entry, Mapping):
            return False
        status = entry.get("status")
        if not isinstance(status, Mapping):
            status = {}
        if status.get("status_str") == "error":
            detail: Any = None
            for item in status.get("messages") or ():
                if isinstance(item, (list, tuple)) and len(item) == 2 and item[0] == "execution_error":
                    detail = item[1]
            self.fail(extract_workflow_error(detail) if detail is not None else "workflow failed")
            return True
        outputs = entry.get("outputs")
        if isinstance(outputs, Mapping):
            for node_output in outputs.values():
                if not isinstance(node_output, Mapping):
                    continue
                images = node_output.get("images") or []
                for image in images:
                    if isinstance(image, Mapping) and image.get("filename"):
                        if self.output_ref is None or not self.output_ref.get("filename"):
                            self.output_ref = dict(image)
                        self.transition(WorkflowStatus.COMPLETED)
                        return True
        if status.get("completed") is True:
            self.fail("workflow finished without producing an image")
            return True
        return False

    def apply_job(self, job: Mapping[str, Any]) -> bool:
        """Fold one serverless job status response in; returns True once the run is terminal."""
        if self.terminal:
            return True
        state = str(job.get("status") or "").upper() if isinstance(job, Mapping) else ""
        if state in _JOB_PENDING_STATUSES:
            self.transition(_JOB_PENDING_STATUSES[state])
            return False
        if state == "COMPLETED":
            reference = extract_job_image(job.get("output"))
            if reference is None:
                self.fail("job finished without producing an image")
                return True
            self.output_ref = {"reference": reference}
            self.transition(WorkflowStatus.COMPLETED)
            return True
        if state == "FAILED":
            self.fail(extract_workflow_error(job.get("error")))
            return True
        if state == "TIMED_OUT":
            self.error = f"job {self.run_id} timed out on the engine"
            self.transition(WorkflowStatus.TIMED_OUT)
            return True
        if state == "CANCELLED":
            self.fail("job was cancelled on the engine")
            return True
        return False


class CompletionLatch:
    """Resolve-once guard shared by the push and poll completion triggers."""

    def __init__(self) -> None:
        self._claimed_by: str | None = None

    @property
    def claimed(self) -> bool:
        return self._claimed_by is not None

    @property
    def claimed_by(self) -> str | None:
        return self._claimed_by

    def claim(self, source: str) -> bool:
        if self._claimed_by is not None:
            return False
        self._claimed_by = source
        return True

    def release(self, source: str) -> None:
        if self._claimed_by == source:
            self._claimed_by = None
