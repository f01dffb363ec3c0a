from __future__ import annotations

import logging
import math
from typing import Any

import httpx

from ..errors import ContentBlockedError, GenerationError, ProviderError, TransportError
from ..types import GenerationConfig, GenerationResult, ProgressChannel
from . import BaseProvider, http_status_error_details, sniff_image_mime

logger = logging.getLogger(__name__)

SUPPORTED_ASPECT_RATIOS: tuple[str, ...] = (
    "16:9", "1:1", "21:9", "2:3", "3:2", "4:5", "5:4", "9:16", "9:21",
)
DEFAULT_STRENGTH = 0.5
_SAFETY_MARKERS = ("safety", "moderation", "content_filtered", "nsfw")


def _ratio_value(ratio: str) -> float | None:
    left, sep, right = ratio.partition(":")
    if not sep:
        return None
    try:
        width = float(left)
        height = float(right)
    except ValueError:
        return None
    if width <= 0 or height <= 0:
        return None
    return width / height


def nearest_aspect_ratio(ratio: str | None) -> str:
    if not ratio:
        return "1:1"
    if ratio in SUPPORTED_ASPECT_RATIOS:
        return ratio
    value = _ratio_value(ratio)
    if value is None:
        return "1:1"
    return min(
        SUPPORTED_ASPECT_RATIOS,
        key=lambda candidate: abs(math.log(value / _ratio_value(candidate))),
    )


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase or ""
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(item) for item in errors)
        for key in ("message", "name"):
            if isinstance(payload.get(key), str):
                return payload[key]
    return str(payload)


def classify_multipart_error(backend: str, status: int, detail: str) -> GenerationError:
    lowered = detail.lower()
    if status == 402 or "lack sufficient credits" in lowered or "insufficient credits" in lowered:
        return ProviderError(
            "Image service is out of credits. Please try again later.",
            backend=backend,
            status=status,
            category="credits",
            retryable=False,
        )
    if status in (400, 403) and any(marker in lowered for marker in _SAFETY_MARKERS):
        return ContentBlockedError(
            "Your prompt was blocked by the image service's content filter.",
            backend=backend,
            status=status,
        )
    if status == 400 and "prompt" in lowered:
        return ProviderError(
            f"The image service rejected the prompt: {detail}",
            backend=backend,
            status=status,
            category="prompt",
            retryable=False,
        )
    if status == 429:
        return ProviderError(
            "Image service is busy (rate limit exceeded). Please try again shortly.",
            backend=backend,
            status=status,
            category="busy",
            retryable=True,
        )
    if status == 401:
        return ProviderError(
            "Image service rejected the API credentials.",
            backend=backend,
            status=status,
            category="auth",
            retryable=False,
        )
    if status >= 500:
        return ProviderError(
            f"Image service is temporarily unavailable ({status}).",
            backend=backend,
            status=status,
            category="unavailable",
            retryable=True,
        )
    return ProviderError(f"{backend} returned {status}: {detail}", backend=backend, status=status)


class StabilityProvider(BaseProvider):
    def _fields(self, prompt: str, model: str, config: GenerationConfig) -> dict[str, Any]:
        output_format = str(self.defn.options.get("output_format", "png"))
        fields: dict[str, Any] = {
            "prompt": (None, prompt),
            "model": (None, model),
            "output_format": (None, output_format),
        }
        if config.source_image is not None:
            strength = config.strength if config.strength is not None else DEFAULT_STRENGTH
            fields["mode"] = (None, "image-to-image")
            fields["image"] = ("image.png", config.source_image, sniff_image_mime(config.source_image) or "image/png")
            fields["strength"] = (None, str(strength))
        else:
            fields["aspect_ratio"] = (None, nearest_aspect_ratio(config.aspect_ratio))
        if config.negative_prompt:
            fields["negative_prompt"] = (None, config.negative_prompt)
        if config.seed is not None and config.seed >= 0:
            fields["seed"] = (None, str(config.seed))
        if config.style_preset:
            fields["style_preset"] = (None, config.style_preset)
        if config.cfg_scale is not None:
            fields["cfg_scale"] = (None, str(config.cfg_scale))
        if config.steps is not None:
            fields["steps"] = (None, str(config.steps))
        return fields

    async def generate_image(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        headers = {"Accept": "image/*"}
        headers.update(self._auth_headers())
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.post(
                    self.defn.base_url,
                    headers=headers,
                    files=self._fields(prompt, model, config),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status, _ = http_status_error_details(exc)
            detail = _error_text(exc.response) if exc.response is not None else str(exc)
            logger.warning("multipart backend %s failed status=%s detail=%s", self.name, status, detail)
            raise classify_multipart_error(self.name, status or 0, detail) from exc
        except httpx.TimeoutException as exc:
            raise TransportError(f"{self.name} request timed out", backend=self.name) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{self.name} network error: {exc}", backend=self.name) from exc
        finish_reason = response.headers.get("finish-reason")
        if finish_reason and finish_reason.upper() == "CONTENT_FILTERED":
            raise ContentBlockedError(
                "Your prompt was blocked by the image service's content filter.",
                backend=self.name,
            )
        seed_header = response.headers.get("seed")
        seed = int(seed_header) if seed_header and seed_header.lstrip("-").isdigit() else config.seed
        payload = response.content
        if not payload:
            raise ProviderError(f"{self.name} returned an empty image", backend=self.name)
        return GenerationResult(
            payload=payload,
            backend=self.name,
            model=model,
            seed=seed,
            mime_type=response.headers.get("content-type") or sniff_image_mime(payload),
            metadata={"finish_reason": finish_reason} if finish_reason else {},
        )


__all__ = ["StabilityProvider", "classify_multipart_error", "nearest_aspect_ratio"]
