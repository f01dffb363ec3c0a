from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..errors import ProviderError
from ..types import GenerationConfig, GenerationResult, ProgressChannel
from . import build_messages, normalize_http_error
from .openai import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, OpenAICompatProvider

logger = logging.getLogger(__name__)

__all__ = ["OllamaProvider"]


class OllamaProvider(OpenAICompatProvider):
    """Self-hosted text backend.

    Tries the OpenAI-compatible ``/v1/chat/completions`` endpoint first and
    falls back to the native ``/api/chat`` API when that endpoint is missing
    or rejects the request.
    """

    def _url(self, suffix: str) -> str:
        base = self.defn.base_url.strip().rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        return f"{base}/v1{suffix}"

    def _native_url(self) -> str:
        base = self.defn.base_url.strip().rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        return f"{base}/api/chat"

    def _native_payload(self, prompt: str, model: str, config: GenerationConfig, *, stream: bool) -> dict[str, Any]:
        options: dict[str, Any] = {
            "temperature": config.temperature if config.temperature is not None else DEFAULT_TEMPERATURE,
            "num_predict": config.max_tokens if config.max_tokens is not None else DEFAULT_MAX_TOKENS,
        }
        payload: dict[str, Any] = {
            "model": model,
            "messages": build_messages(prompt, config),
            "stream": stream,
            "options": options,
        }
        response_format = config.response_format
        if isinstance(response_format, dict) and response_format.get("type") == "json_object":
            payload["format"] = "json"
        return payload

    async def generate_text(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        try:
            return await super().generate_text(prompt, model, config, progress)
        except ProviderError as exc:
            if exc.status is None:
                raise
            logger.info(
                "compat endpoint failed for %s (status=%s); retrying on native api",
                self.name,
                exc.status,
            )
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.post(
                    self._native_url(),
                    json=self._native_payload(prompt, model, config, stream=False),
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        message = data.get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise ProviderError(f"{self.name} returned no text content", backend=self.name)
        usage: dict[str, int] = {}
        if isinstance(data.get("prompt_eval_count"), int):
            usage["prompt_tokens"] = data["prompt_eval_count"]
        if isinstance(data.get("eval_count"), int):
            usage["completion_tokens"] = data["eval_count"]
        return GenerationResult(
            payload=content,
            backend=self.name,
            model=str(data.get("model") or model),
            usage=usage or None,
            metadata={"finish_reason": data.get("done_reason")} if data.get("done_reason") else {},
        )

    async def stream_text(
        self, prompt: str, model: str, config: GenerationConfig
    ) -> AsyncIterator[dict[str, Any]]:
        parts: list[str] = []
        usage: dict[str, int] = {}
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                async with client.stream(
                    "POST",
                    self._native_url(),
                    json=self._native_payload(prompt, model, config, stream=True),
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            chunk = json.loads(line)
                        except json.JSONDecodeError:
                            logger.debug("skipping malformed ndjson line from %s", self.name)
                            continue
                        if chunk.get("error"):
                            raise ProviderError(f"{self.name} stream error: {chunk['error']}", backend=self.name)
                        message = chunk.get("message") or {}
                        delta = message.get("content")
                        if isinstance(delta, str) and delta:
                            parts.append(delta)
                            yield {"event": "delta", "data": delta}
                        if chunk.get("done"):
                            if isinstance(chunk.get("prompt_eval_count"), int):
                                usage["prompt_tokens"] = chunk["prompt_eval_count"]
                            if isinstance(chunk.get("eval_count"), int):
                                usage["completion_tokens"] = chunk["eval_count"]
                            break
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        yield {
            "event": "result",
            "data": GenerationResult(
                payload="".join(parts),
                backend=self.name,
                model=model,
                usage=usage or None,
            ),
        }

    async def generate_image(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        raise self._unsupported("image generation")
