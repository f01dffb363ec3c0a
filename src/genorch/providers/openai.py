from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..errors import ProviderError
from ..types import GenerationConfig, GenerationResult, ProgressChannel
from . import BaseProvider, build_messages, decode_image_reference, normalize_http_error

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
_DALLE_SIZES: dict[str, str] = {
    "1:1": "1024x1024",
    "16:9": "1792x1024",
    "9:16": "1024x1792",
}


class SSELineBuffer:
    """Reassembles server-sent-event lines split across network reads."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        rest = rest.rstrip("\r")
        return [rest] if rest.strip() else []


def parse_sse_data(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[len("data:"):].strip()


def error_from_body(error: Any, backend: str, context: str) -> ProviderError:
    """Turn an in-band `{"error": ...}` object into a ProviderError.

    A numeric `code` is taken as the HTTP-like status; any other code or
    `type` is kept as the provider code.
    """
    if not isinstance(error, dict):
        return ProviderError(f"{backend} {context}: {error}", backend=backend)
    message = error.get("message") or json.dumps(error)[:200]
    status: int | None = None
    provider_code: str | None = None
    raw_code = error.get("code")
    if isinstance(raw_code, str) and raw_code.isdigit():
        raw_code = int(raw_code)
    if isinstance(raw_code, int) and not isinstance(raw_code, bool) and 100 <= raw_code <= 599:
        status = raw_code
    elif isinstance(raw_code, str) and raw_code:
        provider_code = raw_code
    if provider_code is None and isinstance(error.get("type"), str):
        provider_code = error["type"]
    return ProviderError(
        f"{backend} {context}: {message}",
        backend=backend,
        status=status,
        provider_code=provider_code,
    )


def extract_image_reference(data: dict[str, Any]) -> str | None:
    choices = data.get("choices")
    message: dict[str, Any] = {}
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict) and isinstance(first.get("message"), dict):
            message = first["message"]
    images = message.get("images")
    if isinstance(images, list) and images:
        image = images[0]
        if isinstance(image, str) and image:
            return image
        if isinstance(image, dict):
            image_url = image.get("image_url")
            if isinstance(image_url, dict) and image_url.get("url"):
                return str(image_url["url"])
            for key in ("url", "data", "b64_json"):
                if image.get(key):
                    return str(image[key])
    content = message.get("content")
    if isinstance(content, str) and content.strip():
        text = content.strip()
        if text.startswith("data:image"):
            return text
        for token in text.split():
            cleaned = token.strip("()<>[]\"'")
            if cleaned.startswith(("http://", "https://")):
                return cleaned
        if " " not in text and len(text) > 100:
            return text
    if isinstance(content, list):
        for part in content:
            if not isinstance(part, dict):
                continue
            inline = part.get("inline_data") or part.get("inlineData")
            if isinstance(inline, dict) and inline.get("data"):
                return str(inline["data"])
            image_url = part.get("image_url")
            if isinstance(image_url, dict) and image_url.get("url"):
                return str(image_url["url"])
            if part.get("url"):
                return str(part["url"])
    for key in ("images", "data"):
        items = data.get(key)
        if isinstance(items, list) and items:
            item = items[0]
            if isinstance(item, str) and item:
                return item
            if isinstance(item, dict):
                for field in ("b64_json", "url", "data"):
                    if item.get(field):
                        return str(item[field])
    return None


class OpenAICompatProvider(BaseProvider):
    def _url(self, suffix: str) -> str:
        base = self.defn.base_url.strip().rstrip("/")
        for known in ("/chat/completions", "/images/generations"):
            if base.endswith(known):
                base = base[: -len(known)]
                break
        return f"{base}{suffix}"

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        headers.update(self._auth_headers())
        extra = self.defn.options.get("headers")
        if isinstance(extra, dict):
            headers.update({str(k): str(v) for k, v in extra.items()})
        return headers

    def _chat_payload(self, prompt: str, model: str, config: GenerationConfig, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": build_messages(prompt, config),
            "temperature": config.temperature if config.temperature is not None else DEFAULT_TEMPERATURE,
            "max_tokens": config.max_tokens if config.max_tokens is not None else DEFAULT_MAX_TOKENS,
        }
        if config.response_format is not None:
            payload["response_format"] = config.response_format
        if stream:
            payload["stream"] = True
        extra_body = self.defn.options.get("extra_body")
        if isinstance(extra_body, dict):
            for key, value in extra_body.items():
                payload.setdefault(key, value)
        return payload

    async def _post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.post(url, headers=self._headers(), json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned a non-object response", backend=self.name)
        error = data.get("error")
        if error:
            raise error_from_body(error, self.name, "error")
        return data

    async def generate_text(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        data = await self._post_json(
            self._url("/chat/completions"), self._chat_payload(prompt, model, config, stream=False)
        )
        choices = data.get("choices") or []
        message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ProviderError(f"{self.name} returned no text content", backend=self.name)
        usage = data.get("usage")
        return GenerationResult(
            payload=content,
            backend=self.name,
            model=str(data.get("model") or model),
            usage=_int_usage(usage),
            metadata={"finish_reason": choices[0].get("finish_reason")} if choices else {},
        )

    async def stream_text(
        self, prompt: str, model: str, config: GenerationConfig
    ) -> AsyncIterator[dict[str, Any]]:
        url = self._url("/chat/completions")
        payload = self._chat_payload(prompt, model, config, stream=True)
        parts: list[str] = []
        usage: dict[str, Any] | None = None
        finish_reason: str | None = None
        buffer = SSELineBuffer()
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                async with client.stream("POST", url, headers=self._headers(), json=payload) as response:
                    if response.status_code >= 400:
                        await response.aread()
                    response.raise_for_status()
                    async for line in _iter_sse_lines(response, buffer):
                        event = self._parse_stream_line(line)
                        if event is None:
                            continue
                        if event == "[DONE]":
                            break
                        delta, chunk_usage, reason = event
                        if chunk_usage:
                            usage = chunk_usage
                        if reason:
                            finish_reason = reason
                        if delta:
                            parts.append(delta)
                            yield {"event": "delta", "data": delta}
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, self.name) from exc
        result = GenerationResult(
            payload="".join(parts),
            backend=self.name,
            model=model,
            usage=_int_usage(usage),
            metadata={"finish_reason": finish_reason} if finish_reason else {},
        )
        yield {"event": "result", "data": result}

    def _parse_stream_line(self, line: str) -> Any:
        data = parse_sse_data(line)
        if not data:
            return None
        if data == "[DONE]":
            return "[DONE]"
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("skipping malformed stream chunk from %s: %r", self.name, data[:200])
            return None
        if not isinstance(chunk, dict):
            return None
        if chunk.get("error"):
            raise error_from_body(chunk["error"], self.name, "stream error")
        delta_text = ""
        reason = None
        choices = chunk.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("content"), str):
                delta_text = delta["content"]
            reason = choices[0].get("finish_reason")
        usage = chunk.get("usage") if isinstance(chunk.get("usage"), dict) else None
        return delta_text, usage, reason

    async def generate_image(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        image_api = str(self.defn.options.get("image_api", "chat"))
        if image_api == "images":
            url = self._url("/images/generations")
            payload: dict[str, Any] = {
                "model": model,
                "prompt": prompt,
                "n": 1,
                "size": _DALLE_SIZES.get(config.aspect_ratio or "1:1", "1024x1024"),
                "response_format": "b64_json",
            }
        else:
            url = self._url("/chat/completions")
            payload = {
                "model": model,
                "messages": build_messages(prompt, config),
                "modalities": ["image", "text"],
            }
            if config.aspect_ratio:
                payload["image_config"] = {"aspect_ratio": config.aspect_ratio}
        data = await self._post_json(url, payload)
        reference = extract_image_reference(data)
        if reference is None:
            raise ProviderError(f"{self.name} response contained no image", backend=self.name)
        image, mime = await decode_image_reference(
            reference, backend=self.name, timeout=self.defn.timeout_s
        )
        return GenerationResult(
            payload=image,
            backend=self.name,
            model=str(data.get("model") or model),
            seed=config.seed,
            mime_type=mime,
            usage=_int_usage(data.get("usage")),
        )


async def _iter_sse_lines(response: httpx.Response, buffer: SSELineBuffer) -> AsyncIterator[str]:
    async for chunk in response.aiter_text():
        for line in buffer.feed(chunk):
            yield line
    for line in buffer.flush():
        yield line


def _int_usage(usage: Any) -> dict[str, int] | None:
    if not isinstance(usage, dict):
        return None
    cleaned = {
        str(key): int(value)
        for key, value in usage.items()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    }
    return cleaned or None


__all__ = ["OpenAICompatProvider", "SSELineBuffer", "error_from_body", "extract_image_reference", "parse_sse_data"]
