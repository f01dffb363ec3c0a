import base64
import binascii
import logging
import re
from typing import Any, AsyncIterator, Dict, List

import httpx

from ..errors import (
    GenerationError,
    ProviderError,
    ProviderMisconfiguredError,
    TransportError,
)
from ..router import ProviderDef
from ..types import GenerationConfig, GenerationResult, ProgressChannel

logger = logging.getLogger(__name__)

MIN_IMAGE_BYTES = 100
_DATA_URI_RE = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/\s]+={0,2}$")


def http_status_error_details(exc: httpx.HTTPStatusError) -> tuple[int | None, str]:
    status: int | None = None
    message: str | None = None
    response = exc.response
    if response is not None:
        status = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            error_field = payload.get("error")
            if isinstance(error_field, dict):
                error_message = error_field.get("message")
                if isinstance(error_message, str) and error_message:
                    message = error_message
            elif isinstance(error_field, str) and error_field:
                message = error_field
            if message is None:
                nested_message = payload.get("message")
                if isinstance(nested_message, str) and nested_message:
                    message = nested_message
        if message is None:
            text = response.text
            if text:
                message = text
        if message is None:
            reason = response.reason_phrase
            if reason:
                message = reason
    if message is None:
        message = str(exc)
    return status, message


def normalize_http_error(exc: Exception, backend: str) -> GenerationError:
    if isinstance(exc, GenerationError):
        return exc.with_backend(backend)
    if isinstance(exc, httpx.HTTPStatusError):
        status, message = http_status_error_details(exc)
        category = None
        if status in (401, 403):
            category = "auth"
        elif status == 429:
            category = "busy"
        return ProviderError(
            f"{backend} returned {status}: {message}",
            backend=backend,
            status=status,
            category=category,
        )
    if isinstance(exc, httpx.TimeoutException):
        return TransportError(f"{backend} request timed out", backend=backend)
    if isinstance(exc, httpx.HTTPError):
        return TransportError(f"{backend} network error: {exc}", backend=backend)
    return ProviderError(f"{backend} failed: {exc}", backend=backend)


def build_messages(prompt: str, config: GenerationConfig) -> List[dict[str, Any]]:
    messages: List[dict[str, Any]] = []
    if config.system_message:
        messages.append({"role": "system", "content": config.system_message})
    messages.append({"role": "user", "content": prompt})
    return messages


def sniff_image_mime(data: bytes) -> str | None:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


async def decode_image_reference(
    reference: str,
    *,
    backend: str,
    headers: dict[str, str] | None = None,
    timeout: float = 60.0,
) -> tuple[bytes, str | None]:
    ref = reference.strip()
    data: bytes | None = None
    mime: str | None = None
    if _BASE64_RE.match(ref):
        try:
            data = base64.b64decode(ref, validate=False)
        except (binascii.Error, ValueError):
            data = None
    if data is None:
        match = _DATA_URI_RE.match(ref)
        if match:
            mime = match.group(1)
            try:
                data = base64.b64decode(match.group(2).strip())
            except (binascii.Error, ValueError) as exc:
                raise ProviderError(f"{backend} returned an undecodable data URI", backend=backend) from exc
    if data is None and ref.startswith(("http://", "https://")):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(ref, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise normalize_http_error(exc, backend) from exc
        data = response.content
        mime = response.headers.get("content-type")
    if data is None:
        raise ProviderError(f"{backend} returned an unrecognised image reference", backend=backend)
    if len(data) < MIN_IMAGE_BYTES:
        raise ProviderError(
            f"{backend} returned an image payload of {len(data)} bytes",
            backend=backend,
        )
    return data, mime or sniff_image_mime(data)


class BaseProvider:
    def __init__(self, defn: ProviderDef):
        self.defn = defn
        self.name = defn.name

    def _auth_headers(self) -> dict[str, str]:
        key = self.defn.api_key
        if key is None:
            return {}
        return {"Authorization": f"Bearer {key}"}

    def _unsupported(self, capability: str) -> ProviderMisconfiguredError:
        return ProviderMisconfiguredError(
            f"backend '{self.name}' ({self.defn.type}) does not support {capability}",
            backend=self.name,
        )

    async def generate_image(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        raise self._unsupported("image generation")

    async def generate_text(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        raise self._unsupported("text generation")

    async def stream_text(
        self, prompt: str, model: str, config: GenerationConfig
    ) -> AsyncIterator[dict[str, Any]]:
        result = await self.generate_text(prompt, model, config)
        if isinstance(result.payload, str) and result.payload:
            yield {"event": "delta", "data": result.payload}
        yield {"event": "result", "data": result}


class DummyProvider(BaseProvider):
    async def generate_image(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        # fake PNG large enough to pass payload checks
        payload = b"\x89PNG\r\n\x1a\n" + prompt.encode("utf-8").ljust(MIN_IMAGE_BYTES, b"\0")
        return GenerationResult(
            payload=payload,
            backend=self.name,
            model=model,
            seed=config.seed,
            mime_type="image/png",
        )

    async def generate_text(
        self,
        prompt: str,
        model: str,
        config: GenerationConfig,
        progress: ProgressChannel | None = None,
    ) -> GenerationResult:
        return GenerationResult(payload=f"dummy:{prompt}", backend=self.name, model=model)


from .comfy import ComfyWorkflowProvider
from .ollama import OllamaProvider
from .openai import OpenAICompatProvider
from .serverless import ServerlessWorkflowProvider
from .stability import StabilityProvider


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, type[BaseProvider]] = {
        "openai": OpenAICompatProvider,
        "ollama": OllamaProvider,
        "multipart": StabilityProvider,
        "workflow": ComfyWorkflowProvider,
        "serverless": ServerlessWorkflowProvider,
        "dummy": DummyProvider,
    }

    def __init__(self, providers: Dict[str, ProviderDef]):
        self.providers: Dict[str, BaseProvider] = {}
        for name, d in providers.items():
            provider_type = (d.type or "").strip()
            factory = self._PROVIDER_FACTORIES.get(provider_type)
            if factory is None:
                raise ValueError(
                    f"Unknown provider type '{provider_type or '<missing>'}' for provider '{name}'"
                )
            self.providers[name] = factory(d)

    def get(self, name: str) -> BaseProvider:
        return self.providers[name]


__all__ = [
    "BaseProvider",
    "DummyProvider",
    "OpenAICompatProvider",
    "OllamaProvider",
    "StabilityProvider",
    "ComfyWorkflowProvider",
    "ServerlessWorkflowProvider",
    "ProviderRegistry",
    "build_messages",
    "decode_image_reference",
    "http_status_error_details",
    "normalize_http_error",
]
