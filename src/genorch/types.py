import asyncio
from typing import Any, AsyncIterator, Dict, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

GenerationKind = Literal["image", "text"]

T = TypeVar("T")


class GenerationConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    aspect_ratio: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    cfg_scale: Optional[float] = None
    seed: Optional[int] = None
    negative_prompt: Optional[str] = None
    sampler: Optional[str] = None
    scheduler: Optional[str] = None
    style_preset: Optional[str] = None
    source_image: Optional[bytes] = None
    strength: Optional[float] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_message: Optional[str] = None
    response_format: Optional[Dict[str, Any]] = None
    restricted: bool = False
    timeout_s: Optional[float] = None

    def extras(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    payload: Union[bytes, str]
    backend: str
    model: str
    seed: Optional[int] = None
    mime_type: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QueueStatus(BaseModel):
    task_id: str
    position: Optional[int]
    total_in_system: int
    eta_seconds: float
    state: Literal["queued", "processing"] = "queued"


class WorkflowProgress(BaseModel):
    run_id: str
    status: str
    value: Optional[int] = None
    maximum: Optional[int] = None
    node: Optional[str] = None

    @property
    def percent(self) -> Optional[float]:
        if self.value is None or not self.maximum:
            return None
        return min(100.0, 100.0 * self.value / self.maximum)


_CLOSED = object()


class ProgressChannel(Generic[T]):
    """Bounded push channel drained by the caller with ``async for``.

    ``publish`` never blocks the producer; when the buffer is full the oldest
    pending update is discarded. ``maxsize=0`` keeps every update. ``close``
    ends iteration once the buffered updates have been consumed.
    """

    def __init__(self, maxsize: int = 32):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(0, maxsize))
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: Any) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:  # pragma: no cover
                    pass

    def publish(self, item: T) -> bool:
        if self._closed:
            return False
        self._put(item)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(_CLOSED)

    def drain(self) -> list[T]:
        items: list[T] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return items
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                return items
            items.append(item)

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                return
            yield item
