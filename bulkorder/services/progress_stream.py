"""
Progress channel: one producer (the processing task), one consumer (the
HTTP response). Events are newline-delimited JSON:

    {"type": "progress", "payload": {...row outcome, processed, total}}
    {"type": "complete", "payload": {...BulkResult, status}}
    {"type": "error",    "payload": {"operation_id", "code", "message"}}

The queue is unbounded so the producer never waits on a slow client. After
close() (client went away) every emit is a no-op; the producer keeps going.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from bulkorder.schemas.bulk import BulkResult, ProgressUpdate

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

_DONE = object()


def encode_event(event_type: str, payload: Dict[str, Any]) -> bytes:
    return (json.dumps({"type": event_type, "payload": payload}, default=str) + "\n").encode("utf-8")


class ProgressChannel:
    def __init__(self, operation_id: str, total: int):
        self.operation_id = operation_id
        self.total = total
        self.processed = 0
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    def _put(self, event_type: str, payload: Dict[str, Any], terminal: bool = False) -> None:
        if self._finished:
            logger.warning("Event %s after terminal event dropped", event_type, extra={"operation_id": self.operation_id})
            return
        if terminal:
            self._finished = True
        if self._closed:
            return
        self._queue.put_nowait(encode_event(event_type, payload))
        if terminal:
            self._queue.put_nowait(_DONE)

    async def emit(self, update: ProgressUpdate) -> None:
        self.processed += 1
        payload = update.model_dump(mode="json")
        payload.update(operation_id=self.operation_id, processed=self.processed, total=self.total)
        self._put("progress", payload)

    async def complete(self, result: BulkResult, status: Optional[str] = None) -> None:
        payload = result.model_dump(mode="json")
        payload.update(operation_id=self.operation_id, status=status)
        self._put("complete", payload, terminal=True)

    async def error(self, message: str, code: str = "BLK-SYS-001") -> None:
        self._put(
            "error",
            {"operation_id": self.operation_id, "code": code, "message": message},
            terminal=True,
        )

    def close(self) -> None:
        """Consumer disconnected. Drops anything still queued."""
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            while True:
                item = await self._queue.get()
                if item is _DONE:
                    return
                yield item
        finally:
            if not self._finished:
                self.close()
