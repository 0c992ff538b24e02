import asyncio
import itertools
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

ProgressStatus = Literal["pending", "in_progress", "completed", "failed"]

_sequence = itertools.count(1)


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_key: str
    status: ProgressStatus
    message: str | None = None
    # Monotonic per process, so a consumer can tell an older event from a newer one.
    seq: int = Field(default_factory=lambda: next(_sequence))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class ProgressChannel:
    """A bounded, coalescing hand-off between the output reader and the reporter.

    ``publish`` never blocks and never awaits: the producer is the task that
    drains the subprocess pipe. Pending events are kept per step key, so a
    burst of updates to one step collapses into its latest value.
    """

    def __init__(self, maxsize: int = 64):
        self.maxsize = maxsize
        self.dropped = 0
        self._pending: OrderedDict[str, ProgressEvent] = OrderedDict()
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._pending)

    def publish(self, event: ProgressEvent) -> bool:
        """Queue an event. Returns False if it was dropped."""
        if self._closed:
            logger.debug(f"[REPORTER] Channel closed, dropping {event.step_key}")
            return False

        if event.step_key in self._pending:
            self._pending[event.step_key] = event
        elif len(self._pending) >= self.maxsize:
            self.dropped += 1
            logger.warning(f"[REPORTER] Progress channel full, dropped {event.step_key} ({self.dropped} total)")
            return False
        else:
            self._pending[event.step_key] = event

        self._ready.set()
        return True

    async def drain(self) -> list[ProgressEvent]:
        """Wait for and return the next batch. An empty list means the channel is finished."""
        while not self._pending:
            if self._closed:
                return []
            self._ready.clear()
            await self._ready.wait()

        batch = list(self._pending.values())
        self._pending.clear()
        return batch

    def close(self) -> None:
        self._closed = True
        self._ready.set()
