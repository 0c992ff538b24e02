"""
SUMMON Progress Reporter

One status document per job, edited in place as the job moves along.
Producers publish ProgressEvents into a ProgressChannel; a consumer task
folds them into the ProgressDocument and pushes each new rendering to the
ReportingSink from a worker thread, so a slow sink never stalls the
subprocess output reader.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from summon.event_bus import ProgressChannel, ProgressEvent, ProgressStatus

if TYPE_CHECKING:
    from summon.engine import ExecutionResult

__all__ = [
    "CANONICAL_STEPS",
    "ProgressDocument",
    "ProgressEvent",
    "ProgressReporter",
    "ProgressStatus",
    "ReportingSink",
]


STEP_ANALYZE = "Analyzing request"
STEP_SELECT = "Selecting model"
STEP_RUN = "Running backend"
STEP_REPOSITORY = "Repository analysis"
STEP_GENERATE = "Code generation"
STEP_APPLY = "Applying changes"
STEP_COMMIT = "Git commit"
STEP_PR = "Creating pull request"
STEP_REPORT = "Reporting results"
STEP_ERROR = "Error"

CANONICAL_STEPS: tuple[str, ...] = (
    STEP_ANALYZE,
    STEP_SELECT,
    STEP_RUN,
    STEP_REPOSITORY,
    STEP_GENERATE,
    STEP_APPLY,
    STEP_COMMIT,
    STEP_PR,
    STEP_REPORT,
)

STATUS_MARKS: dict[str, str] = {
    "completed": "[x] ✅",
    "in_progress": "[⏳] ⚡",
    "failed": "[❌] ❌",
    "pending": "[ ] ⏸️",
}


class ReportingSink(Protocol):
    """Transport for the progress document and the final report.

    The first call for a job_id creates the document; later calls edit it.
    """

    def create_or_update_progress_document(self, job_id: str, rendered: str) -> None: ...

    def publish_final_result(
        self,
        job_id: str,
        result: "ExecutionResult",
        reviewer: str,
        pull_request_url: str | None = None,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class ProgressDocument:
    def __init__(self, job_id: str, title: str = "🤖 SUMMON is working on it"):
        self.job_id = job_id
        self.title = title
        self._latest: dict[str, ProgressEvent] = {}

    def apply(self, event: ProgressEvent) -> bool:
        """Record ``event`` as the latest state of its step.

        An event older than the one already held for the same step is
        ignored. Returns True when the document changed.
        """
        current = self._latest.get(event.step_key)
        if current is not None:
            if event.seq < current.seq:
                logger.debug(f"[REPORTER] Ignoring stale update for {event.step_key}")
                return False
            if (current.status, current.message) == (event.status, event.message):
                return False
        self._latest[event.step_key] = event
        return True

    def status_of(self, step_key: str) -> ProgressStatus:
        event = self._latest.get(step_key)
        return event.status if event else "pending"

    def ordered_steps(self) -> list[str]:
        extra = [key for key in self._latest if key not in CANONICAL_STEPS]
        return [*CANONICAL_STEPS, *extra]

    def render(self, updated_at: datetime | None = None) -> str:
        """Markdown snapshot. Same mapping, same text, apart from the timestamp line."""
        lines = [f"## {self.title}", "", f"**Job:** `{self.job_id}`", ""]
        for key in self.ordered_steps():
            event = self._latest.get(key)
            status = event.status if event else "pending"
            line = f"- {STATUS_MARKS[status]} **{key}**"
            if event is not None and event.message:
                line += f": {event.message}"
            lines.append(line)

        stamp = (updated_at or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S UTC")
        lines += ["", f"_Last updated: {stamp}_"]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Reporter
# ---------------------------------------------------------------------------

class ProgressReporter:
    """Consumer side of the progress channel.

    Usage:
        reporter = ProgressReporter(job_id, sink)
        task = asyncio.create_task(reporter.run())
        reporter.emit(STEP_ANALYZE, "in_progress")
        ...
        reporter.close()
        await task
    """

    def __init__(self, job_id: str, sink: ReportingSink, maxsize: int = 64):
        self.job_id = job_id
        self.sink = sink
        self.document = ProgressDocument(job_id)
        self.channel = ProgressChannel(maxsize=maxsize)
        self.pushes = 0

    def publish(self, event: ProgressEvent) -> None:
        self.channel.publish(event)

    def emit(self, step_key: str, status: ProgressStatus, message: str | None = None) -> None:
        self.publish(ProgressEvent(step_key=step_key, status=status, message=message))

    def close(self) -> None:
        self.channel.close()

    async def run(self) -> None:
        await self._push()
        while True:
            batch = await self.channel.drain()
            if not batch:
                break
            changed = [self.document.apply(event) for event in batch]
            if any(changed):
                await self._push()
        logger.debug(f"[REPORTER] Job {self.job_id}: {self.pushes} document pushes")

    async def _push(self) -> None:
        rendered = self.document.render()
        try:
            await asyncio.to_thread(self.sink.create_or_update_progress_document, self.job_id, rendered)
            self.pushes += 1
        except Exception as e:
            logger.warning(f"[REPORTER] Sink failed to update progress for {self.job_id}: {e}")
