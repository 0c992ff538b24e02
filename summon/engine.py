"""
SUMMON Execution Engine

Runs the selected backend CLI as a subprocess and supervises it:

  idle → spawning → streaming → completed | failed | timed_out | cancelled

Output is read in chunks, split into lines as it arrives and scanned for
phase markers, which become ProgressEvents. Process exit races a hard
timeout and an external cancel request; whichever lands first decides the
terminal state, and it is written exactly once.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import re
import shlex
import threading
import time
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Callable, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from summon.config_loader import BackendDescriptor
from summon.event_bus import ProgressEvent, ProgressStatus
from summon.instruction import Instruction
from summon.matchers import Matcher, first_match
from summon.progress import (
    STEP_APPLY,
    STEP_COMMIT,
    STEP_ERROR,
    STEP_GENERATE,
    STEP_REPOSITORY,
    STEP_RUN,
)

JobState = Literal["idle", "spawning", "streaming", "completed", "failed", "timed_out", "cancelled"]
ErrorKind = Literal[
    "budget_exceeded", "spawn_failure", "timed_out",
    "non_zero_exit", "cancelled", "internal_error",
]

TERMINAL_STATES = frozenset({"completed", "failed", "timed_out", "cancelled"})
ACTIVE_STATES = frozenset({"spawning", "streaming"})

DEFAULT_TIMEOUT_SECONDS = 30 * 60
CHARS_PER_UNIT = 4
MESSAGE_LIMIT = 200
REDACTED = "***"

ProgressCallback = Callable[[ProgressEvent], None]


# ---------------------------------------------------------------------------
# Job & Result
# ---------------------------------------------------------------------------

class ExecutionJob(BaseModel):
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    instruction: Instruction
    backend: BackendDescriptor
    working_dir: Path = Field(default_factory=Path.cwd)
    files: list[str] = Field(default_factory=list)

    def secrets(self) -> list[str]:
        if self.backend.api_key is None:
            return []
        value = self.backend.api_key.get_secret_value()
        return [value] if value else []


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    changed_files: list[str] = Field(default_factory=list)
    commit_id: str | None = None
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    raw_output: str = ""
    cost_used: Decimal = Decimal("0")
    backend_used: str
    elapsed_seconds: float = 0.0
    state: JobState = "completed"

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        backend_used: str,
        raw_output: str = "",
        cost_used: Decimal = Decimal("0"),
        elapsed_seconds: float = 0.0,
        state: JobState = "failed",
    ) -> "ExecutionResult":
        """A result for a job that did not run to a clean exit."""
        return cls(
            success=False,
            error_kind=kind,
            error_message=message,
            backend_used=backend_used,
            raw_output=raw_output,
            cost_used=cost_used,
            elapsed_seconds=elapsed_seconds,
            state=state,
        )


# ---------------------------------------------------------------------------
# Command building
# ---------------------------------------------------------------------------

_GLOB_CHARS = re.compile(r"[*?\[]")
_SKIP_DIRS = {"node_modules", "__pycache__"}

# Past this many glob matches aider gets no file list and relies on its repo map.
MAX_GLOB_FILES = 50


def credential_flags(backend: BackendDescriptor) -> list[str]:
    if backend.api_key is None:
        return []
    key = backend.api_key.get_secret_value()
    if backend.provider == "openai":
        return ["--openai-api-key", key]
    if backend.provider == "anthropic":
        return ["--anthropic-api-key", key]
    return ["--api-key", f"{backend.provider}={key}"]


def expand_files(patterns: list[str], working_dir: Path, limit: int = MAX_GLOB_FILES) -> list[str]:
    """Expand glob patterns against ``working_dir``. Plain paths pass through.

    When the globs match more than ``limit`` files, every glob match is
    dropped and only the plain paths are kept.
    """
    files: list[str] = []
    seen: set[str] = set()
    matched: set[str] = set()
    for pattern in patterns:
        if not _GLOB_CHARS.search(pattern):
            candidates = [pattern]
        else:
            candidates = sorted(
                p.relative_to(working_dir).as_posix()
                for p in working_dir.glob(pattern)
                if p.is_file() and not _is_hidden(p.relative_to(working_dir))
            )
            matched.update(candidates)
        for name in candidates:
            if name not in seen:
                seen.add(name)
                files.append(name)

    plain = {p for p in patterns if not _GLOB_CHARS.search(p)}
    globbed = matched - plain
    if len(globbed) > limit:
        logger.warning(
            f"[ENGINE] Patterns matched {len(globbed)} files (limit {limit}), "
            f"leaving file selection to the backend"
        )
        files = [name for name in files if name not in globbed]
    return files


def _is_hidden(rel: Path) -> bool:
    return any(part.startswith(".") or part in _SKIP_DIRS for part in rel.parts[:-1])


def build_aider_command(job: ExecutionJob) -> list[str]:
    cmd = [
        "aider",
        "--yes-always",
        "--verbose",
        "--stream",
        "--model", job.backend.model_id,
        *credential_flags(job.backend),
        "--message", job.instruction.raw_text,
    ]
    cmd.extend(expand_files(job.files, job.working_dir))
    return cmd


def redact(text: str, secrets: list[str]) -> str:
    for secret in secrets:
        text = text.replace(secret, REDACTED)
    return text


# ---------------------------------------------------------------------------
# Output scanning
# ---------------------------------------------------------------------------

PROGRESS_MATCHERS = (
    Matcher(re.compile(r"Analyzing repository", re.I), lambda m: (STEP_REPOSITORY, "in_progress"), "repository"),
    Matcher(re.compile(r"Generating changes", re.I), lambda m: (STEP_GENERATE, "in_progress"), "generate"),
    Matcher(re.compile(r"Applying changes", re.I), lambda m: (STEP_APPLY, "in_progress"), "apply"),
    Matcher(re.compile(r"Committing changes", re.I), lambda m: (STEP_COMMIT, "in_progress"), "commit"),
    Matcher(re.compile(r"\b(?:ERROR|Error)\b"), lambda m: (STEP_ERROR, "failed"), "error"),
)

CHANGED_FILE_PATTERN = re.compile(r"(?:Modified|Created|Updated):\s+(.+)")
COMMIT_PATTERN = re.compile(r"Commit\s+([a-f0-9]{7,40})\b", re.IGNORECASE)


def parse_changed_files(output: str) -> list[str]:
    files: list[str] = []
    for match in CHANGED_FILE_PATTERN.finditer(output):
        name = match.group(1).strip()
        if name and name not in files:
            files.append(name)
    return files


def parse_commit_id(output: str) -> str | None:
    match = COMMIT_PATTERN.search(output)
    return match.group(1) if match else None


class OutputScanner:
    """Buffers output, splits it into lines and turns phase markers into events."""

    def __init__(self, on_progress: ProgressCallback | None = None, secrets: list[str] | None = None):
        self.on_progress = on_progress
        self.secrets = secrets or []
        self.current_phase: str | None = None
        self._chunks: list[str] = []
        self._partial = ""

    @property
    def output(self) -> str:
        return "".join(self._chunks)

    def feed(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text)
        *lines, self._partial = (self._partial + text).split("\n")
        for line in lines:
            self.scan_line(line)

    def finish(self) -> None:
        if self._partial:
            self.scan_line(self._partial)
            self._partial = ""

    def scan_line(self, line: str) -> None:
        hit = first_match(PROGRESS_MATCHERS, line)
        if hit is None:
            return

        step, status = hit
        message = redact(line.strip(), self.secrets)[:MESSAGE_LIMIT]
        if status == "failed":
            self.emit(step, "failed", message)
            return
        if step == self.current_phase:
            return
        if self.current_phase is not None:
            self.emit(self.current_phase, "completed")
        self.current_phase = step
        self.emit(step, "in_progress", message)

    def close_phase(self, status: ProgressStatus) -> None:
        if self.current_phase is not None:
            self.emit(self.current_phase, status)
            self.current_phase = None

    def emit(self, step: str, status: ProgressStatus, message: str | None = None) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(ProgressEvent(step_key=step, status=status, message=message))
        except Exception as e:
            logger.warning(f"[ENGINE] Progress callback failed for {step}: {e}")


def output_tail(output: str, lines: int = 1) -> str:
    kept = [line for line in output.strip().splitlines() if line.strip()]
    return "\n".join(kept[-lines:])


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ExecutionEngine:
    """
    Supervises one backend subprocess at a time.

    The instance may be reused for a later job once the current one has
    reached a terminal state.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        command_builder: Callable[[ExecutionJob], list[str]] = build_aider_command,
        kill_grace: float = 5.0,
        read_chunk: int = 4096,
    ):
        self.timeout = timeout
        self.command_builder = command_builder
        self.kill_grace = kill_grace
        self.read_chunk = read_chunk
        self._state: JobState = "idle"
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._cancel_requested: asyncio.Event | None = None

    @property
    def state(self) -> JobState:
        return self._state

    def _transition(self, new: JobState, expected: frozenset[str] = ACTIVE_STATES) -> bool:
        """Compare-and-set. Only the first terminal transition wins."""
        with self._lock:
            if self._state not in expected:
                return False
            self._state = new
            return True

    def cancel(self) -> bool:
        """Request termination. Safe from any thread, at any point of the job."""
        if not self._transition("cancelled"):
            return False
        logger.warning("[ENGINE] Cancellation requested")
        if self._loop is not None and self._cancel_requested is not None:
            self._loop.call_soon_threadsafe(self._cancel_requested.set)
        return True

    async def execute(self, job: ExecutionJob, on_progress: ProgressCallback | None = None) -> ExecutionResult:
        with self._lock:
            if self._state in ACTIVE_STATES:
                raise RuntimeError("ExecutionEngine is already running a job")
            self._state = "spawning"
        self._loop = asyncio.get_running_loop()
        self._cancel_requested = asyncio.Event()

        secrets = job.secrets()
        scanner = OutputScanner(on_progress, secrets)
        backend_name = job.backend.name
        started = time.monotonic()

        def elapsed() -> float:
            return round(time.monotonic() - started, 2)

        try:
            argv = self.command_builder(job)
        except Exception:
            self._transition("failed")
            raise
        logger.info(f"[ENGINE] Job {job.job_id} on {backend_name}: {redact(shlex.join(argv), secrets)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(job.working_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self._transition("failed")
            reason = redact(str(e), secrets)
            logger.error(f"[ENGINE] Could not start {backend_name}: {reason}")
            scanner.emit(STEP_RUN, "failed", f"Could not start backend: {reason}"[:MESSAGE_LIMIT])
            return ExecutionResult.failure(
                kind="cancelled" if self._state == "cancelled" else "spawn_failure",
                message=f"Failed to start {backend_name}: {reason}",
                backend_used=backend_name,
                elapsed_seconds=elapsed(),
                state=self._state,
            )

        self._transition("streaming", expected=frozenset({"spawning"}))
        scanner.emit(STEP_RUN, "in_progress", f"{backend_name} (pid {process.pid})")

        reader = asyncio.create_task(self._read_output(process.stdout, scanner))
        waiter = asyncio.create_task(process.wait())
        cancel_wait = asyncio.create_task(self._cancel_requested.wait())

        try:
            done, _ = await asyncio.wait(
                {waiter, cancel_wait},
                timeout=self.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if waiter not in done:
                if not done and self._transition("timed_out"):
                    logger.warning(f"[ENGINE] Job {job.job_id} exceeded {self.timeout:g}s, terminating")
                await self._stop(process, waiter)
        except asyncio.CancelledError:
            # The caller's task was cancelled: never leave the child behind.
            self._transition("cancelled")
            await self._stop(process, waiter)
            reader.cancel()
            raise
        finally:
            cancel_wait.cancel()

        exit_code = waiter.result()
        try:
            await asyncio.wait_for(reader, timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning(f"[ENGINE] Output pipe still open after exit for job {job.job_id}")

        self._transition("completed" if exit_code == 0 else "failed")
        state = self._state

        raw = scanner.output
        cost = Decimal(len(raw)) / CHARS_PER_UNIT * job.backend.unit_cost
        output = redact(raw, secrets)
        success = state == "completed"

        scanner.close_phase("completed" if success else "failed")
        logger.info(f"[ENGINE] Job {job.job_id} finished: {state} (exit {exit_code}) in {elapsed():.1f}s")

        if success:
            scanner.emit(STEP_RUN, "completed", f"{backend_name} finished")
            return ExecutionResult(
                success=True,
                changed_files=parse_changed_files(output),
                commit_id=parse_commit_id(output),
                raw_output=output,
                cost_used=cost,
                backend_used=backend_name,
                elapsed_seconds=elapsed(),
                state=state,
            )

        if state == "timed_out":
            kind, message = "timed_out", f"{backend_name} timed out after {self.timeout:g}s"
        elif state == "cancelled":
            kind, message = "cancelled", f"{backend_name} run was cancelled"
        else:
            kind, message = "non_zero_exit", f"{backend_name} exited with code {exit_code}"
            tail = output_tail(output)
            if tail:
                message += f": {tail[:MESSAGE_LIMIT]}"

        scanner.emit(STEP_RUN, "failed", message[:MESSAGE_LIMIT])
        return ExecutionResult(
            success=False,
            changed_files=parse_changed_files(output),
            commit_id=parse_commit_id(output),
            error_message=message,
            error_kind=kind,
            raw_output=output,
            cost_used=cost,
            backend_used=backend_name,
            elapsed_seconds=elapsed(),
            state=state,
        )

    async def _read_output(self, stream: asyncio.StreamReader, scanner: OutputScanner) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(self.read_chunk)
            if not chunk:
                break
            scanner.feed(decoder.decode(chunk))
        scanner.feed(decoder.decode(b"", final=True))
        scanner.finish()

    async def _stop(self, process: asyncio.subprocess.Process, waiter: asyncio.Task) -> None:
        """Terminate, escalate to kill after the grace period, then reap."""
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(asyncio.shield(waiter), timeout=self.kill_grace)
            except asyncio.TimeoutError:
                logger.warning(f"[ENGINE] pid {process.pid} ignored SIGTERM, killing")
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
        await waiter
