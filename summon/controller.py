"""
SUMMON Controller — The Dispatcher

Takes one webhook event (or one piece of text) from mention to report:

  extract → permission → classify / select → estimate / admit
          → branch → execute with live progress → reconcile ledger
          → optional PR → final report → history

It does not parse backend output and does not render markdown. It only
wires the pieces together and makes sure every admitted job ends in
exactly one ExecutionResult and exactly one ledger charge.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field

from summon.budget import CostGate, CostLedger
from summon.classifier import Complexity, classify
from summon.config_loader import BackendDescriptor, SummonConfig
from summon.engine import ExecutionEngine, ExecutionJob, ExecutionResult
from summon.history import RunHistory
from summon.instruction import (
    Instruction,
    extract,
    extract_context_from_description,
    validate_permissions,
)
from summon.progress import (
    STEP_ANALYZE,
    STEP_PR,
    STEP_REPORT,
    STEP_RUN,
    STEP_SELECT,
    ProgressReporter,
    ReportingSink,
)
from summon.reporting import pull_request_title, render_pull_request_body
from summon.router import Router
from summon.webhook import WebhookEvent, should_process_event
from summon.workspace import Workspace, WorkspaceError

RunStatus = Literal["skipped", "permission_denied", "budget_exceeded", "failed", "succeeded", "pr_created"]

WorkspaceFactory = Callable[[str], Workspace]


class RunOutcome(BaseModel):
    job_id: str
    status: RunStatus
    sender: str | None = None
    instruction: Instruction | None = None
    complexity: Complexity | None = None
    backend: str | None = None
    estimate: Decimal | None = None
    result: ExecutionResult | None = None
    pull_request_url: str | None = None
    ledger: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def ok(self) -> bool:
        return self.status in ("skipped", "succeeded", "pr_created")

    def as_record(self) -> dict[str, Any]:
        """History line: everything except the full backend transcript."""
        return self.model_dump(mode="json", exclude={"result": {"raw_output"}})


class Controller:
    def __init__(
        self,
        config: SummonConfig,
        sink: ReportingSink,
        ledger: CostLedger,
        engine: ExecutionEngine | None = None,
        workspace_factory: WorkspaceFactory | None = None,
        history: RunHistory | None = None,
        repo_path: Path | None = None,
    ):
        self.config = config
        self.sink = sink
        self.ledger = ledger
        self.gate = CostGate(config.limits.max_cost_per_operation, ledger)
        self.router = Router(config.catalog(), default=config.default_backend)
        self.engine = engine or ExecutionEngine(timeout=config.timeout_seconds)
        self.workspace_factory = workspace_factory
        self.history = history
        self.repo_path = (repo_path or Path.cwd()).resolve()

    def cancel(self) -> bool:
        return self.engine.cancel()

    async def handle_event(self, event: WebhookEvent) -> RunOutcome:
        if not should_process_event(event, self.config.trigger):
            logger.info(f"[CONTROLLER] Ignoring '{event.action}' event without {self.config.trigger}")
            return RunOutcome(job_id=uuid.uuid4().hex[:8], status="skipped", sender=event.sender.login)

        if event.comment is not None and hasattr(self.sink, "add_reaction"):
            await asyncio.to_thread(self.sink.add_reaction, event.comment.id, "eyes")

        return await self.handle_text(
            event.trigger_text(),
            sender=event.sender.login,
            description=event.description(),
            thread_number=event.thread_number,
        )

    async def handle_text(
        self,
        text: str,
        sender: str,
        description: str = "",
        thread_number: int | None = None,
    ) -> RunOutcome:
        job_id = uuid.uuid4().hex[:8]

        # ── 1. Extract ──
        instruction = extract(text, self.config.trigger)
        if instruction is None:
            logger.info("[CONTROLLER] No instruction found, skipping")
            return RunOutcome(job_id=job_id, status="skipped", sender=sender)

        # ── 2. Permission ──
        if not validate_permissions(sender, self.config.allowed_users):
            logger.warning(f"[CONTROLLER] {sender} is not in allowed_users, skipping")
            return self._finish(RunOutcome(
                job_id=job_id, status="permission_denied", sender=sender, instruction=instruction,
            ))

        # ── 3. Classify & select (NoBackendConfiguredError is fatal) ──
        complexity = classify(instruction.raw_text)
        backend = self.router.select(complexity, instruction.explicit_model)
        estimate = self.gate.estimate(instruction, backend)
        logger.info(f"[CONTROLLER] Job {job_id}: {complexity} → {backend.name}, estimate ${estimate:.4f}")

        reporter = ProgressReporter(job_id, self.sink)
        reporter_task = asyncio.create_task(reporter.run())
        pr_url: str | None = None
        try:
            reporter.emit(STEP_ANALYZE, "completed", f"{instruction.priority} priority, {complexity} task")
            reporter.emit(STEP_SELECT, "completed", f"{backend.name} (estimated ${estimate:.4f})")

            # ── 4. Admit ──
            if not self.gate.admit(estimate):
                reason = self.gate.rejection_reason(estimate) or "Budget exceeded"
                result = ExecutionResult.failure("budget_exceeded", reason, backend.name)
                reporter.emit(STEP_RUN, "failed", reason)
            else:
                result, pr_url = await self._run_admitted(
                    job_id, instruction, backend, sender, description, thread_number, reporter,
                )

            reporter.emit(STEP_REPORT, "completed")
        finally:
            reporter.close()
            await reporter_task

        # ── 5. Final report ──
        try:
            await asyncio.to_thread(self.sink.publish_final_result, job_id, result, sender, pr_url)
        except Exception as e:
            logger.error(f"[CONTROLLER] Failed to publish final result for {job_id}: {e}")

        if pr_url:
            status = "pr_created"
        elif result.success:
            status = "succeeded"
        elif result.error_kind == "budget_exceeded":
            status = "budget_exceeded"
        else:
            status = "failed"

        return self._finish(RunOutcome(
            job_id=job_id,
            status=status,
            sender=sender,
            instruction=instruction,
            complexity=complexity,
            backend=backend.name,
            estimate=estimate,
            result=result,
            pull_request_url=pr_url,
            ledger=self.ledger.summary(),
        ))

    async def _run_admitted(
        self,
        job_id: str,
        instruction: Instruction,
        backend: BackendDescriptor,
        sender: str,
        description: str,
        thread_number: int | None,
        reporter: ProgressReporter,
    ) -> tuple[ExecutionResult, str | None]:
        workspace: Workspace | None = None
        if self.workspace_factory is not None:
            workspace = self.workspace_factory(job_id)
            try:
                await asyncio.to_thread(workspace.prepare)
            except WorkspaceError as e:
                logger.error(f"[CONTROLLER] Could not prepare workspace: {e}")
                result = ExecutionResult.failure("internal_error", f"Workspace setup failed: {e}", backend.name)
                reporter.emit(STEP_RUN, "failed", "Workspace setup failed")
                self.ledger.reconcile(result.cost_used, job_id=job_id)
                return result, None

        job = ExecutionJob(
            job_id=job_id,
            instruction=instruction,
            backend=backend,
            working_dir=workspace.path if workspace else self.repo_path,
            files=self._resolve_files(instruction, description),
        )

        # ── Execute ──
        try:
            result = await self.engine.execute(job, on_progress=reporter.publish)
        except Exception as e:
            logger.exception(f"[CONTROLLER] Engine crashed on job {job_id}")
            result = ExecutionResult.failure("internal_error", f"Unexpected engine error: {e}", backend.name)
            reporter.emit(STEP_RUN, "failed", "Unexpected engine error")

        # ── Reconcile (exactly once, success or not) ──
        self.ledger.reconcile(result.cost_used, job_id=job_id)

        # ── Pull request ──
        pr_url = None
        if result.success and result.changed_files and self.config.auto_create_pr and workspace is not None:
            reporter.emit(STEP_PR, "in_progress")
            try:
                if not await asyncio.to_thread(workspace.has_commits_ahead):
                    logger.warning(f"[CONTROLLER] No commits ahead of base on job {job_id}, skipping PR")
                    reporter.emit(STEP_PR, "failed", "No new commits on the job branch")
                else:
                    await asyncio.to_thread(workspace.push)
                    pr_url = await asyncio.to_thread(
                        workspace.create_pull_request,
                        pull_request_title(instruction),
                        render_pull_request_body(result, instruction, sender, thread_number),
                    )
                    reporter.emit(STEP_PR, "completed", pr_url)
            except WorkspaceError as e:
                logger.error(f"[CONTROLLER] PR creation failed: {e}")
                reporter.emit(STEP_PR, "failed", (str(e).splitlines() or ["PR creation failed"])[0][:200])

        return result, pr_url

    def _resolve_files(self, instruction: Instruction, description: str) -> list[str]:
        """Explicit files, else files named in the description, else the default patterns."""
        if instruction.explicit_files:
            return list(instruction.explicit_files)
        related = extract_context_from_description(description).related_files
        if related:
            return related
        return list(self.config.file_patterns)

    def _finish(self, outcome: RunOutcome) -> RunOutcome:
        logger.info(f"[CONTROLLER] Job {outcome.job_id}: {outcome.status}")
        if self.history is not None:
            try:
                self.history.record(outcome.as_record())
            except OSError as e:
                logger.warning(f"[CONTROLLER] Could not write history: {e}")
        return outcome
