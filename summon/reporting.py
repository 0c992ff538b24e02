"""
SUMMON Reporting: final-result markdown and the sinks that deliver it.

ConsoleSink prints through rich; GhCommentSink keeps one editable issue
comment per job through `gh api`.
"""

from __future__ import annotations

import json
import subprocess
from decimal import Decimal
from typing import Iterable

from loguru import logger
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from summon.engine import ErrorKind, ExecutionResult
from summon.identity import __tagline__
from summon.instruction import Instruction

TITLE_LIMIT = 50
OUTPUT_TAIL_LINES = 50
FOOTER = f"*Generated by SUMMON — {__tagline__}*"

TROUBLESHOOTING: dict[str, list[str]] = {
    "budget_exceeded": [
        "Raise `limits.daily_budget` or `limits.max_cost_per_operation`, or wait for the next day.",
        "Shorter instructions and fewer files lower the estimate.",
    ],
    "spawn_failure": [
        "Check that `aider` is installed and on PATH in the runner.",
        "Check that the working directory exists and is readable.",
    ],
    "timed_out": [
        "Split the request into smaller instructions.",
        "Raise `limits.timeout_minutes` if the task is genuinely large.",
    ],
    "non_zero_exit": [
        "Check that the API key for the selected model is valid and has credit.",
        "Name the files to touch explicitly with `files: a.py, b.py`.",
        "Try another model with `model: <name>`.",
    ],
    "cancelled": ["The run was cancelled before it finished. Mention the bot again to retry."],
    "internal_error": ["This is a bug in SUMMON itself. Re-run with `--verbose` and open an issue."],
}


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------

def _fmt_cost(value: Decimal) -> str:
    return f"${value:.4f}"


def render_result(result: ExecutionResult, reviewer: str, pull_request_url: str | None = None) -> str:
    """Final report for one job."""
    if result.success:
        return _render_success(result, reviewer, pull_request_url)
    return _render_failure(result, reviewer)


def _render_success(result: ExecutionResult, reviewer: str, pull_request_url: str | None) -> str:
    lines = [
        "## ✅ SUMMON finished",
        "",
        f"@{reviewer} the requested changes are ready.",
        "",
        "### Summary",
        f"- **Model:** {result.backend_used}",
        f"- **Files changed:** {len(result.changed_files)}",
        f"- **Time:** {result.elapsed_seconds:.1f}s",
        f"- **Cost:** {_fmt_cost(result.cost_used)}",
    ]
    if result.commit_id:
        lines.append(f"- **Commit:** `{result.commit_id}`")
    if pull_request_url:
        lines.append(f"- **Pull request:** {pull_request_url}")

    if result.changed_files:
        lines += ["", "### Files"]
        lines += [f"- `{name}`" for name in result.changed_files]
    else:
        lines += ["", "_The backend finished without reporting any changed files._"]

    lines += ["", "### Next steps"]
    if pull_request_url:
        lines.append("1. Review the pull request and run the test suite.")
        lines.append("2. Merge when satisfied, or comment with a follow-up instruction.")
    else:
        lines.append("1. Review the commit on the working branch.")
        lines.append("2. Comment with a follow-up instruction if anything needs adjusting.")

    lines += ["", "---", FOOTER]
    return "\n".join(lines)


def _render_failure(result: ExecutionResult, reviewer: str) -> str:
    kind: ErrorKind = result.error_kind or "internal_error"
    lines = [
        "## ❌ SUMMON could not complete the request",
        "",
        f"@{reviewer} the run stopped: **{kind.replace('_', ' ')}**.",
        "",
        f"**Error:** {result.error_message or 'Unknown error'}",
        "",
        f"- **Model:** {result.backend_used}",
        f"- **Time:** {result.elapsed_seconds:.1f}s",
        f"- **Cost:** {_fmt_cost(result.cost_used)}",
        "",
        "### Troubleshooting",
    ]
    lines += [f"- {hint}" for hint in TROUBLESHOOTING.get(kind, TROUBLESHOOTING["internal_error"])]

    tail = "\n".join(result.raw_output.strip().splitlines()[-OUTPUT_TAIL_LINES:])
    if tail:
        lines += [
            "",
            "<details>",
            f"<summary>Output (last {OUTPUT_TAIL_LINES} lines)</summary>",
            "",
            "```",
            tail,
            "```",
            "</details>",
        ]

    lines += ["", "---", FOOTER]
    return "\n".join(lines)


def pull_request_title(instruction: Instruction) -> str:
    text = " ".join(instruction.raw_text.split())
    if len(text) > TITLE_LIMIT:
        text = text[:TITLE_LIMIT].rstrip() + "..."
    return f"SUMMON: {text}"


def render_pull_request_body(
    result: ExecutionResult,
    instruction: Instruction,
    reviewer: str,
    issue_number: int | None = None,
) -> str:
    body = f"""## 🤖 SUMMON Automated PR

**Requested by:** @{reviewer}
**Model:** {result.backend_used}
**Priority:** {instruction.priority}
"""
    if issue_number is not None:
        body += f"**Closes:** #{issue_number}\n"

    body += f"""
### Instruction
> {instruction.raw_text}

### Changes
"""
    body += "".join(f"- `{name}`\n" for name in result.changed_files) or "- _none reported_\n"

    body += f"""
### Run
- **Time:** {result.elapsed_seconds:.1f}s
- **Cost:** {_fmt_cost(result.cost_used)}
"""
    if result.commit_id:
        body += f"- **Commit:** `{result.commit_id}`\n"

    body += f"\n---\n{FOOTER}\n"
    return body


def render_session_summary(results: Iterable[ExecutionResult], reviewer: str | None = None) -> str:
    """Roll-up of several runs. Without a reviewer the mention line is left out."""
    results = list(results)
    succeeded = sum(1 for r in results if r.success)
    total_cost = sum((r.cost_used for r in results), Decimal("0"))
    files: list[str] = []
    for r in results:
        for name in r.changed_files:
            if name not in files:
                files.append(name)

    lines = [
        "## 📊 SUMMON session summary",
        "",
        "| Metric | Value |",
        "|---|---|",
        f"| Runs | {len(results)} |",
        f"| Succeeded | {succeeded} |",
        f"| Failed | {len(results) - succeeded} |",
        f"| Files changed | {len(files)} |",
        f"| Total cost | {_fmt_cost(total_cost)} |",
    ]
    if reviewer:
        lines[1:1] = ["", f"@{reviewer}"]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class ConsoleSink:
    """Prints the progress document and the final report. Used for local runs."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._last: dict[str, str] = {}

    def create_or_update_progress_document(self, job_id: str, rendered: str) -> None:
        # The timestamp line changes on every render; compare the rest.
        body = rendered.rsplit("\n", 1)[0]
        if self._last.get(job_id) == body:
            return
        self._last[job_id] = body
        self.console.print(Panel(Markdown(rendered), title=f"Job {job_id}", border_style="cyan"))

    def publish_final_result(
        self,
        job_id: str,
        result: ExecutionResult,
        reviewer: str,
        pull_request_url: str | None = None,
    ) -> None:
        self.console.print(Panel(
            Markdown(render_result(result, reviewer, pull_request_url)),
            title=f"Result {job_id}",
            border_style="green" if result.success else "red",
        ))


class GhCommentSink:
    """
    Posts to an issue or PR thread through the `gh` CLI.

    The first progress push for a job creates a comment; later pushes edit
    that same comment. The final result goes out as its own comment.
    """

    def __init__(self, repo: str, issue_number: int):
        self.repo = repo
        self.issue_number = issue_number
        self.comment_ids: dict[str, int] = {}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(subprocess.CalledProcessError),
        reraise=True,
    )
    def _api(self, *args: str) -> dict:
        result = subprocess.run(
            ["gh", "api", *args],
            capture_output=True,
            text=True,
            timeout=30,
            check=True,
        )
        return json.loads(result.stdout) if result.stdout.strip() else {}

    def _post_comment(self, body: str) -> int:
        data = self._api(f"repos/{self.repo}/issues/{self.issue_number}/comments", "-f", f"body={body}")
        return int(data["id"])

    def create_or_update_progress_document(self, job_id: str, rendered: str) -> None:
        comment_id = self.comment_ids.get(job_id)
        if comment_id is None:
            self.comment_ids[job_id] = self._post_comment(rendered)
            logger.debug(f"[REPORTER] Created progress comment {self.comment_ids[job_id]} for {job_id}")
            return
        self._api("-X", "PATCH", f"repos/{self.repo}/issues/comments/{comment_id}", "-f", f"body={rendered}")

    def publish_final_result(
        self,
        job_id: str,
        result: ExecutionResult,
        reviewer: str,
        pull_request_url: str | None = None,
    ) -> None:
        self._post_comment(render_result(result, reviewer, pull_request_url))

    def add_reaction(self, comment_id: int, content: str = "eyes") -> None:
        """React to the triggering comment. Failures only cost the emoji."""
        try:
            self._api(f"repos/{self.repo}/issues/comments/{comment_id}/reactions", "-f", f"content={content}")
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            logger.warning(f"[REPORTER] Could not add reaction to {comment_id}: {e}")
