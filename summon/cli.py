"""
SUMMON CLI — The Interface

Main mode:
  summon run --event <payload.json>          (one webhook event, e.g. from a GitHub Action)

Plus utilities:
  - summon explain "<text>"   (dry run: extraction, classification, selection, budget)
  - summon status             (API keys, catalog, limits, ledger)
  - summon history            (view previous runs, --stats, --summary)
  - summon init <path>        (bootstrap .summon in a repo)

Every `run` input can also come from the environment, either as the
Action-style INPUT_* variable or the provider's own key variable.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from summon.budget import CostGate, CostLedger, JsonLedgerStore
from summon.classifier import classify
from summon.config_loader import SummonConfig, load_config, validate_api_keys
from summon.controller import Controller, RunOutcome
from summon.engine import ExecutionResult
from summon.history import RunHistory
from summon.identity import BANNER, __codename__, __tagline__, __version__
from summon.instruction import extract
from summon.reporting import ConsoleSink, GhCommentSink, render_session_summary
from summon.router import NoBackendConfiguredError, Router
from summon.webhook import load_event
from summon.workspace import Workspace

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".summon" / ".env")

app = typer.Typer(
    name="summon",
    help=f"{__codename__} — {__tagline__}\nComment-driven code changes under a budget.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {
    "pr_created": "green",
    "succeeded": "green",
    "skipped": "dim",
    "permission_denied": "yellow",
    "budget_exceeded": "yellow",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    event_path: Path = typer.Option(
        ..., "--event", "-e", envvar="GITHUB_EVENT_PATH", help="Path to the webhook event JSON",
    ),
    repo: Optional[Path] = typer.Option(
        None, "--repo", "-r", envvar="GITHUB_WORKSPACE", help="Path to the checked-out repository",
    ),
    github_repo: Optional[str] = typer.Option(
        None, "--github-repo", envvar="GITHUB_REPOSITORY", help="owner/name, for the github sink",
    ),
    config_file: Optional[Path] = typer.Option(None, "--config-file", "-c", envvar="INPUT_CONFIG_FILE"),
    default_model: Optional[str] = typer.Option(None, "--default-model", "-m", envvar="INPUT_DEFAULT_MODEL"),
    daily_budget: Optional[float] = typer.Option(
        None, "--daily-budget", envvar="INPUT_COST_BUDGET_DAILY", help="Daily budget in USD (0 = unlimited)",
    ),
    max_cost: Optional[float] = typer.Option(None, "--max-cost", help="Max estimated USD per operation"),
    timeout_minutes: Optional[float] = typer.Option(
        None, "--timeout", envvar="INPUT_MAX_EXECUTION_TIME", help="Backend timeout in minutes",
    ),
    allowed_users: Optional[str] = typer.Option(
        None, "--allowed-users", envvar="INPUT_ALLOWED_USERS", help="Comma-separated logins",
    ),
    auto_pr: Optional[bool] = typer.Option(None, "--auto-pr/--no-auto-pr", envvar="INPUT_ENABLE_AUTO_PR"),
    sink_name: str = typer.Option("console", "--sink", "-s", help="console | github"),
    github_token: Optional[str] = typer.Option(None, "--github-token", envvar="INPUT_GITHUB_TOKEN"),
    openai_api_key: Optional[str] = typer.Option(
        None, "--openai-api-key", envvar=["INPUT_OPENAI_API_KEY", "OPENAI_API_KEY"],
    ),
    anthropic_api_key: Optional[str] = typer.Option(
        None, "--anthropic-api-key", envvar=["INPUT_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"],
    ),
    deepseek_api_key: Optional[str] = typer.Option(
        None, "--deepseek-api-key", envvar=["INPUT_DEEPSEEK_API_KEY", "DEEPSEEK_API_KEY"],
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Handle one webhook event: extract, run the backend, report."""
    _print_banner()
    _configure_logging(verbose)

    repo = (repo or Path.cwd()).resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    if not event_path.exists():
        console.print(f"[red]Event file not found: {event_path}[/]")
        raise typer.Exit(1)

    try:
        event = load_event(event_path)
    except (ValueError, ValidationError) as e:
        console.print(f"[red]Could not parse event payload: {e}[/]")
        raise typer.Exit(1)

    if github_token:
        os.environ.setdefault("GH_TOKEN", github_token)

    config = load_config(
        repo,
        config_file=config_file,
        overrides={
            "default_backend": default_model,
            "allowed_users": _split_users(allowed_users),
            "auto_create_pr": auto_pr,
            "limits": {
                "daily_budget": daily_budget,
                "max_cost_per_operation": max_cost,
                "timeout_minutes": timeout_minutes,
            },
        },
        api_keys={
            "openai": openai_api_key,
            "anthropic": anthropic_api_key,
            "deepseek": deepseek_api_key,
        },
    )

    if sink_name == "github":
        if not github_repo or event.thread_number is None:
            console.print("[red]The github sink needs --github-repo and an issue or PR event[/]")
            raise typer.Exit(1)
        sink = GhCommentSink(github_repo, event.thread_number)
    elif sink_name == "console":
        sink = ConsoleSink(console)
    else:
        console.print(f"[red]Unknown sink: {sink_name}[/]")
        raise typer.Exit(1)

    controller = Controller(
        config=config,
        sink=sink,
        ledger=_open_ledger(repo, config),
        workspace_factory=_workspace_factory(repo, config),
        history=RunHistory(repo, config.workspace.state_dir),
        repo_path=repo,
    )

    try:
        outcome = asyncio.run(controller.handle_event(event))
    except NoBackendConfiguredError as e:
        console.print(f"[red]💥 {e}[/]")
        _write_github_outputs({"result": "error", "files_changed": "0", "cost_used": "0", "pull_request_url": ""})
        raise typer.Exit(1)

    _write_github_outputs(_outputs(outcome))
    _print_outcome(outcome)

    if outcome.status in ("failed", "budget_exceeded"):
        raise typer.Exit(1)


@app.command()
def explain(
    text: str = typer.Argument(..., help="Comment text, including the trigger mention"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Dry run: show what SUMMON would do with a comment, without running anything."""
    repo = (repo or Path.cwd()).resolve()
    config = load_config(repo)

    instruction = extract(text, config.trigger)
    if instruction is None:
        console.print(f"[yellow]No {config.trigger} mention found. Nothing would run.[/]")
        raise typer.Exit(0)

    complexity = classify(instruction.raw_text)
    ledger = _open_ledger(repo, config)
    gate = CostGate(config.limits.max_cost_per_operation, ledger)

    table = Table(title="Dry Run", border_style="cyan")
    table.add_column("Stage")
    table.add_column("Value")
    table.add_row("Instruction", instruction.raw_text)
    table.add_row("Priority", instruction.priority)
    table.add_row("Files", ", ".join(instruction.explicit_files or []) or "[dim]default patterns[/]")
    table.add_row("Model override", instruction.explicit_model or "[dim]none[/]")
    table.add_row("Complexity", complexity)

    try:
        backend = Router(config.catalog(), default=config.default_backend).select(
            complexity, instruction.explicit_model,
        )
    except NoBackendConfiguredError as e:
        table.add_row("Backend", f"[red]{e}[/]")
        console.print(table)
        raise typer.Exit(1)

    estimate = gate.estimate(instruction, backend)
    reason = gate.rejection_reason(estimate)
    table.add_row("Backend", f"{backend.name} ({backend.model_id})")
    table.add_row("Estimate", f"${estimate:.4f}")
    table.add_row("Admitted", "[green]yes[/]" if reason is None else f"[red]no[/]: {reason}")
    console.print(table)


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check SUMMON configuration and readiness."""
    _print_banner()

    # API Keys
    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    # Config
    repo = (repo or Path.cwd()).resolve()
    config = load_config(repo)
    catalog = config.catalog()

    backend_table = Table(title="Backends", border_style="magenta")
    backend_table.add_column("Name")
    backend_table.add_column("Provider")
    backend_table.add_column("Model")
    backend_table.add_column("$/unit")
    backend_table.add_column("Affinity")
    backend_table.add_column("Ready")
    for name, b in config.backends.items():
        ready = "[green]✓[/]" if name in catalog else "[dim]✗ no key[/]"
        backend_table.add_row(name, b.provider, b.model_id, f"{b.unit_cost}", b.complexity_affinity, ready)
    console.print(backend_table)

    console.print(f"\n[bold]Routing:[/]")
    for tier, names in Router(catalog, default=config.default_backend).describe().items():
        console.print(f"  {tier:<8} {' → '.join(names) or '[dim]fallback[/]'}")

    console.print(f"\n[bold]Limits:[/]")
    console.print(f"  Max $/operation: ${config.limits.max_cost_per_operation}")
    budget = config.limits.daily_budget
    console.print(f"  Daily budget:    {'unlimited' if budget is None else f'${budget}'}")
    console.print(f"  Timeout:         {config.limits.timeout_minutes:g} min")

    ledger = _open_ledger(repo, config)
    console.print(f"\n[bold]Ledger ({ledger.day}):[/]")
    console.print(f"  Used today:  ${ledger.used_today:.4f}")
    console.print(f"  Can proceed: {'✓' if ledger.can_proceed else '✗'}")

    if config.allowed_users:
        console.print(f"\n[bold]Allowed users:[/] {', '.join(config.allowed_users)}")

    # Tools
    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")

    for tool in ["git", "gh", "aider"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)

    console.print(tools_table)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .summon directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    state_dir = repo / ".summon"
    state_dir.mkdir(exist_ok=True)
    (state_dir / "logs").mkdir(exist_ok=True)

    config_path = state_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# SUMMON repo-level config overrides
# These merge with the built-in defaults.

# Who may summon the bot (empty = everyone):
# allowed_users:
#   - octocat

# Prefer a different fallback model:
# default_backend: claude-sonnet

# Adjust limits:
# limits:
#   max_cost_per_operation: 0.5
#   daily_budget: 5.0
#   timeout_minutes: 20

# Files handed to the backend when the comment names none:
# file_patterns:
#   - "src/**/*.py"
""")

    # Add to .gitignore
    gitignore = repo / ".gitignore"
    ignore_entries = [".summon/logs/", ".summon/ledger.json"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# SUMMON\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# SUMMON\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized SUMMON in {state_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Logs:    {state_dir / 'logs'}")


@app.command()
def history(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Path to the target repository"),
    count: int = typer.Option(10, "--count", "-n", help="Number of entries to show"),
    stats: bool = typer.Option(False, "--stats", "-s", help="Show aggregate statistics"),
    summary: bool = typer.Option(False, "--summary", help="Print a markdown roll-up of the last N runs"),
):
    """View run history and statistics."""
    repo = (repo or Path.cwd()).resolve()
    config = load_config(repo)
    hist = RunHistory(repo, config.workspace.state_dir)

    if summary:
        results = [
            ExecutionResult.model_validate(entry["result"])
            for entry in hist.get_recent(count)
            if entry.get("result")
        ]
        if not results:
            console.print("[dim]No executed runs yet.[/]")
            return
        console.print(Markdown(render_session_summary(results)))
        return

    _print_banner()

    if stats:
        s = hist.get_stats()
        if s["total_runs"] == 0:
            console.print("[dim]No history yet.[/]")
            return

        stats_table = Table(title="SUMMON Statistics", border_style="cyan")
        stats_table.add_column("Metric")
        stats_table.add_column("Value")

        stats_table.add_row("Total runs", str(s["total_runs"]))
        stats_table.add_row("Executed", str(s["executed"]))
        stats_table.add_row("Success rate", f"{s['success_rate']}%")
        stats_table.add_row("Total cost", f"${s['total_cost']:.4f}")
        stats_table.add_row("Avg cost/run", f"${s['avg_cost_per_run']:.4f}")

        console.print(stats_table)

        if s.get("statuses"):
            status_table = Table(title="Status Breakdown", border_style="dim")
            status_table.add_column("Status")
            status_table.add_column("Count")
            for status_name, cnt in sorted(s["statuses"].items(), key=lambda x: -x[1]):
                status_table.add_row(status_name, str(cnt))
            console.print(status_table)

        return

    entries = hist.get_recent(count)
    if not entries:
        console.print("[dim]No history yet. Run some jobs first.[/]")
        return

    table = Table(title=f"Recent Runs (last {count})", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Job")
    table.add_column("User")
    table.add_column("Status")
    table.add_column("Model")
    table.add_column("Cost")
    table.add_column("Notes")

    for entry in reversed(entries):
        ts = entry.get("timestamp", "?")[:19]
        status_name = entry.get("status", "?")
        color = STATUS_COLORS.get(status_name, "red")
        result = entry.get("result") or {}
        cost = f"${float(result.get('cost_used', 0)):.4f}"

        notes = ""
        if result.get("changed_files"):
            notes += f"files:{len(result['changed_files'])} "
        if result.get("error_message"):
            notes += result["error_message"][:40]

        table.add_row(
            ts,
            entry.get("job_id", "?"),
            entry.get("sender") or "?",
            f"[{color}]{status_name}[/]",
            entry.get("backend") or "-",
            cost,
            notes,
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _split_users(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [u.strip().lstrip("@") for u in value.split(",") if u.strip()]


def _open_ledger(repo: Path, config: SummonConfig) -> CostLedger:
    store = JsonLedgerStore(repo / config.workspace.state_dir / "ledger.json")
    return CostLedger.open(store, config.limits.daily_budget)


def _workspace_factory(repo: Path, config: SummonConfig):
    if not (repo / ".git").exists():
        logger.warning(f"[WORKSPACE] {repo} is not a git repository, running in place without a branch")
        return None

    def factory(job_id: str) -> Workspace:
        return Workspace(
            repo,
            job_id,
            branch_prefix=config.workspace.branch_prefix,
            bot_name=config.workspace.bot_name,
            bot_email=config.workspace.bot_email,
        )

    return factory


def _outputs(outcome: RunOutcome) -> dict[str, str]:
    result = outcome.result
    return {
        "result": outcome.status,
        "files_changed": str(len(result.changed_files)) if result else "0",
        "cost_used": f"{result.cost_used:.4f}" if result else f"{Decimal(0):.4f}",
        "pull_request_url": outcome.pull_request_url or "",
    }


def _write_github_outputs(outputs: dict[str, str]) -> None:
    """Append step outputs for GitHub Actions when running inside one."""
    target = os.environ.get("GITHUB_OUTPUT")
    if not target:
        return
    with open(target, "a", encoding="utf-8") as f:
        for key, value in outputs.items():
            f.write(f"{key}={value}\n")


def _print_outcome(outcome: RunOutcome) -> None:
    table = Table(title=f"Job {outcome.job_id}", border_style="cyan")
    table.add_column("Output")
    table.add_column("Value")
    for key, value in _outputs(outcome).items():
        table.add_row(key, value or "[dim]-[/]")
    console.print(table)

    color = STATUS_COLORS.get(outcome.status, "red")
    console.print(f"\n[bold {color}]Status: {outcome.status}[/]")
    if outcome.result is not None and outcome.result.error_message:
        console.print(Panel(outcome.result.error_message, title="Error", border_style="red"))


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False, end=""),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False, end=""),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
