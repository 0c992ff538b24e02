"""
SUMMON Workspace

Thin git/gh glue around the checked-out repository: a fresh branch per
job, the bot's commit identity, pushing, and opening the pull request.
The backend commits its own changes; this module never stages files.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger


class WorkspaceError(Exception):
    pass


class Workspace:
    """
    Branch-per-job view of one repository.
    """

    def __init__(
        self,
        repo_path: Path,
        job_id: str,
        branch_prefix: str = "summon",
        bot_name: str = "SUMMON",
        bot_email: str = "summon-bot@users.noreply.github.com",
    ):
        self.repo_path = repo_path.resolve()
        self.job_id = job_id
        self.branch_name = f"{branch_prefix}/{job_id}"
        self.bot_name = bot_name
        self.bot_email = bot_email
        self.base_branch: str | None = None
        self._prepared = False

    @property
    def path(self) -> Path:
        return self.repo_path

    def prepare(self) -> str:
        """Set the bot identity and switch to a fresh job branch. Returns the branch name."""
        if not (self.repo_path / ".git").exists():
            raise WorkspaceError(f"Not a git repository: {self.repo_path}")

        self.base_branch = self.current_branch()
        self._git("config", "user.name", self.bot_name)
        self._git("config", "user.email", self.bot_email)
        # -B resets a stale branch left over from an earlier run with the same id.
        self._git("checkout", "-B", self.branch_name)
        self._prepared = True
        logger.info(f"[WORKSPACE] On branch {self.branch_name} (from {self.base_branch})")
        return self.branch_name

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD", capture=True).strip()

    def has_commits_ahead(self) -> bool:
        """True when the job branch carries commits the base branch does not."""
        if not self.base_branch:
            return False
        out = self._git("rev-list", "--count", f"{self.base_branch}..{self.branch_name}", capture=True, check=False)
        return out.strip().isdigit() and int(out.strip()) > 0

    def push(self, force: bool = True) -> None:
        """Push the job branch. Force push by default, the branch belongs to this job."""
        if not self._prepared:
            raise WorkspaceError("Workspace.push() called before prepare()")
        cmd = ["push", "-u", "origin", self.branch_name]
        if force:
            cmd.insert(1, "--force")

        self._git(*cmd)
        logger.info(f"[WORKSPACE] Pushed (force={force}): {self.branch_name}")

    def create_pull_request(self, title: str, body: str, base: str | None = None) -> str:
        """Create a GitHub PR via gh CLI. Returns its URL."""
        cmd = [
            "gh", "pr", "create",
            "--title", title,
            "--body", body,
            "--head", self.branch_name,
        ]
        if base or self.base_branch:
            cmd += ["--base", base or self.base_branch]

        result = self._exec(cmd, cwd=self.repo_path)
        if result.returncode != 0:
            raise WorkspaceError(f"PR creation failed: {result.stderr.strip()}")

        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        logger.info(f"[WORKSPACE] Pull request created: {url}")
        return url

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return self._run_cmd(["git", *args], cwd=self.repo_path, check=check, capture=capture)

    @classmethod
    def _run_cmd(cls, cmd: list[str], cwd: Path, check: bool = True, capture: bool = False) -> str:
        result = cls._exec(cmd, cwd)
        if check and result.returncode != 0:
            raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout if capture else ""

    @staticmethod
    def _exec(cmd: list[str], cwd: Path) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=60)
        except subprocess.TimeoutExpired as e:
            raise WorkspaceError(f"{cmd[0]} timed out after {e.timeout}s: {' '.join(cmd[:3])}") from e
        except OSError as e:
            # Missing binary (git or gh not on PATH) or an unusable cwd.
            raise WorkspaceError(f"Could not run {cmd[0]}: {e}") from e
