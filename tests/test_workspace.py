import subprocess

import pytest

from summon.workspace import Workspace, WorkspaceError


class FakeRun:
    def __init__(self, stdout: str = "main\n", fail_on: str | None = None):
        self.calls: list[list[str]] = []
        self.stdout = stdout
        self.fail_on = fail_on

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if self.fail_on and self.fail_on in cmd:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="fatal: nope")
        return subprocess.CompletedProcess(cmd, 0, stdout=self.stdout, stderr="")


@pytest.fixture
def repo(tmp_path):
    (tmp_path / ".git").mkdir()
    return tmp_path


def test_prepare_sets_identity_and_branch(repo, monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr("summon.workspace.subprocess.run", fake)

    ws = Workspace(repo, "job1")
    assert ws.prepare() == "summon/job1"

    assert ws.base_branch == "main"
    assert ["git", "config", "user.name", "SUMMON"] in fake.calls
    assert ["git", "checkout", "-B", "summon/job1"] in fake.calls


def test_prepare_requires_git_repo(tmp_path):
    with pytest.raises(WorkspaceError):
        Workspace(tmp_path, "job1").prepare()


def test_git_failure_raises(repo, monkeypatch):
    monkeypatch.setattr("summon.workspace.subprocess.run", FakeRun(fail_on="checkout"))
    with pytest.raises(WorkspaceError, match="Git failed"):
        Workspace(repo, "job1").prepare()


def test_push_requires_prepare(repo):
    with pytest.raises(WorkspaceError):
        Workspace(repo, "job1").push()


def test_push_and_pull_request(repo, monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr("summon.workspace.subprocess.run", fake)
    ws = Workspace(repo, "job1", branch_prefix="bot")
    ws.prepare()

    fake.stdout = "Creating pull request...\nhttps://github.com/acme/demo/pull/5\n"
    ws.push()
    url = ws.create_pull_request("SUMMON: fix", "body")

    assert ["git", "push", "--force", "-u", "origin", "bot/job1"] in fake.calls
    pr_cmd = fake.calls[-1]
    assert pr_cmd[:3] == ["gh", "pr", "create"]
    assert pr_cmd[pr_cmd.index("--head") + 1] == "bot/job1"
    assert pr_cmd[pr_cmd.index("--base") + 1] == "main"
    assert url == "https://github.com/acme/demo/pull/5"


def test_pull_request_failure(repo, monkeypatch):
    monkeypatch.setattr("summon.workspace.subprocess.run", FakeRun(fail_on="pr"))
    with pytest.raises(WorkspaceError, match="PR creation failed"):
        Workspace(repo, "job1").create_pull_request("t", "b")


def test_has_commits_ahead(repo, monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr("summon.workspace.subprocess.run", fake)
    ws = Workspace(repo, "job1")
    assert ws.has_commits_ahead() is False

    ws.prepare()
    fake.stdout = "2\n"
    assert ws.has_commits_ahead() is True
    assert fake.calls[-1] == ["git", "rev-list", "--count", "main..summon/job1"]

    fake.stdout = "0\n"
    assert ws.has_commits_ahead() is False


def test_missing_binary_raises_workspace_error(repo, monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr("summon.workspace.subprocess.run", missing)
    ws = Workspace(repo, "job1")

    with pytest.raises(WorkspaceError, match="Could not run git"):
        ws.prepare()
    with pytest.raises(WorkspaceError, match="Could not run gh"):
        ws.create_pull_request("t", "b")


def test_command_timeout_raises_workspace_error(repo, monkeypatch):
    def slow(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr("summon.workspace.subprocess.run", slow)
    with pytest.raises(WorkspaceError, match="timed out"):
        Workspace(repo, "job1").prepare()
