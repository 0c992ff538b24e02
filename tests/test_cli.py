import json

from typer.testing import CliRunner
from summon.cli import app
from summon import __version__
from summon.engine import ExecutionResult
from summon.history import RunHistory

runner = CliRunner()


def _event_file(tmp_path, body: str):
    path = tmp_path / "event.json"
    path.write_text(json.dumps({
        "action": "created",
        "sender": {"login": "alice"},
        "comment": {"id": 1, "body": body},
        "issue": {"number": 2, "body": ""},
    }))
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"SUMMON v{__version__}" in result.stdout


def test_explain_dry_run(tmp_path, monkeypatch):
    monkeypatch.setenv("DEEPSEEK_API_KEY", "k")
    result = runner.invoke(app, ["explain", "@agent fix typo in README", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "deepseek" in result.stdout
    assert "simple" in result.stdout
    assert "yes" in result.stdout


def test_explain_without_trigger(tmp_path):
    result = runner.invoke(app, ["explain", "just a comment", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "Nothing would run" in result.stdout


def test_explain_without_backends(tmp_path):
    result = runner.invoke(app, ["explain", "@agent fix it", "--repo", str(tmp_path)])
    assert result.exit_code == 1


def test_run_skips_event_without_trigger(tmp_path, monkeypatch):
    outputs = tmp_path / "outputs.txt"
    monkeypatch.setenv("GITHUB_OUTPUT", str(outputs))

    result = runner.invoke(app, [
        "run", "--event", str(_event_file(tmp_path, "thanks!")), "--repo", str(tmp_path),
    ])

    assert result.exit_code == 0
    lines = outputs.read_text().splitlines()
    assert "result=skipped" in lines
    assert "files_changed=0" in lines


def test_run_without_backends_fails(tmp_path, monkeypatch):
    outputs = tmp_path / "outputs.txt"
    monkeypatch.setenv("GITHUB_OUTPUT", str(outputs))

    result = runner.invoke(app, [
        "run", "--event", str(_event_file(tmp_path, "@agent fix it")), "--repo", str(tmp_path),
    ])

    assert result.exit_code == 1
    assert "result=error" in outputs.read_text()


def test_run_missing_event_file(tmp_path):
    result = runner.invoke(app, ["run", "--event", str(tmp_path / "nope.json"), "--repo", str(tmp_path)])
    assert result.exit_code == 1


def test_init_creates_state_dir(tmp_path):
    result = runner.invoke(app, ["init", str(tmp_path)])
    assert result.exit_code == 0
    assert (tmp_path / ".summon" / "config.yaml").exists()
    assert ".summon/ledger.json" in (tmp_path / ".gitignore").read_text()


def test_history_empty(tmp_path):
    result = runner.invoke(app, ["history", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "No history yet" in result.stdout


def test_status(tmp_path):
    result = runner.invoke(app, ["status", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "API Keys" in result.stdout


def _record_run(tmp_path, state_dir: str, job_id: str, **result):
    data = dict(success=True, changed_files=["app.py"], cost_used="0.05", backend_used="deepseek")
    data.update(result)
    RunHistory(tmp_path, state_dir).record({
        "job_id": job_id,
        "status": "succeeded" if data["success"] else "failed",
        "timestamp": "2026-01-01T00:00:00+00:00",
        "result": ExecutionResult(**data).model_dump(mode="json", exclude={"raw_output"}),
    })


def test_history_uses_configured_state_dir(tmp_path):
    (tmp_path / ".summon").mkdir()
    (tmp_path / ".summon" / "config.yaml").write_text("workspace:\n  state_dir: .bot\n")
    _record_run(tmp_path, ".bot", "job-custom")

    result = runner.invoke(app, ["history", "--summary", "--repo", str(tmp_path)])

    assert result.exit_code == 0
    assert "$0.0500" in result.stdout


def test_history_summary(tmp_path):
    _record_run(tmp_path, ".summon", "job1")
    _record_run(tmp_path, ".summon", "job2", success=False, changed_files=[], cost_used="0.10")
    RunHistory(tmp_path).record({"job_id": "job3", "status": "permission_denied", "result": None})

    result = runner.invoke(app, ["history", "--summary", "--repo", str(tmp_path)])

    assert result.exit_code == 0
    assert "session summary" in result.stdout
    assert "$0.1500" in result.stdout
