from summon.history import RunHistory


def test_record_and_recent(tmp_path):
    hist = RunHistory(tmp_path)
    for i in range(5):
        hist.record({"job_id": f"j{i}", "status": "succeeded"})

    recent = hist.get_recent(3)
    assert [e["job_id"] for e in recent] == ["j2", "j3", "j4"]
    assert hist.file_path == tmp_path / ".summon" / "logs" / "history.jsonl"


def test_empty_history(tmp_path):
    hist = RunHistory(tmp_path)
    assert hist.get_recent() == []
    assert hist.get_stats()["total_runs"] == 0


def test_stats(tmp_path):
    hist = RunHistory(tmp_path)
    hist.record({"status": "pr_created", "result": {"success": True, "cost_used": "0.25"}})
    hist.record({"status": "failed", "result": {"success": False, "cost_used": "0.75"}})
    hist.record({"status": "permission_denied", "result": None})

    s = hist.get_stats()
    assert s["total_runs"] == 3
    assert s["executed"] == 2
    assert s["success_rate"] == 50.0
    assert s["total_cost"] == 1.0
    assert s["avg_cost_per_run"] == 0.5
    assert s["statuses"] == {"pr_created": 1, "failed": 1, "permission_denied": 1}


def test_malformed_lines_are_skipped(tmp_path):
    hist = RunHistory(tmp_path)
    hist.record({"job_id": "a"})
    with open(hist.file_path, "a") as f:
        f.write("{oops\n\n")
    hist.record({"job_id": "b"})
    assert [e["job_id"] for e in hist.get_recent(10)] == ["a", "b"]
