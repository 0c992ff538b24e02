import json

from summon.webhook import WebhookEvent, load_event, should_process_event


def _comment_event(body: str, action: str = "created") -> WebhookEvent:
    return WebhookEvent.model_validate({
        "action": action,
        "sender": {"login": "alice", "id": 1},
        "comment": {"id": 99, "body": body, "user": {"login": "alice"}},
        "issue": {"number": 7, "title": "Bug", "body": "See `src/app.py`"},
        "repository": {"name": "demo", "full_name": "acme/demo"},
        "installation": {"id": 123},
    })


def test_comment_with_trigger_is_processed():
    event = _comment_event("@agent fix it")
    assert should_process_event(event) is True
    assert event.trigger_text() == "@agent fix it"
    assert event.description() == "See `src/app.py`"
    assert event.thread_number == 7


def test_comment_without_trigger_is_ignored():
    assert should_process_event(_comment_event("looks good to me")) is False


def test_edited_comment_is_ignored():
    assert should_process_event(_comment_event("@agent fix it", action="edited")) is False


def test_opened_issue_with_trigger():
    event = WebhookEvent.model_validate({
        "action": "opened",
        "sender": {"login": "bob"},
        "issue": {"number": 3, "title": "Typo", "body": "@agent fix the typo in README"},
    })
    assert should_process_event(event) is True
    assert event.trigger_text() == "@agent fix the typo in README"


def test_pull_request_thread_number():
    event = WebhookEvent.model_validate({
        "action": "created",
        "sender": {"login": "bob"},
        "pull_request": {"number": 12, "body": None},
    })
    assert event.thread_number == 12
    assert event.description() == ""


def test_load_event(tmp_path):
    path = tmp_path / "event.json"
    path.write_text(json.dumps({
        "action": "created",
        "sender": {"login": "alice"},
        "comment": {"id": 1, "body": "@agent go"},
    }))
    event = load_event(path)
    assert event.sender.login == "alice"
    assert event.comment.body == "@agent go"
