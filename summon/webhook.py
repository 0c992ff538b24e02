"""
Typed view of the webhook payload that starts a job.

Only the handful of fields SUMMON reads are modelled; everything else in
the payload is ignored.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from summon.instruction import DEFAULT_TRIGGER, trigger_pattern


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class User(_Payload):
    login: str
    id: int = 0
    type: str = "User"


class Comment(_Payload):
    id: int
    body: str = ""
    user: User | None = None


class Issue(_Payload):
    number: int
    title: str = ""
    body: str | None = ""
    user: User | None = None


class PullRequest(_Payload):
    number: int
    title: str = ""
    body: str | None = ""


class Repository(_Payload):
    name: str = ""
    full_name: str = ""
    default_branch: str = "main"


class WebhookEvent(_Payload):
    action: str
    sender: User
    comment: Comment | None = None
    issue: Issue | None = None
    pull_request: PullRequest | None = None
    repository: Repository | None = None

    def trigger_text(self) -> str:
        """The text that may carry the trigger: the comment, else the issue body."""
        if self.comment is not None:
            return self.comment.body
        if self.issue is not None:
            return self.issue.body or ""
        return ""

    def description(self) -> str:
        """Issue or PR description, used to mine extra context."""
        if self.issue is not None:
            return self.issue.body or ""
        if self.pull_request is not None:
            return self.pull_request.body or ""
        return ""

    @property
    def thread_number(self) -> int | None:
        if self.issue is not None:
            return self.issue.number
        if self.pull_request is not None:
            return self.pull_request.number
        return None


def should_process_event(event: WebhookEvent, trigger: str = DEFAULT_TRIGGER) -> bool:
    """New comments and newly opened issues qualify when they mention the trigger."""
    if event.action == "created" and event.comment is not None:
        text = event.comment.body
    elif event.action == "opened" and event.issue is not None:
        text = event.issue.body or ""
    else:
        return False
    return trigger_pattern(trigger).search(text) is not None


def load_event(path: Path) -> WebhookEvent:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return WebhookEvent.model_validate(data)
