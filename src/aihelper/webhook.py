from __future__ import annotations

import hashlib
import hmac
import logging
import re
from typing import cast

from aihelper.config import WebhookConfig
from aihelper.models import (
    DispatchResult,
    IssueEvent,
    PullRequestEvent,
    Repository,
    ReviewCommentEvent,
    TaskStarted,
)
from aihelper.observability import log_event
from aihelper.orchestrator import TaskOrchestrator
from aihelper.process import ExecutionSpawnError
from aihelper.provider_selection import NoProviderAvailable
from aihelper.shell import CommandError
from aihelper.workspace import WorkspaceValidationError


LOGGER = logging.getLogger("aihelper.webhook")
_SIGNATURE_PREFIX = "sha256="
_PULL_REQUEST_ACTIONS = frozenset({"opened", "synchronize"})

# Errors that mean "this delivery could not start a task", reported as failed.
_START_ERRORS: tuple[type[Exception], ...] = (
    WorkspaceValidationError,
    CommandError,
    NoProviderAvailable,
    ExecutionSpawnError,
)


class WebhookPayloadError(ValueError):
    """Raised when a delivery is missing fields its event type requires."""


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    if not secret or not signature_header:
        return False
    if not signature_header.startswith(_SIGNATURE_PREFIX):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[len(_SIGNATURE_PREFIX) :], expected)


def mentions(text: str, mention: str) -> bool:
    pattern = re.compile(rf"(?:^|[^\w]){re.escape(mention)}(?!\w)", re.IGNORECASE)
    return pattern.search(text) is not None


def parse_repository(payload: dict[str, object]) -> Repository:
    repo_obj = _require_object(payload, "repository")
    full_name = _require_str(repo_obj, "full_name", where="repository")
    return Repository(
        full_name=full_name,
        name=_as_string(repo_obj.get("name")) or full_name.rsplit("/", 1)[-1],
        default_branch=_as_string(repo_obj.get("default_branch")) or "main",
    )


def parse_pull_request_event(payload: dict[str, object]) -> PullRequestEvent:
    pr_obj = _require_object(payload, "pull_request")
    head = _require_object(pr_obj, "head", where="pull_request")
    base = _require_object(pr_obj, "base", where="pull_request")
    return PullRequestEvent(
        action=_as_string(payload.get("action")),
        repository=parse_repository(payload),
        number=_require_int(pr_obj, "number", where="pull_request"),
        title=_as_string(pr_obj.get("title")),
        html_url=_as_string(pr_obj.get("html_url")),
        author_login=_login_of(pr_obj.get("user")),
        base_ref=_as_string(base.get("ref")),
        head_ref=_require_str(head, "ref", where="pull_request.head"),
        head_sha=_as_string(head.get("sha")),
    )


def parse_issue_event(payload: dict[str, object]) -> IssueEvent:
    issue_obj = _require_object(payload, "issue")
    labels: list[str] = []
    raw_labels = issue_obj.get("labels")
    if isinstance(raw_labels, list):
        for entry in raw_labels:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str):
                labels.append(name)

    label_obj = _as_object_dict(payload.get("label"))
    label_added = _as_string(label_obj.get("name")) if label_obj is not None else None
    return IssueEvent(
        action=_as_string(payload.get("action")),
        repository=parse_repository(payload),
        number=_require_int(issue_obj, "number", where="issue"),
        title=_as_string(issue_obj.get("title")),
        body=_as_string(issue_obj.get("body")),
        html_url=_as_string(issue_obj.get("html_url")),
        author_login=_login_of(issue_obj.get("user")),
        labels=tuple(labels),
        label_added=label_added or None,
    )


def parse_review_comment_event(event_name: str, payload: dict[str, object]) -> ReviewCommentEvent:
    """Parse either a single review comment or a submitted review.

    Both arrive with the pull request attached; only the comment form carries
    a file path and diff hunk.
    """
    pr_obj = _require_object(payload, "pull_request")
    head = _require_object(pr_obj, "head", where="pull_request")
    is_review = event_name == "pull_request_review"
    source_key = "review" if is_review else "comment"
    source = _require_object(payload, source_key)
    return ReviewCommentEvent(
        action=_as_string(payload.get("action")),
        repository=parse_repository(payload),
        pr_number=_require_int(pr_obj, "number", where="pull_request"),
        pr_url=_as_string(pr_obj.get("html_url")),
        head_ref=_require_str(head, "ref", where="pull_request.head"),
        author_login=_login_of(source.get("user")),
        body=_as_string(source.get("body")),
        file_path=None if is_review else _as_optional_str(source.get("path")),
        diff_hunk=None if is_review else _as_optional_str(source.get("diff_hunk")),
        is_review=is_review,
    )


def dispatch_event(
    orchestrator: TaskOrchestrator,
    event_name: str,
    payload: dict[str, object],
    *,
    settings: WebhookConfig,
) -> DispatchResult:
    """Route one webhook delivery to the matching orchestrator entry point.

    Deliveries that do not qualify are ``ignored``. Errors raised before the AI
    process is running are reported as ``failed``; malformed payloads raise
    WebhookPayloadError.
    """
    action = _as_string(payload.get("action"))
    try:
        result = _route(orchestrator, event_name, action, payload, settings=settings)
    except _START_ERRORS as exc:
        result = DispatchResult(status="failed", message=str(exc))
        log_event(
            LOGGER,
            "webhook_dispatch_failed",
            level=logging.ERROR,
            github_event=event_name,
            action=action,
            error_type=type(exc).__name__,
        )

    log_event(
        LOGGER,
        "webhook_event_dispatched",
        github_event=event_name,
        action=action,
        status=result.status,
        task_id=result.task.task_id if result.task is not None else None,
    )
    return result


def _route(
    orchestrator: TaskOrchestrator,
    event_name: str,
    action: str,
    payload: dict[str, object],
    *,
    settings: WebhookConfig,
) -> DispatchResult:
    if event_name == "pull_request":
        if action not in _PULL_REQUEST_ACTIONS:
            return _ignored(f"pull_request action {action!r} does not trigger a review")
        pr_event = parse_pull_request_event(payload)
        return _started(
            orchestrator.start_pull_request_review(pr_event),
            f"Started review of pull request #{pr_event.number}",
        )

    if event_name == "issues":
        if action not in {"opened", "labeled"}:
            return _ignored(f"issues action {action!r} does not trigger resolution")
        issue_event = parse_issue_event(payload)
        if action == "opened" and not mentions(issue_event.body, settings.mention):
            return _ignored(f"Issue #{issue_event.number} does not mention {settings.mention}")
        if action == "labeled" and issue_event.label_added != settings.issue_label:
            return _ignored(
                f"Label {issue_event.label_added!r} on issue #{issue_event.number} "
                "is not the trigger label"
            )
        return _started(
            orchestrator.start_issue_resolution(issue_event),
            f"Started resolution of issue #{issue_event.number}",
        )

    if event_name in {"pull_request_review_comment", "pull_request_review"}:
        expected_action = "submitted" if event_name == "pull_request_review" else "created"
        if action != expected_action:
            return _ignored(f"{event_name} action {action!r} is not handled")
        review_event = parse_review_comment_event(event_name, payload)
        if not mentions(review_event.body, settings.mention):
            return _ignored(
                f"Feedback on pull request #{review_event.pr_number} "
                f"does not mention {settings.mention}"
            )
        return _started(
            orchestrator.start_review_comment_response(review_event),
            f"Started response to feedback on pull request #{review_event.pr_number}",
        )

    return _ignored(f"Event {event_name!r} is not handled")


def _started(task: TaskStarted, message: str) -> DispatchResult:
    return DispatchResult(status="started", message=message, task=task)


def _ignored(message: str) -> DispatchResult:
    return DispatchResult(status="ignored", message=message)


def _require_object(
    data: dict[str, object], key: str, *, where: str | None = None
) -> dict[str, object]:
    value = _as_object_dict(data.get(key))
    if value is None:
        raise WebhookPayloadError(f"Webhook payload is missing object {_field_name(key, where)}")
    return value


def _require_str(data: dict[str, object], key: str, *, where: str | None = None) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise WebhookPayloadError(f"Webhook payload is missing string {_field_name(key, where)}")
    return value


def _require_int(data: dict[str, object], key: str, *, where: str | None = None) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise WebhookPayloadError(
            f"Webhook payload is missing integer {_field_name(key, where)}"
        )
    return value


def _field_name(key: str, where: str | None) -> str:
    return f"{where}.{key}" if where else key


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _login_of(user: object) -> str:
    user_obj = _as_object_dict(user)
    if user_obj is None:
        return ""
    login = user_obj.get("login")
    if not isinstance(login, str):
        return ""
    return login.strip()
