from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from aihelper.supervisor import ProcessSupervisor


ProviderIdentity = Literal["claude", "gemini", "auto"]
ProviderName = Literal["claude", "gemini"]
TaskKind = Literal["pull_request_review", "issue_resolution", "review_comment_response"]
DispatchStatus = Literal["started", "ignored", "failed"]
SupervisorState = Literal["spawned", "running", "completed", "failed", "timed_out", "cleaned_up"]
StreamName = Literal["stdout", "stderr"]


@dataclass(frozen=True)
class Repository:
    full_name: str
    name: str
    default_branch: str


@dataclass(frozen=True)
class PullRequestEvent:
    action: str
    repository: Repository
    number: int
    title: str
    html_url: str
    author_login: str
    base_ref: str
    head_ref: str
    head_sha: str


@dataclass(frozen=True)
class IssueEvent:
    action: str
    repository: Repository
    number: int
    title: str
    body: str
    html_url: str
    author_login: str
    labels: tuple[str, ...]
    label_added: str | None = None


@dataclass(frozen=True)
class ReviewCommentEvent:
    action: str
    repository: Repository
    pr_number: int
    pr_url: str
    head_ref: str
    author_login: str
    body: str
    file_path: str | None = None
    diff_hunk: str | None = None
    is_review: bool = False


@dataclass(frozen=True)
class ExecutionRequest:
    prompt: str
    working_dir: Path


@dataclass(frozen=True)
class TempWorkspace:
    task_id: str
    path: Path
    created_at: datetime


@dataclass(frozen=True)
class TaskStarted:
    task_id: str
    run_id: str
    kind: TaskKind
    provider: ProviderName
    model: str | None
    pid: int
    workspace_path: Path
    supervisor: ProcessSupervisor


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    message: str
    task: TaskStarted | None = None

    def to_json_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"status": self.status, "message": self.message}
        if self.task is not None:
            payload["task_id"] = self.task.task_id
            payload["run_id"] = self.task.run_id
            payload["kind"] = self.task.kind
            payload["provider"] = self.task.provider
            payload["model"] = self.task.model
            payload["pid"] = self.task.pid
            payload["workspace_path"] = str(self.task.workspace_path)
        return payload
