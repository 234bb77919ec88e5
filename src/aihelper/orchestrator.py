from __future__ import annotations

import logging
from pathlib import Path
import threading

from aihelper.config import AIConfig
from aihelper.models import (
    ExecutionRequest,
    IssueEvent,
    PullRequestEvent,
    ReviewCommentEvent,
    TaskKind,
    TaskStarted,
)
from aihelper.observability import log_event
from aihelper.prompts import (
    build_issue_prompt,
    build_review_prompt,
    build_review_response_prompt,
)
from aihelper.provider_selection import ProviderSelector
from aihelper.supervisor import ProcessSupervisor, SignalListenerRegistry
from aihelper.workspace import WorkspaceManager


LOGGER = logging.getLogger("aihelper.orchestrator")


class TaskOrchestrator:
    """Starts one supervised AI run per qualifying webhook event.

    Every ``start_*`` call returns once the AI process has been spawned. Failures
    before that point (validation, clone, provider selection, spawn) remove the
    workspace and propagate; anything later is handled by the supervisor.
    """

    def __init__(
        self,
        *,
        config: AIConfig,
        selector: ProviderSelector,
        workspaces: WorkspaceManager,
        signal_registry: SignalListenerRegistry,
    ) -> None:
        self._config = config
        self._selector = selector
        self._workspaces = workspaces
        self._signal_registry = signal_registry
        self._lock = threading.Lock()
        self._supervisors: dict[str, ProcessSupervisor] = {}

    def start_pull_request_review(self, event: PullRequestEvent) -> TaskStarted:
        return self._launch(
            task_id=f"pr-{event.number}",
            kind="pull_request_review",
            prompt=build_review_prompt(event=event),
            repo_full_name=None,
            branch=None,
        )

    def start_issue_resolution(self, event: IssueEvent) -> TaskStarted:
        return self._launch(
            task_id=f"issue-{event.number}",
            kind="issue_resolution",
            prompt=build_issue_prompt(event=event),
            repo_full_name=event.repository.full_name,
            branch=None,
        )

    def start_review_comment_response(self, event: ReviewCommentEvent) -> TaskStarted:
        return self._launch(
            task_id=f"review-{event.pr_number}",
            kind="review_comment_response",
            prompt=build_review_response_prompt(event=event),
            repo_full_name=event.repository.full_name,
            branch=event.head_ref,
        )

    def active_tasks(self) -> tuple[ProcessSupervisor, ...]:
        with self._lock:
            self._prune_finished_locked()
            return tuple(self._supervisors.values())

    def _launch(
        self,
        *,
        task_id: str,
        kind: TaskKind,
        prompt: str,
        repo_full_name: str | None,
        branch: str | None,
    ) -> TaskStarted:
        log_event(LOGGER, "task_requested", task_id=task_id, kind=kind)
        workspace = self._workspaces.create_workspace(task_id)
        try:
            working_dir = workspace.path
            if repo_full_name is not None:
                working_dir = self._workspaces.populate(workspace, repo_full_name, branch)
            request = ExecutionRequest(prompt=prompt, working_dir=working_dir)
            provider = self._selector.resolve(
                self._config.preferred_provider,
                fallback_enabled=self._config.fallback_enabled,
            )
            handle = provider.execute(request.prompt, request.working_dir)
        except Exception as exc:
            log_event(
                LOGGER,
                "task_start_failed",
                level=logging.ERROR,
                task_id=task_id,
                kind=kind,
                error_type=type(exc).__name__,
            )
            self._discard_workspace(task_id, workspace.path)
            raise

        run_id = workspace.path.name
        supervisor = ProcessSupervisor(
            task_id=run_id,
            handle=handle,
            signal_registry=self._signal_registry,
            timeout_seconds=self._config.task_timeout_seconds,
            workspace=workspace,
            workspaces=self._workspaces,
        )
        with self._lock:
            self._prune_finished_locked()
            self._supervisors[run_id] = supervisor
        supervisor.start()

        log_event(
            LOGGER,
            "task_started",
            task_id=task_id,
            run_id=run_id,
            kind=kind,
            provider=provider.name,
            model=handle.model,
            pid=handle.pid,
        )
        return TaskStarted(
            task_id=task_id,
            run_id=run_id,
            kind=kind,
            provider=provider.name,
            model=handle.model,
            pid=handle.pid,
            workspace_path=request.working_dir,
            supervisor=supervisor,
        )

    def _discard_workspace(self, task_id: str, path: Path) -> None:
        # The start error is what callers act on; a failed removal is only logged.
        try:
            self._workspaces.destroy(path)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "workspace_cleanup_failed",
                level=logging.WARNING,
                task_id=task_id,
                path=str(path),
                error_type=type(exc).__name__,
            )

    def _prune_finished_locked(self) -> None:
        for key in [key for key, sup in self._supervisors.items() if sup.is_cleaned_up]:
            del self._supervisors[key]
