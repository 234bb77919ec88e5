from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path
import re
import shutil

from aihelper.models import TempWorkspace
from aihelper.observability import log_event
from aihelper.shell import run


LOGGER = logging.getLogger("aihelper.workspace")

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$")
_REPO_OWNER_RE = re.compile(r"^[A-Za-z0-9](?:-?[A-Za-z0-9]){0,38}$")
_REPO_NAME_RE = re.compile(r"^[A-Za-z0-9._-]{1,100}$")
_BRANCH_FORBIDDEN_CHARS = frozenset("~^:?*[\\$`;&|<>()'\"!{}#")
_BRANCH_MAX_LEN = 255
_UNSAFE_COMPONENT_RE = re.compile(r"[^A-Za-z0-9._-]")


class WorkspaceValidationError(ValueError):
    """Raised before any external command is built from untrusted input."""


class InvalidWorkspacePath(WorkspaceValidationError):
    """Raised when a workspace path would leave the base directory."""


def validate_task_id(task_id: str) -> str:
    if not _TASK_ID_RE.fullmatch(task_id) or ".." in task_id:
        raise InvalidWorkspacePath(f"Invalid task identifier for workspace: {task_id!r}")
    return task_id


def validate_repo_full_name(repo_full_name: str) -> tuple[str, str]:
    parts = repo_full_name.split("/")
    if len(parts) != 2:
        raise WorkspaceValidationError(
            f"Repository must have the form owner/repo: {repo_full_name!r}"
        )
    owner, name = parts
    if not _REPO_OWNER_RE.fullmatch(owner):
        raise WorkspaceValidationError(f"Invalid repository owner: {owner!r}")
    if not _REPO_NAME_RE.fullmatch(name) or name in {".", ".."}:
        raise WorkspaceValidationError(f"Invalid repository name: {name!r}")
    return owner, name


def validate_branch_name(branch: str) -> str:
    """Accept a conservative subset of git ref names.

    Anything that git itself would reject, and anything with shell meaning, is
    refused here so the value never reaches an argv.
    """
    problem = _branch_name_problem(branch)
    if problem is not None:
        raise WorkspaceValidationError(f"Invalid branch name {branch!r}: {problem}")
    return branch


def _branch_name_problem(branch: str) -> str | None:
    if not branch:
        return "empty"
    if len(branch) > _BRANCH_MAX_LEN:
        return "too long"
    if branch == "@":
        return "reserved name"
    for ch in branch:
        if ch.isspace():
            return "contains whitespace"
        if ord(ch) < 0x20 or ord(ch) == 0x7F:
            return "contains control characters"
        if ch in _BRANCH_FORBIDDEN_CHARS:
            return f"contains forbidden character {ch!r}"
    if ".." in branch:
        return "contains '..'"
    if "//" in branch:
        return "contains '//'"
    if "@{" in branch:
        return "contains '@{'"
    if branch[0] in "/-.":
        return f"starts with {branch[0]!r}"
    if branch[-1] in "/.":
        return f"ends with {branch[-1]!r}"
    if branch.endswith(".lock"):
        return "ends with '.lock'"
    if any(part.startswith(".") for part in branch.split("/")):
        return "has a component starting with '.'"
    return None


def sanitize_path_component(value: str) -> str:
    sanitized = _UNSAFE_COMPONENT_RE.sub("_", value)
    if sanitized in {"", ".", ".."}:
        return "_"
    return sanitized


def workspace_path_for(base_dir: Path, task_id: str, *, now: datetime) -> Path:
    validate_task_id(task_id)
    millis = int(now.timestamp() * 1000)
    candidate = base_dir / f"{task_id}-{millis}"
    _require_inside(base_dir, candidate)
    return candidate


def _require_inside(base_dir: Path, candidate: Path) -> Path:
    resolved_base = base_dir.resolve()
    resolved = candidate.resolve()
    if resolved == resolved_base or not resolved.is_relative_to(resolved_base):
        raise InvalidWorkspacePath(f"Path {candidate} is outside workspace base {base_dir}")
    return resolved


class WorkspaceManager:
    def __init__(self, base_dir: Path, *, command_timeout_seconds: float = 300.0) -> None:
        self.base_dir = base_dir
        self._command_timeout_seconds = command_timeout_seconds

    def create_workspace(self, task_id: str) -> TempWorkspace:
        created_at = datetime.now(timezone.utc)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        stamp = created_at
        while True:
            path = workspace_path_for(self.base_dir, task_id, now=stamp)
            try:
                path.mkdir()
                break
            except FileExistsError:
                # Same task within the same millisecond; take the next slot.
                stamp += timedelta(milliseconds=1)
        log_event(LOGGER, "workspace_created", task_id=task_id, path=str(path))
        return TempWorkspace(task_id=task_id, path=path, created_at=created_at)

    def populate(self, workspace: TempWorkspace, repo_full_name: str, branch: str | None) -> Path:
        """Clone ``repo_full_name`` into the workspace and optionally check out ``branch``.

        Both inputs are validated first; invalid input raises
        WorkspaceValidationError and no command runs.
        """
        _, repo_name = validate_repo_full_name(repo_full_name)
        if branch is not None:
            validate_branch_name(branch)
        checkout_path = workspace.path / sanitize_path_component(repo_name)
        _require_inside(self.base_dir, checkout_path)

        log_event(
            LOGGER,
            "workspace_clone",
            task_id=workspace.task_id,
            repo_full_name=repo_full_name,
            checkout_path=str(checkout_path),
        )
        run(
            ["gh", "repo", "clone", repo_full_name, str(checkout_path)],
            timeout_seconds=self._command_timeout_seconds,
        )
        if branch is not None:
            log_event(
                LOGGER,
                "workspace_checkout",
                task_id=workspace.task_id,
                branch=branch,
            )
            run(
                ["git", "-C", str(checkout_path), "checkout", branch, "--"],
                timeout_seconds=self._command_timeout_seconds,
            )
        return checkout_path

    def destroy(self, path: Path) -> bool:
        """Remove a workspace directory; returns False when it was already gone."""
        resolved = _require_inside(self.base_dir, path)
        try:
            shutil.rmtree(resolved)
        except FileNotFoundError:
            log_event(LOGGER, "workspace_already_removed", path=str(path))
            return False
        log_event(LOGGER, "workspace_removed", path=str(path))
        return True
