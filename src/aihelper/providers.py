from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from pathlib import Path
import subprocess

from aihelper.config import ClaudeConfig, GeminiConfig
from aihelper.models import ProviderName
from aihelper.observability import log_event
from aihelper.process import ExecutionSpawnError, ProcessHandle, spawn_process
from aihelper.shell import CommandError, run


LOGGER = logging.getLogger("aihelper.providers")
_PRIMARY_EXIT_SECONDS = 5.0

QUOTA_SIGNATURES: tuple[str, ...] = (
    "quota exceeded",
    "exceeded your current quota",
    "status 429",
    "rate limit exceeded",
    "resource_exhausted",
)


class AllModelsFailed(ExecutionSpawnError):
    """Raised when neither the primary nor the secondary model could be run."""


class AIProvider(ABC):
    name: ProviderName

    def __init__(self, *, probe_timeout_seconds: float = 10.0) -> None:
        self._probe_timeout_seconds = probe_timeout_seconds

    @abstractmethod
    def execute(self, prompt: str, working_dir: Path) -> ProcessHandle:
        """Spawn the tool in ``working_dir`` and return as soon as it is running."""

    @abstractmethod
    def get_command(self) -> list[str]:
        """Return the argv used to run the tool (prompt is sent on stdin)."""

    @property
    @abstractmethod
    def executable(self) -> str:
        """Executable name probed for availability."""

    def is_available(self) -> bool:
        try:
            run([self.executable, "--version"], timeout_seconds=self._probe_timeout_seconds)
        except (CommandError, OSError) as exc:
            log_event(
                LOGGER,
                "provider_probe_failed",
                provider=self.name,
                error_type=type(exc).__name__,
            )
            return False
        return True


class ClaudeProvider(AIProvider):
    name: ProviderName = "claude"

    def __init__(self, config: ClaudeConfig, *, probe_timeout_seconds: float = 10.0) -> None:
        super().__init__(probe_timeout_seconds=probe_timeout_seconds)
        self._config = config

    @property
    def executable(self) -> str:
        return self._config.executable

    def get_command(self) -> list[str]:
        return [self._config.executable, "--print", "--dangerously-skip-permissions"]

    def execute(self, prompt: str, working_dir: Path) -> ProcessHandle:
        return spawn_process(self.get_command(), cwd=working_dir, prompt=prompt)


class GeminiProvider(AIProvider):
    """Gemini CLI with a secondary model for quota-limited accounts.

    The primary model is tried first. If its stderr shows a quota or rate-limit
    signature inside the grace window, it is terminated and the same prompt is
    re-run on the secondary model. Signatures seen after the window are left to
    surface as the primary's eventual non-zero exit.
    """

    name: ProviderName = "gemini"

    def __init__(self, config: GeminiConfig, *, probe_timeout_seconds: float = 10.0) -> None:
        super().__init__(probe_timeout_seconds=probe_timeout_seconds)
        self._config = config

    @property
    def executable(self) -> str:
        return self._config.executable

    def get_command(self) -> list[str]:
        return self._command_for_model(self._config.primary_model)

    def execute(self, prompt: str, working_dir: Path) -> ProcessHandle:
        primary_model = self._config.primary_model
        secondary_model = self._config.secondary_model
        try:
            primary = self._spawn(prompt=prompt, working_dir=working_dir, model=primary_model)
        except ExecutionSpawnError as primary_error:
            log_event(
                LOGGER,
                "gemini_model_fallback",
                level=logging.WARNING,
                from_model=primary_model,
                to_model=secondary_model,
                reason="spawn_failed",
            )
            try:
                return self._spawn(prompt=prompt, working_dir=working_dir, model=secondary_model)
            except ExecutionSpawnError as secondary_error:
                raise AllModelsFailed(
                    f"Gemini models {primary_model} and {secondary_model} both failed to start: "
                    f"{primary_error}; {secondary_error}",
                    argv=secondary_error.argv,
                ) from secondary_error

        signature = primary.wait_for_stderr_match(
            QUOTA_SIGNATURES, timeout=self._config.grace_seconds
        )
        if signature is None:
            return primary

        log_event(
            LOGGER,
            "gemini_model_fallback",
            level=logging.WARNING,
            from_model=primary_model,
            to_model=secondary_model,
            reason="quota",
            signature=signature,
            pid=primary.pid,
        )
        try:
            primary.terminate()
        except OSError as exc:
            log_event(
                LOGGER,
                "gemini_primary_terminate_failed",
                level=logging.WARNING,
                pid=primary.pid,
                error_type=type(exc).__name__,
            )
        try:
            primary.wait(timeout=_PRIMARY_EXIT_SECONDS)
        except subprocess.TimeoutExpired:
            log_event(
                LOGGER,
                "gemini_primary_still_running",
                level=logging.WARNING,
                pid=primary.pid,
                wait_seconds=_PRIMARY_EXIT_SECONDS,
            )
        try:
            return self._spawn(prompt=prompt, working_dir=working_dir, model=secondary_model)
        except ExecutionSpawnError as exc:
            raise AllModelsFailed(
                f"Gemini model {primary_model} hit a quota limit and {secondary_model} "
                f"failed to start: {exc}",
                argv=exc.argv,
            ) from exc

    def _spawn(self, *, prompt: str, working_dir: Path, model: str) -> ProcessHandle:
        return spawn_process(
            self._command_for_model(model), cwd=working_dir, prompt=prompt, model=model
        )

    def _command_for_model(self, model: str) -> list[str]:
        return [self._config.executable, "--model", model, "--yolo"]
