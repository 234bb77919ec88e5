from __future__ import annotations

import atexit
from collections.abc import Callable
import logging
import signal
import threading
from types import FrameType

from aihelper.models import StreamName, SupervisorState, TempWorkspace
from aihelper.observability import log_event
from aihelper.process import ProcessHandle
from aihelper.shell import _preview
from aihelper.workspace import WorkspaceManager


LOGGER = logging.getLogger("aihelper.supervisor")
_OUTPUT_PREVIEW_LIMIT = 2000
_OUTPUT_DRAIN_SECONDS = 1.0

SignalCallback = Callable[[], None]


class CleanupFailure(RuntimeError):
    """A cleanup step that failed. Recorded and logged, never raised to callers."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"cleanup step {step} failed: {cause}")
        self.step = step
        self.cause = cause


class RunOnce:
    """One-shot token: ``claim`` returns True for exactly one caller.

    Backed by a lock that is acquired without blocking and never released, so
    the claim is atomic across threads and safe to call from a signal handler
    that interrupts another claim on the same thread.
    """

    def __init__(self) -> None:
        self._token = threading.Lock()

    def claim(self) -> bool:
        return self._token.acquire(blocking=False)

    @property
    def claimed(self) -> bool:
        return self._token.locked()


class SignalListenerRegistry:
    """Process-wide SIGINT/SIGTERM fan-out keyed by task id.

    Handlers are installed once (main thread only) and stay installed; tasks add
    and remove their callbacks, so the registry holds only outstanding tasks. An
    ``atexit`` hook runs whatever is still registered at interpreter exit. After
    the callbacks run, the handler that was installed before us is chained.
    """

    def __init__(
        self, signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)
    ) -> None:
        self._signals = signals
        self._lock = threading.RLock()
        self._listeners: dict[str, SignalCallback] = {}
        self._previous: dict[int, object] = {}
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> bool:
        with self._lock:
            if self._installed:
                return True
            if threading.current_thread() is not threading.main_thread():
                log_event(LOGGER, "signal_handlers_deferred", level=logging.WARNING)
                return False
            for signum in self._signals:
                self._previous[signum] = signal.getsignal(signum)
                signal.signal(signum, self._handle_signal)
            atexit.register(self.run_all, reason="exit")
            self._installed = True
        log_event(LOGGER, "signal_handlers_installed", signal_count=len(self._signals))
        return True

    def add(self, task_id: str, callback: SignalCallback) -> None:
        with self._lock:
            self._listeners[task_id] = callback
        if not self._installed:
            self.install()

    def remove(self, task_id: str) -> bool:
        with self._lock:
            return self._listeners.pop(task_id, None) is not None

    def task_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._listeners)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def run_all(self, *, reason: str) -> int:
        with self._lock:
            snapshot = list(self._listeners.items())
        for task_id, callback in snapshot:
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "signal_listener_failed",
                    level=logging.ERROR,
                    task_id=task_id,
                    reason=reason,
                    error_type=type(exc).__name__,
                )
        return len(snapshot)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        log_event(
            LOGGER,
            "host_signal_received",
            level=logging.WARNING,
            signal=name,
            outstanding_tasks=len(self),
        )
        self.run_all(reason=name)
        previous = self._previous.get(signum)
        if callable(previous):
            previous(signum, frame)
            return
        if previous == signal.SIG_IGN:
            return
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        raise SystemExit(128 + signum)


class ProcessSupervisor:
    """Owns one spawned AI process until it is cleaned up.

    ``running`` moves to exactly one outcome (``completed``, ``failed`` or
    ``timed_out``, first one wins) and every path ends in ``cleaned_up``. Cleanup
    runs at most once no matter how many of timer, process exit, process error
    and host signal fire.
    """

    def __init__(
        self,
        *,
        task_id: str,
        handle: ProcessHandle,
        signal_registry: SignalListenerRegistry,
        timeout_seconds: float,
        workspace: TempWorkspace | None = None,
        workspaces: WorkspaceManager | None = None,
    ) -> None:
        if workspace is not None and workspaces is None:
            raise ValueError("workspaces is required when a workspace is supervised")
        self.task_id = task_id
        self._handle = handle
        self._registry = signal_registry
        self._timeout_seconds = timeout_seconds
        self._workspace = workspace
        self._workspaces = workspaces
        self._state: SupervisorState = "spawned"
        self._outcome: SupervisorState | None = None
        self._state_lock = threading.RLock()
        self._cleanup_once = RunOnce()
        self._done = threading.Event()
        self._timer: threading.Timer | None = None
        self.exit_code: int | None = None
        self.cleanup_failures: list[CleanupFailure] = []

    @property
    def state(self) -> SupervisorState:
        with self._state_lock:
            return self._state

    @property
    def outcome(self) -> SupervisorState | None:
        with self._state_lock:
            return self._outcome

    @property
    def pid(self) -> int:
        return self._handle.pid

    @property
    def is_cleaned_up(self) -> bool:
        return self._done.is_set()

    def start(self) -> None:
        with self._state_lock:
            if self._state != "spawned":
                raise RuntimeError(f"Supervisor for {self.task_id} already started")
            self._state = "running"

        self._handle.add_output_listener(self._forward_output)
        self._registry.add(self.task_id, self._on_host_signal)

        timer = threading.Timer(self._timeout_seconds, self._on_timeout)
        timer.name = f"aihelper-timeout-{self.task_id}"
        timer.daemon = True
        self._timer = timer
        timer.start()

        threading.Thread(
            target=self._wait_for_exit,
            name=f"aihelper-wait-{self.task_id}",
            daemon=True,
        ).start()
        log_event(
            LOGGER,
            "supervisor_started",
            task_id=self.task_id,
            pid=self._handle.pid,
            timeout_seconds=self._timeout_seconds,
        )

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def cleanup(self, *, reason: str = "requested") -> bool:
        """Release the process, workspace and signal listener once.

        Returns True for the call that performed the cleanup and False for every
        other call.
        """
        if not self._cleanup_once.claim():
            return False
        try:
            if self._timer is not None:
                self._timer.cancel()
            terminated = self._terminate_process()
            removed = self._remove_workspace()
            self._registry.remove(self.task_id)
        finally:
            with self._state_lock:
                self._state = "cleaned_up"
            self._done.set()
        log_event(
            LOGGER,
            "supervisor_cleaned_up",
            task_id=self.task_id,
            reason=reason,
            outcome=self.outcome,
            terminated=terminated,
            workspace_removed=removed,
            failure_count=len(self.cleanup_failures),
        )
        return True

    def _terminate_process(self) -> bool:
        try:
            return self._handle.terminate()
        except OSError as exc:
            self._record_failure("terminate", exc)
            return False

    def _remove_workspace(self) -> bool:
        if self._workspace is None or self._workspaces is None:
            return False
        try:
            return self._workspaces.destroy(self._workspace.path)
        except Exception as exc:  # noqa: BLE001
            self._record_failure("remove_workspace", exc)
            return False

    def _record_failure(self, step: str, exc: BaseException) -> None:
        failure = CleanupFailure(step, exc)
        self.cleanup_failures.append(failure)
        log_event(
            LOGGER,
            "supervisor_cleanup_failed",
            level=logging.WARNING,
            task_id=self.task_id,
            step=step,
            error_type=type(exc).__name__,
        )

    def _set_outcome(self, outcome: SupervisorState) -> bool:
        with self._state_lock:
            if self._outcome is not None or self._cleanup_once.claimed:
                return False
            self._outcome = outcome
            self._state = outcome
        return True

    def _wait_for_exit(self) -> None:
        try:
            exit_code = self._handle.wait()
        except Exception as exc:  # noqa: BLE001
            if self._set_outcome("failed"):
                log_event(
                    LOGGER,
                    "supervisor_outcome",
                    level=logging.ERROR,
                    task_id=self.task_id,
                    outcome="failed",
                    error_type=type(exc).__name__,
                )
            self.cleanup(reason="process_error")
            return

        self.exit_code = exit_code
        outcome: SupervisorState = "completed" if exit_code == 0 else "failed"
        if self._set_outcome(outcome):
            log_event(
                LOGGER,
                "supervisor_outcome",
                level=logging.INFO if exit_code == 0 else logging.WARNING,
                task_id=self.task_id,
                outcome=outcome,
                exit_code=exit_code,
            )
        self._handle.join_output(_OUTPUT_DRAIN_SECONDS)
        self.cleanup(reason="process_exit")

    def _on_timeout(self) -> None:
        if self._set_outcome("timed_out"):
            log_event(
                LOGGER,
                "supervisor_outcome",
                level=logging.WARNING,
                task_id=self.task_id,
                outcome="timed_out",
                timeout_seconds=self._timeout_seconds,
            )
        self.cleanup(reason="timeout")

    def _on_host_signal(self) -> None:
        self.cleanup(reason="host_signal")

    def _forward_output(self, stream: StreamName, text: str) -> None:
        LOGGER.log(
            logging.INFO if stream == "stdout" else logging.WARNING,
            "event=ai_%s task_id=%s pid=%s text=%s",
            stream,
            self.task_id,
            self._handle.pid,
            _preview(text, limit=_OUTPUT_PREVIEW_LIMIT),
        )
