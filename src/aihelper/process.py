from __future__ import annotations

from collections.abc import Callable, Iterable
import logging
from pathlib import Path
import subprocess
import threading
import time
from typing import IO

from aihelper.models import StreamName
from aihelper.observability import log_event


LOGGER = logging.getLogger("aihelper.process")
_STDERR_TAIL_LIMIT = 64 * 1024

OutputListener = Callable[[StreamName, str], None]


class ExecutionSpawnError(RuntimeError):
    """Raised when the OS refuses to start an external tool."""

    def __init__(self, message: str, *, argv: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.argv = argv


class ProcessHandle:
    """One running external process with its output pumps.

    Output lines are read on daemon threads as soon as the process starts. Lines
    that arrive before the first listener subscribes are buffered and replayed,
    so a caller that inspects the process first (the Gemini grace window) and a
    supervisor that subscribes later both see every line. The stderr tail is kept
    for quota-signature matching.
    """

    def __init__(
        self,
        process: subprocess.Popen[str],
        *,
        argv: tuple[str, ...],
        model: str | None = None,
        prompt: str | None = None,
    ) -> None:
        self._process = process
        self.argv = argv
        self.model = model
        self._condition = threading.Condition()
        self._listeners: list[OutputListener] = []
        self._backlog: list[tuple[StreamName, str]] = []
        self._stderr_tail = ""
        self._open_streams = 0
        self._threads: list[threading.Thread] = []

        pipes: tuple[tuple[StreamName, IO[str] | None], ...] = (
            ("stdout", process.stdout),
            ("stderr", process.stderr),
        )
        for stream_name, pipe in pipes:
            if pipe is None:
                continue
            self._open_streams += 1
            self._threads.append(
                threading.Thread(
                    target=self._pump,
                    args=(stream_name, pipe),
                    name=f"aihelper-{stream_name}-{process.pid}",
                    daemon=True,
                )
            )
        if process.stdin is not None:
            self._threads.append(
                threading.Thread(
                    target=self._feed_stdin,
                    args=(process.stdin, prompt or ""),
                    name=f"aihelper-stdin-{process.pid}",
                    daemon=True,
                )
            )
        for thread in self._threads:
            thread.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def is_alive(self) -> bool:
        return self._process.poll() is None

    def poll(self) -> int | None:
        return self._process.poll()

    def wait(self, timeout: float | None = None) -> int:
        return self._process.wait(timeout=timeout)

    def terminate(self) -> bool:
        """Send one termination signal if the process is still running."""
        if self._process.poll() is not None:
            return False
        self._process.terminate()
        return True

    def add_output_listener(self, listener: OutputListener) -> None:
        with self._condition:
            backlog = self._backlog
            self._backlog = []
            self._listeners.append(listener)
            for stream_name, text in backlog:
                self._notify_listener(listener, stream_name, text)

    def stderr_text(self) -> str:
        with self._condition:
            return self._stderr_tail

    def wait_for_stderr_match(self, patterns: Iterable[str], *, timeout: float) -> str | None:
        """Block until stderr contains one of ``patterns`` or ``timeout`` elapses.

        Returns the matched pattern, or None when the window closes or stderr
        reaches EOF without a match. Matching is case-insensitive.
        """
        lowered = tuple(pattern.lower() for pattern in patterns)
        deadline = time.monotonic() + timeout
        with self._condition:
            while True:
                haystack = self._stderr_tail.lower()
                for pattern in lowered:
                    if pattern in haystack:
                        return pattern
                if self._open_streams == 0:
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

    def join_output(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def _pump(self, stream_name: StreamName, pipe: IO[str]) -> None:
        try:
            for line in iter(pipe.readline, ""):
                self._emit(stream_name, line.rstrip("\n"))
        except (OSError, ValueError) as exc:
            log_event(
                LOGGER,
                "ai_output_read_failed",
                level=logging.WARNING,
                pid=self.pid,
                stream=stream_name,
                error_type=type(exc).__name__,
            )
        finally:
            try:
                pipe.close()
            except OSError:
                pass
            with self._condition:
                self._open_streams -= 1
                self._condition.notify_all()

    def _emit(self, stream_name: StreamName, text: str) -> None:
        with self._condition:
            if stream_name == "stderr":
                self._stderr_tail = f"{self._stderr_tail}{text}\n"[-_STDERR_TAIL_LIMIT:]
            if not self._listeners:
                self._backlog.append((stream_name, text))
            for listener in self._listeners:
                self._notify_listener(listener, stream_name, text)
            self._condition.notify_all()

    def _notify_listener(self, listener: OutputListener, stream_name: StreamName, text: str) -> None:
        try:
            listener(stream_name, text)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ai_output_listener_failed",
                level=logging.WARNING,
                pid=self.pid,
                stream=stream_name,
                error_type=type(exc).__name__,
            )

    def _feed_stdin(self, stdin: IO[str], prompt: str) -> None:
        try:
            if prompt:
                stdin.write(prompt)
                stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            log_event(
                LOGGER,
                "ai_stdin_write_failed",
                level=logging.WARNING,
                pid=self.pid,
                error_type=type(exc).__name__,
            )
        finally:
            try:
                stdin.close()
            except (BrokenPipeError, OSError):
                pass


def spawn_process(
    argv: list[str],
    *,
    cwd: Path,
    prompt: str,
    model: str | None = None,
) -> ProcessHandle:
    """Start ``argv`` in ``cwd`` and stream ``prompt`` to its stdin.

    Raises ExecutionSpawnError synchronously when the executable cannot be
    started. Everything after a successful spawn is asynchronous.
    """
    try:
        process = subprocess.Popen(
            argv,
            cwd=str(cwd),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        log_event(
            LOGGER,
            "ai_spawn_failed",
            level=logging.ERROR,
            command=argv[0],
            cwd=str(cwd),
            error_type=type(exc).__name__,
        )
        raise ExecutionSpawnError(
            f"Failed to start {argv[0]}: {exc}", argv=tuple(argv)
        ) from exc

    log_event(
        LOGGER,
        "ai_spawned",
        command=argv[0],
        cwd=str(cwd),
        model=model,
        pid=process.pid,
        prompt_chars=len(prompt),
    )
    return ProcessHandle(process, argv=tuple(argv), model=model, prompt=prompt)
