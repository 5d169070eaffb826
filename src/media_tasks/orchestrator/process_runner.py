"""Supervised execution of one external command with streamed progress."""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time
from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from media_tasks.orchestrator.errors import (
    ProcessExitError,
    StageTimeoutError,
    TaskCancelledError,
)
from media_tasks.orchestrator.progress_parsers import LineParser, ProgressSample

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND_EXIT_CODE = 127
_STDOUT = "stdout"
_STDERR = "stderr"


@dataclass(slots=True)
class ProcessSpec:
    """What to run and how to read its progress."""

    argv: Sequence[str]
    label: str
    timeout_seconds: float | None = None
    stdout_parser: LineParser | None = None
    stderr_parser: LineParser | None = None
    stdin_text: str | None = None
    cwd: Path | None = None
    env: dict[str, str] | None = None


@dataclass(slots=True)
class ProcessResult:
    """Captured output of a finished command."""

    exit_code: int
    stdout_lines: list[str] = field(default_factory=list)
    stderr_tail: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)


class ProcessRunner:
    """Launches one command and yields parsed progress until it exits.

    ``cancel()`` may be called from any thread: the process gets a terminate
    signal, then a kill after ``grace_seconds``, and the stream raises
    ``TaskCancelledError``. A deadline overrun is handled the same way but
    raises ``StageTimeoutError``. A non-zero exit raises ``ProcessExitError``
    with the last ``stderr_tail_lines`` lines of stderr.
    """

    def __init__(
        self,
        spec: ProcessSpec,
        *,
        grace_seconds: float = 2.0,
        stderr_tail_lines: int = 20,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.spec = spec
        self.grace_seconds = grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._cancel_requested = threading.Event()
        self._stdout_lines: list[str] = []
        self._stderr_tail: deque[str] = deque(maxlen=max(1, stderr_tail_lines))
        self._process: subprocess.Popen[str] | None = None
        self._result: ProcessResult | None = None

    @property
    def result(self) -> ProcessResult | None:
        return self._result

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> None:
        """Request termination; the streaming thread performs it."""

        self._cancel_requested.set()

    def run(self) -> ProcessResult:
        """Run to completion, discarding progress samples."""

        for _ in self.stream():
            pass
        if self._result is None:
            raise RuntimeError(f"{self.spec.label} finished without a result")
        return self._result

    def stream(self) -> Iterator[ProgressSample]:
        if self._cancel_requested.is_set():
            raise TaskCancelledError(f"{self.spec.label} cancelled before start")
        started = time.monotonic()
        deadline = (
            started + self.spec.timeout_seconds if self.spec.timeout_seconds is not None else None
        )
        process = self._spawn()
        lines: queue.Queue[tuple[str, str | None]] = queue.Queue()
        readers = [
            _start_reader(process.stdout, _STDOUT, lines),
            _start_reader(process.stderr, _STDERR, lines),
        ]
        if self.spec.stdin_text is not None:
            _start_writer(process.stdin, self.spec.stdin_text)
        open_streams = {_STDOUT, _STDERR}
        try:
            while open_streams:
                if self._cancel_requested.is_set():
                    self._terminate(process)
                    raise TaskCancelledError(f"{self.spec.label} cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    self._terminate(process)
                    raise StageTimeoutError(
                        f"{self.spec.label} exceeded {self.spec.timeout_seconds:g}s",
                        timeout_seconds=float(self.spec.timeout_seconds or 0),
                    )
                try:
                    stream_name, line = lines.get(timeout=self.poll_interval_seconds)
                except queue.Empty:
                    continue
                if line is None:
                    open_streams.discard(stream_name)
                    continue
                sample = self._consume(stream_name, line)
                if sample is not None:
                    yield sample

            exit_code = self._wait(process, deadline)
            if self._cancel_requested.is_set():
                raise TaskCancelledError(f"{self.spec.label} cancelled")
            self._result = ProcessResult(
                exit_code=exit_code,
                stdout_lines=list(self._stdout_lines),
                stderr_tail=list(self._stderr_tail),
                duration_seconds=time.monotonic() - started,
            )
            if exit_code != 0:
                raise ProcessExitError(
                    command=self.spec.label,
                    exit_code=exit_code,
                    stderr_tail=list(self._stderr_tail),
                )
        finally:
            if process.poll() is None:
                # Consumer stopped early (pause at a chunk boundary, error downstream).
                self._terminate(process)
            for reader in readers:
                reader.join(timeout=self.grace_seconds)

    def _spawn(self) -> subprocess.Popen[str]:
        env = None
        if self.spec.env is not None:
            env = os.environ.copy()
            env.update(self.spec.env)
        try:
            process = subprocess.Popen(  # noqa: S603
                list(self.spec.argv),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.PIPE if self.spec.stdin_text is not None else subprocess.DEVNULL,
                cwd=self.spec.cwd,
                env=env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise ProcessExitError(
                command=self.spec.label,
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                stderr_tail=[f"command not found: {self.spec.argv[0]}"],
            ) from error
        self._process = process
        logger.debug("Started %s (pid %s)", self.spec.label, process.pid)
        return process

    def _consume(self, stream_name: str, line: str) -> ProgressSample | None:
        sample: ProgressSample | None = None
        for part in line.replace("\r", "\n").splitlines():
            if not part.strip():
                continue
            if stream_name == _STDOUT:
                self._stdout_lines.append(part)
                parser = self.spec.stdout_parser
            else:
                self._stderr_tail.append(part)
                parser = self.spec.stderr_parser
            if parser is not None:
                parsed = parser(part)
                if parsed is not None:
                    sample = parsed
        return sample

    def _wait(self, process: subprocess.Popen[str], deadline: float | None) -> int:
        while True:
            exit_code = process.poll()
            if exit_code is not None:
                return exit_code
            if self._cancel_requested.is_set():
                self._terminate(process)
                raise TaskCancelledError(f"{self.spec.label} cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                self._terminate(process)
                raise StageTimeoutError(
                    f"{self.spec.label} exceeded {self.spec.timeout_seconds:g}s",
                    timeout_seconds=float(self.spec.timeout_seconds or 0),
                )
            time.sleep(self.poll_interval_seconds)

    def _terminate(self, process: subprocess.Popen[str]) -> None:
        try:
            process.terminate()
        except OSError:
            return
        try:
            process.wait(timeout=self.grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("%s ignored terminate; killing pid %s", self.spec.label, process.pid)
            try:
                process.kill()
            except OSError:
                return
            process.wait(timeout=self.grace_seconds)


def _start_reader(
    handle: IO[str] | None,
    stream_name: str,
    sink: queue.Queue[tuple[str, str | None]],
) -> threading.Thread:
    def _read() -> None:
        try:
            if handle is not None:
                for line in handle:
                    sink.put((stream_name, line))
        except ValueError:
            # Pipe closed underneath the reader after termination.
            pass
        finally:
            sink.put((stream_name, None))

    thread = threading.Thread(target=_read, daemon=True, name=f"process-{stream_name}")
    thread.start()
    return thread


def _start_writer(handle: IO[str] | None, text: str) -> threading.Thread:
    def _write() -> None:
        if handle is None:
            return
        try:
            handle.write(text)
        except (BrokenPipeError, ValueError):
            pass
        finally:
            try:
                handle.close()
            except (BrokenPipeError, ValueError):
                pass

    thread = threading.Thread(target=_write, daemon=True, name="process-stdin")
    thread.start()
    return thread
