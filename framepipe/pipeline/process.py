"""
Process pipeline management.

A Pipeline pairs one external engine process with exactly one directional
byte pipe: the engine's stdout for decoding, its stdin for encoding.

Every running pipeline is tracked in a module-level process table. The
table is torn down when the interpreter exits, when ``close_all()`` is
called, and (unless disabled in settings) when the program receives
SIGINT/SIGTERM, in which case the program then exits with status 1.
A half-written media file cannot be salvaged, so there is no graceful
path for interrupted encodes.
"""

import atexit
import contextlib
import logging
import shlex
import signal
import subprocess
import sys
import tempfile
import threading
import weakref
from enum import Enum
from typing import Iterator, Literal, Sequence

from ..config import get_settings
from ..errors import BufferTooSmallError, PipeIOError, PipelineCancelled, ToolMissingError

logger = logging.getLogger(__name__)


# Largest single transfer between cancellation checks.
CHUNK_SIZE = 1 << 20

_STDERR_TAIL = 2000


class PipelineState(Enum):
    """Lifecycle of a Pipeline. CLOSED is terminal."""

    UNOPENED = "unopened"
    RUNNING = "running"
    CLOSED = "closed"


class CancelToken:
    """
    Cooperative cancellation for blocking reads and writes.

    Pass the same token to any number of ``read``/``write`` calls. Calling
    ``cancel()`` (from any thread) kills the engine behind every pipeline
    currently blocked on the token, which unblocks the transfer; the call
    then raises ``PipelineCancelled``.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._pipelines: "weakref.WeakSet[Pipeline]" = weakref.WeakSet()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation and kill every attached engine process."""
        with self._lock:
            self._event.set()
            pipelines = list(self._pipelines)
        for pipeline in pipelines:
            pipeline._terminate_process()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelled("Operation cancelled")

    def _attach(self, pipeline: "Pipeline") -> None:
        with self._lock:
            self._pipelines.add(pipeline)
            cancelled = self._event.is_set()
        if cancelled:
            pipeline._terminate_process()

    def _detach(self, pipeline: "Pipeline") -> None:
        with self._lock:
            self._pipelines.discard(pipeline)


# Process table of running pipelines.
_live: set["Pipeline"] = set()
_live_lock = threading.Lock()

_previous_handlers: dict[int, object] = {}
_warned_off_main = False


def _register(pipeline: "Pipeline") -> None:
    with _live_lock:
        _live.add(pipeline)


def _unregister(pipeline: "Pipeline") -> None:
    with _live_lock:
        _live.discard(pipeline)


def live_pipelines() -> list["Pipeline"]:
    """Snapshot of the process table."""
    with _live_lock:
        return list(_live)


def close_all() -> int:
    """
    Kill every running pipeline.

    Returns:
        Number of pipelines that were torn down
    """
    pipelines = live_pipelines()
    for pipeline in pipelines:
        pipeline.kill()
    return len(pipelines)


atexit.register(close_all)


def _handle_signal(signum: int, frame) -> None:
    pipelines = live_pipelines()
    logger.warning(
        "Received %s, killing %d engine process(es)",
        signal.Signals(signum).name,
        len(pipelines),
    )
    for pipeline in pipelines:
        pipeline.kill()
    sys.exit(1)


def install_signal_handlers() -> bool:
    """
    Install the SIGINT/SIGTERM teardown handler.

    Only possible from the main thread; returns False elsewhere and
    warns once, since engines started there are then not torn down
    when the program is killed by a signal. Installing twice is a no-op.
    """
    global _warned_off_main
    if _previous_handlers:
        return True
    if threading.current_thread() is not threading.main_thread():
        if not _warned_off_main:
            _warned_off_main = True
            logger.warning(
                "Not in the main thread, SIGINT/SIGTERM teardown handler not installed; "
                "engine processes may outlive the program if it is killed by a signal"
            )
        return False
    for signum in (signal.SIGINT, signal.SIGTERM):
        _previous_handlers[signum] = signal.signal(signum, _handle_signal)
    logger.debug("Installed engine teardown handlers for SIGINT/SIGTERM")
    return True


def uninstall_signal_handlers() -> None:
    """Restore the handlers that were active before installation."""
    if threading.current_thread() is not threading.main_thread():
        return
    for signum, previous in list(_previous_handlers.items()):
        signal.signal(signum, previous)
        del _previous_handlers[signum]


class Pipeline:
    """
    One external process plus one directional pipe.

    Args:
        argv: Full argument vector, executable first
        mode: 'r' to read the process's stdout, 'w' to write its stdin
    """

    def __init__(self, argv: Sequence[str], mode: Literal["r", "w"] = "r"):
        if mode not in ("r", "w"):
            raise ValueError(f"mode must be 'r' or 'w', got {mode!r}")
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = [str(arg) for arg in argv]
        self.mode = mode
        self.state = PipelineState.UNOPENED
        self._proc: subprocess.Popen | None = None
        self._stderr = None
        self._exhausted = False
        self._killed = False
        self._returncode: int | None = None

    def __enter__(self) -> "Pipeline":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.kill()

    def __repr__(self) -> str:
        return f"Pipeline({self.argv[0]!r}, mode={self.mode!r}, state={self.state.value})"

    @property
    def name(self) -> str:
        return self.argv[0]

    @property
    def exhausted(self) -> bool:
        """True once the engine's stdout reached end of input."""
        return self._exhausted

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def start(self) -> "Pipeline":
        """Spawn the process. Starting a running pipeline is a no-op."""
        if self.state is PipelineState.RUNNING:
            return self
        if self.state is PipelineState.CLOSED:
            raise PipeIOError("Pipeline is closed and cannot be reopened")

        logger.debug("Starting engine: %s", shlex.join(self.argv))
        self._stderr = tempfile.TemporaryFile()
        try:
            self._proc = subprocess.Popen(
                self.argv,
                stdin=subprocess.PIPE if self.mode == "w" else subprocess.DEVNULL,
                stdout=subprocess.PIPE if self.mode == "r" else subprocess.DEVNULL,
                stderr=self._stderr,
            )
        except FileNotFoundError as e:
            self._fail_start()
            raise ToolMissingError(f"Executable not found: {self.name}") from e
        except OSError as e:
            self._fail_start()
            raise PipeIOError(f"Failed to start {self.name}: {e}") from e

        self.state = PipelineState.RUNNING
        _register(self)
        if get_settings().handle_signals:
            install_signal_handlers()
        return self

    def _fail_start(self) -> None:
        self._stderr.close()
        self._stderr = None
        self.state = PipelineState.CLOSED

    def _require(self, mode: str) -> subprocess.Popen:
        if self.mode != mode:
            action = "read from" if mode == "r" else "write to"
            raise PipeIOError(f"Cannot {action} a pipeline opened with mode {self.mode!r}")
        if self.state is PipelineState.UNOPENED:
            self.start()
        if self.state is PipelineState.CLOSED:
            raise PipeIOError("Pipeline is closed")
        return self._proc

    def read_into(self, buffer, size: int | None = None, cancel: CancelToken | None = None) -> int:
        """
        Fill ``buffer`` from the engine's stdout.

        Loops over short reads until ``size`` bytes (default: the whole
        buffer) arrived or the stream ended.

        Args:
            buffer: Writable bytes-like object
            size: Number of bytes wanted
            cancel: Optional cancellation token

        Returns:
            Number of bytes read; less than ``size`` only at end of input

        Raises:
            BufferTooSmallError: If ``size`` exceeds the buffer
            PipelineCancelled: If ``cancel`` fired before the read completed
            PipeIOError: On an OS-level read failure
        """
        proc = self._require("r")
        view = memoryview(buffer).cast("B")
        if size is None:
            size = view.nbytes
        if size > view.nbytes:
            raise BufferTooSmallError(f"Buffer holds {view.nbytes} bytes, {size} requested")
        if self._exhausted:
            return 0

        total = 0
        with self._cancel_scope(cancel):
            while total < size:
                self._check_cancel(cancel)
                end = min(size, total + CHUNK_SIZE)
                try:
                    n = proc.stdout.readinto(view[total:end])
                except (OSError, ValueError) as e:
                    self._check_cancel(cancel)
                    raise PipeIOError(f"Failed to read from {self.name}: {e}") from e
                if not n:
                    self._exhausted = True
                    break
                total += n
        if total < size:
            self._check_cancel(cancel)
        return total

    def drain(self) -> int:
        """Read and discard everything left on stdout. Returns bytes discarded."""
        proc = self._require("r")
        discarded = 0
        while not self._exhausted:
            chunk = proc.stdout.read(CHUNK_SIZE)
            if not chunk:
                self._exhausted = True
                break
            discarded += len(chunk)
        return discarded

    def write(self, data, cancel: CancelToken | None = None) -> int:
        """
        Write every byte of ``data`` to the engine's stdin.

        Returns:
            Number of bytes written (always ``len(data)``)

        Raises:
            PipelineCancelled: If ``cancel`` fired before the write completed
            PipeIOError: If the pipe broke, usually because the engine
                rejected its parameters or the frame size
        """
        proc = self._require("w")
        view = memoryview(data).cast("B")
        total = 0
        with self._cancel_scope(cancel):
            while total < view.nbytes:
                self._check_cancel(cancel)
                end = min(view.nbytes, total + CHUNK_SIZE)
                try:
                    n = proc.stdin.write(view[total:end])
                except (OSError, ValueError) as e:
                    self._check_cancel(cancel)
                    raise PipeIOError(
                        f"Failed to write to {self.name} (likely invalid encoder parameters)",
                        returncode=proc.poll(),
                        stderr=self._stderr_tail(),
                    ) from e
                total += n if n is not None else end - total
        return total

    def close(self, check: bool = True) -> int | None:
        """
        Close the pipe and wait for the process.

        A decode pipeline closed before its stream ended is killed rather
        than waited on; its exit status is then not an error.

        Args:
            check: Raise PipeIOError on a non-zero exit status

        Returns:
            Process exit status, or None if the pipeline never started
        """
        if self.state is PipelineState.UNOPENED:
            self.state = PipelineState.CLOSED
            return None
        if self.state is PipelineState.CLOSED:
            return self._returncode

        proc = self._proc
        try:
            if self.mode == "w":
                try:
                    proc.stdin.close()
                except OSError as e:
                    logger.debug("Error closing %s stdin: %s", self.name, e)
            else:
                if not self._exhausted and proc.poll() is None:
                    logger.debug("Decode stream abandoned early, killing %s", self.name)
                    proc.kill()
                    self._killed = True
                proc.stdout.close()
            self._returncode = proc.wait()
        finally:
            self.state = PipelineState.CLOSED
            _unregister(self)

        stderr = self._stderr_tail()
        self._stderr.close()
        self._stderr = None
        logger.debug("%s exited with status %s", self.name, self._returncode)

        if check and self._returncode != 0 and not self._killed:
            raise PipeIOError(
                f"{self.name} exited with status {self._returncode}",
                returncode=self._returncode,
                stderr=stderr,
            )
        return self._returncode

    def kill(self) -> None:
        """Force-close the pipe and kill the process. Safe from any state."""
        if self.state is not PipelineState.RUNNING:
            self.state = PipelineState.CLOSED
            return
        logger.warning("Killing %s (pid %s)", self.name, self._proc.pid)
        self._terminate_process()
        pipe = self._proc.stdout if self.mode == "r" else self._proc.stdin
        with contextlib.suppress(OSError, ValueError):
            pipe.close()
        self._returncode = self._proc.wait()
        self.state = PipelineState.CLOSED
        _unregister(self)
        if self._stderr is not None:
            self._stderr.close()
            self._stderr = None

    def _terminate_process(self) -> None:
        # Only signals the process; callers blocked on the pipe see EOF/EPIPE.
        proc = self._proc
        if proc is not None and proc.poll() is None:
            self._killed = True
            with contextlib.suppress(OSError):
                proc.kill()

    def _check_cancel(self, cancel: CancelToken | None) -> None:
        if cancel is not None and cancel.cancelled:
            self.kill()
            raise PipelineCancelled(f"{self.name} transfer cancelled")

    @contextlib.contextmanager
    def _cancel_scope(self, cancel: CancelToken | None) -> Iterator[None]:
        if cancel is None:
            yield
            return
        cancel._attach(self)
        try:
            yield
        finally:
            cancel._detach(self)

    def _stderr_tail(self) -> str:
        if self._stderr is None:
            return ""
        try:
            self._stderr.seek(0)
            data = self._stderr.read()
        except (OSError, ValueError):
            return ""
        return data.decode("utf-8", "replace").strip()[-_STDERR_TAIL:]


def open_pipeline(argv: Sequence[str], mode: Literal["r", "w"] = "r") -> Pipeline:
    """Construct and start a Pipeline."""
    return Pipeline(argv, mode).start()
