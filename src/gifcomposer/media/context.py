"""Media runtime context for toolchain discovery, job execution and temp files."""

import tempfile
import logging
import os
import shutil
import subprocess
import threading
import time
from typing import List, Optional, Sequence

from ..core.errors import (
    ToolchainUnavailable,
    ToolFailure,
    OperationTimeout,
    CompositionCancelled,
)
from ..core.types import CancelCb, ProgressCb

# Inputs above either threshold get the long per-invocation budget
LARGE_PIXELS = 2_000_000
LARGE_BYTES = 10 * 1024 * 1024

DEFAULT_TIMEOUT = 120.0
LARGE_TIMEOUT = 600.0

_POLL_INTERVAL = 0.05


class MediaContext:
    """Context for media operations with ffmpeg and temporary file management."""

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
        gifsicle: Optional[str] = "gifsicle",
        tmp_root: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        verify: bool = True,
    ):
        """
        Initialize media context.

        Args:
            ffmpeg: Path to ffmpeg binary
            ffprobe: Path to ffprobe binary
            gifsicle: Path to the optional gifsicle optimizer (None disables it)
            tmp_root: Root directory for temporary files
            logger: Logger instance for debugging
            verify: Check that ffmpeg/ffprobe run before accepting any work
        """
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.logger = logger or logging.getLogger("gifcomposer")
        self.tmp_root = tmp_root

        # Create temporary directory
        self._tmp = tempfile.TemporaryDirectory(prefix="gifcomposer_", dir=tmp_root)
        self.tmp = self._tmp.name

        if verify:
            self._verify_ffmpeg()
        self.gifsicle = shutil.which(gifsicle) if gifsicle else None
        if gifsicle and not self.gifsicle:
            self.logger.info("gifsicle not found, size optimization disabled")

    def _verify_ffmpeg(self) -> None:
        """Verify that the ffmpeg binaries are available."""
        for tool in (self.ffmpeg, self.ffprobe):
            try:
                result = subprocess.run(
                    [tool, "-version"], capture_output=True, text=True, timeout=10
                )
            except FileNotFoundError:
                raise ToolchainUnavailable(
                    tool, f"{tool} not found. Please install FFmpeg"
                )
            except subprocess.TimeoutExpired:
                raise ToolchainUnavailable(tool, f"{tool} verification timed out")
            if result.returncode != 0:
                raise ToolchainUnavailable(tool, f"{tool} not working: {result.stderr}")

        self.logger.debug("FFmpeg binaries verified successfully")

    def temp_path(self, suffix: str = "", prefix: str = "gc_") -> str:
        """
        Generate a temporary file path.

        Args:
            suffix: File suffix/extension (e.g., ".gif")
            prefix: File prefix

        Returns:
            Temporary file path
        """
        fd, path = tempfile.mkstemp(suffix=suffix, prefix=prefix, dir=self.tmp)
        os.close(fd)  # Close file descriptor, we just need the path
        return path

    def job(
        self,
        should_cancel: CancelCb = None,
        on_progress: ProgressCb = None,
        deadline: Optional[float] = None,
    ) -> "JobContext":
        """Open a per-request job with its own working directory."""
        return JobContext(self, should_cancel, on_progress, deadline)

    def cleanup(self) -> None:
        """Clean up temporary files."""
        try:
            self._tmp.cleanup()
            self.logger.debug("Temporary files cleaned up")
        except OSError as e:
            self.logger.warning(f"Error cleaning up temporary files: {e}")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.cleanup()


class ProgressReporter:
    """Forwards progress to a sink, never letting the percentage go backwards."""

    def __init__(self, sink: ProgressCb = None, logger: Optional[logging.Logger] = None):
        self._sink = sink
        self._logger = logger or logging.getLogger("gifcomposer")
        self._lock = threading.Lock()
        self.percent = -1

    def __call__(self, percent: int, message: str) -> None:
        with self._lock:
            percent = max(0, min(100, int(percent)))
            if percent < self.percent:
                percent = self.percent
            self.percent = percent
            self._logger.debug(f"[{percent:3d}%] {message}")
            # Inside the lock so concurrent callers reach the sink in order
            if self._sink:
                self._sink(percent, message)


class JobContext:
    """
    One composition request's execution scope.

    Every external invocation goes through :meth:`run`, which checks the cancel
    predicate first, enforces a timeout capped by the request deadline and
    kills the child process when either trips.
    """

    def __init__(
        self,
        media: MediaContext,
        should_cancel: CancelCb = None,
        on_progress: ProgressCb = None,
        deadline: Optional[float] = None,
    ):
        self.media = media
        self.logger = media.logger
        self._should_cancel = should_cancel
        self.deadline = deadline
        self.progress = ProgressReporter(on_progress, media.logger)
        self.workdir = tempfile.mkdtemp(prefix="job_", dir=media.tmp)

    @property
    def cancelled(self) -> bool:
        return bool(self._should_cancel and self._should_cancel())

    def check_cancelled(self) -> None:
        """Raise CompositionCancelled if the caller asked to stop."""
        if self.cancelled:
            raise CompositionCancelled()

    def remaining(self) -> Optional[float]:
        """Seconds left before the request deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def timeout_for(
        self, input_bytes: int = 0, pixels: int = 0, base: float = DEFAULT_TIMEOUT
    ) -> float:
        """
        Per-invocation budget scaled to the input size.

        Args:
            input_bytes: Size of the input file
            pixels: Pixel count of the output (width * height)
            base: Budget for ordinary inputs

        Returns:
            Timeout in seconds
        """
        if pixels > LARGE_PIXELS or input_bytes > LARGE_BYTES:
            return max(base, LARGE_TIMEOUT)
        return base

    def path(self, name: str) -> str:
        """Path inside the job's working directory."""
        return os.path.join(self.workdir, name)

    def subdir(self, name: str) -> str:
        """Create (if needed) and return a directory inside the job workdir."""
        path = self.path(name)
        os.makedirs(path, exist_ok=True)
        return path

    def run(
        self,
        cmd: Sequence[str],
        timeout: float = DEFAULT_TIMEOUT,
        stdin: Optional[bytes] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run an external command under cancellation and timeout control.

        Args:
            cmd: Command line
            timeout: Invocation budget in seconds (capped by the request deadline)
            stdin: Optional bytes to feed the process

        Returns:
            CompletedProcess with bytes stdout/stderr

        Raises:
            CompositionCancelled: The cancel predicate tripped
            OperationTimeout: The budget ran out
            ToolFailure: Non-zero exit code
        """
        self.check_cancelled()
        cmd = [str(c) for c in cmd]
        remaining = self.remaining()
        if remaining is not None:
            if remaining <= 0:
                raise OperationTimeout(["request"], 0)
            timeout = min(timeout, remaining)

        self.logger.debug(f"Running: {' '.join(cmd)}")
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        stdout, stderr = self._wait(proc, cmd, timeout, stdin)
        if proc.returncode != 0:
            raise ToolFailure(cmd, proc.returncode, stderr.decode("utf-8", "replace"))
        return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)

    def _wait(self, proc: subprocess.Popen, cmd: List[str], timeout: float, stdin):
        """Drain the process, polling the cancel predicate between slices."""
        started = time.monotonic()
        pending = stdin
        while True:
            try:
                return proc.communicate(input=pending, timeout=_POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                pending = None
            if self.cancelled:
                self._kill(proc)
                raise CompositionCancelled()
            if time.monotonic() - started > timeout:
                self._kill(proc)
                raise OperationTimeout(cmd, timeout)

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        proc.kill()
        proc.communicate()

    def cleanup(self) -> None:
        """Remove the working directory; best effort and never raises."""
        shutil.rmtree(self.workdir, ignore_errors=True)

