"""
Process supervisor for one relay endpoint.

This module provides ProcessSupervisor, which owns a single
capture | transcode pipeline for an EndpointKey and pushes the transcoder's
MP3 output to a callback as opaque byte chunks.

Pipeline:
    jam-listener --server <address>:<port>  (raw s16le, 48 kHz, stereo)
        | ffmpeg -f s16le -ar 48000 -ac 2 -i pipe:0 ... -f mp3 pipe:1
"""

from __future__ import annotations

import enum
import logging
import subprocess
import threading
from typing import BinaryIO, Callable, List, Optional

from relay.core.endpoint import EndpointKey

logger = logging.getLogger(__name__)


class SupervisorState(enum.Enum):
    """Supervisor state enumeration."""
    STOPPED = 1   # Created, not started yet
    RUNNING = 2
    EXITED = 3    # Pipeline ended on its own
    FAILED = 4    # Pipeline could not be spawned
    DISPOSED = 5


# Canonical PCM format written by the capture tool
SAMPLE_RATE = 48000
CHANNELS = 2
PCM_FORMAT = "s16le"

DEFAULT_LISTENER_BIN = "jam-listener"
DEFAULT_FFMPEG_BIN = "ffmpeg"
DEFAULT_BITRATE = "128k"
DEFAULT_READ_CHUNK_SIZE = 4096

# Time allowed for processes to exit after SIGTERM before SIGKILL
TERMINATE_TIMEOUT_SEC = 2.0
THREAD_JOIN_TIMEOUT_SEC = 1.0

# Keep last 10KB of transcoder stderr for diagnostics
LAST_STDERR_MAX_SIZE = 10 * 1024

OnChunk = Callable[[bytes], None]
OnExit = Callable[[str], None]


def build_capture_cmd(key: EndpointKey, listener_bin: str = DEFAULT_LISTENER_BIN) -> List[str]:
    """Build the capture tool invocation for an endpoint."""
    return [listener_bin, "--server", f"{key.address}:{key.port}"]


def build_transcoder_cmd(ffmpeg_bin: str = DEFAULT_FFMPEG_BIN, bitrate: str = DEFAULT_BITRATE) -> List[str]:
    """Build the fixed PCM -> MP3 transcoder invocation."""
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel", "warning",
        "-f", PCM_FORMAT,
        "-ar", str(SAMPLE_RATE),
        "-ac", str(CHANNELS),
        "-i", "pipe:0",
        "-b:a", bitrate,
        "-f", "mp3",
        "pipe:1",
    ]


class ProcessSupervisor:
    """
    Owns one live capture | transcode pipeline.

    Output is push-style: a daemon drain thread reads the transcoder's stdout
    and hands every chunk to on_chunk, in order. on_exit is called at most once,
    with "spawn_failed" or "process_exit", and never after dispose().

    start() never raises on spawn failure; failures are reported through
    on_exit so the owning channel can treat them as "no further chunks".
    """

    def __init__(
        self,
        key: EndpointKey,
        on_chunk: OnChunk,
        on_exit: Optional[OnExit] = None,
        listener_bin: str = DEFAULT_LISTENER_BIN,
        transcoder_cmd: Optional[List[str]] = None,
        capture_cmd: Optional[List[str]] = None,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> None:
        """
        Initialize supervisor.

        Args:
            key: Endpoint the capture tool connects to
            on_chunk: Called from the drain thread with each output chunk
            on_exit: Called once when the pipeline fails to spawn or ends on its own
            listener_bin: Capture executable (ignored when capture_cmd is given)
            transcoder_cmd: Optional transcoder command (default: build_transcoder_cmd())
            capture_cmd: Optional full capture command overriding listener_bin
            read_chunk_size: Maximum bytes per stdout read
        """
        self.key = key
        self._on_chunk = on_chunk
        self._on_exit = on_exit
        self._capture_cmd = list(capture_cmd) if capture_cmd is not None else build_capture_cmd(key, listener_bin)
        self._transcoder_cmd = list(transcoder_cmd) if transcoder_cmd is not None else build_transcoder_cmd()
        self._read_chunk_size = read_chunk_size

        self._state = SupervisorState.STOPPED
        self._state_lock = threading.Lock()
        self._exit_notified = False

        self._capture: Optional[subprocess.Popen] = None
        self._transcoder: Optional[subprocess.Popen] = None
        self._stdout: Optional[BinaryIO] = None
        self._stderr: Optional[BinaryIO] = None

        self._stdout_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None

        self._last_stderr = ""
        self.bytes_out = 0

    @property
    def state(self) -> SupervisorState:
        with self._state_lock:
            return self._state

    @property
    def pid(self) -> Optional[int]:
        """PID of the transcoder process, if spawned."""
        return self._transcoder.pid if self._transcoder is not None else None

    @property
    def last_stderr(self) -> str:
        """Most recent transcoder stderr output (bounded)."""
        return self._last_stderr

    @property
    def capture_cmd(self) -> List[str]:
        return list(self._capture_cmd)

    @property
    def transcoder_cmd(self) -> List[str]:
        return list(self._transcoder_cmd)

    def start(self) -> None:
        """
        Spawn the pipeline and start the drain threads.

        Raises:
            RuntimeError: If the supervisor was already started
        """
        with self._state_lock:
            if self._state != SupervisorState.STOPPED:
                raise RuntimeError(f"Cannot start supervisor in state: {self._state}")

        try:
            self._spawn()
        except OSError as e:
            logger.error(
                f"Failed to start pipeline for {self.key}: {e}",
                extra={"endpoint": str(self.key)},
            )
            self._release_processes()
            if self._capture is not None and self._capture.stdout is not None:
                self._capture.stdout.close()
            with self._state_lock:
                if self._state != SupervisorState.STOPPED:
                    return
                self._state = SupervisorState.FAILED
            self._notify_exit("spawn_failed")
            return

        with self._state_lock:
            self._state = SupervisorState.RUNNING

        # stdout drain must be running before any chunk can back up the pipe
        self._stdout_thread = threading.Thread(
            target=self._stdout_drain,
            daemon=True,
            name=f"RelayStdoutDrain-{self.key}",
        )
        self._stdout_thread.start()

        if self._stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._stderr_drain,
                daemon=True,
                name=f"RelayStderrDrain-{self.key}",
            )
            self._stderr_thread.start()

        logger.info(
            f"Pipeline started for {self.key} (capture PID={self._capture.pid}, transcoder PID={self._transcoder.pid})",
            extra={"endpoint": str(self.key)},
        )

    def _spawn(self) -> None:
        logger.debug(f"Starting capture: {' '.join(self._capture_cmd)}")
        # Capture stderr is inherited so operators see it on the relay's stderr
        self._capture = subprocess.Popen(
            self._capture_cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=None,
            bufsize=0,
        )

        logger.debug(f"Starting transcoder: {' '.join(self._transcoder_cmd)}")
        self._transcoder = subprocess.Popen(
            self._transcoder_cmd,
            stdin=self._capture.stdout,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )

        # The transcoder owns the read end now; closing ours lets SIGPIPE reach the capture
        self._capture.stdout.close()
        self._stdout = self._transcoder.stdout
        self._stderr = self._transcoder.stderr

    def dispose(self) -> None:
        """
        Terminate the pipeline and release processes, pipes and threads.

        Safe to call more than once; only the first call has an effect.
        """
        with self._state_lock:
            if self._state == SupervisorState.DISPOSED:
                logger.debug(f"Supervisor for {self.key} already disposed")
                return
            previous = self._state
            self._state = SupervisorState.DISPOSED

        logger.info(
            f"Disposing pipeline for {self.key} (was {previous.name})",
            extra={"endpoint": str(self.key)},
        )

        # Terminating the processes closes the write end of stdout, so the
        # drain threads see EOF and exit on their own
        self._release_processes()

        current = threading.current_thread()
        for thread in (self._stdout_thread, self._stderr_thread):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=THREAD_JOIN_TIMEOUT_SEC)
                if thread.is_alive():
                    logger.warning(f"{thread.name} did not terminate within timeout")

        for pipe in (self._stdout, self._stderr):
            if pipe is not None:
                try:
                    pipe.close()
                except OSError:
                    pass
        self._stdout = None
        self._stderr = None
        self._stdout_thread = None
        self._stderr_thread = None

    def _release_processes(self) -> None:
        """Terminate (then kill) both processes and reap them."""
        for proc in (self._transcoder, self._capture):
            if proc is None:
                continue
            try:
                proc.terminate()
                proc.wait(timeout=TERMINATE_TIMEOUT_SEC)
            except subprocess.TimeoutExpired:
                logger.warning(f"Process PID={proc.pid} did not terminate, killing")
                proc.kill()
                proc.wait()
            except OSError as e:
                logger.warning(f"Error stopping process PID={proc.pid}: {e}")

    def _stdout_drain(self) -> None:
        """Read transcoder stdout and push chunks until EOF or disposal."""
        stdout = self._stdout
        if stdout is None:
            return

        while True:
            try:
                data = stdout.read(self._read_chunk_size)
            except (OSError, ValueError) as e:
                # ValueError: pipe closed by dispose()
                logger.debug(f"Stdout read ended for {self.key}: {e}")
                data = b""

            if not data:
                break
            if self.state != SupervisorState.RUNNING:
                return

            self.bytes_out += len(data)
            try:
                self._on_chunk(data)
            except Exception as e:
                logger.error(f"Chunk handler failed for {self.key}: {e}", exc_info=True)

        with self._state_lock:
            if self._state != SupervisorState.RUNNING:
                # dispose() owns cleanup
                return
            self._state = SupervisorState.EXITED

        self._reap_after_exit()
        if self.state == SupervisorState.EXITED:
            self._notify_exit("process_exit")

    def _reap_after_exit(self) -> None:
        codes = []
        for name, proc in (("capture", self._capture), ("transcoder", self._transcoder)):
            if proc is None:
                continue
            try:
                code = proc.wait(timeout=TERMINATE_TIMEOUT_SEC)
            except subprocess.TimeoutExpired:
                # Transcoder gone but capture still running (or the reverse)
                proc.kill()
                code = proc.wait()
            codes.append(f"{name}={code}")

        logger.warning(
            f"Pipeline for {self.key} exited ({', '.join(codes)})",
            extra={"endpoint": str(self.key)},
        )
        if self._last_stderr:
            logger.warning(f"Transcoder stderr at exit for {self.key}:\n{self._last_stderr.rstrip()}")

    def _stderr_drain(self) -> None:
        """Log transcoder stderr with an [FFMPEG] prefix until it closes."""
        stderr = self._stderr
        if stderr is None:
            return

        while True:
            try:
                line = stderr.readline()
            except (OSError, ValueError):
                break
            if not line:
                break

            decoded_line = line.decode(errors="ignore").rstrip()
            if not decoded_line:
                continue
            # "Guessed Channel Layout" is informational, not an error
            if "guessed channel layout" in decoded_line.lower():
                logger.debug(f"[FFMPEG] {decoded_line}")
            else:
                logger.error(f"[FFMPEG] {decoded_line}", extra={"endpoint": str(self.key)})

            new_line = decoded_line + "\n"
            excess = len(self._last_stderr) + len(new_line) - LAST_STDERR_MAX_SIZE
            if excess > 0:
                self._last_stderr = self._last_stderr[excess:]
            self._last_stderr += new_line

        logger.debug(f"Stderr drain for {self.key} exiting")

    def _notify_exit(self, reason: str) -> None:
        if self._exit_notified or self._on_exit is None:
            return
        self._exit_notified = True
        try:
            self._on_exit(reason)
        except Exception as e:
            logger.error(f"Exit handler failed for {self.key}: {e}", exc_info=True)
