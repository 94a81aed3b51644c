"""
TranscodeSession: one ffmpeg invocation relaying the camera as motion-JPEG.

A session owns its process, the stdout/stderr pipes, the two drain threads
and the FrameDemuxer holding partial-frame bytes. Sessions are single-use:
once terminated they are discarded and StreamSupervisor builds a new one.
"""

from __future__ import annotations

import enum
import logging
import subprocess
import threading
from typing import BinaryIO, Callable, Iterator, List, Optional

from camrelay.errors import BufferOverflow, SessionCrash, SpawnError
from camrelay.stream.demuxer import DEFAULT_MAX_BUFFER_BYTES, FrameDemuxer

logger = logging.getLogger(__name__)

FrameCallback = Callable[[int, bytes], None]
ExitCallback = Callable[[int, Optional[Exception]], None]

# Keep the last 10KB of stderr for diagnostics
STDERR_TAIL_BYTES = 10 * 1024

# Bounded waits used while tearing a session down
PROCESS_WAIT_TIMEOUT_SEC = 2.0
THREAD_JOIN_TIMEOUT_SEC = 1.0


class SessionStatus(enum.Enum):
    STARTING = 1
    RUNNING = 2
    STOPPING = 3
    TERMINATED = 4


def build_ffmpeg_cmd(
    source_url: str,
    ffmpeg_bin: str = "ffmpeg",
    rtsp_transport: str = "tcp",
    quality: int = 5,
    frame_rate: int = 15,
) -> List[str]:
    """
    Build the pinned transcoder command line.

    Video only, motion-JPEG at a fixed qscale and frame rate, written as
    concatenated JPEG images to stdout.
    """
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-nostdin",
        "-loglevel", "warning",
        "-rtsp_transport", rtsp_transport,
        "-i", source_url,
        "-an",
        "-c:v", "mjpeg",
        "-q:v", str(quality),
        "-r", str(frame_rate),
        "-f", "image2pipe",
        "pipe:1",
    ]


class TranscodeSession:
    """
    Owns a single ffmpeg process and turns its output into frames.

    Frames are delivered through on_frame(session_id, frame) from the stdout
    drain thread, in stream order. on_exit(session_id, error) is called
    exactly once after the process has gone away:
    - error is None when stop() was requested
    - SessionCrash when ffmpeg exited on its own
    - BufferOverflow when the demuxer gave up on the stream

    The session id travels with every callback so the owner can discard
    events from a session it has already replaced.
    """

    def __init__(
        self,
        session_id: int,
        cmd: List[str],
        on_frame: FrameCallback,
        on_exit: ExitCallback,
        read_chunk_size: int = 32768,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
    ) -> None:
        self.session_id = session_id
        self._cmd = list(cmd)
        self._on_frame = on_frame
        self._on_exit = on_exit
        self._read_chunk_size = read_chunk_size
        self._demuxer = FrameDemuxer(max_buffer_bytes=max_buffer_bytes)

        self._lock = threading.Lock()
        self._status = SessionStatus.STARTING
        self._exit_reported = False

        self._process: Optional[subprocess.Popen] = None
        self._stdout: Optional[BinaryIO] = None
        self._stderr: Optional[BinaryIO] = None
        self._stdout_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None

        self._last_stderr = ""

    def __repr__(self) -> str:
        return f"<TranscodeSession id={self.session_id} status={self.status.name} pid={self.pid}>"

    @property
    def status(self) -> SessionStatus:
        with self._lock:
            return self._status

    @property
    def pid(self) -> Optional[int]:
        process = self._process
        return process.pid if process is not None else None

    @property
    def last_stderr(self) -> str:
        return self._last_stderr

    @property
    def demuxer(self) -> FrameDemuxer:
        return self._demuxer

    def start(self) -> None:
        """
        Spawn ffmpeg and start the drain threads.

        A session that was stopped before start() ran stays terminated.

        Raises:
            SpawnError: If the process could not be launched
        """
        with self._lock:
            if self._status != SessionStatus.STARTING:
                logger.debug(f"Session {self.session_id} not started (status: {self._status.name})")
                return

            try:
                self._process = subprocess.Popen(
                    self._cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                )
            except (OSError, ValueError) as e:
                self._status = SessionStatus.TERMINATED
                raise SpawnError(self._cmd, e) from e

            self._stdout = self._process.stdout
            self._stderr = self._process.stderr
            self._status = SessionStatus.RUNNING

            logger.info(f"Session {self.session_id}: started ffmpeg PID={self._process.pid}")

            if self._stdout is not None:
                self._stdout_thread = threading.Thread(
                    target=self._stdout_drain,
                    daemon=True,
                    name=f"FFmpegStdoutDrain-{self.session_id}",
                )
                self._stdout_thread.start()

            if self._stderr is not None:
                self._stderr_thread = threading.Thread(
                    target=self._stderr_drain,
                    daemon=True,
                    name=f"FFmpegStderrDrain-{self.session_id}",
                )
                self._stderr_thread.start()

    def stop(self) -> None:
        """
        Kill the process and release its pipes. Idempotent.
        """
        with self._lock:
            if self._status in (SessionStatus.STOPPING, SessionStatus.TERMINATED):
                return
            never_started = self._status == SessionStatus.STARTING
            self._status = SessionStatus.STOPPING if not never_started else SessionStatus.TERMINATED
            process = self._process

        if never_started:
            logger.debug(f"Session {self.session_id} stopped before start")
            return

        logger.info(f"Session {self.session_id}: stopping ffmpeg PID={process.pid}")
        self._kill(process)

        # Killing the process closes its end of the pipes, so the drain
        # threads see EOF and exit; closing our ends first would race them.
        current = threading.current_thread()
        for thread in (self._stdout_thread, self._stderr_thread):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=THREAD_JOIN_TIMEOUT_SEC)
                if thread.is_alive():
                    logger.warning(f"{thread.name} did not terminate within timeout")

        self._close_pipes()
        self._demuxer.reset()

        with self._lock:
            self._status = SessionStatus.TERMINATED

        # The stdout drain normally reports the exit; cover the case where it
        # never ran or is stuck.
        self._report_exit(None)

    def _kill(self, process: subprocess.Popen) -> None:
        try:
            process.kill()
        except OSError as e:
            # Already reaped
            logger.debug(f"Session {self.session_id}: kill failed: {e}")
        try:
            process.wait(timeout=PROCESS_WAIT_TIMEOUT_SEC)
        except subprocess.TimeoutExpired:
            logger.warning(f"Session {self.session_id}: ffmpeg PID={process.pid} did not exit after SIGKILL")

    def _close_pipes(self) -> None:
        for pipe in (self._stdout, self._stderr):
            if pipe is None:
                continue
            try:
                pipe.close()
            except (OSError, ValueError):
                pass
        self._stdout = None
        self._stderr = None

    def _read_chunks(self) -> Iterator[bytes]:
        """Yield stdout chunks until EOF or a read error."""
        stdout = self._stdout
        while stdout is not None:
            try:
                data = stdout.read(self._read_chunk_size)
            except (OSError, ValueError) as e:
                # ValueError: pipe closed under us during stop()
                logger.debug(f"Session {self.session_id}: stdout read ended: {e}")
                return
            if not data:
                return
            yield data

    def _stdout_drain(self) -> None:
        """
        Read ffmpeg stdout, demux it and deliver frames.

        Runs until EOF, then works out why the stream ended and reports it.
        """
        error: Optional[Exception] = None
        try:
            for frame in self._demuxer.iter_frames(self._read_chunks()):
                try:
                    self._on_frame(self.session_id, frame)
                except Exception as e:
                    logger.error(f"Session {self.session_id}: frame callback failed: {e}", exc_info=True)
        except BufferOverflow as e:
            logger.error(f"Session {self.session_id}: {e}")
            error = e
            with self._lock:
                process = self._process
            if process is not None:
                self._kill(process)

        with self._lock:
            requested = self._status in (SessionStatus.STOPPING, SessionStatus.TERMINATED)
            if not requested:
                self._status = SessionStatus.TERMINATED
            process = self._process

        if error is None and not requested:
            returncode = None
            if process is not None:
                try:
                    returncode = process.wait(timeout=PROCESS_WAIT_TIMEOUT_SEC)
                except subprocess.TimeoutExpired:
                    # stdout closed but the process lingers; make sure it goes
                    self._kill(process)
                    returncode = process.returncode
            stderr_thread = self._stderr_thread
            if stderr_thread is not None and stderr_thread.is_alive():
                stderr_thread.join(timeout=THREAD_JOIN_TIMEOUT_SEC)
            error = SessionCrash(returncode)
            logger.warning(f"Session {self.session_id}: {error}")
            if self._last_stderr:
                logger.warning(f"Session {self.session_id}: last ffmpeg output:\n{self._last_stderr.rstrip()}")

        if not requested:
            self._close_pipes()

        self._report_exit(error)

    def _stderr_drain(self) -> None:
        """Log ffmpeg stderr line by line and keep a bounded tail."""
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
            decoded = line.decode(errors="ignore").rstrip()
            if not decoded:
                continue
            logger.warning(f"[FFMPEG] {decoded}")
            tail = self._last_stderr + decoded + "\n"
            self._last_stderr = tail[-STDERR_TAIL_BYTES:]
        logger.debug(f"Session {self.session_id}: stderr drain exiting")

    def _report_exit(self, error: Optional[Exception]) -> None:
        with self._lock:
            if self._exit_reported:
                return
            self._exit_reported = True
        try:
            self._on_exit(self.session_id, error)
        except Exception as e:
            logger.error(f"Session {self.session_id}: exit callback failed: {e}", exc_info=True)
