"""
RelayService: wires configuration, transcoder supervision and the HTTP
front end into one process.
"""

import logging
import signal
import threading
from typing import Optional

from camrelay.config import RelayConfig
from camrelay.http.broadcaster import Broadcaster
from camrelay.http.server import HTTPServer
from camrelay.stream.session import TranscodeSession, build_ffmpeg_cmd
from camrelay.stream.supervisor import StreamSupervisor

logger = logging.getLogger(__name__)


class RelayService:
    """
    Owns the three long-lived components:

    - Broadcaster: subscriber sockets, frame fan-out
    - StreamSupervisor: when ffmpeg runs
    - HTTPServer: control endpoints and WebSocket upgrades

    Frames flow session -> supervisor -> broadcaster; subscriber joins and
    leaves flow broadcaster -> supervisor.
    """

    def __init__(self, config: Optional[RelayConfig] = None, session_factory=None):
        """
        Args:
            config: Loaded configuration (default: RelayConfig.load_config())
            session_factory: Override for the TranscodeSession factory
        """
        self.config = config if config is not None else RelayConfig.load_config()
        cfg = self.config

        self.ffmpeg_cmd = build_ffmpeg_cmd(
            cfg.source_url,
            ffmpeg_bin=cfg.ffmpeg_bin,
            rtsp_transport=cfg.rtsp_transport,
            quality=cfg.quality,
            frame_rate=cfg.frame_rate,
        )

        self.broadcaster = Broadcaster(
            queue_size=cfg.client_queue_size,
            client_timeout_ms=cfg.client_timeout_ms,
        )
        self.supervisor = StreamSupervisor(
            session_factory=session_factory or self._create_session,
            frame_sink=self.broadcaster.broadcast,
            restart_delay_sec=cfg.restart_delay_sec,
        )
        self.broadcaster.attach_supervisor(self.supervisor)

        self.http_server = HTTPServer(
            host=cfg.host,
            port=cfg.port,
            supervisor=self.supervisor,
            broadcaster=self.broadcaster,
            restart_delay_sec=cfg.control_restart_delay_sec,
            max_clients=cfg.max_clients,
        )

        self.running = False
        self._shutdown_event = threading.Event()

    def _create_session(self, session_id, on_frame, on_exit) -> TranscodeSession:
        return TranscodeSession(
            session_id,
            self.ffmpeg_cmd,
            on_frame=on_frame,
            on_exit=on_exit,
            read_chunk_size=self.config.read_chunk_size,
            max_buffer_bytes=self.config.max_buffer_bytes,
        )

    def start(self) -> None:
        """Start listening. ffmpeg only starts once a subscriber connects."""
        logger.info("=== camrelay starting ===")
        logger.info(f"Camera source: {self.config.source_url}")
        logger.debug(f"Transcoder command: {' '.join(self.ffmpeg_cmd)}")
        self.http_server.start()
        self.running = True

    def run_forever(self) -> None:
        """Block until SIGINT/SIGTERM or request_shutdown(), then stop."""
        def _handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.request_shutdown()

        # Signal handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, _handle_signal)
            signal.signal(signal.SIGTERM, _handle_signal)

        try:
            while not self._shutdown_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.stop()

    def request_shutdown(self) -> None:
        """Make run_forever() return and stop the service. Safe from any thread."""
        self._shutdown_event.set()

    def stop(self) -> None:
        """
        Stop everything:
        1. Supervisor (kills ffmpeg, cancels any pending restart)
        2. Subscriber sockets
        3. Listening socket
        """
        if not self.running:
            return
        self.running = False
        logger.info("Shutting down camrelay...")

        self.supervisor.shutdown()
        self.broadcaster.close_all()
        self.http_server.stop()

        active_threads = [
            t for t in threading.enumerate() if t != threading.current_thread() and not t.daemon
        ]
        if active_threads:
            logger.warning(f"Non-daemon threads still running after shutdown: {[t.name for t in active_threads]}")

        logger.info("camrelay stopped")
