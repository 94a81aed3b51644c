"""
StreamSupervisor: decides when a TranscodeSession exists.

State machine:

    IDLE --first subscriber--> STARTING --first frame--> STREAMING
    STARTING/STREAMING --session exit, subscribers remain--> RESTARTING
    RESTARTING --restart timer fires--> STARTING
    any --last subscriber leaves--> IDLE
    any --shutdown()--> STOPPED

Spawning always goes through a single cancellable timer slot: a zero-delay
timer for the first subscriber, restart_delay_sec after a crash. A
subscriber that leaves right away usually cancels the timer before it
fires. If the timer already ran, the new session is detached and stopped
like any other, so the supervisor still ends IDLE with nothing running.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Any, Callable, Dict, Optional

from camrelay.errors import SpawnError

logger = logging.getLogger(__name__)

DEFAULT_RESTART_DELAY_SEC = 5.0


class SupervisorState(enum.Enum):
    IDLE = 1
    STARTING = 2
    STREAMING = 3
    RESTARTING = 4
    STOPPED = 5


# session_factory(session_id, on_frame, on_exit) -> session with start()/stop()
SessionFactory = Callable[[int, Callable[[int, bytes], None], Callable[[int, Optional[Exception]], None]], Any]
TimerFactory = Callable[..., Any]


class StreamSupervisor:
    """
    Owns the subscriber count and the at-most-one live transcoder session.

    All public methods are thread-safe and non-blocking except restart(),
    which waits out its delay on the caller's thread. Sessions are always
    stopped outside the supervisor lock, because stopping a session joins
    its drain thread and that thread reports back into this object.

    Args:
        session_factory: Builds a session for a given id and callbacks
        frame_sink: Receives every frame from the current session
        restart_delay_sec: Wait before respawning after an unexpected exit
        timer_factory: threading.Timer-compatible constructor
        on_state_change: Optional callback, invoked outside the lock
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        frame_sink: Callable[[bytes], None],
        restart_delay_sec: float = DEFAULT_RESTART_DELAY_SEC,
        timer_factory: TimerFactory = threading.Timer,
        on_state_change: Optional[Callable[[SupervisorState], None]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._frame_sink = frame_sink
        self._restart_delay_sec = restart_delay_sec
        self._timer_factory = timer_factory
        self._on_state_change = on_state_change

        self._lock = threading.Lock()
        self._state = SupervisorState.IDLE
        self._subscribers = 0

        self._session = None
        self._next_session_id = 1

        # Single pending timer; the token invalidates timers that fire after
        # being cancelled or superseded
        self._timer = None
        self._timer_token = 0

        self._shutdown_event = threading.Event()
        self._restart_count = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_state(self) -> SupervisorState:
        with self._lock:
            return self._state

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return self._subscribers

    @property
    def restart_count(self) -> int:
        with self._lock:
            return self._restart_count

    def has_pending_timer(self) -> bool:
        with self._lock:
            return self._timer is not None

    def is_active(self) -> bool:
        with self._lock:
            return self._session is not None

    def status(self) -> Dict[str, Any]:
        """Snapshot for the /stream-status endpoint."""
        with self._lock:
            active = self._session is not None
            clients = self._subscribers
            state = self._state

        if active:
            message = f"Stream service running, {clients} client(s) connected"
        elif state == SupervisorState.RESTARTING:
            message = f"Stream service restarting, {clients} client(s) connected"
        else:
            message = f"Stream service not running, {clients} client(s) connected"

        return {
            "status": "active" if active else "inactive",
            "clients": clients,
            "message": message,
            "state": state.name,
        }

    # ------------------------------------------------------------------
    # Subscriber events
    # ------------------------------------------------------------------

    def subscriber_joined(self) -> None:
        with self._lock:
            if self._state == SupervisorState.STOPPED:
                return
            self._subscribers += 1
            count = self._subscribers
            transition = count == 1 and self._state == SupervisorState.IDLE
            if transition:
                self._state = SupervisorState.STARTING
                self._arm_timer_locked(0.0)

        logger.info(f"Subscriber joined, {count} connected")
        if transition:
            self._notify(SupervisorState.STARTING)

    def subscriber_left(self) -> None:
        with self._lock:
            if self._state == SupervisorState.STOPPED:
                return
            if self._subscribers == 0:
                logger.warning("subscriber_left() with no subscribers registered")
                return
            self._subscribers -= 1
            count = self._subscribers
            session = None
            transition = count == 0 and self._state != SupervisorState.IDLE
            if transition:
                self._cancel_timer_locked()
                session = self._detach_session_locked()
                self._state = SupervisorState.IDLE

        logger.info(f"Subscriber left, {count} connected")
        if transition:
            if session is not None:
                logger.info("Last subscriber left, stopping transcoder")
                session.stop()
            self._notify(SupervisorState.IDLE)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def restart(self, delay_sec: float = 1.0) -> bool:
        """
        Stop the current session, wait delay_sec, then start a new one.

        Blocks the caller for the delay. A session is only started if
        subscribers are still attached when the delay ends.

        Returns:
            True if a new session was requested
        """
        with self._lock:
            if self._state == SupervisorState.STOPPED:
                return False
            self._cancel_timer_locked()
            session = self._detach_session_locked()
            if self._subscribers > 0:
                self._state = SupervisorState.RESTARTING
            else:
                self._state = SupervisorState.IDLE
            state = self._state

        logger.info("Stream restart requested")
        if session is not None:
            session.stop()
        self._notify(state)

        if self._shutdown_event.wait(delay_sec):
            return False

        with self._lock:
            requested = (
                self._state in (SupervisorState.IDLE, SupervisorState.RESTARTING)
                and self._subscribers > 0
                and self._session is None
            )
            if requested:
                self._cancel_timer_locked()
                self._state = SupervisorState.STARTING
                self._arm_timer_locked(0.0)

        if requested:
            self._notify(SupervisorState.STARTING)
        return requested

    def shutdown(self) -> None:
        """Stop any session, cancel any timer and refuse further work."""
        self._shutdown_event.set()
        with self._lock:
            if self._state == SupervisorState.STOPPED:
                return
            self._cancel_timer_locked()
            session = self._detach_session_locked()
            self._state = SupervisorState.STOPPED

        if session is not None:
            session.stop()
        logger.info("StreamSupervisor stopped")
        self._notify(SupervisorState.STOPPED)

    # ------------------------------------------------------------------
    # Session callbacks
    # ------------------------------------------------------------------

    def _on_session_frame(self, session_id: int, frame: bytes) -> None:
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                return
            transition = self._state == SupervisorState.STARTING
            if transition:
                self._state = SupervisorState.STREAMING

        if transition:
            logger.info(f"Session {session_id}: first frame received, streaming")
            self._notify(SupervisorState.STREAMING)

        self._frame_sink(frame)

    def _on_session_exit(self, session_id: int, error: Optional[Exception]) -> None:
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                # Stale: already detached by stop/restart/shutdown
                return
            self._session = None
            if self._subscribers > 0:
                self._state = SupervisorState.RESTARTING
                self._restart_count += 1
                self._arm_timer_locked(self._restart_delay_sec)
            else:
                self._cancel_timer_locked()
                self._state = SupervisorState.IDLE
            state = self._state

        if state == SupervisorState.RESTARTING:
            logger.warning(
                f"Session {session_id} ended ({error}); restarting in {self._restart_delay_sec:.1f}s"
            )
        else:
            logger.info(f"Session {session_id} ended with no subscribers")
        self._notify(state)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _arm_timer_locked(self, delay_sec: float) -> None:
        self._cancel_timer_locked()
        self._timer_token += 1
        timer = self._timer_factory(delay_sec, self._on_timer, args=(self._timer_token,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._timer_token += 1

    def _on_timer(self, token: int) -> None:
        with self._lock:
            if token != self._timer_token:
                return
            self._timer = None
            if self._subscribers == 0 or self._state not in (
                SupervisorState.STARTING, SupervisorState.RESTARTING
            ):
                return
            if self._session is not None:
                # Concurrent start request collapsed into the live session
                return
            previous = self._state
            self._state = SupervisorState.STARTING
            session_id = self._next_session_id
            self._next_session_id += 1
            session = self._session_factory(session_id, self._on_session_frame, self._on_session_exit)
            self._session = session

        if previous != SupervisorState.STARTING:
            self._notify(SupervisorState.STARTING)

        logger.info(f"Starting transcoder session {session_id}")
        # A leave may already have detached and stopped it; start() is then a no-op
        try:
            session.start()
        except SpawnError as e:
            logger.error(f"Session {session_id}: {e}")
            self._on_session_exit(session_id, e)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _detach_session_locked(self):
        session = self._session
        self._session = None
        return session

    def _notify(self, state: SupervisorState) -> None:
        logger.debug(f"Supervisor state -> {state.name}")
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception as e:
                logger.warning(f"State change callback failed: {e}")
