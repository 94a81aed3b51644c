"""
Broadcaster: subscriber registry and frame fan-out.

Every subscriber gets its own bounded queue of encoded messages and a
non-blocking socket. broadcast() enqueues the same message for everyone and
flushes what each socket will take right now; whatever does not fit stays
queued until the connection handler sees the socket writable again or the
next frame arrives. A subscriber whose socket errors, whose queue
fills up, or whose last successful send is older than the client timeout
is dropped without affecting anyone else.
"""

import logging
import socket
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from camrelay.errors import SubscriberSendFailure
from camrelay.http.websocket import encode_binary_message

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_QUEUE_SIZE = 30
DEFAULT_CLIENT_TIMEOUT_MS = 2000


@dataclass(eq=False)
class Subscriber:
    """Handle for one subscriber connection."""
    id: str
    address: Optional[Tuple] = None
    _open: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def closed(self) -> bool:
        return not self._open.is_set()


@dataclass
class _SubscriberState:
    """Internal state for a connected subscriber."""
    handle: Subscriber
    sock: socket.socket
    queue: deque  # Encoded messages waiting to be sent
    last_send_monotonic: float  # Last time the queue was fully drained or progressed


class Broadcaster:
    """
    Thread-safe subscriber set with per-subscriber failure isolation.

    The supervisor is told about every join and every removal exactly once,
    outside the registry lock, so its subscriber count matches the set.

    Args:
        supervisor: Object with subscriber_joined()/subscriber_left(), or None
        queue_size: Max queued messages per subscriber before it is dropped
        client_timeout_ms: Max time without send progress before it is dropped
        encoder: Turns a frame into the bytes put on the wire
    """

    def __init__(
        self,
        supervisor=None,
        queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE,
        client_timeout_ms: int = DEFAULT_CLIENT_TIMEOUT_MS,
        encoder: Callable[[bytes], bytes] = encode_binary_message,
    ) -> None:
        self._supervisor = supervisor
        self._queue_size = queue_size
        self._client_timeout_sec = client_timeout_ms / 1000.0
        self._encoder = encoder

        self._subscribers: Dict[str, _SubscriberState] = {}
        self._lock = threading.Lock()

        self._total_bytes_sent = 0
        self._total_frames = 0
        self._total_drops = 0

    def attach_supervisor(self, supervisor) -> None:
        self._supervisor = supervisor

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, sock: socket.socket, address: Optional[Tuple] = None) -> Subscriber:
        """
        Register a connected socket and return its handle.

        The socket is switched to non-blocking mode; from here on all writes
        to it must go through this Broadcaster.
        """
        try:
            sock.setblocking(False)
        except OSError as e:
            logger.warning(f"Failed to set non-blocking for subscriber at {address}: {e}")

        handle = Subscriber(id=str(uuid.uuid4()), address=address)
        handle._open.set()
        with self._lock:
            self._subscribers[handle.id] = _SubscriberState(
                handle=handle,
                sock=sock,
                queue=deque(),
                last_send_monotonic=time.monotonic(),
            )
            count = len(self._subscribers)
        logger.info(f"Subscriber {handle.id} connected from {address}, {count} total")

        if self._supervisor is not None:
            self._supervisor.subscriber_joined()
        return handle

    def unsubscribe(self, subscriber: Subscriber) -> None:
        """Remove a subscriber and close its socket. Idempotent."""
        with self._lock:
            removed = self._drop_locked(subscriber.id, "disconnected")
        if removed:
            self._notify_left(1)

    def send(self, subscriber: Subscriber, data: bytes) -> bool:
        """
        Queue raw bytes (control frames) for one subscriber, in order with
        frame traffic, and try to flush.

        Returns:
            False if the subscriber is gone or was dropped by this send
        """
        return self._flush(subscriber, data)

    def flush(self, subscriber: Subscriber) -> bool:
        """
        Push out whatever is still queued for one subscriber. Called when
        its socket becomes writable, so the tail of a partly sent frame does
        not wait for the next broadcast.

        Returns:
            False if the subscriber is gone or was dropped by this flush
        """
        return self._flush(subscriber)

    def has_pending(self, subscriber: Subscriber) -> bool:
        with self._lock:
            state = self._subscribers.get(subscriber.id)
            return state is not None and bool(state.queue)

    def _flush(self, subscriber: Subscriber, data: Optional[bytes] = None) -> bool:
        dropped = False
        with self._lock:
            state = self._subscribers.get(subscriber.id)
            if state is None:
                return False
            if data is not None:
                state.queue.append(data)
            try:
                self._flush_locked(state, time.monotonic())
            except SubscriberSendFailure as e:
                dropped = self._drop_locked(subscriber.id, e.reason)
        if dropped:
            self._notify_left(1)
            return False
        return True

    def broadcast(self, frame: bytes) -> None:
        """
        Deliver one frame to every subscriber without blocking.

        Never raises because of a subscriber; failed subscribers are removed.
        """
        if not frame:
            return

        message = self._encoder(frame)
        now_monotonic = time.monotonic()
        dead: List[Tuple[str, str]] = []

        with self._lock:
            self._total_frames += 1
            client_ids = list(self._subscribers.keys())

        # Lock is taken per subscriber so joins/leaves can interleave with a
        # long fan-out; the snapshot tolerates ids removed in between
        for client_id in client_ids:
            with self._lock:
                state = self._subscribers.get(client_id)
                if state is None:
                    continue

                if len(state.queue) >= self._queue_size:
                    dead.append((client_id, "queue_full"))
                    continue
                state.queue.append(message)

                try:
                    self._flush_locked(state, now_monotonic)
                except SubscriberSendFailure as e:
                    dead.append((client_id, e.reason))
                    continue

                stalled_for = now_monotonic - state.last_send_monotonic
                if state.queue and stalled_for > self._client_timeout_sec:
                    dead.append((client_id, f"timeout: {stalled_for * 1000:.1f}ms"))

        if dead:
            removed = 0
            with self._lock:
                for client_id, reason in dead:
                    if self._drop_locked(client_id, reason):
                        removed += 1
            self._notify_left(removed)

    def close_all(self) -> None:
        """Drop every subscriber (shutdown)."""
        with self._lock:
            removed = 0
            for client_id in list(self._subscribers.keys()):
                if self._drop_locked(client_id, "shutdown"):
                    removed += 1
        self._notify_left(removed)
        logger.info("All subscriber connections closed")

    def get_stats(self) -> dict:
        with self._lock:
            connected = len(self._subscribers)
            queued = sum(len(state.queue) for state in self._subscribers.values())
            return {
                "connected_clients": connected,
                "queued_messages": queued,
                "total_frames": self._total_frames,
                "total_bytes_sent": self._total_bytes_sent,
                "total_drops": self._total_drops,
            }

    def _flush_locked(self, state: _SubscriberState, now_monotonic: float) -> None:
        """
        Send queued messages until the socket would block.

        Must be called with lock held.

        Raises:
            SubscriberSendFailure: On socket error or a 0-byte send
        """
        while state.queue:
            message = state.queue[0]
            try:
                sent = state.sock.send(message)
            except (BlockingIOError, InterruptedError):
                return
            except OSError as e:
                raise SubscriberSendFailure(state.handle.id, f"socket_error: {e}")

            if not isinstance(sent, int) or sent <= 0:
                raise SubscriberSendFailure(state.handle.id, "zero_byte_send")

            self._total_bytes_sent += sent
            state.last_send_monotonic = now_monotonic
            if sent >= len(message):
                state.queue.popleft()
            else:
                # Partial send: socket buffer is full, keep the remainder first in line.
                # A memoryview avoids recopying a large frame on every flush
                state.queue[0] = memoryview(message)[sent:]
                return

    def _drop_locked(self, client_id: str, reason: str) -> bool:
        """Remove and close a subscriber. Must be called with lock held."""
        state = self._subscribers.pop(client_id, None)
        if state is None:
            return False

        state.handle._open.clear()
        try:
            state.sock.close()
        except OSError:
            pass

        if reason in ("disconnected", "shutdown"):
            logger.debug(f"Removed subscriber {client_id}: {reason}")
        else:
            self._total_drops += 1
            logger.info(f"Dropped subscriber {client_id}: {reason}")
        return True

    def _notify_left(self, removed: int) -> None:
        if self._supervisor is None:
            return
        for _ in range(removed):
            self._supervisor.subscriber_left()
