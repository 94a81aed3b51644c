"""
Error taxonomy for the camrelay stream core.

Only session-fatal errors (SpawnError, SessionCrash, BufferOverflow) ever reach
StreamSupervisor, and they arrive as exit events rather than raised exceptions
on a caller's stack. SubscriberSendFailure never leaves the Broadcaster.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""
    pass


class SpawnError(RelayError):
    """The transcoder executable could not be launched."""

    def __init__(self, cmd, cause: Optional[BaseException] = None):
        self.cmd = list(cmd)
        self.cause = cause
        binary = self.cmd[0] if self.cmd else "<empty command>"
        super().__init__(f"Failed to launch {binary}: {cause}")


class SessionCrash(RelayError):
    """The transcoder exited while nobody asked it to."""

    def __init__(self, returncode: Optional[int]):
        self.returncode = returncode
        super().__init__(f"Transcoder exited unexpectedly (exit code: {returncode})")


class BufferOverflow(RelayError):
    """Demux buffer grew past its bound without yielding a frame."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Frame buffer overflow: {size} bytes buffered without a frame boundary (limit {limit})"
        )


class SubscriberSendFailure(RelayError):
    """Delivery to one subscriber failed."""

    def __init__(self, subscriber_id: str, reason: str):
        self.subscriber_id = subscriber_id
        self.reason = reason
        super().__init__(f"Send to subscriber {subscriber_id} failed: {reason}")
