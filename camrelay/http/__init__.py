"""
camrelay HTTP subsystem.

This package provides the control endpoints and the WebSocket fan-out.
Subscriber sockets are owned by Broadcaster once upgraded.
"""

from camrelay.http.broadcaster import Broadcaster, Subscriber
from camrelay.http.server import HTTPServer

__all__ = [
    "Broadcaster",
    "Subscriber",
    "HTTPServer",
]
