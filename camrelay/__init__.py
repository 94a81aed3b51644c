"""
camrelay: on-demand camera relay.

Pulls an RTSP camera through ffmpeg as motion-JPEG only while someone is
watching, and fans each JPEG frame out to WebSocket subscribers.
"""

__version__ = "0.1.0"
