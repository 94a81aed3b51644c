"""
camrelay stream subsystem.

This package provides the transcoder side of the relay:
- FrameDemuxer: Splits ffmpeg output into whole JPEG frames
- TranscodeSession: Owns one ffmpeg process and its drain threads
- StreamSupervisor: Starts, restarts and stops sessions on demand
"""

from camrelay.stream.demuxer import FrameDemuxer
from camrelay.stream.session import SessionStatus, TranscodeSession, build_ffmpeg_cmd
from camrelay.stream.supervisor import StreamSupervisor, SupervisorState

__all__ = [
    "FrameDemuxer",
    "SessionStatus",
    "TranscodeSession",
    "build_ffmpeg_cmd",
    "StreamSupervisor",
    "SupervisorState",
]
