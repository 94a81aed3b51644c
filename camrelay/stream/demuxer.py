"""
Motion-JPEG frame demultiplexer.

ffmpeg's image2pipe muxer writes JPEG images back to back on stdout with no
container framing, and pipe reads return arbitrary slices of that stream.
FrameDemuxer reassembles whole images by scanning for the JPEG SOI (FF D8)
and EOI (FF D9) markers.

The scan is a literal first-occurrence search. An EOI byte pair occurring
inside compressed payload would end a frame early; that risk is accepted.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, List, Optional, Tuple

from camrelay.errors import BufferOverflow

logger = logging.getLogger(__name__)

START_MARKER = b"\xff\xd8"
END_MARKER = b"\xff\xd9"
MARKER_LEN = 2

# 8 MiB: roughly 100 frames at the default quality, far above any single image
DEFAULT_MAX_BUFFER_BYTES = 8 * 1024 * 1024


class FrameDemuxer:
    """
    Splits a raw MJPEG byte stream into complete JPEG frames.

    One instance belongs to exactly one TranscodeSession. It keeps an
    accumulation buffer between calls; after every pass the buffer holds no
    complete frame, only whatever follows the last emitted frame.

    Attributes:
        max_buffer_bytes: Bound on buffered bytes for a pass that finds no frame
    """

    def __init__(self, max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES) -> None:
        if max_buffer_bytes <= 0:
            raise ValueError(f"max_buffer_bytes must be > 0, got {max_buffer_bytes}")
        self.max_buffer_bytes = max_buffer_bytes
        self._buffer = bytearray()
        # (start index, index to resume the end-marker search) for a frame
        # whose start marker was seen but whose end marker has not arrived
        self._pending: Optional[Tuple[int, int]] = None
        self._frames_emitted = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def frames_emitted(self) -> int:
        return self._frames_emitted

    def reset(self) -> None:
        """Discard all buffered bytes."""
        self._buffer = bytearray()
        self._pending = None

    def feed(self, chunk: bytes) -> List[bytes]:
        """
        Append a chunk and extract every frame it completes.

        Args:
            chunk: Bytes read from the transcoder (may be empty)

        Returns:
            Complete frames in stream order, each including both markers

        Raises:
            BufferOverflow: If this pass found no frame and the buffer is
                larger than max_buffer_bytes. The buffer is cleared first.
        """
        buf = self._buffer
        if chunk:
            buf.extend(chunk)

        frames: List[bytes] = []
        cursor = 0
        pending = self._pending
        self._pending = None

        while True:
            if pending is not None:
                start, search_from = pending
                pending = None
            else:
                start = buf.find(START_MARKER, cursor)
                if start == -1:
                    break
                search_from = start + MARKER_LEN

            end = buf.find(END_MARKER, search_from)
            if end == -1:
                # Back up one byte: the chunk may have ended between FF and D9
                resume = max(search_from, len(buf) - MARKER_LEN + 1)
                self._pending = (start, resume)
                break

            stop = end + MARKER_LEN
            frames.append(bytes(buf[start:stop]))
            cursor = stop

        if cursor:
            del buf[:cursor]
            if self._pending is not None:
                start, resume = self._pending
                self._pending = (start - cursor, resume - cursor)

        if frames:
            self._frames_emitted += len(frames)
        elif len(buf) > self.max_buffer_bytes:
            size = len(buf)
            self.reset()
            raise BufferOverflow(size, self.max_buffer_bytes)

        return frames

    def iter_frames(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """
        Lazily yield frames from an iterable of chunks.

        Frames are yielded as soon as the chunk completing them is consumed.
        BufferOverflow propagates out of the generator.
        """
        for chunk in chunks:
            for frame in self.feed(chunk):
                yield frame
