"""
Contract tests for FrameDemuxer.

Covers: frame integrity across arbitrary chunking, partial-frame carryover,
no duplication, buffer bound and reset.
"""

import pytest

from camrelay.errors import BufferOverflow
from camrelay.stream.demuxer import FrameDemuxer
from camrelay.tests.contracts.conftest import make_jpeg


def split_at(data: bytes, cuts):
    """Split data at the given offsets."""
    pieces = []
    prev = 0
    for cut in sorted(cuts):
        pieces.append(data[prev:cut])
        prev = cut
    pieces.append(data[prev:])
    return pieces


class TestFrameIntegrity:
    """Frames come out byte-identical regardless of how the stream is sliced."""

    def test_single_chunk_with_three_frames(self):
        frames = [make_jpeg(b"a"), make_jpeg(b"b", 10), make_jpeg(b"c", 300)]
        demuxer = FrameDemuxer()

        out = demuxer.feed(b"".join(frames))

        assert out == frames
        assert demuxer.buffered == 0
        assert demuxer.frames_emitted == 3

    def test_every_single_split_point(self):
        """Any one split of a two-frame stream yields the same two frames."""
        frames = [make_jpeg(b"x", 20), make_jpeg(b"y", 20)]
        stream = b"".join(frames)

        for cut in range(len(stream) + 1):
            demuxer = FrameDemuxer()
            out = []
            for piece in split_at(stream, [cut]):
                out.extend(demuxer.feed(piece))
            assert out == frames, f"split at {cut} broke the frames"

    def test_byte_at_a_time(self):
        frames = [make_jpeg(b"p", 5), make_jpeg(b"q", 7), make_jpeg(b"r", 9)]
        stream = b"".join(frames)
        demuxer = FrameDemuxer()

        out = []
        for i in range(len(stream)):
            out.extend(demuxer.feed(stream[i:i + 1]))

        assert out == frames

    def test_split_inside_end_marker(self):
        """Chunk boundary between FF and D9 must not lose the frame."""
        frame = make_jpeg(b"m", 16)
        demuxer = FrameDemuxer()

        assert demuxer.feed(frame[:-1]) == []
        assert demuxer.feed(frame[-1:]) == [frame]

    def test_split_inside_start_marker(self):
        frame = make_jpeg(b"n", 16)
        demuxer = FrameDemuxer()

        assert demuxer.feed(frame[:1]) == []
        assert demuxer.feed(frame[1:]) == [frame]

    def test_three_frames_over_four_chunks(self):
        frames = [make_jpeg(b"1", 40), make_jpeg(b"2", 40), make_jpeg(b"3", 40)]
        stream = b"".join(frames)
        chunks = split_at(stream, [30, 61, 100])
        demuxer = FrameDemuxer()

        out = list(demuxer.iter_frames(chunks))

        assert out == frames

    def test_bytes_outside_frames_are_discarded(self):
        frame = make_jpeg(b"g", 12)
        demuxer = FrameDemuxer()

        out = demuxer.feed(b"garbage" + frame + b"noise" + frame)

        assert out == [frame, frame]

    def test_empty_chunk_is_harmless(self):
        demuxer = FrameDemuxer()
        assert demuxer.feed(b"") == []
        assert demuxer.buffered == 0


class TestCarryover:
    """Partial frames survive across feeds and are never duplicated."""

    def test_partial_frame_kept_until_complete(self):
        frame = make_jpeg(b"k", 100)
        demuxer = FrameDemuxer()

        assert demuxer.feed(frame[:50]) == []
        assert demuxer.buffered == 50
        assert demuxer.feed(frame[50:]) == [frame]
        assert demuxer.buffered == 0

    def test_tail_of_next_frame_retained(self):
        first = make_jpeg(b"f", 10)
        second = make_jpeg(b"s", 10)
        demuxer = FrameDemuxer()

        out = demuxer.feed(first + second[:5])

        assert out == [first]
        assert demuxer.buffered == 5

    def test_no_duplicate_after_many_feeds(self):
        frame = make_jpeg(b"d", 30)
        demuxer = FrameDemuxer()

        out = demuxer.feed(frame)
        for _ in range(5):
            out.extend(demuxer.feed(b""))

        assert out == [frame]
        assert demuxer.frames_emitted == 1


class TestBounds:
    def test_invalid_limit_rejected(self):
        with pytest.raises(ValueError):
            FrameDemuxer(max_buffer_bytes=0)

    def test_overflow_without_frame_raises_and_clears(self):
        demuxer = FrameDemuxer(max_buffer_bytes=64)
        demuxer.feed(b"\xff\xd8" + b"\x00" * 40)

        with pytest.raises(BufferOverflow) as excinfo:
            demuxer.feed(b"\x00" * 40)

        assert excinfo.value.limit == 64
        assert excinfo.value.size > 64
        assert demuxer.buffered == 0

    def test_pass_that_yields_a_frame_does_not_overflow(self):
        """A large chunk that completes frames is fine even past the bound."""
        frames = [make_jpeg(b"z", 50) for _ in range(4)]
        demuxer = FrameDemuxer(max_buffer_bytes=64)

        out = demuxer.feed(b"".join(frames))

        assert out == frames

    def test_reset_discards_partial_frame(self):
        frame = make_jpeg(b"r", 20)
        demuxer = FrameDemuxer()
        demuxer.feed(frame[:10])

        demuxer.reset()

        assert demuxer.buffered == 0
        # The orphaned tail has no start marker, so nothing comes out
        assert demuxer.feed(frame[10:]) == []
