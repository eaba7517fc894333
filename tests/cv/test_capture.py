"""
Tests for capture sources, frame packing and the buffer pool.
"""

import threading
import time

import numpy as np
import pytest

from framefeed.cv.capture import (
    CaptureError,
    FramePool,
    PatternSource,
    aligned_stride,
    get_source,
    pack_frame,
)
from framefeed.cv.converter import convert
from framefeed.cv.pixel_buffer import PixelFormat, RawFrame, acquire
from framefeed.utils.config import Settings


@pytest.mark.parametrize("width, alignment, expected", [
    (16, 64, 64),
    (17, 64, 128),
    (3, 1, 12),
    (3, 0, 12),
    (0, 64, 0),
])
def test_aligned_stride(width, alignment, expected):
    assert aligned_stride(width, alignment) == expected


class TestPackFrame:

    def _bgr(self):
        bgr = np.zeros((2, 2, 3), dtype=np.uint8)
        bgr[0, 0] = (10, 20, 30)
        bgr[1, 1] = (1, 2, 3)
        return bgr

    def _frame(self, pixel_format):
        frame = RawFrame(pixel_format, 2, 2, 12, data=bytearray([0xEE]) * 24)
        assert frame.reclaim()
        return frame

    def test_bgra_layout(self):
        frame = self._frame(PixelFormat.BGRA32)
        pack_frame(self._bgr(), frame)
        rows = frame.writable_rows()
        assert rows[0, :4].tolist() == [10, 20, 30, 255]
        assert rows[1, 4:8].tolist() == [1, 2, 3, 255]
        # Row padding untouched
        assert rows[:, 8:].tolist() == [[0xEE] * 4] * 2

    def test_argb_layout(self):
        frame = self._frame(PixelFormat.ARGB32)
        pack_frame(self._bgr(), frame)
        rows = frame.writable_rows()
        assert rows[0, :4].tolist() == [255, 30, 20, 10]
        assert rows[1, 4:8].tolist() == [255, 3, 2, 1]

    @pytest.mark.parametrize("pixel_format", [PixelFormat.ARGB32, PixelFormat.BGRA32])
    def test_packed_frame_converts_back(self, pixel_format):
        frame = self._frame(pixel_format)
        bgr = self._bgr()
        pack_frame(bgr, frame)
        frame.publish()

        with acquire(frame) as locked:
            image = convert(locked)
        with image:
            np.testing.assert_array_equal(image.to_bgr(), bgr)

    def test_size_mismatch(self):
        frame = self._frame(PixelFormat.BGRA32)
        with pytest.raises(ValueError):
            pack_frame(np.zeros((3, 2, 3), dtype=np.uint8), frame)


class TestFramePool:

    def test_grows_until_capacity(self):
        pool = FramePool(PixelFormat.BGRA32, 4, 2, row_alignment=64, max_frames=2)
        first = pool.checkout()
        first.publish()
        first.retain()

        second = pool.checkout()
        assert second is not first
        assert second.stride == 64
        second.publish()
        second.retain()

        # Both pinned downstream
        assert pool.checkout() is None
        assert len(pool) == 2

    def test_reuses_released_buffer(self):
        pool = FramePool(PixelFormat.ARGB32, 4, 2, max_frames=2)
        frame = pool.checkout()
        frame.publish()
        frame.retain()
        frame.release()

        assert pool.checkout() is frame
        assert len(pool) == 1

    def test_locked_buffer_is_not_reused(self):
        pool = FramePool(PixelFormat.BGRA32, 4, 2, max_frames=1)
        frame = pool.checkout()
        frame.publish()
        with acquire(frame):
            assert pool.checkout() is None

    def test_matches(self):
        pool = FramePool(PixelFormat.BGRA32, 4, 2)
        assert pool.matches(4, 2)
        assert not pool.matches(2, 4)


class TestSources:

    def _settings(self, **overrides):
        values = dict(frame_width=32, frame_height=16, fps=100, pixel_format="BGRA32", row_alignment=64)
        values.update(overrides)
        return Settings(**values)

    def test_unknown_source(self):
        with pytest.raises(ValueError, match="Unknown source"):
            get_source("scanner", lambda frame: None, self._settings())

    def test_unsupported_pixel_format(self):
        with pytest.raises(CaptureError):
            PatternSource(lambda frame: None, self._settings(pixel_format="420v"))

    def test_invalid_pattern_size(self):
        source = PatternSource(lambda frame: None, self._settings(frame_width=0))
        with pytest.raises(CaptureError):
            source.start()
        assert not source.running

    def test_pattern_source_delivers_frames(self):
        received = []
        got_three = threading.Event()

        def on_frame(frame):
            with acquire(frame) as locked:
                received.append((locked.width, locked.height, locked.stride, locked.pixel_format))
            if len(received) >= 3:
                got_three.set()

        source = get_source("pattern", on_frame, self._settings(pixel_format="argb"))
        source.start()
        try:
            assert got_three.wait(5.0)
        finally:
            source.stop()

        assert not source.running
        assert received[0] == (32, 16, 128, PixelFormat.ARGB32)
        status = source.get_status()
        assert status["source"] == "pattern"
        assert status["frames_captured"] >= 3
        assert status["last_error"] is None
        # Nothing retained downstream, so one buffer is enough
        assert status["pool_size"] == 1

    def test_pinned_frames_are_dropped_at_source(self):
        held = []
        dropped = threading.Event()

        def on_frame(frame):
            held.append(frame.retain())

        source = PatternSource(on_frame, self._settings())
        source.start()
        try:
            for _ in range(200):
                if source.frames_dropped > 0:
                    dropped.set()
                    break
                time.sleep(0.02)
        finally:
            source.stop()

        assert dropped.is_set()
        assert len(held) == source.get_status()["pool_size"]
        for frame in held:
            frame.release()
