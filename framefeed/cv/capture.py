"""
Capture sources producing RawFrames for the pipeline.

A source owns a small pool of packed 32-bit pixel buffers, fills one per
captured frame and invokes its callback synchronously from the capture
thread. Buffers still retained or locked downstream are never rewritten;
when every buffer is pinned the captured frame is dropped at the source.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Any, List, Type

import cv2
import numpy as np

from .pixel_buffer import BYTES_PER_PIXEL, PixelFormat, RawFrame
from ..utils.config import SETTINGS, Settings

logger = logging.getLogger(__name__)

FrameCallback = Callable[[RawFrame], None]


class CaptureError(Exception):
    """Raised when a capture source cannot be started."""
    pass


def aligned_stride(width: int, alignment: int) -> int:
    """Bytes per row for `width` 32-bit pixels, padded up to `alignment` bytes."""
    row = width * BYTES_PER_PIXEL
    if alignment <= 1:
        return row
    return (row + alignment - 1) // alignment * alignment


def pack_frame(bgr: np.ndarray, frame: RawFrame) -> None:
    """
    Write an OpenCV BGR image into a reclaimed frame's memory.

    Padding bytes past `width * 4` in each row are left untouched.
    """
    height, width = bgr.shape[:2]
    if (width, height) != (frame.width, frame.height):
        raise ValueError(f"image is {width}x{height}, frame is {frame.width}x{frame.height}")

    if frame.pixel_format is PixelFormat.BGRA32:
        packed = cv2.cvtColor(bgr, cv2.COLOR_BGR2BGRA)
    elif frame.pixel_format is PixelFormat.ARGB32:
        # A,R,G,B in memory is B,G,R,A reversed
        packed = cv2.cvtColor(bgr, cv2.COLOR_BGR2BGRA)[..., ::-1]
    else:
        raise ValueError(f"cannot pack into {frame.pixel_format.value}")

    rows = frame.writable_rows()
    rows[:, :width * BYTES_PER_PIXEL] = packed.reshape(height, width * BYTES_PER_PIXEL)


class FramePool:
    """Recycles RawFrame buffers of one geometry."""

    def __init__(
        self,
        pixel_format: PixelFormat,
        width: int,
        height: int,
        row_alignment: int = 64,
        max_frames: int = 6,
    ):
        self.pixel_format = pixel_format
        self.width = width
        self.height = height
        self.stride = aligned_stride(width, row_alignment)
        self.max_frames = max_frames
        self._frames: List[RawFrame] = []

    def __len__(self):
        return len(self._frames)

    def matches(self, width: int, height: int) -> bool:
        return (width, height) == (self.width, self.height)

    def checkout(self) -> Optional[RawFrame]:
        """
        Get a buffer the caller may write into.

        Returns:
            A reclaimed frame, or None when every buffer is still in use
            downstream and the pool is at capacity
        """
        for frame in self._frames:
            if frame.reclaim():
                return frame

        if len(self._frames) >= self.max_frames:
            return None

        frame = RawFrame(
            self.pixel_format,
            self.width,
            self.height,
            self.stride,
            data=bytearray(self.stride * self.height),
        )
        frame.reclaim()
        self._frames.append(frame)
        logger.debug(f"Frame pool grew to {len(self._frames)} buffer(s) of {self.stride}x{self.height} bytes")
        return frame


class FrameSource:
    """
    Base class for threaded capture sources.

    Subclasses implement `_open()`, `_read()` (returning a BGR image or
    None) and `_close()`. The base runs the capture loop, packs each image
    into a pooled frame and calls the callback.
    """

    name = "source"
    # Sleep between reads; 0 means the device paces the loop
    frame_interval = 0.0

    def __init__(self, callback: FrameCallback, settings: Optional[Settings] = None):
        self.settings = settings or SETTINGS
        self._callback = callback
        self.pixel_format = PixelFormat.parse(self.settings.pixel_format)
        if self.pixel_format is PixelFormat.UNSUPPORTED:
            raise CaptureError(f"cannot produce pixel format {self.settings.pixel_format!r}")

        self._pool: Optional[FramePool] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

        # Statistics
        self.frames_captured = 0
        self.frames_failed = 0
        self.frames_dropped = 0
        self._error_lock = threading.Lock()
        self._last_error: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Open the source and start the capture thread.

        Raises:
            CaptureError: the source could not be opened
        """
        if self._running:
            logger.warning(f"{self.name} capture already running")
            return

        logger.info(f"Starting {self.name} capture ({self.pixel_format.value})...")
        self._clear_last_error()
        self._open()

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._capture_loop, daemon=True, name=f"FrameFeed-{self.name}")
        self._thread.start()

    def stop(self) -> None:
        """Stop the capture thread; no callbacks happen after this returns."""
        if not self._running:
            return

        logger.info(f"Stopping {self.name} capture...")
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._close()
        self._running = False
        logger.info(f"{self.name} capture stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "source": self.name,
            "capturing": self._running,
            "pixel_format": self.pixel_format.value,
            "frames_captured": self.frames_captured,
            "frames_failed": self.frames_failed,
            "frames_dropped": self.frames_dropped,
            "pool_size": len(self._pool) if self._pool else 0,
            "last_error": self._get_last_error(),
        }

    def _open(self) -> None:
        raise NotImplementedError

    def _read(self) -> Optional[np.ndarray]:
        raise NotImplementedError

    def _close(self) -> None:
        pass

    def _capture_loop(self) -> None:
        logger.info(f"{self.name} capture loop started")

        while not self._stop_event.is_set():
            try:
                bgr = self._read()
                if bgr is None:
                    self.frames_failed += 1
                    logger.warning("Failed to read frame")
                    self._set_last_error("Failed to read frame from capture device")
                    self._stop_event.wait(0.5)
                    continue

                self._publish(bgr)

                if self.frame_interval > 0:
                    self._stop_event.wait(self.frame_interval)

            except Exception as e:
                self.frames_failed += 1
                logger.error(f"Error in capture loop: {e}", exc_info=True)
                self._set_last_error("Unexpected error in capture loop", exception=e)
                self._stop_event.wait(0.5)

        logger.info(f"{self.name} capture loop stopped")

    def _publish(self, bgr: np.ndarray) -> None:
        height, width = bgr.shape[:2]
        if self._pool is None or not self._pool.matches(width, height):
            logger.info(f"Capture geometry {width}x{height}, allocating new frame pool")
            self._pool = FramePool(self.pixel_format, width, height, self.settings.row_alignment)

        frame = self._pool.checkout()
        if frame is None:
            self.frames_dropped += 1
            logger.debug("All pooled buffers are in use downstream, dropping captured frame")
            return

        pack_frame(bgr, frame)
        frame.publish(time.time())
        self.frames_captured += 1
        self._callback(frame)
        self._clear_last_error()

    def _set_last_error(self, message: str, *, exception: Optional[Exception] = None) -> None:
        """Record the most recent capture error for diagnostics."""
        error: Dict[str, Any] = {
            "message": message,
            "timestamp": time.time(),
        }
        if exception:
            error["detail"] = str(exception)
        with self._error_lock:
            self._last_error = error

    def _clear_last_error(self) -> None:
        with self._error_lock:
            self._last_error = None

    def _get_last_error(self) -> Optional[Dict[str, Any]]:
        with self._error_lock:
            return dict(self._last_error) if self._last_error else None


class CameraSource(FrameSource):
    """OpenCV VideoCapture device picked by index."""

    name = "camera"

    def __init__(self, callback: FrameCallback, settings: Optional[Settings] = None):
        super().__init__(callback, settings)
        self.device_index = self.settings.device_index
        self._capture: Optional[cv2.VideoCapture] = None

    def _open(self) -> None:
        cap = cv2.VideoCapture(self.device_index)
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            msg = f"Failed to open capture device {self.device_index}"
            self._set_last_error(msg)
            raise CaptureError(msg)

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.settings.frame_width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.settings.frame_height)
        cap.set(cv2.CAP_PROP_FPS, self.settings.fps)
        # Keep the driver queue short, the pipeline only wants the latest frame
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        fps = cap.get(cv2.CAP_PROP_FPS)
        logger.info(f"Capture initialized: {width}x{height} @ {fps} FPS on device {self.device_index}")
        self._capture = cap

    def _read(self) -> Optional[np.ndarray]:
        if self._capture is None:
            return None
        ret, frame = self._capture.read()
        if not ret or frame is None:
            return None
        return frame

    def _close(self) -> None:
        if self._capture:
            self._capture.release()
            self._capture = None


class PatternSource(FrameSource):
    """Synthetic scrolling colour bars, for running without a capture device."""

    name = "pattern"

    # BGR
    BARS = [
        (255, 255, 255),
        (0, 255, 255),
        (255, 255, 0),
        (0, 255, 0),
        (255, 0, 255),
        (0, 0, 255),
        (255, 0, 0),
        (0, 0, 0),
    ]

    def __init__(self, callback: FrameCallback, settings: Optional[Settings] = None):
        super().__init__(callback, settings)
        self.frame_interval = 1.0 / self.settings.fps if self.settings.fps > 0 else 0.0
        self._base: Optional[np.ndarray] = None
        self._tick = 0

    def _open(self) -> None:
        width, height = self.settings.frame_width, self.settings.frame_height
        if width <= 0 or height <= 0:
            raise CaptureError(f"Invalid pattern size {width}x{height}")

        base = np.zeros((height, width, 3), dtype=np.uint8)
        bar_width = max(1, width // len(self.BARS))
        for i, color in enumerate(self.BARS):
            base[:, i * bar_width:(i + 1) * bar_width] = color
        self._base = base
        self._tick = 0
        logger.info(f"Pattern initialized: {width}x{height} @ {self.settings.fps} FPS")

    def _read(self) -> Optional[np.ndarray]:
        if self._base is None:
            return None
        self._tick += 1
        shift = (self._tick * 4) % self._base.shape[1]
        frame = np.roll(self._base, shift, axis=1)
        cv2.putText(frame, f"#{self._tick}", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (128, 128, 128), 2)
        return frame

    def _close(self) -> None:
        self._base = None


# Registry of available sources
SOURCES: Dict[str, Type[FrameSource]] = {
    "camera": CameraSource,
    "pattern": PatternSource,
}


def get_source(name: str, callback: FrameCallback, settings: Optional[Settings] = None) -> FrameSource:
    """
    Get a source instance by name.

    Raises:
        ValueError: If source name is not registered
    """
    if name not in SOURCES:
        available = ", ".join(SOURCES.keys())
        raise ValueError(f"Unknown source '{name}'. Available: {available}")
    return SOURCES[name](callback, settings)
