"""
Conversion of locked 32-bit pixel buffers into displayable bitmap images.

The image is a descriptor over the locked memory, not a copy: it holds a
BufferLease on the frame's lock and decodes pixels on demand according to
its byte order. Both supported formats are "skip first" layouts, the first
byte of the 32-bit word is padding and decoded alpha is always opaque.
"""

import logging
from enum import Enum
from typing import Optional, Tuple

import cv2
import numpy as np

from .pixel_buffer import BYTES_PER_PIXEL, BufferLease, LockError, LockedBuffer, PixelFormat
from ..utils.config import SETTINGS

logger = logging.getLogger(__name__)


class ByteOrder(Enum):
    """Order of the four bytes of a 32-bit pixel word in memory."""
    BIG_32 = "big32"
    LITTLE_32 = "little32"


class AlphaInfo(Enum):
    NONE_SKIP_FIRST = "noneSkipFirst"
    PREMULTIPLIED_LAST = "premultipliedLast"


# Selected from the source layout, never from the host CPU's endianness
BYTE_ORDERS = {
    PixelFormat.ARGB32: ByteOrder.BIG_32,
    PixelFormat.BGRA32: ByteOrder.LITTLE_32,
}

# Memory offsets of (R, G, B) within one pixel for an xRGB word
_RGB_OFFSETS = {
    ByteOrder.BIG_32: (1, 2, 3),
    ByteOrder.LITTLE_32: (2, 1, 0),
}


class ConversionError(Exception):
    """Raised when a locked buffer cannot be turned into an image."""
    pass


class UnsupportedFormatError(ConversionError):
    """Raised for pixel formats other than ARGB32/BGRA32. Expected, drop the frame."""

    def __init__(self, pixel_format: PixelFormat):
        self.pixel_format = pixel_format
        super().__init__(f"unsupported pixel format: {pixel_format.value}")


class BackingFailureError(ConversionError):
    """Raised when the image cannot reference the locked memory."""
    pass


class ConvertedImage:
    """
    Bitmap descriptor backed by a lease on a locked frame.

    The frame stays locked until `release()` is called (or the `with`
    block ends). Pixel access after release raises ValueError.
    """

    bits_per_component = 8
    bits_per_pixel = 32
    color_space = "DeviceRGB"
    alpha_info = AlphaInfo.NONE_SKIP_FIRST

    def __init__(
        self,
        width: int,
        height: int,
        bytes_per_row: int,
        byte_order: ByteOrder,
        backing: BufferLease,
        pixel_format: PixelFormat,
        sequence: int = 0,
        timestamp: float = 0.0,
        should_interpolate: bool = True,
    ):
        self.width = width
        self.height = height
        self.bytes_per_row = bytes_per_row
        self.byte_order = byte_order
        self.pixel_format = pixel_format
        self.sequence = sequence
        self.timestamp = timestamp
        # Display hint only
        self.should_interpolate = should_interpolate
        self._backing = backing

    def __repr__(self):
        state = "released" if self.released else "live"
        return (
            f"ConvertedImage(#{self.sequence}, {self.width}x{self.height}, "
            f"bytes_per_row={self.bytes_per_row}, {self.byte_order.value}, {state})"
        )

    def __enter__(self) -> "ConvertedImage":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    @property
    def released(self) -> bool:
        return self._backing.released

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def release(self) -> None:
        self._backing.release()

    def pixels(self) -> np.ndarray:
        """
        Copy of the pixels as (height, width, 4) in memory order.

        Row padding beyond `width * 4` is skipped, never read as pixels.
        The copy stays valid after `release()`.
        """
        return self._pixels().copy()

    def _pixels(self) -> np.ndarray:
        # View into the locked memory; must not escape this object
        data = self._backing.data
        if self.is_empty:
            return np.empty((self.height, self.width, BYTES_PER_PIXEL), dtype=np.uint8)
        rows = data[:self.bytes_per_row * self.height].reshape(self.height, self.bytes_per_row)
        return rows[:, :self.width * BYTES_PER_PIXEL].reshape(self.height, self.width, BYTES_PER_PIXEL)

    def to_rgb(self) -> np.ndarray:
        r, g, b = _RGB_OFFSETS[self.byte_order]
        return np.ascontiguousarray(self._pixels()[..., [r, g, b]])

    def to_bgr(self) -> np.ndarray:
        """Copy in OpenCV channel order, ready for cv2.imencode/imshow."""
        r, g, b = _RGB_OFFSETS[self.byte_order]
        return np.ascontiguousarray(self._pixels()[..., [b, g, r]])

    def to_rgba(self) -> np.ndarray:
        rgb = self.to_rgb()
        alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
        return np.concatenate([rgb, alpha], axis=2)


def convert(locked: LockedBuffer, sequence: int = 0) -> ConvertedImage:
    """
    Build an image descriptor over a locked frame without copying pixels.

    Args:
        locked: Buffer locked with `acquire()`
        sequence: Arrival order of the frame, carried to the sink

    Returns:
        ConvertedImage holding its own reference on the lock

    Raises:
        UnsupportedFormatError: format is neither ARGB32 nor BGRA32
        BackingFailureError: the lock is gone or memory ran out
    """
    pixel_format = locked.pixel_format
    byte_order = BYTE_ORDERS.get(pixel_format)
    if byte_order is None:
        raise UnsupportedFormatError(pixel_format)

    try:
        backing = locked.share()
    except (LockError, MemoryError) as exc:
        raise BackingFailureError(f"cannot reference locked memory: {exc}") from exc

    return ConvertedImage(
        width=locked.width,
        height=locked.height,
        bytes_per_row=locked.stride,
        byte_order=byte_order,
        backing=backing,
        pixel_format=pixel_format,
        sequence=sequence,
        timestamp=locked.frame.timestamp,
    )


# ---------- blank canvases for overlays ----------

def _premultiply(rgba: Tuple[int, int, int, int]) -> Tuple[int, int, int, int]:
    r, g, b, a = (int(c) for c in rgba)
    return (r * a // 255, g * a // 255, b * a // 255, a)


class DrawingSurface:
    """
    Writable RGBA bitmap, premultiplied alpha last, 4 bytes per pixel.

    Antialiasing is off by default: rectangles use LINE_8 and text is
    thresholded to hard edges unless it is switched on.
    """

    alpha_info = AlphaInfo.PREMULTIPLIED_LAST
    bytes_per_pixel = BYTES_PER_PIXEL

    def __init__(self, buffer: np.ndarray, antialias: bool = False):
        self._buffer = buffer
        self.antialias = antialias

    def __repr__(self):
        return f"DrawingSurface({self.width}x{self.height}, antialias={self.antialias})"

    @property
    def width(self) -> int:
        return self._buffer.shape[1]

    @property
    def height(self) -> int:
        return self._buffer.shape[0]

    @property
    def bytes_per_row(self) -> int:
        return self.width * self.bytes_per_pixel

    @property
    def data(self) -> np.ndarray:
        return self._buffer

    def _line_type(self) -> int:
        return cv2.LINE_AA if self.antialias else cv2.LINE_8

    def fill(self, rgba: Tuple[int, int, int, int]) -> None:
        self._buffer[:] = _premultiply(rgba)

    def draw_rect(
        self,
        x: int,
        y: int,
        width: int,
        height: int,
        rgba: Tuple[int, int, int, int],
        thickness: int = 1,
    ) -> None:
        """Outline (or fill, with thickness=-1) a rectangle."""
        if width <= 0 or height <= 0:
            return
        cv2.rectangle(
            self._buffer,
            (int(x), int(y)),
            (int(x + width - 1), int(y + height - 1)),
            _premultiply(rgba),
            thickness,
            self._line_type(),
        )

    def draw_text(
        self,
        text: str,
        origin: Tuple[int, int],
        rgba: Tuple[int, int, int, int],
        scale: float = 0.5,
        thickness: int = 1,
    ) -> None:
        """
        Draw text through a coverage mask.

        Without antialiasing the mask is thresholded at half coverage, so
        every pixel is either untouched or exactly `rgba`, whatever OpenCV
        does at glyph edges.
        """
        coverage = np.zeros(self._buffer.shape[:2], dtype=np.uint8)
        cv2.putText(
            coverage,
            text,
            (int(origin[0]), int(origin[1])),
            cv2.FONT_HERSHEY_SIMPLEX,
            scale,
            255,
            thickness,
            self._line_type(),
        )
        self._composite(coverage, _premultiply(rgba))

    def _composite(self, coverage: np.ndarray, color: Tuple[int, int, int, int]) -> None:
        if not self.antialias:
            self._buffer[coverage >= 128] = color
            return
        # Premultiplied source-over, scaled by per-pixel coverage
        cov = coverage.astype(np.float32)[..., None] / 255.0
        src = np.asarray(color, dtype=np.float32) * cov
        dst = self._buffer.astype(np.float32) * (1.0 - cov * (color[3] / 255.0))
        self._buffer[:] = np.clip(np.rint(src + dst), 0, 255).astype(np.uint8)

    def to_rgba(self) -> np.ndarray:
        return self._buffer.copy()


def make_blank_canvas(size, max_pixels: Optional[int] = None) -> Optional[DrawingSurface]:
    """
    Allocate a zeroed drawing surface of exactly `size` = (width, height).

    Returns None instead of raising for zero/negative sizes, sizes above
    `max_pixels` (default: Settings.max_canvas_pixels) and failed allocations.
    """
    try:
        width, height = int(size[0]), int(size[1])
    except (TypeError, ValueError, IndexError):
        logger.debug("Invalid canvas size %r", size)
        return None

    if width <= 0 or height <= 0:
        logger.debug("Degenerate canvas size %dx%d", width, height)
        return None

    limit = max_pixels if max_pixels is not None else SETTINGS.max_canvas_pixels
    if width * height > limit:
        logger.debug("Canvas %dx%d exceeds limit of %d pixels", width, height, limit)
        return None

    try:
        buffer = np.zeros((height, width, BYTES_PER_PIXEL), dtype=np.uint8)
    except MemoryError:
        logger.warning("Could not allocate %dx%d canvas", width, height)
        return None

    return DrawingSurface(buffer, antialias=False)
