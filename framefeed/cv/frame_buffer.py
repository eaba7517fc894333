"""
Preview sink keeping the most recently displayed frame in memory.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional, Tuple, Dict, Any

import cv2
import numpy as np

from .converter import ConvertedImage
from .sink import FrameSink
from ..utils.config import SETTINGS

logger = logging.getLogger(__name__)


@dataclass
class FrameMetadata:
    """Metadata for a displayed frame."""
    timestamp: float
    width: int
    height: int
    sequence: int
    pixel_format: str
    byte_order: str
    bytes_per_row: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FrameBuffer(FrameSink):
    """
    In-memory storage for the latest displayed frame.

    Holds the ConvertedImage itself (and so its buffer lock) until the next
    frame supersedes it, and encodes JPEG lazily when a client asks for it,
    once per frame.

    Not thread-safe: only use it on the pipeline's event loop, which is
    also where the web handlers run.
    """

    def __init__(self, jpeg_quality: Optional[int] = None):
        """
        Args:
            jpeg_quality: JPEG compression quality (0-100, higher is better)
        """
        self.jpeg_quality = jpeg_quality if jpeg_quality is not None else SETTINGS.jpeg_quality
        self._image: Optional[ConvertedImage] = None
        self._metadata: Optional[FrameMetadata] = None
        self._jpeg: Optional[bytes] = None

        # Statistics
        self.frames_displayed = 0
        self.frames_ignored = 0

    def display(self, image: ConvertedImage) -> None:
        if image.is_empty:
            # Nothing to show; keep the current frame on screen
            logger.debug("Ignoring zero-area frame #%d", image.sequence)
            self.frames_ignored += 1
            image.release()
            return

        previous = self._image
        self._image = image
        self._metadata = FrameMetadata(
            timestamp=image.timestamp,
            width=image.width,
            height=image.height,
            sequence=image.sequence,
            pixel_format=image.pixel_format.value,
            byte_order=image.byte_order.value,
            bytes_per_row=image.bytes_per_row,
        )
        self._jpeg = None
        self.frames_displayed += 1

        if previous is not None:
            previous.release()

    def get_latest(self) -> Optional[Tuple[np.ndarray, FrameMetadata]]:
        """
        Retrieve a copy of the latest frame and its metadata.

        Returns:
            Tuple of (RGB array, metadata) or None if no frame available
        """
        if self._image is None or self._metadata is None:
            return None
        return (self._image.to_rgb(), self._metadata)

    def get_latest_jpeg(self) -> Optional[Tuple[bytes, FrameMetadata]]:
        """
        Retrieve the latest frame as JPEG bytes.

        Returns:
            Tuple of (jpeg_data, metadata) or None if no frame is available
            or encoding failed
        """
        if self._image is None or self._metadata is None:
            return None

        if self._jpeg is None:
            encode_param = [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality]
            ret, jpeg_data = cv2.imencode('.jpg', self._image.to_bgr(), encode_param)
            if not ret or jpeg_data is None:
                logger.warning("Failed to encode frame #%d as JPEG", self._metadata.sequence)
                return None
            self._jpeg = jpeg_data.tobytes()

        return (self._jpeg, self._metadata)

    @property
    def metadata(self) -> Optional[FrameMetadata]:
        return self._metadata

    def clear(self) -> None:
        """Clear the frame buffer and release the held frame."""
        image = self._image
        self._image = None
        self._metadata = None
        self._jpeg = None
        if image is not None:
            image.release()

    def has_frame(self) -> bool:
        """Check if a frame is available."""
        return self._image is not None
