"""
Frame acquisition and conversion for live capture devices.

This module provides:
- Locked, format-tagged access to hardware pixel buffers
- Zero-copy conversion of ARGB32/BGRA32 buffers into bitmap images
- A drop-oldest single-slot channel between producer and consumer
- The pipeline tying a capture source to a rendering sink
- Capture sources (OpenCV camera, synthetic pattern) and a preview sink
"""

from .pixel_buffer import (
    PixelFormat,
    RawFrame,
    LockedBuffer,
    BufferLease,
    LockError,
    LockBusyError,
    acquire,
)
from .converter import (
    ByteOrder,
    AlphaInfo,
    BYTE_ORDERS,
    ConvertedImage,
    ConversionError,
    UnsupportedFormatError,
    BackingFailureError,
    DrawingSurface,
    convert,
    make_blank_canvas,
)
from .frame_channel import FrameChannel, ChannelState
from .sink import FrameSink
from .frame_buffer import FrameBuffer, FrameMetadata
from .pipeline import FramePipeline, PipelineError, PipelineStats
from .capture import (
    CaptureError,
    CameraSource,
    FramePool,
    FrameSource,
    PatternSource,
    SOURCES,
    aligned_stride,
    get_source,
    pack_frame,
)

__all__ = [
    # Pixel buffers
    "PixelFormat",
    "RawFrame",
    "LockedBuffer",
    "BufferLease",
    "LockError",
    "LockBusyError",
    "acquire",

    # Conversion
    "ByteOrder",
    "AlphaInfo",
    "BYTE_ORDERS",
    "ConvertedImage",
    "ConversionError",
    "UnsupportedFormatError",
    "BackingFailureError",
    "DrawingSurface",
    "convert",
    "make_blank_canvas",

    # Hand-off
    "FrameChannel",
    "ChannelState",
    "FrameSink",
    "FrameBuffer",
    "FrameMetadata",
    "FramePipeline",
    "PipelineError",
    "PipelineStats",

    # Capture sources
    "CaptureError",
    "CameraSource",
    "FramePool",
    "FrameSource",
    "PatternSource",
    "SOURCES",
    "aligned_stride",
    "get_source",
    "pack_frame",
]
