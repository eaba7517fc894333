"""
Inbound contract of the rendering surface that receives converted images.
"""
from abc import ABC, abstractmethod

from .converter import ConvertedImage


class FrameSink(ABC):
    """Consumer of converted images.

    `display()` is only ever called on the presentation thread (the event
    loop the pipeline was started on), at most once per processed frame,
    with non-decreasing `image.sequence`. Sinks are not required to be
    thread-safe.

    The sink owns every image it receives and must call `image.release()`
    once it stops showing it, typically when the next image supersedes it.
    Zero-area images (`image.is_empty`) are released and otherwise ignored.
    """

    @abstractmethod
    def display(self, image: ConvertedImage) -> None:
        """Show a converted image and take ownership of it."""
        pass
