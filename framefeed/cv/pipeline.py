"""
Frame acquisition and conversion pipeline.

Three execution contexts are involved:

- producer: the capture source's thread, calling `on_frame()` once per frame
- worker: one background thread that locks and converts the latest frame
- presentation: the asyncio event loop passed to `start()`, the only place
  the sink is touched

Both hand-offs (producer -> worker, worker -> presentation) go through a
single-slot FrameChannel, so a slow stage only ever sees the freshest frame
and the sink observes frames in arrival order, with gaps.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, Set

from .converter import (
    BackingFailureError,
    ConvertedImage,
    UnsupportedFormatError,
    convert,
)
from .frame_channel import FrameChannel
from .pixel_buffer import LockBusyError, LockError, PixelFormat, RawFrame, acquire
from .sink import FrameSink
from ..utils.config import SETTINGS, Settings

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when the pipeline cannot be started."""
    pass


@dataclass
class PipelineStats:
    """Per-frame outcome counters."""
    frames_received: int = 0
    frames_rejected: int = 0       # arrived while stopped
    frames_superseded: int = 0     # overwritten in the delivery slot
    lock_busy: int = 0
    unsupported_format: int = 0
    backing_failures: int = 0
    unexpected_errors: int = 0
    frames_converted: int = 0
    images_superseded: int = 0     # converted, replaced before presentation
    frames_presented: int = 0
    last_presented_sequence: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class _Delivery:
    """A retained frame sitting in the delivery slot, stamped with its arrival order."""

    __slots__ = ("frame", "sequence")

    def __init__(self, frame: RawFrame, sequence: int):
        self.frame = frame
        self.sequence = sequence

    def release(self) -> None:
        self.frame.release()


class FramePipeline:
    """
    Connects a capture source to a FrameSink.

    Usage:
        pipeline = FramePipeline(sink)
        pipeline.start()              # from a coroutine on the presentation loop
        source = CameraSource(pipeline.on_frame)
        source.start()
        ...
        source.stop()
        pipeline.stop()
    """

    def __init__(self, sink: FrameSink, settings: Optional[Settings] = None):
        self.sink = sink
        self.settings = settings or SETTINGS

        self._frames: FrameChannel[_Delivery] = FrameChannel()
        self._images: FrameChannel[ConvertedImage] = FrameChannel()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[threading.Thread] = None
        self._running = False

        self._stats_lock = threading.Lock()
        self.stats = PipelineStats()
        self._backing_streak = 0
        self._backing_alerted = False
        self._unsupported_seen: Set[PixelFormat] = set()

    @property
    def running(self) -> bool:
        return self._running

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        Start the conversion worker.

        Args:
            loop: Presentation event loop. Defaults to the running loop, so
                  call from a coroutine when omitted.
        """
        if self._running:
            logger.warning("Pipeline already running")
            return

        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError as exc:
                raise PipelineError("start() needs a presentation event loop") from exc

        self._loop = loop
        # Channels are closed by stop(); a restart gets fresh ones. Each worker
        # is bound to its own pair, so one left over from a timed-out stop()
        # can only drain into closed channels.
        frames: FrameChannel[_Delivery] = FrameChannel()
        images: FrameChannel[ConvertedImage] = FrameChannel()
        self._frames, self._images = frames, images
        self._running = True
        self._worker = threading.Thread(
            target=self._convert_loop, args=(frames, images, loop), daemon=True, name="FrameFeed-Convert"
        )
        self._worker.start()

        logger.info("Frame pipeline started")
        self._emit("PIPELINE_STARTED")

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop accepting frames and shut the worker down.

        A conversion in progress finishes; its image is released instead of
        presented. Every retained frame and pending image is released.
        """
        if not self._running:
            return

        logger.info("Stopping frame pipeline...")
        self._running = False

        pending = self._frames.close()
        if pending is not None:
            pending.release()

        if self._worker:
            self._worker.join(timeout=timeout)
            if self._worker.is_alive():
                logger.warning(
                    "Conversion worker did not stop within %.1fs; its frame is released when it finishes",
                    timeout,
                )
            self._worker = None

        leftover = self._images.close()
        if leftover is not None:
            leftover.release()

        logger.info("Frame pipeline stopped")
        self._emit("PIPELINE_STOPPED", **self.stats.to_dict())

    # ---------- producer context ----------

    def on_frame(self, frame: RawFrame) -> None:
        """
        Entry point for the capture source, once per captured frame.

        Never blocks on conversion. The frame is retained while it waits in
        the slot, so the source may reuse its handle as soon as this returns.
        """
        if not self._running:
            with self._stats_lock:
                self.stats.frames_rejected += 1
            return

        with self._stats_lock:
            self.stats.frames_received += 1
            sequence = self.stats.frames_received

        delivery = _Delivery(frame.retain(), sequence)
        displaced = self._frames.deliver(delivery)
        if displaced is None:
            return

        displaced.release()
        with self._stats_lock:
            if displaced is delivery:
                # Closed between the running check and delivery
                self.stats.frames_rejected += 1
            else:
                self.stats.frames_superseded += 1

    # ---------- worker context ----------

    def _convert_loop(
        self,
        frames: FrameChannel[_Delivery],
        images: FrameChannel[ConvertedImage],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        logger.info("Conversion worker started")

        while True:
            delivery = frames.take(timeout=self.settings.take_timeout_s)
            if delivery is None:
                if frames.closed:
                    break
                continue

            image = None
            try:
                image = self._convert_delivery(delivery)
            except Exception as e:
                with self._stats_lock:
                    self.stats.unexpected_errors += 1
                logger.error(f"Error converting frame #{delivery.sequence}: {e}", exc_info=True)
            finally:
                delivery.release()

            if image is not None:
                self._post(image, images, loop)

        logger.info("Conversion worker stopped")

    def _convert_delivery(self, delivery: _Delivery) -> Optional[ConvertedImage]:
        """Lock, convert and unlock one frame. Per-frame failures return None."""
        frame = delivery.frame
        try:
            locked = acquire(frame)
        except LockBusyError:
            with self._stats_lock:
                self.stats.lock_busy += 1
            logger.debug(f"Frame #{delivery.sequence} is busy, dropping")
            return None
        except LockError as e:
            self._record_backing_failure(BackingFailureError(str(e)), delivery.sequence)
            return None

        with locked:
            try:
                image = convert(locked, sequence=delivery.sequence)
            except UnsupportedFormatError as e:
                self._record_unsupported(e.pixel_format, delivery.sequence)
                return None
            except BackingFailureError as e:
                self._record_backing_failure(e, delivery.sequence)
                return None

        with self._stats_lock:
            self.stats.frames_converted += 1
            self._backing_streak = 0
            self._backing_alerted = False
        return image

    def _post(
        self,
        image: ConvertedImage,
        images: FrameChannel[ConvertedImage],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        """Hand an image to the presentation loop without waiting for it."""
        displaced = images.deliver(image)
        if displaced is image:
            # Stopped while converting
            image.release()
            return
        if displaced is not None:
            # A presentation is already scheduled and will pick up `image`
            displaced.release()
            with self._stats_lock:
                self.stats.images_superseded += 1
            return

        try:
            loop.call_soon_threadsafe(self._present, images)
        except RuntimeError:
            logger.debug("Presentation loop is closed, dropping frame #%d", image.sequence)
            leftover = images.poll()
            if leftover is not None:
                leftover.release()

    def _record_unsupported(self, pixel_format: PixelFormat, sequence: int) -> None:
        with self._stats_lock:
            self.stats.unsupported_format += 1
            first = pixel_format not in self._unsupported_seen
            self._unsupported_seen.add(pixel_format)
        if first:
            logger.warning(f"Dropping frames with unsupported pixel format {pixel_format.value}")
        else:
            logger.debug(f"Frame #{sequence} has unsupported format {pixel_format.value}, dropping")

    def _record_backing_failure(self, exc: BackingFailureError, sequence: int) -> None:
        threshold = self.settings.failure_alert_threshold
        with self._stats_lock:
            self.stats.backing_failures += 1
            self._backing_streak += 1
            streak = self._backing_streak
            total = self.stats.backing_failures
            alert = streak >= threshold and not self._backing_alerted
            if alert:
                self._backing_alerted = True

        logger.debug(f"Frame #{sequence} backing failure: {exc}")
        if alert:
            logger.error(
                f"{streak} consecutive frames failed to get image backing ({total} total); "
                "the system may be under memory pressure"
            )
            self._emit("FRAME_BACKING_FAILURE", streak=streak, total=total, detail=str(exc))

    # ---------- presentation context ----------

    def _present(self, images: FrameChannel[ConvertedImage]) -> None:
        image = images.poll()
        if image is None:
            return
        if not self._running:
            image.release()
            return

        try:
            self.sink.display(image)
        except Exception as e:
            logger.error(f"Sink failed to display frame #{image.sequence}: {e}", exc_info=True)
            image.release()
            return

        with self._stats_lock:
            self.stats.frames_presented += 1
            self.stats.last_presented_sequence = image.sequence

    # ---------- diagnostics ----------

    def get_status(self) -> Dict[str, Any]:
        """
        Get current pipeline status.

        Returns:
            Dictionary with counters for each stage
        """
        with self._stats_lock:
            stats = self.stats.to_dict()
            streak = self._backing_streak
        return {
            "running": self._running,
            "stats": stats,
            "backing_failure_streak": streak,
            "delivery_slot": self._frames.stats(),
            "presentation_slot": self._images.stats(),
        }

    def _emit(self, kind: str, **kv) -> None:
        try:
            from ..events import emit
            emit(kind, **kv)
        except OSError as e:
            # Event emission failure shouldn't break the pipeline
            logger.debug(f"Could not write {kind} event: {e}")
