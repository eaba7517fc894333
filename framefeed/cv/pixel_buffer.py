"""
Hardware pixel buffer handles and the scoped read lock around their memory.

A RawFrame is owned by the capture source. The pipeline only borrows it:
`retain()` keeps the source from recycling the buffer while a frame waits in
the delivery slot, and `acquire()` locks the base address for reading. The
lock is reference counted so a converted image can keep the memory pinned
for exactly as long as it needs it.
"""

import logging
import threading
import time
from enum import Enum
from typing import Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

BYTES_PER_PIXEL = 4


class PixelFormat(Enum):
    """Channel order/packing of a raw frame."""
    ARGB32 = "ARGB32"
    BGRA32 = "BGRA32"
    UNSUPPORTED = "UNSUPPORTED"

    @classmethod
    def parse(cls, value: Union[str, "PixelFormat", None]) -> "PixelFormat":
        """
        Map a user/device supplied tag to a PixelFormat.

        Accepts enum members, "ARGB32"/"BGRA32" and the short forms
        "argb"/"bgra" in any case. Anything else is UNSUPPORTED rather than
        an error, the converter decides what to do with it.
        """
        if isinstance(value, PixelFormat):
            return value
        name = (value or "").strip().upper()
        if name in ("ARGB", "ARGB32"):
            return cls.ARGB32
        if name in ("BGRA", "BGRA32"):
            return cls.BGRA32
        return cls.UNSUPPORTED


class LockError(Exception):
    """Raised when a frame's memory cannot be locked for reading."""
    pass


class LockBusyError(LockError):
    """Raised when the capture source is reclaiming the buffer. Drop the frame, do not retry."""
    pass


class RawFrame:
    """
    Handle to one hardware-backed pixel buffer.

    Attributes are fixed for the handle's lifetime; only the pixel memory is
    rewritten when the owning source recycles the buffer. The memory is
    reachable through `acquire()` (read) or `writable_rows()` (owner only,
    while reclaimed).
    """

    def __init__(
        self,
        pixel_format: PixelFormat,
        width: int,
        height: int,
        stride: int,
        data=None,
        timestamp: Optional[float] = None,
    ):
        if width < 0 or height < 0:
            raise ValueError(f"frame size must not be negative: {width}x{height}")
        if stride < 0:
            raise ValueError(f"stride must not be negative: {stride}")
        if pixel_format is not PixelFormat.UNSUPPORTED and stride < width * BYTES_PER_PIXEL:
            raise ValueError(
                f"stride {stride} too small for {width} pixels of {BYTES_PER_PIXEL} bytes"
            )

        nbytes = stride * height
        if data is None:
            data = bytearray(nbytes)
        else:
            view = memoryview(data)
            if not view.c_contiguous:
                raise ValueError("frame memory must be one C-contiguous block")
            if view.nbytes < nbytes:
                raise ValueError(f"buffer holds {view.nbytes} bytes, need {nbytes}")

        self.pixel_format = pixel_format
        self.width = width
        self.height = height
        self.stride = stride
        self.timestamp = timestamp if timestamp is not None else time.time()
        self._data = data

        self._state_lock = threading.Lock()
        self._retain_count = 0
        self._lock_count = 0
        self._reclaimed = False

    def __repr__(self):
        return (
            f"RawFrame(format={self.pixel_format.value}, size={self.width}x{self.height}, "
            f"stride={self.stride})"
        )

    @property
    def nbytes(self) -> int:
        return self.stride * self.height

    @property
    def retain_count(self) -> int:
        with self._state_lock:
            return self._retain_count

    @property
    def lock_count(self) -> int:
        with self._state_lock:
            return self._lock_count

    @property
    def in_use(self) -> bool:
        """True while anyone holds a retain or a read lock on the frame."""
        with self._state_lock:
            return self._retain_count > 0 or self._lock_count > 0

    def retain(self) -> "RawFrame":
        with self._state_lock:
            self._retain_count += 1
        return self

    def release(self) -> None:
        with self._state_lock:
            if self._retain_count == 0:
                raise ValueError("release() without a matching retain()")
            self._retain_count -= 1

    # ---- owner side (capture source) ----

    def reclaim(self) -> bool:
        """
        Take the buffer back for rewriting.

        Returns:
            False if the frame is still retained or locked; the owner must
            use another buffer. True otherwise, after which every lock
            attempt fails with LockBusyError until `publish()`.
        """
        with self._state_lock:
            if self._retain_count > 0 or self._lock_count > 0:
                return False
            self._reclaimed = True
            return True

    def writable_rows(self) -> np.ndarray:
        """Writable (height, stride) view of the memory. Only valid between reclaim() and publish()."""
        with self._state_lock:
            if not self._reclaimed:
                raise RuntimeError("frame memory is only writable after reclaim()")
        if self.nbytes == 0:
            return np.empty((self.height, self.stride), dtype=np.uint8)
        rows = np.frombuffer(self._data, dtype=np.uint8, count=self.nbytes)
        return rows.reshape(self.height, self.stride)

    def publish(self, timestamp: Optional[float] = None) -> None:
        """Hand the rewritten buffer out again."""
        with self._state_lock:
            self._reclaimed = False
        self.timestamp = timestamp if timestamp is not None else time.time()

    # ---- reader side (used by acquire/LockedBuffer) ----

    def _lock_base_address(self) -> memoryview:
        with self._state_lock:
            if self._reclaimed:
                raise LockBusyError(f"{self!r} is being reclaimed by its source")
            # Map before counting, so a failed lock leaves nothing to release
            try:
                memory = memoryview(self._data).cast("B")[:self.nbytes].toreadonly()
            except (TypeError, ValueError) as exc:
                raise LockError(f"cannot map memory of {self!r}: {exc}") from exc
            self._lock_count += 1
        return memory

    def _unlock_base_address(self) -> None:
        with self._state_lock:
            if self._lock_count == 0:
                logger.warning("Unbalanced unlock on %r", self)
                return
            self._lock_count -= 1


class BufferLease:
    """
    One reference on a LockedBuffer's lock.

    Releasing the lease frees nothing by itself; the frame is unlocked once
    the lock scope and every lease are gone.
    """

    def __init__(self, owner: "LockedBuffer"):
        self._owner = owner
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    @property
    def data(self) -> np.ndarray:
        if self._released:
            raise ValueError("buffer lease already released")
        return self._owner.window

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._owner._drop_ref()


class LockedBuffer:
    """
    Read-only view over a RawFrame's memory, valid while locked.

    Use as a context manager; the scope's reference is dropped on every
    exit path. `window` is exactly `stride * height` bytes, row padding
    included.
    """

    def __init__(self, frame: RawFrame, memory: memoryview):
        self.frame = frame
        self._window: Optional[np.ndarray] = _as_array(memory)
        self._refs = 1
        self._refs_lock = threading.Lock()
        self._scope_open = True

    def __enter__(self) -> "LockedBuffer":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    @property
    def pixel_format(self) -> PixelFormat:
        return self.frame.pixel_format

    @property
    def width(self) -> int:
        return self.frame.width

    @property
    def height(self) -> int:
        return self.frame.height

    @property
    def stride(self) -> int:
        return self.frame.stride

    @property
    def locked(self) -> bool:
        with self._refs_lock:
            return self._refs > 0

    @property
    def window(self) -> np.ndarray:
        window = self._window
        if window is None:
            raise ValueError(f"{self.frame!r} is no longer locked")
        return window

    def share(self) -> BufferLease:
        """Add a reference to the lock so the memory outlives this scope."""
        with self._refs_lock:
            if self._refs == 0:
                raise LockError(f"{self.frame!r} is no longer locked")
            self._refs += 1
        return BufferLease(self)

    def release(self) -> None:
        """Drop the scope's reference. Safe to call more than once."""
        with self._refs_lock:
            if not self._scope_open:
                return
            self._scope_open = False
        self._drop_ref()

    def _drop_ref(self) -> None:
        with self._refs_lock:
            self._refs -= 1
            last = self._refs == 0
            if last:
                self._window = None
        if last:
            self.frame._unlock_base_address()


def _as_array(memory: memoryview) -> np.ndarray:
    if memory.nbytes == 0:
        empty = np.empty(0, dtype=np.uint8)
        empty.flags.writeable = False
        return empty
    return np.frombuffer(memory, dtype=np.uint8)


def acquire(frame: RawFrame) -> LockedBuffer:
    """
    Lock a frame's memory for reading.

    Raises:
        LockBusyError: the source is reclaiming the buffer. The caller drops
            the frame; retrying would stall the producer.
        LockError: the memory cannot be mapped. Nothing stays locked.
    """
    memory = frame._lock_base_address()
    try:
        return LockedBuffer(frame, memory)
    except BaseException:
        frame._unlock_base_address()
        raise
