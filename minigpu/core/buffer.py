"""
Device buffer with synchronous and asynchronous host transfers.

A Buffer owns exactly one device allocation. Writes enqueue a host to
device copy; reads go through a transient staging buffer:

    (a) copy the device range into a host-visible staging buffer
    (b) submit the copy
    (c) wait for queue completion
    (d) map the staging buffer for reading
    (e) copy the mapped bytes into the caller's memory
    (f) unmap and release the staging buffer

read_sync() runs every step on the calling thread. read_async() runs
(a) and (b) on the calling thread, so the copy keeps its place in the
queue relative to other work on the same buffer, and (c) to (f) on a
context worker.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any, TypeVar

import numpy as np

from minigpu.backends.base import COPY_ALIGNMENT, DEFAULT_BUFFER_USAGE, BufferUsage, align_up
from minigpu.exceptions import (
    BufferAllocationError,
    BufferNotAllocatedError,
    BufferTransferError,
    InvalidConfigurationError,
    MiniGPUError,
)

if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray

    from minigpu.backends.base import Submission
    from minigpu.core.context import Context


Out = TypeVar("Out")
logger = logging.getLogger(__name__)


def as_bytes(data: Any) -> NDArray[np.uint8]:
    """
    View host data as a flat byte array without copying where possible.

    Args:
        data: NumPy array or any object supporting the buffer protocol.

    Returns:
        One-dimensional uint8 array.
    """
    if isinstance(data, np.ndarray):
        return np.ascontiguousarray(data).reshape(-1).view(np.uint8)
    try:
        return np.frombuffer(data, dtype=np.uint8)
    except TypeError as e:
        raise TypeError(
            f"Host data must support the buffer protocol, got {type(data).__name__}"
        ) from e


def as_writable_bytes(out: Any) -> NDArray[np.uint8]:
    """
    View caller memory as a flat, writable byte array.

    Args:
        out: Writable C-contiguous NumPy array, bytearray or writable memoryview.

    Returns:
        One-dimensional uint8 array sharing memory with out.

    Raises:
        InvalidConfigurationError: If out is read-only or not contiguous.
    """
    if isinstance(out, np.ndarray):
        if not out.flags.c_contiguous or not out.flags.writeable:
            raise InvalidConfigurationError("out", type(out).__name__, "must be writable and C-contiguous")
        return out.reshape(-1).view(np.uint8)

    try:
        view = np.frombuffer(out, dtype=np.uint8)
    except TypeError as e:
        raise TypeError(
            f"Read destination must support the buffer protocol, got {type(out).__name__}"
        ) from e
    if not view.flags.writeable:
        raise InvalidConfigurationError("out", type(out).__name__, "must be writable")
    return view


class Buffer:
    """
    A device-resident allocation with host transfer capability.

    Capacity grows on demand: a write larger than the current capacity
    reallocates, a smaller or equal write reuses the allocation. Growth
    does not preserve previous contents.

    Example:
        >>> buf = Buffer(ctx)
        >>> buf.write(np.arange(100, dtype=np.float32))
        >>> out = np.empty(100, dtype=np.float32)
        >>> buf.read_sync(out)
    """

    def __init__(
        self,
        context: Context,
        nbytes: int = 0,
        *,
        usage: BufferUsage = DEFAULT_BUFFER_USAGE,
    ) -> None:
        """
        Initialize a buffer.

        Args:
            context: Initialized context the buffer is allocated on.
            nbytes: Initial size in bytes; 0 defers allocation to the first write.
            usage: Usage flags.
        """
        context.require("create buffer")
        if nbytes < 0:
            raise InvalidConfigurationError("nbytes", nbytes, "must be >= 0")

        self._context = context
        self._usage = usage
        self._handle: Any = None
        self._size = 0
        self._capacity = 0
        self._released = False

        if nbytes > 0:
            self.create_or_resize(nbytes)

    @property
    def context(self) -> Context:
        """Get the context this buffer was created against."""
        return self._context

    @property
    def handle(self) -> Any:
        """
        Get the backend buffer object.

        Raises:
            BufferNotAllocatedError: If there is no allocation.
        """
        if self._handle is None:
            raise BufferNotAllocatedError()
        return self._handle

    @property
    def usage(self) -> BufferUsage:
        """Get the usage flags."""
        return self._usage

    @property
    def size(self) -> int:
        """Get the number of bytes requested or written so far."""
        return self._size

    @property
    def capacity(self) -> int:
        """Get the allocated size in bytes."""
        return self._capacity

    @property
    def is_allocated(self) -> bool:
        """Check if the buffer holds a device allocation."""
        return self._handle is not None

    def create_or_resize(self, nbytes: int) -> Buffer:
        """
        Allocate a device buffer able to hold nbytes, replacing any prior one.

        Args:
            nbytes: Requested size in bytes.

        Returns:
            Self for method chaining.

        Raises:
            BufferAllocationError: If the backend refuses the allocation.
                The buffer is left unallocated.
        """
        if nbytes <= 0:
            raise InvalidConfigurationError("nbytes", nbytes, "must be > 0")

        handle = self._context.require("allocate buffer")
        backend = self._context.backend
        self._free()

        capacity = align_up(nbytes)
        try:
            self._handle = backend.create_buffer(handle.device, capacity, self._usage)
        except Exception as e:
            logger.error(f"Buffer allocation of {nbytes} bytes failed: {e}")
            raise BufferAllocationError(nbytes, e) from e

        self._size = nbytes
        self._capacity = capacity
        self._released = False
        logger.debug(f"Allocated device buffer: {capacity} bytes")
        return self

    def write(self, data: Any, nbytes: int | None = None, offset: int = 0) -> Buffer:
        """
        Enqueue a host to device copy.

        Returns once the copy is enqueued. The copy is ordered before any
        later dispatch that binds this buffer.

        Args:
            data: NumPy array or buffer-protocol object.
            nbytes: Bytes to copy (default: all of data).
            offset: Destination offset in bytes, a multiple of 4.

        Returns:
            Self for method chaining.
        """
        src = as_bytes(data)
        if nbytes is None:
            nbytes = int(src.nbytes)
        if not 0 <= nbytes <= src.nbytes:
            raise InvalidConfigurationError(
                "nbytes", nbytes, f"must be between 0 and the {src.nbytes} bytes of data"
            )
        self._check_offset(offset)
        if nbytes == 0:
            return self

        required = offset + nbytes
        grown = self._handle is None or self._capacity < required
        if grown:
            self.create_or_resize(required)

        payload = src[:nbytes]
        if nbytes % COPY_ALIGNMENT:
            padded = np.zeros(align_up(nbytes), dtype=np.uint8)
            if not grown:
                # Pad bytes must carry the current contents of the last word.
                tail = nbytes // COPY_ALIGNMENT * COPY_ALIGNMENT
                self.read_sync(padded[tail:], COPY_ALIGNMENT, offset + tail)
            padded[:nbytes] = payload
            payload = padded

        handle = self._context.require("write buffer")
        try:
            self._context.backend.write_buffer(handle.queue, self._handle, memoryview(payload), offset)
        except Exception as e:
            logger.error(f"Buffer write of {nbytes} bytes failed: {e}")
            raise BufferTransferError("host->device", e) from e

        self._size = max(self._size, required)
        return self

    def read_sync(self, out: Out, nbytes: int | None = None, offset: int = 0) -> Out:
        """
        Blocking device to host copy.

        Args:
            out: Writable destination (NumPy array, bytearray, memoryview).
            nbytes: Bytes to copy (default: all of out).
            offset: Source offset in bytes, a multiple of 4.

        Returns:
            out, fully written.
        """
        dst, nbytes = self._prepare_read(out, nbytes, offset)
        if nbytes == 0:
            return out

        staging, submission = self._stage(offset, nbytes)
        self._complete_read(staging, submission, dst, nbytes)
        return out

    def read_async(
        self,
        out: Out,
        nbytes: int | None = None,
        offset: int = 0,
        on_complete: Callable[[], None] | None = None,
    ) -> Future[Out]:
        """
        Non-blocking device to host copy.

        Argument errors are raised immediately. The wait, map and copy
        run on a context worker; on_complete is invoked there, exactly
        once, after out has been fully written. On failure the error is
        logged and set on the future, and on_complete is not invoked.

        Args:
            out: Writable destination (NumPy array, bytearray, memoryview).
            nbytes: Bytes to copy (default: all of out).
            offset: Source offset in bytes, a multiple of 4.
            on_complete: Callback without arguments.

        Returns:
            Future resolving to out.
        """
        dst, nbytes = self._prepare_read(out, nbytes, offset)
        staging = submission = None
        if nbytes > 0:
            staging, submission = self._stage(offset, nbytes)

        def _finish() -> Out:
            if staging is not None:
                try:
                    self._complete_read(staging, submission, dst, nbytes)
                except Exception:
                    logger.exception("Asynchronous buffer read failed")
                    raise
            if on_complete is not None:
                on_complete()
            return out

        return self._context.submit_background(_finish)

    def read(
        self,
        nbytes: int | None = None,
        offset: int = 0,
        dtype: DTypeLike = np.uint8,
    ) -> NDArray[Any]:
        """
        Read into a new array.

        Args:
            nbytes: Bytes to read (default: size - offset).
            offset: Source offset in bytes.
            dtype: Element type of the returned array.

        Returns:
            Array viewing the bytes read as dtype.
        """
        if nbytes is None:
            nbytes = max(self._size - offset, 0)
        out = np.empty(nbytes, dtype=np.uint8)
        self.read_sync(out, nbytes, offset)
        return out.view(dtype)

    def release(self) -> None:
        """Free the device allocation."""
        if self._released:
            logger.warning("Buffer released twice")
            return
        self._free()
        self._released = True

    def _free(self) -> None:
        handle, self._handle = self._handle, None
        self._size = 0
        self._capacity = 0
        if handle is None or not self._context.is_initialized:
            return
        try:
            self._context.backend.release_buffer(handle)
        except Exception as e:
            logger.warning(f"Error while releasing device buffer: {e}")

    def _check_offset(self, offset: int) -> None:
        if offset < 0 or offset % COPY_ALIGNMENT:
            raise InvalidConfigurationError(
                "offset", offset, f"must be a non-negative multiple of {COPY_ALIGNMENT}"
            )

    def _prepare_read(
        self, out: Any, nbytes: int | None, offset: int
    ) -> tuple[NDArray[np.uint8], int]:
        self._context.require("read buffer")
        if self._handle is None:
            raise BufferNotAllocatedError()

        dst = as_writable_bytes(out)
        if nbytes is None:
            nbytes = int(dst.nbytes)
        if not 0 <= nbytes <= dst.nbytes:
            raise InvalidConfigurationError(
                "nbytes", nbytes, f"must be between 0 and the {dst.nbytes} bytes of out"
            )
        self._check_offset(offset)
        if offset + nbytes > self._capacity:
            raise InvalidConfigurationError(
                "nbytes", nbytes, f"read at offset {offset} exceeds capacity {self._capacity}"
            )
        return dst, nbytes

    def _stage(self, offset: int, nbytes: int) -> tuple[Any, Submission]:
        handle = self._context.require("read buffer")
        try:
            return self._context.backend.copy_to_staging(
                handle.device, handle.queue, self._handle, offset, align_up(nbytes)
            )
        except Exception as e:
            logger.error(f"Staging copy of {nbytes} bytes failed: {e}")
            raise BufferTransferError("device->staging", e) from e

    def _complete_read(
        self,
        staging: Any,
        submission: Submission,
        dst: NDArray[np.uint8],
        nbytes: int,
    ) -> None:
        backend = self._context.backend
        handle = self._context.require("read buffer")
        try:
            self._context.wait_for_completion(submission)
            data = backend.map_read(handle.device, staging, align_up(nbytes))
            dst[:nbytes] = np.frombuffer(data, dtype=np.uint8, count=nbytes)
        except MiniGPUError:
            raise
        except Exception as e:
            raise BufferTransferError("staging->host", e) from e
        finally:
            try:
                backend.release_staging(staging)
            except Exception as e:
                logger.warning(f"Error while releasing staging buffer: {e}")

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"Buffer(size={self._size}, capacity={self._capacity}, "
            f"usage={self._usage!r}, allocated={self.is_allocated})"
        )
