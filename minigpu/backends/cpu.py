"""
CPU backend for minigpu.

Provides a host-memory implementation of the backend interface.
Useful for testing and development without GPU.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from minigpu.backends.base import (
    Backend,
    BackendType,
    BufferUsage,
    DeviceHandle,
    KernelDescriptor,
    Submission,
)
from minigpu.compilation.cache import PipelineCache

if TYPE_CHECKING:
    from numpy.typing import NDArray


logger = logging.getLogger(__name__)

# Emulated kernels are called once per invocation with the global
# invocation id and the bound buffers (raw bytes) keyed by variable name.
KernelEmulator = Callable[[tuple[int, int, int], dict[str, "NDArray[np.uint8]"]], None]

_buffer_ids = itertools.count(1)


@dataclass
class HostBuffer:
    """A device buffer emulated in host memory."""

    data: NDArray[np.uint8]
    usage: BufferUsage
    buffer_id: int = field(default_factory=lambda: next(_buffer_ids))
    released: bool = False

    @property
    def size(self) -> int:
        """Get the buffer size in bytes."""
        return int(self.data.nbytes)


@dataclass
class HostDevice:
    """Emulated device state."""

    name: str = "CPU"
    destroyed: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock)


@dataclass
class HostQueue:
    """Emulated queue. Work executes at submission time, in order."""

    device: HostDevice
    submitted: int = 0


class CPUBackend(Backend):
    """
    CPU backend implementation.

    Buffers are NumPy byte arrays. Kernels cannot be compiled from WGSL;
    instead each entry point is emulated by a Python callable registered
    with register_kernel(), which is executed for every invocation of the
    dispatched grid, simulating GPU-style indexing.

    Example:
        >>> backend = CPUBackend()
        >>> def add_02(gid, buffers):
        ...     i = gid[0]
        ...     if i < 100:
        ...         buffers["out"].view(np.float32)[i] = buffers["inp"].view(np.float32)[i] + 0.2
        >>> backend.register_kernel("main", add_02)
    """

    def __init__(self, max_buffer_size: int = 256 * 1024 * 1024) -> None:
        """
        Initialize the CPU backend.

        Args:
            max_buffer_size: Largest allocation accepted, in bytes.
        """
        self._max_buffer_size = max_buffer_size
        self._kernels: dict[str, KernelEmulator] = {}
        self._pipelines = PipelineCache()
        self._live_buffers: dict[int, HostBuffer] = {}
        self._lock = threading.RLock()
        self.dispatch_count = 0

    @property
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        return BackendType.CPU

    @property
    def is_available(self) -> bool:
        """Check if this backend is available."""
        return True  # CPU is always available

    @property
    def pipelines(self) -> PipelineCache:
        """Get the compiled-kernel cache."""
        return self._pipelines

    @property
    def live_buffer_count(self) -> int:
        """Number of allocations not yet released, staging included."""
        with self._lock:
            return len(self._live_buffers)

    def register_kernel(self, entry_point: str, func: KernelEmulator) -> None:
        """
        Register a host emulation for a kernel entry point.

        Args:
            entry_point: Name of the @compute function it stands in for.
            func: Called as func(global_invocation_id, buffers).
        """
        with self._lock:
            self._kernels[entry_point] = func
            self._pipelines.clear()

    def create_device(self, power_preference: str = "high-performance") -> DeviceHandle:
        """Create an emulated device and queue."""
        device = HostDevice()
        logger.debug(f"CPU device created (power_preference={power_preference})")
        return DeviceHandle(device=device, queue=HostQueue(device), name=device.name)

    def destroy_device(self, handle: DeviceHandle) -> None:
        """Mark the emulated device destroyed."""
        handle.device.destroyed = True
        self._pipelines.clear()

    def create_buffer(self, device: HostDevice, nbytes: int, usage: BufferUsage) -> HostBuffer:
        """
        Allocate a zero-filled host buffer.

        Raises:
            RuntimeError: If the device is destroyed.
            MemoryError: If nbytes exceeds max_buffer_size.
        """
        self._check_device(device)
        if nbytes > self._max_buffer_size:
            raise MemoryError(
                f"Requested {nbytes} bytes exceeds max_buffer_size={self._max_buffer_size}"
            )

        buffer = HostBuffer(data=np.zeros(nbytes, dtype=np.uint8), usage=usage)
        with self._lock:
            self._live_buffers[buffer.buffer_id] = buffer
        return buffer

    def release_buffer(self, buffer: HostBuffer) -> None:
        """Free a host buffer."""
        with self._lock:
            self._live_buffers.pop(buffer.buffer_id, None)
        buffer.released = True

    def write_buffer(
        self, queue: HostQueue, buffer: HostBuffer, data: memoryview, offset: int = 0
    ) -> None:
        """Copy host bytes into the buffer."""
        self._check_device(queue.device)
        self._check_buffer(buffer, BufferUsage.COPY_DST)

        src = np.frombuffer(data, dtype=np.uint8)
        if offset + src.nbytes > buffer.size:
            raise ValueError(
                f"Write of {src.nbytes} bytes at offset {offset} exceeds buffer size {buffer.size}"
            )

        with queue.device.lock:
            buffer.data[offset : offset + src.nbytes] = src
            queue.submitted += 1

    def copy_to_staging(
        self,
        device: HostDevice,
        queue: HostQueue,
        buffer: HostBuffer,
        offset: int,
        nbytes: int,
    ) -> tuple[HostBuffer, Submission]:
        """Copy a buffer range into a new staging buffer."""
        self._check_device(device)
        self._check_buffer(buffer, BufferUsage.COPY_SRC)
        if offset + nbytes > buffer.size:
            raise ValueError(
                f"Copy of {nbytes} bytes at offset {offset} exceeds buffer size {buffer.size}"
            )

        staging = self.create_buffer(device, nbytes, BufferUsage.MAP_READ | BufferUsage.COPY_DST)
        with device.lock:
            staging.data[:] = buffer.data[offset : offset + nbytes]
            queue.submitted += 1
        return staging, Submission(label="copy_to_staging")

    def map_read(self, device: HostDevice, staging: HostBuffer, nbytes: int) -> memoryview:
        """Return a copy of the staging contents."""
        self._check_device(device)
        self._check_buffer(staging, BufferUsage.MAP_READ)
        return memoryview(staging.data[:nbytes].tobytes())

    def release_staging(self, staging: HostBuffer) -> None:
        """Free a staging buffer."""
        self.release_buffer(staging)

    def dispatch(
        self, device: HostDevice, queue: HostQueue, descriptor: KernelDescriptor
    ) -> Submission:
        """
        Execute an emulated kernel over the full invocation grid.

        Raises:
            KeyError: If no emulation is registered for the entry point.
        """
        self._check_device(device)
        for binding in descriptor.bindings:
            self._check_buffer(binding.buffer, BufferUsage.STORAGE)

        source = descriptor.source
        kernel = self._pipelines.get_or_create(
            source.source_hash,
            source.entry_point,
            lambda: self._compile(source.entry_point),
        )

        views = {b.name: b.buffer.data[: b.nbytes] for b in descriptor.bindings}
        wx, wy, wz = descriptor.workgroup_size
        gx, gy, gz = descriptor.workgroups

        with device.lock:
            for z in range(gz * wz):
                for y in range(gy * wy):
                    for x in range(gx * wx):
                        kernel((x, y, z), views)
            queue.submitted += 1
            self.dispatch_count += 1

        return Submission(label=f"dispatch:{source.entry_point}")

    def wait(self, device: HostDevice, queue: HostQueue, submission: Submission) -> None:
        """Wait for a submission (work already ran at submit time)."""
        self._check_device(device)

    def _compile(self, entry_point: str) -> KernelEmulator:
        """Resolve the emulation for an entry point."""
        with self._lock:
            if entry_point not in self._kernels:
                raise KeyError(
                    f"No CPU emulation registered for entry point '{entry_point}'. "
                    f"Registered: {sorted(self._kernels)}"
                )
            return self._kernels[entry_point]

    def _check_device(self, device: HostDevice) -> None:
        if device.destroyed:
            raise RuntimeError("Device has been destroyed")

    def _check_buffer(self, buffer: Any, required: BufferUsage) -> None:
        if not isinstance(buffer, HostBuffer):
            raise TypeError(f"Expected HostBuffer, got {type(buffer).__name__}")
        if buffer.released:
            raise RuntimeError(f"Buffer {buffer.buffer_id} has been released")
        if not buffer.usage & required:
            raise ValueError(f"Buffer {buffer.buffer_id} lacks usage {required!r}")

    def __repr__(self) -> str:
        """String representation."""
        return f"CPUBackend(available=True, kernels={sorted(self._kernels)})"
