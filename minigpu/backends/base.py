"""
Backend base classes and interfaces.

Defines the abstract interface that all backends must implement. A
backend is the GPU driver collaborator: it creates a device and queue,
allocates device buffers, copies data, compiles and executes kernels and
waits for submitted work. It makes no orchestration decisions; those
live in minigpu.core.
"""

from __future__ import annotations

import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntFlag, auto
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from minigpu.compilation.parser import KernelSource


# Copy offsets and sizes must be multiples of this many bytes.
COPY_ALIGNMENT = 4


class BackendType(Enum):
    """Type of compute backend."""

    CPU = auto()
    WEBGPU = auto()


class BufferUsage(IntFlag):
    """Buffer usage flags. Values match the GPUBufferUsage constants of WebGPU."""

    MAP_READ = 0x0001
    MAP_WRITE = 0x0002
    COPY_SRC = 0x0004
    COPY_DST = 0x0008
    UNIFORM = 0x0040
    STORAGE = 0x0080


DEFAULT_BUFFER_USAGE = BufferUsage.STORAGE | BufferUsage.COPY_SRC | BufferUsage.COPY_DST

_submission_ids = itertools.count(1)


def align_up(nbytes: int, alignment: int = COPY_ALIGNMENT) -> int:
    """Round nbytes up to the next multiple of alignment."""
    return (nbytes + alignment - 1) // alignment * alignment


@dataclass(frozen=True)
class DeviceHandle:
    """A device and its command-submission queue."""

    device: Any
    queue: Any
    name: str = "Unknown device"


@dataclass
class Submission:
    """A unit of work handed to a device queue."""

    label: str
    completes_on_map: bool = False  # mapping the staging buffer is the completion point
    submission_id: int = field(default_factory=lambda: next(_submission_ids))
    submitted_at: float = field(default_factory=time.perf_counter)


@dataclass(frozen=True)
class BufferBinding:
    """A device buffer bound to a kernel slot."""

    slot: int
    name: str
    buffer: Any
    nbytes: int


@dataclass(frozen=True)
class KernelDescriptor:
    """Everything a backend needs to execute one kernel dispatch."""

    source: KernelSource
    bindings: tuple[BufferBinding, ...]
    workgroups: tuple[int, int, int]

    @property
    def entry_point(self) -> str:
        """Get the kernel entry point."""
        return self.source.entry_point

    @property
    def workgroup_size(self) -> tuple[int, int, int]:
        """Get the declared workgroup size."""
        return self.source.workgroup_size


@dataclass
class KernelExecutionResult:
    """Result of a kernel dispatch."""

    execution_time_ms: float
    workgroups: tuple[int, int, int]
    success: bool = True


class Backend(ABC):
    """
    Abstract base class for compute backends.

    All backends must implement this interface to provide
    a consistent API for device, memory and kernel operations.
    """

    @property
    @abstractmethod
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        ...

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if this backend is available."""
        ...

    @abstractmethod
    def create_device(self, power_preference: str = "high-performance") -> DeviceHandle:
        """
        Acquire a device and its queue.

        Args:
            power_preference: Adapter selection hint.

        Returns:
            Device handle.
        """
        ...

    @abstractmethod
    def destroy_device(self, handle: DeviceHandle) -> None:
        """Release a device acquired with create_device()."""
        ...

    @abstractmethod
    def create_buffer(self, device: Any, nbytes: int, usage: BufferUsage) -> Any:
        """
        Allocate a device buffer.

        Args:
            device: Device from create_device().
            nbytes: Size in bytes, a multiple of COPY_ALIGNMENT.
            usage: Usage flags.

        Returns:
            Backend buffer object.
        """
        ...

    @abstractmethod
    def release_buffer(self, buffer: Any) -> None:
        """Free a device buffer."""
        ...

    @abstractmethod
    def write_buffer(self, queue: Any, buffer: Any, data: memoryview, offset: int = 0) -> None:
        """
        Enqueue a host to device copy.

        Args:
            queue: Device queue.
            buffer: Destination buffer.
            data: Bytes to copy, length a multiple of COPY_ALIGNMENT.
            offset: Destination offset in bytes.
        """
        ...

    @abstractmethod
    def copy_to_staging(
        self,
        device: Any,
        queue: Any,
        buffer: Any,
        offset: int,
        nbytes: int,
    ) -> tuple[Any, Submission]:
        """
        Copy a device buffer range into a new host-visible staging buffer.

        Args:
            device: Device.
            queue: Device queue.
            buffer: Source buffer.
            offset: Source offset in bytes.
            nbytes: Bytes to copy, a multiple of COPY_ALIGNMENT.

        Returns:
            The staging buffer and the submission carrying the copy.
        """
        ...

    @abstractmethod
    def map_read(self, device: Any, staging: Any, nbytes: int) -> memoryview:
        """Map a staging buffer for reading and return a copy of its contents."""
        ...

    @abstractmethod
    def release_staging(self, staging: Any) -> None:
        """Free a staging buffer."""
        ...

    @abstractmethod
    def dispatch(self, device: Any, queue: Any, descriptor: KernelDescriptor) -> Submission:
        """
        Compile (or fetch from cache) and submit a kernel dispatch.

        Args:
            device: Device.
            queue: Device queue.
            descriptor: Kernel, bindings and workgroup counts.

        Returns:
            The submission.
        """
        ...

    @abstractmethod
    def wait(self, device: Any, queue: Any, submission: Submission) -> None:
        """
        Block until the given submission has completed on the device.

        Submissions with completes_on_map set may return early; map_read()
        then waits for them.
        """
        ...

    @property
    def name(self) -> str:
        """Get the backend name."""
        return self.backend_type.name.lower()

    def __repr__(self) -> str:
        """String representation."""
        return f"{type(self).__name__}(available={self.is_available})"
