"""
WebGPU backend for minigpu.

Provides unified GPU access using wgpu-py, which automatically selects
the best native API per platform:
- macOS: Metal
- Windows: Direct3D 12
- Linux: Vulkan
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from minigpu.backends.base import (
    Backend,
    BackendType,
    BufferUsage,
    DeviceHandle,
    KernelDescriptor,
    Submission,
)
from minigpu.compilation.cache import PipelineCache
from minigpu.exceptions import BackendNotAvailableError

try:
    import wgpu

    HAS_WGPU = True
except ImportError:
    HAS_WGPU = False
    wgpu = None


logger = logging.getLogger(__name__)

FENCE_SIZE = 4

_adapter_found: bool | None = None
_adapter_lock = threading.Lock()


def _check_webgpu_available() -> bool:
    """Check if wgpu is installed and an adapter can be requested."""
    global _adapter_found
    if not HAS_WGPU:
        return False

    with _adapter_lock:
        if _adapter_found is None:
            try:
                _adapter_found = wgpu.gpu.request_adapter_sync() is not None
            except Exception as e:
                logger.debug(f"WebGPU adapter request failed: {e}")
                _adapter_found = False
        return _adapter_found


class WebGPUBackend(Backend):
    """
    WebGPU backend implementation using wgpu-py.

    Compiled compute pipelines are cached per backend instance, keyed by
    source hash and entry point. Pipelines use the automatic bind group
    layout derived from the shader, so only bindings the entry point
    actually uses may be bound.

    Example:
        >>> backend = WebGPUBackend()
        >>> if backend.is_available:
        ...     handle = backend.create_device()
    """

    def __init__(self) -> None:
        """Initialize the WebGPU backend."""
        self._pipelines = PipelineCache()

    @property
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        return BackendType.WEBGPU

    @property
    def is_available(self) -> bool:
        """Check if this backend is available."""
        return _check_webgpu_available()

    @property
    def pipelines(self) -> PipelineCache:
        """Get the compiled pipeline cache."""
        return self._pipelines

    def create_device(self, power_preference: str = "high-performance") -> DeviceHandle:
        """
        Request an adapter and a device.

        Raises:
            BackendNotAvailableError: If wgpu is missing or no adapter is found.
        """
        if not HAS_WGPU:
            raise BackendNotAvailableError(
                "webgpu", "wgpu not installed. Install with: pip install wgpu"
            )

        adapter = wgpu.gpu.request_adapter_sync(power_preference=power_preference)
        if adapter is None:
            raise BackendNotAvailableError("webgpu", "no WebGPU adapter found")

        device = adapter.request_device_sync()
        info = getattr(adapter, "info", None) or {}
        name = info.get("device") or info.get("description") or "Unknown GPU"
        logger.info(f"WebGPU device acquired: {name} ({info.get('backend_type', 'unknown')})")
        return DeviceHandle(device=device, queue=device.queue, name=name)

    def destroy_device(self, handle: DeviceHandle) -> None:
        """Destroy the device and drop cached pipelines."""
        self._pipelines.clear()
        handle.device.destroy()

    def create_buffer(self, device: Any, nbytes: int, usage: BufferUsage) -> Any:
        """Allocate a GPUBuffer."""
        return device.create_buffer(size=nbytes, usage=int(usage))

    def release_buffer(self, buffer: Any) -> None:
        """Destroy a GPUBuffer."""
        buffer.destroy()

    def write_buffer(self, queue: Any, buffer: Any, data: memoryview, offset: int = 0) -> None:
        """Enqueue a host to device copy on the queue."""
        queue.write_buffer(buffer, offset, data)

    def copy_to_staging(
        self,
        device: Any,
        queue: Any,
        buffer: Any,
        offset: int,
        nbytes: int,
    ) -> tuple[Any, Submission]:
        """Encode and submit a copy into a MAP_READ staging buffer."""
        staging = device.create_buffer(
            size=nbytes,
            usage=int(BufferUsage.MAP_READ | BufferUsage.COPY_DST),
        )
        encoder = device.create_command_encoder()
        encoder.copy_buffer_to_buffer(buffer, offset, staging, 0, nbytes)
        queue.submit([encoder.finish()])
        return staging, Submission(label="copy_to_staging", completes_on_map=True)

    def map_read(self, device: Any, staging: Any, nbytes: int) -> memoryview:
        """
        Map the staging buffer, copy its contents out and unmap.

        map_sync() blocks until every copy into the staging buffer has
        landed, so this is also the completion point of copy_to_staging().
        """
        staging.map_sync(mode=wgpu.MapMode.READ, offset=0, size=nbytes)
        try:
            return staging.read_mapped(0, nbytes)
        finally:
            staging.unmap()

    def release_staging(self, staging: Any) -> None:
        """Destroy a staging buffer."""
        staging.destroy()

    def dispatch(self, device: Any, queue: Any, descriptor: KernelDescriptor) -> Submission:
        """Encode a compute pass for the descriptor and submit it."""
        source = descriptor.source
        pipeline = self._pipelines.get_or_create(
            source.source_hash,
            source.entry_point,
            lambda: self._create_pipeline(device, source.code, source.entry_point),
        )

        bind_group = device.create_bind_group(
            layout=pipeline.get_bind_group_layout(0),
            entries=[
                {
                    "binding": b.slot,
                    "resource": {"buffer": b.buffer, "offset": 0, "size": b.nbytes},
                }
                for b in descriptor.bindings
            ],
        )

        encoder = device.create_command_encoder()
        compute_pass = encoder.begin_compute_pass()
        compute_pass.set_pipeline(pipeline)
        compute_pass.set_bind_group(0, bind_group)
        compute_pass.dispatch_workgroups(*descriptor.workgroups)
        compute_pass.end()
        queue.submit([encoder.finish()])
        return Submission(label=f"dispatch:{source.entry_point}")

    def wait(self, device: Any, queue: Any, submission: Submission) -> None:
        """
        Block until all work submitted to the queue is done.

        Clears a small fence buffer behind the submitted work and maps it;
        the map resolves only once the queue has drained up to the fence.
        Staging copies need no fence: map_read() waits for them.
        """
        if submission.completes_on_map:
            return

        fence = device.create_buffer(
            size=FENCE_SIZE,
            usage=int(BufferUsage.MAP_READ | BufferUsage.COPY_DST),
        )
        try:
            encoder = device.create_command_encoder()
            encoder.clear_buffer(fence)
            queue.submit([encoder.finish()])
            fence.map_sync(mode=wgpu.MapMode.READ)
            fence.unmap()
        finally:
            fence.destroy()

    def _create_pipeline(self, device: Any, code: str, entry_point: str) -> Any:
        logger.debug(f"Compiling compute pipeline for entry point '{entry_point}'")
        shader_module = device.create_shader_module(code=code)
        return device.create_compute_pipeline(
            layout="auto",
            compute={"module": shader_module, "entry_point": entry_point},
        )

    def __repr__(self) -> str:
        """String representation."""
        return f"WebGPUBackend(installed={HAS_WGPU}, pipelines={len(self._pipelines)})"
