"""
Unit tests for backend implementations.
"""

from __future__ import annotations

import numpy as np
import pytest

from minigpu.backends import available_backends, create_backend
from minigpu.backends.base import (
    DEFAULT_BUFFER_USAGE,
    BackendType,
    BufferBinding,
    BufferUsage,
    DeviceHandle,
    KernelDescriptor,
    Submission,
    align_up,
)
from minigpu.backends.cpu import CPUBackend
from minigpu.backends.webgpu import FENCE_SIZE, HAS_WGPU, WebGPUBackend
from minigpu.compilation.parser import parse_kernel_source
from minigpu.core.buffer import Buffer
from minigpu.core.context import Context
from minigpu.exceptions import BackendNotAvailableError, InvalidConfigurationError


def test_align_up() -> None:
    """Test rounding to the copy alignment."""
    assert align_up(0) == 0
    assert align_up(1) == 4
    assert align_up(4) == 4
    assert align_up(401) == 404
    assert align_up(5, 8) == 8


class TestCPUBackend:
    """Tests for CPU backend."""

    @pytest.fixture
    def backend(self) -> CPUBackend:
        """Provide a CPU backend."""
        return CPUBackend(max_buffer_size=1024)

    def test_backend_type(self, backend: CPUBackend) -> None:
        """Test backend type."""
        assert backend.backend_type == BackendType.CPU
        assert backend.name == "cpu"

    def test_is_available(self, backend: CPUBackend) -> None:
        """Test that CPU backend is always available."""
        assert backend.is_available

    def test_create_buffer_zeroed(self, backend: CPUBackend) -> None:
        """Test that new buffers are zero-filled."""
        handle = backend.create_device()
        buf = backend.create_buffer(handle.device, 16, DEFAULT_BUFFER_USAGE)

        assert buf.size == 16
        assert np.all(buf.data == 0)
        assert backend.live_buffer_count == 1

    def test_create_buffer_too_large(self, backend: CPUBackend) -> None:
        """Test the allocation limit."""
        handle = backend.create_device()

        with pytest.raises(MemoryError):
            backend.create_buffer(handle.device, 2048, DEFAULT_BUFFER_USAGE)

    def test_write_and_stage(self, backend: CPUBackend) -> None:
        """Test writing host bytes and reading them back through staging."""
        handle = backend.create_device()
        buf = backend.create_buffer(handle.device, 16, DEFAULT_BUFFER_USAGE)
        data = np.arange(4, dtype=np.float32)

        backend.write_buffer(handle.queue, buf, memoryview(data.view(np.uint8)))
        staging, submission = backend.copy_to_staging(handle.device, handle.queue, buf, 4, 8)
        backend.wait(handle.device, handle.queue, submission)
        result = backend.map_read(handle.device, staging, 8)

        np.testing.assert_array_equal(np.frombuffer(result, dtype=np.float32), [1.0, 2.0])
        assert backend.live_buffer_count == 2

        backend.release_staging(staging)
        assert backend.live_buffer_count == 1

    def test_write_out_of_bounds(self, backend: CPUBackend) -> None:
        """Test that writes past the end are rejected."""
        handle = backend.create_device()
        buf = backend.create_buffer(handle.device, 8, DEFAULT_BUFFER_USAGE)

        with pytest.raises(ValueError):
            backend.write_buffer(handle.queue, buf, memoryview(bytes(8)), offset=4)

    def test_usage_is_enforced(self, backend: CPUBackend) -> None:
        """Test that a buffer without COPY_SRC cannot be staged."""
        handle = backend.create_device()
        buf = backend.create_buffer(handle.device, 8, BufferUsage.STORAGE | BufferUsage.COPY_DST)

        with pytest.raises(ValueError):
            backend.copy_to_staging(handle.device, handle.queue, buf, 0, 8)

    def test_released_buffer_rejected(self, backend: CPUBackend) -> None:
        """Test that released buffers cannot be used."""
        handle = backend.create_device()
        buf = backend.create_buffer(handle.device, 8, DEFAULT_BUFFER_USAGE)
        backend.release_buffer(buf)

        with pytest.raises(RuntimeError):
            backend.write_buffer(handle.queue, buf, memoryview(bytes(4)))

    def test_destroyed_device_rejected(self, backend: CPUBackend) -> None:
        """Test that a destroyed device cannot allocate."""
        handle = backend.create_device()
        backend.destroy_device(handle)

        with pytest.raises(RuntimeError):
            backend.create_buffer(handle.device, 8, DEFAULT_BUFFER_USAGE)

    def test_dispatch_runs_every_invocation(self, backend: CPUBackend) -> None:
        """Test that the emulator runs once per invocation of the grid."""
        seen: list[tuple[int, int, int]] = []
        backend.register_kernel("main", lambda gid, buffers: seen.append(gid))
        kernel = parse_kernel_source("@compute @workgroup_size(4, 2) fn main() {}")
        handle = backend.create_device()

        descriptor = KernelDescriptor(source=kernel, bindings=(), workgroups=(2, 1, 1))
        submission = backend.dispatch(handle.device, handle.queue, descriptor)
        backend.wait(handle.device, handle.queue, submission)

        assert len(seen) == 16
        assert (7, 1, 0) in seen
        assert backend.dispatch_count == 1

    def test_dispatch_binds_by_name(self, backend: CPUBackend) -> None:
        """Test that emulators see bound buffers keyed by variable name."""

        def fill(gid: tuple[int, int, int], buffers: dict[str, np.ndarray]) -> None:
            buffers["data"].view(np.uint32)[gid[0]] = gid[0] * 10

        backend.register_kernel("fill", fill)
        kernel = parse_kernel_source(
            "@group(0) @binding(0) var<storage, read_write> data: array<u32>;\n"
            "@compute @workgroup_size(4) fn fill() {}"
        )
        handle = backend.create_device()
        buf = backend.create_buffer(handle.device, 16, DEFAULT_BUFFER_USAGE)
        binding = BufferBinding(slot=0, name="data", buffer=buf, nbytes=16)

        backend.dispatch(
            handle.device,
            handle.queue,
            KernelDescriptor(source=kernel, bindings=(binding,), workgroups=(1, 1, 1)),
        )

        np.testing.assert_array_equal(buf.data.view(np.uint32), [0, 10, 20, 30])

    def test_dispatch_unregistered_kernel(self, backend: CPUBackend) -> None:
        """Test dispatching an entry point without an emulation."""
        kernel = parse_kernel_source("@compute @workgroup_size(1) fn missing() {}")
        handle = backend.create_device()

        with pytest.raises(KeyError):
            backend.dispatch(
                handle.device,
                handle.queue,
                KernelDescriptor(source=kernel, bindings=(), workgroups=(1, 1, 1)),
            )

    def test_pipeline_cache(self, backend: CPUBackend) -> None:
        """Test that repeated dispatches hit the pipeline cache."""
        backend.register_kernel("main", lambda gid, buffers: None)
        kernel = parse_kernel_source("@compute @workgroup_size(1) fn main() {}")
        handle = backend.create_device()
        descriptor = KernelDescriptor(source=kernel, bindings=(), workgroups=(1, 1, 1))

        backend.dispatch(handle.device, handle.queue, descriptor)
        backend.dispatch(handle.device, handle.queue, descriptor)

        stats = backend.pipelines.get_stats()
        assert stats["misses"] == 1
        assert stats["hits"] == 1


class TestBackendSelection:
    """Tests for backend factory functions."""

    def test_cpu(self) -> None:
        """Test selecting the CPU backend by name."""
        assert isinstance(create_backend("cpu"), CPUBackend)

    def test_unknown_name(self) -> None:
        """Test that unknown names are rejected."""
        with pytest.raises(InvalidConfigurationError):
            create_backend("cuda")

    def test_available_backends(self) -> None:
        """Test that CPU is always listed last."""
        names = available_backends()
        assert names[-1] == "cpu"

    def test_auto_never_falls_back_to_cpu(self) -> None:
        """Test that auto selects WebGPU or fails."""
        if WebGPUBackend().is_available:
            assert isinstance(create_backend("auto"), WebGPUBackend)
        else:
            with pytest.raises(BackendNotAvailableError):
                create_backend("auto")


class TestWebGPUBackend:
    """Tests for WebGPU backend."""

    def test_backend_type(self) -> None:
        """Test backend type."""
        backend = WebGPUBackend()
        assert backend.backend_type == BackendType.WEBGPU
        assert backend.name == "webgpu"

    @pytest.mark.gpu
    def test_create_device(self) -> None:
        """Test acquiring a device."""
        backend = WebGPUBackend()
        handle = backend.create_device()
        try:
            assert handle.device is not None
            assert handle.queue is not None
            assert handle.name
        finally:
            backend.destroy_device(handle)

    @pytest.mark.gpu
    def test_write_and_stage(self) -> None:
        """Test a host to device to host round trip."""
        backend = WebGPUBackend()
        handle = backend.create_device()
        try:
            buf = backend.create_buffer(handle.device, 16, DEFAULT_BUFFER_USAGE)
            data = np.arange(4, dtype=np.float32)
            backend.write_buffer(handle.queue, buf, memoryview(data.view(np.uint8)))
            staging, submission = backend.copy_to_staging(
                handle.device, handle.queue, buf, 0, 16
            )
            backend.wait(handle.device, handle.queue, submission)
            result = backend.map_read(handle.device, staging, 16)
            backend.release_staging(staging)

            np.testing.assert_array_equal(np.frombuffer(result, dtype=np.float32), data)
        finally:
            backend.destroy_device(handle)


class FakeGPUBuffer:
    """Host stand-in for a wgpu GPUBuffer."""

    def __init__(self, size: int, usage: int) -> None:
        self.data = bytearray(size)
        self.size = size
        self.usage = usage
        self.mapped = False
        self.map_count = 0
        self.destroyed = False

    def map_sync(self, mode: int, offset: int = 0, size: int | None = None) -> None:
        self.mapped = True
        self.map_count += 1

    def read_mapped(self, buffer_offset: int = 0, size: int | None = None) -> memoryview:
        assert self.mapped, "read_mapped on an unmapped buffer"
        end = self.size if size is None else buffer_offset + size
        return memoryview(bytes(self.data[buffer_offset:end]))

    def unmap(self) -> None:
        self.mapped = False

    def destroy(self) -> None:
        self.destroyed = True


class FakeEncoder:
    """Records commands; the queue replays them on submit."""

    def __init__(self) -> None:
        self.commands: list[tuple] = []

    def clear_buffer(self, buffer: FakeGPUBuffer) -> None:
        self.commands.append(("clear", buffer))

    def copy_buffer_to_buffer(
        self,
        source: FakeGPUBuffer,
        source_offset: int,
        destination: FakeGPUBuffer,
        destination_offset: int,
        size: int,
    ) -> None:
        self.commands.append(("copy", source, source_offset, destination, destination_offset, size))

    def finish(self) -> list[tuple]:
        return self.commands


class FakeQueue:
    """Executes submitted commands immediately."""

    def __init__(self) -> None:
        self.submitted: list[list[tuple]] = []

    def write_buffer(self, buffer: FakeGPUBuffer, offset: int, data: memoryview) -> None:
        payload = bytes(data)
        buffer.data[offset : offset + len(payload)] = payload

    def submit(self, command_buffers: list[list[tuple]]) -> None:
        for commands in command_buffers:
            for command in commands:
                if command[0] == "clear":
                    command[1].data[:] = bytes(command[1].size)
                else:
                    _, src, src_offset, dst, dst_offset, size = command
                    dst.data[dst_offset : dst_offset + size] = src.data[src_offset : src_offset + size]
            self.submitted.append(commands)

    def on_submitted_work_done_sync(self) -> None:
        raise TypeError("on_submitted_work_done_sync() is not usable in this wgpu release")


class FakeDevice:
    """Host stand-in for a wgpu GPUDevice."""

    def __init__(self) -> None:
        self.queue = FakeQueue()
        self.buffers: list[FakeGPUBuffer] = []
        self.destroyed = False

    def create_buffer(self, size: int, usage: int) -> FakeGPUBuffer:
        buffer = FakeGPUBuffer(size, usage)
        self.buffers.append(buffer)
        return buffer

    def create_command_encoder(self) -> FakeEncoder:
        return FakeEncoder()

    def destroy(self) -> None:
        self.destroyed = True


class FakeDeviceWebGPUBackend(WebGPUBackend):
    """WebGPU backend whose device is a FakeDevice."""

    def create_device(self, power_preference: str = "high-performance") -> DeviceHandle:
        device = FakeDevice()
        return DeviceHandle(device=device, queue=device.queue, name="fake")


@pytest.mark.skipif(not HAS_WGPU, reason="wgpu not installed")
class TestWebGPUCompletion:
    """Tests for WebGPU completion handling against a host fake device."""

    def test_dispatch_wait_maps_fence(self) -> None:
        """Test that waiting on a dispatch maps and destroys a fence buffer."""
        backend = WebGPUBackend()
        device = FakeDevice()

        backend.wait(device, device.queue, Submission(label="dispatch:main"))

        assert len(device.buffers) == 1
        fence = device.buffers[0]
        assert fence.size == FENCE_SIZE
        assert fence.usage == int(BufferUsage.MAP_READ | BufferUsage.COPY_DST)
        assert fence.map_count == 1
        assert not fence.mapped
        assert fence.destroyed
        assert device.queue.submitted == [[("clear", fence)]]

    def test_staging_wait_submits_nothing(self) -> None:
        """Test that a staging copy completes at map time, without a fence."""
        backend = WebGPUBackend()
        device = FakeDevice()
        source = device.create_buffer(16, int(DEFAULT_BUFFER_USAGE))
        source.data[:] = bytes(range(16))

        staging, submission = backend.copy_to_staging(device, device.queue, source, 4, 8)
        backend.wait(device, device.queue, submission)

        assert submission.completes_on_map
        assert len(device.queue.submitted) == 1
        assert bytes(backend.map_read(device, staging, 8)) == bytes(range(4, 12))
        assert staging.map_count == 1
        assert not staging.mapped

    def test_context_round_trip(self) -> None:
        """Test buffer writes and reads through a context on the WebGPU backend."""
        with Context(backend=FakeDeviceWebGPUBackend()) as ctx:
            buf = Buffer(ctx).write(b"ABCDEFGH")
            buf.write(b"xy")

            assert bytes(buf.read(8)) == b"xyCDEFGH"
            staging = ctx.require("inspect buffers").device.buffers[1:]
            assert staging and all(b.destroyed for b in staging)
