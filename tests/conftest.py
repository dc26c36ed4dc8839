"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

from typing import Generator

import numpy as np
import pytest

from minigpu import api
from minigpu.backends.cpu import CPUBackend
from minigpu.backends.webgpu import WebGPUBackend
from minigpu.core.context import Context

# Configure pytest-asyncio
pytest_plugins = ["pytest_asyncio"]


ADD_SCALAR_KERNEL = """
@group(0) @binding(0) var<storage, read_write> inp: array<f32>;
@group(0) @binding(1) var<storage, read_write> out: array<f32>;

@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) GlobalInvocationID: vec3<u32>) {
    let i: u32 = GlobalInvocationID.x;
    if (i < 100u) {
        out[i] = inp[i] + 0.2;
    }
}
"""


def add_scalar(gid: tuple[int, int, int], buffers: dict[str, np.ndarray]) -> None:
    """Host emulation of ADD_SCALAR_KERNEL."""
    i = gid[0]
    if i < 100:
        inp = buffers["inp"].view(np.float32)
        out = buffers["out"].view(np.float32)
        out[i] = inp[i] + np.float32(0.2)


@pytest.fixture
def cpu_backend() -> CPUBackend:
    """Provide a CPU backend with the add-scalar kernel registered."""
    backend = CPUBackend()
    backend.register_kernel("main", add_scalar)
    return backend


@pytest.fixture
def ctx(cpu_backend: CPUBackend) -> Generator[Context, None, None]:
    """Provide an initialized context on the CPU backend."""
    context = Context(backend=cpu_backend).initialize()
    yield context
    context.destroy()


@pytest.fixture
def gpu_ctx() -> Generator[Context, None, None]:
    """Provide an initialized context on the WebGPU backend."""
    context = Context(backend=WebGPUBackend()).initialize()
    yield context
    context.destroy()


@pytest.fixture
def default_context(cpu_backend: CPUBackend) -> Generator[Context, None, None]:
    """Initialize the process-wide api context on the CPU backend."""
    assert api.initialize_context(backend=cpu_backend)
    context = api.get_context()
    assert context is not None
    yield context
    if api.get_context() is not None:
        api.destroy_context()


@pytest.fixture
def kernel_source() -> str:
    """Provide the add-scalar kernel source."""
    return ADD_SCALAR_KERNEL


@pytest.fixture
def input_data() -> np.ndarray:
    """Provide 100 float32 input values."""
    return np.arange(100, dtype=np.float32)


# Markers for GPU tests
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "gpu: mark test as requiring a WebGPU adapter"
    )


def pytest_collection_modifyitems(
    config: pytest.Config,
    items: list[pytest.Item],
) -> None:
    """Skip GPU tests if no WebGPU adapter is available."""
    if not WebGPUBackend().is_available:
        skip_gpu = pytest.mark.skip(reason="WebGPU adapter not available")
        for item in items:
            if "gpu" in item.keywords:
                item.add_marker(skip_gpu)
