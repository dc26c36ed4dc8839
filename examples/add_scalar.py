"""
Add Scalar Example for minigpu.

Adds 0.2 to 100 floats on the GPU and reads the result back, first with
blocking calls and then asynchronously. Runs on a WebGPU adapter when
one is available, otherwise on the CPU backend with a host emulation of
the kernel.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import numpy as np

from minigpu import Context
from minigpu.backends import WebGPUBackend
from minigpu.backends.cpu import CPUBackend

KERNEL_PATH = Path(__file__).parent / "kernels" / "add_scalar.wgsl"
NUM_ELEMENTS = 100


def add_scalar(gid: tuple[int, int, int], buffers: dict[str, np.ndarray]) -> None:
    """Host emulation of kernels/add_scalar.wgsl."""
    i = gid[0]
    if i < NUM_ELEMENTS:
        buffers["out"].view(np.float32)[i] = buffers["inp"].view(np.float32)[i] + np.float32(0.2)


def create_context() -> Context:
    """Create a context on WebGPU, or on the CPU backend without an adapter."""
    webgpu = WebGPUBackend()
    if webgpu.is_available:
        return Context(backend=webgpu)

    cpu = CPUBackend()
    cpu.register_kernel("main", add_scalar)
    return Context(backend=cpu)


def run_add_scalar_example() -> None:
    """Run the add-scalar example with blocking calls."""
    print("=" * 60)
    print("minigpu Add Scalar Example")
    print("=" * 60)

    with create_context() as ctx:
        print(f"\n1. Context ready: backend={ctx.backend_name}, device={ctx.device_name}")

        data = np.arange(NUM_ELEMENTS, dtype=np.float32)
        inp = ctx.create_buffer()
        out = ctx.create_buffer(data.nbytes)
        inp.write(data)
        print(f"2. Wrote {data.nbytes} bytes to the input buffer")

        shader = ctx.create_compute_shader().load_kernel_file(KERNEL_PATH)
        shader.set_buffer("inp", inp).set_buffer("out", out)
        print(f"3. Loaded kernel, workgroup_size={shader.workgroup_size}")

        result = shader.dispatch(1)
        print(f"4. Dispatched in {result.execution_time_ms:.3f} ms")

        values = np.empty_like(data)
        out.read_sync(values)
        print(f"5. Read back: {values[:5]} ...")

        assert np.allclose(values, data + 0.2, atol=1e-5)

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


async def run_async_example() -> None:
    """Run the add-scalar example from a coroutine."""
    with create_context() as ctx:
        data = np.arange(NUM_ELEMENTS, dtype=np.float32)
        inp = ctx.create_buffer()
        out = ctx.create_buffer(data.nbytes)
        inp.write(data)

        shader = ctx.create_compute_shader().load_kernel_file(KERNEL_PATH)
        shader.set_buffer("inp", inp).set_buffer("out", out)

        await asyncio.wrap_future(shader.dispatch_async(1))
        values = await asyncio.wrap_future(
            out.read_async(np.empty_like(data), on_complete=lambda: print("Read complete"))
        )
        print(f"Async result: {values[:5]} ...")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_add_scalar_example()
    asyncio.run(run_async_example())
