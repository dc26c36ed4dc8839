"""
minigpu - a small compute-shader API over WebGPU.

Write host data into device buffers, bind them to the slots a WGSL
kernel declares, dispatch a grid of workgroups and read the results
back, synchronously or with a completion callback.

Core Features:
    - Context: Owns the device, its queue and an async completion pool
    - Buffer: Grow-on-demand device storage with staged host readback
    - ComputeShader: Binding resolution from kernel source and dispatch
    - Handle API: Flat, non-raising functions in minigpu.api
    - CPU Backend: Host emulation of kernels for tests without a GPU

Quick Start:
    >>> import numpy as np
    >>> from minigpu import Context
    >>>
    >>> KERNEL = '''
    ... @group(0) @binding(0) var<storage, read_write> inp: array<f32>;
    ... @group(0) @binding(1) var<storage, read_write> out: array<f32>;
    ... @compute @workgroup_size(256)
    ... fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    ...     let i = gid.x;
    ...     if (i < 100u) { out[i] = inp[i] + 0.2; }
    ... }
    ... '''
    >>> with Context() as ctx:
    ...     inp = ctx.create_buffer()
    ...     out = ctx.create_buffer(400)
    ...     inp.write(np.arange(100, dtype=np.float32))
    ...     shader = ctx.create_compute_shader().load_kernel(KERNEL)
    ...     shader.set_buffer("inp", inp).set_buffer("out", out)
    ...     shader.dispatch(1)
    ...     result = out.read(400, dtype=np.float32)
"""

from minigpu.compilation.parser import KernelSource, parse_kernel_source
from minigpu.core.buffer import Buffer
from minigpu.core.compute_shader import BindingPolicy, ComputeShader
from minigpu.core.context import Context, ContextConfig
from minigpu.exceptions import MiniGPUError

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Core
    "Context",
    "ContextConfig",
    "Buffer",
    "ComputeShader",
    "BindingPolicy",
    # Compilation
    "KernelSource",
    "parse_kernel_source",
    # Errors
    "MiniGPUError",
]
