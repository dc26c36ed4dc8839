"""
Core abstractions for minigpu.
"""

from minigpu.core.buffer import Buffer
from minigpu.core.compute_shader import BindingPolicy, ComputeShader
from minigpu.core.context import Context, ContextConfig

__all__ = [
    "Context",
    "ContextConfig",
    "Buffer",
    "ComputeShader",
    "BindingPolicy",
]
