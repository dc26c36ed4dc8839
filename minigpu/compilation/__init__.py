"""
Kernel source scanning and pipeline caching.
"""

from minigpu.compilation.cache import PipelineCache
from minigpu.compilation.parser import (
    DEFAULT_WORKGROUP_SIZE,
    BindingDeclaration,
    KernelSource,
    parse_kernel_source,
)

__all__ = [
    "PipelineCache",
    "KernelSource",
    "BindingDeclaration",
    "DEFAULT_WORKGROUP_SIZE",
    "parse_kernel_source",
]
