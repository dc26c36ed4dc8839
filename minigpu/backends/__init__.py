"""
Backend implementations for minigpu.
"""

from __future__ import annotations

from minigpu.backends.base import (
    DEFAULT_BUFFER_USAGE,
    Backend,
    BackendType,
    BufferUsage,
    KernelExecutionResult,
)
from minigpu.backends.cpu import CPUBackend
from minigpu.backends.webgpu import WebGPUBackend
from minigpu.exceptions import BackendNotAvailableError, InvalidConfigurationError

__all__ = [
    "Backend",
    "BackendType",
    "BufferUsage",
    "DEFAULT_BUFFER_USAGE",
    "KernelExecutionResult",
    "CPUBackend",
    "WebGPUBackend",
    "available_backends",
    "create_backend",
]

BACKEND_NAMES = ("auto", "webgpu", "cpu")


def available_backends() -> list[str]:
    """Names of the backends usable in this process, preferred first."""
    names = []
    if WebGPUBackend().is_available:
        names.append("webgpu")
    names.append("cpu")
    return names


def create_backend(name: str = "auto") -> Backend:
    """
    Create a backend by name.

    "auto" selects WebGPU and never falls back to the CPU backend, which
    cannot run WGSL kernels.

    Args:
        name: One of "auto", "webgpu", "cpu".

    Returns:
        Backend instance.

    Raises:
        InvalidConfigurationError: If the name is unknown.
        BackendNotAvailableError: If the selected backend is unavailable.
    """
    if name not in BACKEND_NAMES:
        raise InvalidConfigurationError("backend", name, f"must be one of {BACKEND_NAMES}")

    if name == "cpu":
        return CPUBackend()

    backend = WebGPUBackend()
    if not backend.is_available:
        raise BackendNotAvailableError("webgpu", "no WebGPU adapter could be requested")
    return backend
