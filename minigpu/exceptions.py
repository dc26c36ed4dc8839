"""
minigpu exception hierarchy.

This module defines the complete exception hierarchy for minigpu,
providing specific exception types for different error categories:

- ContextError: Device context lifecycle issues
- InvalidHandleError: Released or missing objects passed to an operation
- BufferError: Device buffer allocation and host/device transfers
- KernelError: Kernel source loading
- BindingError: Binding-slot resolution and dispatch preconditions
- BackendError: Backend availability and command submission
- ValidationError: Configuration and argument validation errors

All exceptions inherit from MiniGPUError for easy catching.
"""

from __future__ import annotations


class MiniGPUError(Exception):
    """Base exception for all minigpu errors."""

    pass


class ContextError(MiniGPUError):
    """Base exception for context-related errors."""

    pass


class ContextNotInitializedError(ContextError):
    """Raised when a context is used before initialize() or after destroy()."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(
            f"Cannot {operation}: context is not initialized."
            "\nHint: Did you forget to call context.initialize()?"
        )


class InvalidHandleError(MiniGPUError):
    """Raised when a missing or released object is passed to an operation."""

    def __init__(self, kind: str, operation: str) -> None:
        self.kind = kind
        self.operation = operation
        super().__init__(f"Invalid {kind} handle passed to {operation}")


class BufferError(MiniGPUError):
    """Base exception for buffer-related errors."""

    pass


class BufferNotAllocatedError(BufferError):
    """Raised when accessing a buffer that has no device allocation."""

    def __init__(self) -> None:
        super().__init__("Buffer has not been allocated. Call write() or create_or_resize() first.")


class BufferAllocationError(BufferError):
    """Raised when the backend refuses to create a device buffer."""

    def __init__(self, nbytes: int, cause: Exception) -> None:
        self.nbytes = nbytes
        self.cause = cause
        super().__init__(f"Failed to allocate device buffer of {nbytes} bytes: {cause}")


class BufferTransferError(BufferError):
    """Raised when a host/device copy fails."""

    def __init__(self, direction: str, cause: Exception) -> None:
        self.direction = direction
        self.cause = cause
        super().__init__(f"Failed to copy buffer {direction}: {cause}")


class KernelError(MiniGPUError):
    """Base exception for kernel-related errors."""

    pass


class KernelNotLoadedError(KernelError):
    """Raised when an operation needs kernel source that was never loaded."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(
            f"Cannot {operation}: no kernel loaded.\nHint: Call shader.load_kernel(source) first."
        )


class BindingError(MiniGPUError):
    """Base exception for binding-resolution errors."""

    pass


class BindingNotFoundError(BindingError):
    """Raised when a binding tag does not match any declaration in the kernel."""

    def __init__(self, tag: object, available: list[str] | None = None) -> None:
        self.tag = tag
        self.available = available or []
        msg = f"Binding '{tag}' not found in kernel source."
        if self.available:
            msg += f" Declared bindings: {self.available}"
        super().__init__(msg)


class UnboundSlotError(BindingError):
    """Raised when dispatching while a declared binding slot has no buffer."""

    def __init__(self, slots: list[int]) -> None:
        self.slots = slots
        super().__init__(f"Cannot dispatch: binding slot(s) {slots} declared by the kernel are unbound")


class BackendError(MiniGPUError):
    """Base exception for backend-related errors."""

    pass


class BackendNotAvailableError(BackendError):
    """Raised when a requested backend is not available."""

    def __init__(self, backend_name: str, reason: str) -> None:
        self.backend_name = backend_name
        self.reason = reason
        super().__init__(f"Backend '{backend_name}' is not available: {reason}")


class SubmissionError(BackendError):
    """Raised when command encoding or queue submission is rejected."""

    def __init__(self, operation: str, cause: Exception) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Backend rejected {operation}: {cause}")


class ValidationError(MiniGPUError):
    """Base exception for validation-related errors."""

    pass


class InvalidConfigurationError(ValidationError):
    """Raised when configuration or an argument is invalid."""

    def __init__(self, parameter: str, value: object, reason: str) -> None:
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid configuration: {parameter}={value!r} - {reason}")
