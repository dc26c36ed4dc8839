"""
Unit tests for the exception hierarchy.
"""

from __future__ import annotations

import pytest

from minigpu.exceptions import (
    BackendError,
    BackendNotAvailableError,
    BindingError,
    BindingNotFoundError,
    BufferAllocationError,
    BufferError,
    BufferNotAllocatedError,
    BufferTransferError,
    ContextError,
    ContextNotInitializedError,
    InvalidConfigurationError,
    InvalidHandleError,
    KernelError,
    KernelNotLoadedError,
    MiniGPUError,
    SubmissionError,
    UnboundSlotError,
    ValidationError,
)


class TestHierarchy:
    """Tests for exception inheritance."""

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (ContextNotInitializedError("dispatch"), ContextError),
            (BufferNotAllocatedError(), BufferError),
            (BufferAllocationError(16, MemoryError()), BufferError),
            (BufferTransferError("host->device", RuntimeError()), BufferError),
            (KernelNotLoadedError("dispatch"), KernelError),
            (BindingNotFoundError("x"), BindingError),
            (UnboundSlotError([1]), BindingError),
            (BackendNotAvailableError("webgpu", "missing"), BackendError),
            (SubmissionError("dispatch", RuntimeError()), BackendError),
            (InvalidConfigurationError("nbytes", -1, "negative"), ValidationError),
            (InvalidHandleError("buffer", "dispatch"), MiniGPUError),
        ],
    )
    def test_category(self, error: MiniGPUError, category: type[MiniGPUError]) -> None:
        """Test that every error sits under its category and the base."""
        assert isinstance(error, category)
        assert isinstance(error, MiniGPUError)


class TestMessages:
    """Tests for exception attributes and messages."""

    def test_context_not_initialized(self) -> None:
        """Test the operation is named."""
        error = ContextNotInitializedError("read buffer")
        assert error.operation == "read buffer"
        assert "Cannot read buffer" in str(error)

    def test_binding_not_found(self) -> None:
        """Test that declared names are listed."""
        error = BindingNotFoundError("missing", ["inp", "out"])
        assert error.tag == "missing"
        assert "['inp', 'out']" in str(error)
        assert BindingNotFoundError("x").available == []

    def test_unbound_slot(self) -> None:
        """Test that unbound slots are listed."""
        error = UnboundSlotError([0, 2])
        assert error.slots == [0, 2]
        assert "[0, 2]" in str(error)

    def test_transfer_keeps_cause(self) -> None:
        """Test that the underlying error is kept."""
        cause = RuntimeError("device lost")
        error = BufferTransferError("staging->host", cause)
        assert error.cause is cause
        assert error.direction == "staging->host"
        assert "device lost" in str(error)

    def test_invalid_configuration(self) -> None:
        """Test the parameter and value are reported."""
        error = InvalidConfigurationError("offset", 3, "must be a multiple of 4")
        assert error.parameter == "offset"
        assert error.value == 3
        assert "offset=3" in str(error)
