"""
Compute shader: kernel source, buffer bindings and dispatch.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import Future
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING

from minigpu.backends.base import BufferBinding, KernelDescriptor, KernelExecutionResult
from minigpu.compilation.parser import DEFAULT_WORKGROUP_SIZE, KernelSource, parse_kernel_source
from minigpu.core.buffer import Buffer
from minigpu.exceptions import (
    BindingError,
    BindingNotFoundError,
    BufferNotAllocatedError,
    InvalidConfigurationError,
    InvalidHandleError,
    KernelNotLoadedError,
    MiniGPUError,
    SubmissionError,
    UnboundSlotError,
)

if TYPE_CHECKING:
    from minigpu.backends.base import Submission
    from minigpu.core.context import Context


logger = logging.getLogger(__name__)


class BindingPolicy(Enum):
    """How set_buffer() tags are resolved to binding slots."""

    BY_NAME = auto()  # tag is the variable name of a binding declaration
    BY_INDEX = auto()  # tag is the numeric slot


class ComputeShader:
    """
    A compute kernel plus the buffers bound to its slots.

    Kernel source is scanned once on load for its workgroup size, entry
    point and binding declarations. Only bindings in group 0 are
    supported. Every slot the kernel declares must be bound before
    dispatch. Bindings are not snapshotted: rebinding a slot affects
    the next dispatch only.

    Example:
        >>> shader = ComputeShader(ctx)
        >>> shader.load_kernel(KERNEL)
        >>> shader.set_buffer("inp", inp).set_buffer("out", out)
        >>> shader.dispatch(1)
    """

    def __init__(self, context: Context, *, policy: BindingPolicy = BindingPolicy.BY_NAME) -> None:
        """
        Initialize a compute shader.

        Args:
            context: Initialized context.
            policy: Binding resolution policy for set_buffer().
        """
        context.require("create compute shader")
        self._context = context
        self._policy = policy
        self._kernel: KernelSource | None = None
        self._bindings: dict[int, Buffer] = {}

    @property
    def context(self) -> Context:
        """Get the context this shader was created against."""
        return self._context

    @property
    def policy(self) -> BindingPolicy:
        """Get the binding resolution policy."""
        return self._policy

    @property
    def kernel(self) -> KernelSource | None:
        """Get the loaded kernel source, if any."""
        return self._kernel

    @property
    def has_kernel(self) -> bool:
        """Check if non-empty kernel source is loaded."""
        return self._kernel is not None

    @property
    def workgroup_size(self) -> tuple[int, int, int]:
        """Get the declared workgroup size."""
        return self._kernel.workgroup_size if self._kernel else DEFAULT_WORKGROUP_SIZE

    @property
    def bindings(self) -> dict[int, Buffer]:
        """Get the bound buffers ordered by slot."""
        return dict(sorted(self._bindings.items()))

    @property
    def unbound_slots(self) -> list[int]:
        """Get declared slots that have no buffer bound."""
        if self._kernel is None:
            return []
        return [slot for slot in self._kernel.slots if slot not in self._bindings]

    def load_kernel(self, source: str) -> ComputeShader:
        """
        Load kernel source and reset all bindings.

        Args:
            source: WGSL kernel source.

        Returns:
            Self for method chaining.
        """
        if not isinstance(source, str):
            raise TypeError(f"Kernel source must be str, got {type(source).__name__}")

        self._bindings.clear()
        if not source:
            logger.warning("Empty kernel source loaded")
            self._kernel = None
            return self

        kernel = parse_kernel_source(source)
        ignored = [b.name for b in kernel.bindings if b.group != 0]
        if ignored:
            logger.warning(f"Only @group(0) bindings can be bound; ignoring {ignored}")

        self._kernel = kernel
        logger.debug(
            f"Loaded kernel '{kernel.entry_point}' ({kernel.source_hash}): "
            f"workgroup_size={kernel.workgroup_size}, slots={kernel.slots}"
        )
        return self

    def load_kernel_file(self, path: str | Path) -> ComputeShader:
        """Load kernel source from a UTF-8 text file."""
        return self.load_kernel(Path(path).read_text(encoding="utf-8"))

    def binding_slot(self, tag: str | int) -> int:
        """
        Resolve a tag to a binding slot under this shader's policy.

        Args:
            tag: Variable name (BY_NAME) or slot number (BY_INDEX).

        Returns:
            The slot.

        Raises:
            TypeError: If the tag type does not match the policy.
            KernelNotLoadedError: BY_NAME without a loaded kernel.
            BindingNotFoundError: BY_NAME with an undeclared name.
        """
        if self._policy is BindingPolicy.BY_INDEX:
            if isinstance(tag, bool) or not isinstance(tag, int):
                raise TypeError(f"BY_INDEX binding expects an int slot, got {tag!r}")
            if tag < 0:
                raise InvalidConfigurationError("slot", tag, "must be >= 0")
            return tag

        if not isinstance(tag, str):
            raise TypeError(f"BY_NAME binding expects a str tag, got {tag!r}")
        if self._kernel is None:
            raise KernelNotLoadedError("resolve binding")

        declaration = self._kernel.find(tag)
        if declaration is None:
            raise BindingNotFoundError(tag, self._kernel.binding_names)
        if declaration.group != 0:
            raise BindingError(
                f"Binding '{tag}' is declared in group {declaration.group}; only group 0 is supported"
            )
        return declaration.binding

    def set_buffer(self, tag: str | int, buffer: Buffer) -> ComputeShader:
        """
        Bind a buffer to the slot the tag resolves to.

        Previously set slots are preserved.

        Returns:
            Self for method chaining.
        """
        if not isinstance(buffer, Buffer):
            raise InvalidHandleError("buffer", "set_buffer")
        if buffer.context is not self._context:
            raise InvalidConfigurationError("buffer", buffer, "belongs to a different context")

        slot = self.binding_slot(tag)
        if self._kernel is not None and self._kernel.declaration_for_slot(slot) is None:
            logger.warning(
                f"Slot {slot} is not declared by the kernel; "
                "the buffer is kept but not passed to dispatch"
            )
        self._bindings[slot] = buffer
        return self

    def bound_buffer(self, slot: int) -> Buffer | None:
        """Get the buffer bound to a slot."""
        return self._bindings.get(slot)

    def dispatch(self, groups_x: int, groups_y: int = 1, groups_z: int = 1) -> KernelExecutionResult:
        """
        Dispatch a grid of workgroups and wait for completion.

        Raises:
            KernelNotLoadedError: If no kernel is loaded.
            UnboundSlotError: If a declared slot is unbound; nothing is submitted.
            SubmissionError: If the backend rejects the work.
        """
        descriptor = self._prepare(groups_x, groups_y, groups_z)
        start = time.perf_counter()
        submission = self._submit(descriptor)
        self._wait(submission)
        return KernelExecutionResult(
            execution_time_ms=(time.perf_counter() - start) * 1000,
            workgroups=descriptor.workgroups,
        )

    def dispatch_async(
        self,
        groups_x: int,
        groups_y: int = 1,
        groups_z: int = 1,
        on_complete: Callable[[], None] | None = None,
    ) -> Future[KernelExecutionResult]:
        """
        Dispatch without blocking.

        Validation and submission happen on the calling thread; the wait
        runs on a context worker, which then invokes on_complete.

        Returns:
            Future resolving to the execution result.
        """
        descriptor = self._prepare(groups_x, groups_y, groups_z)
        start = time.perf_counter()
        submission = self._submit(descriptor)

        def _finish() -> KernelExecutionResult:
            try:
                self._wait(submission)
            except Exception:
                logger.exception("Asynchronous dispatch failed")
                raise
            result = KernelExecutionResult(
                execution_time_ms=(time.perf_counter() - start) * 1000,
                workgroups=descriptor.workgroups,
            )
            if on_complete is not None:
                on_complete()
            return result

        return self._context.submit_background(_finish)

    def release(self) -> None:
        """Drop the kernel and all bindings."""
        self._bindings.clear()
        self._kernel = None

    def _prepare(self, groups_x: int, groups_y: int, groups_z: int) -> KernelDescriptor:
        if self._kernel is None:
            raise KernelNotLoadedError("dispatch")
        self._context.require("dispatch")

        workgroups = (groups_x, groups_y, groups_z)
        for axis, count in zip("xyz", workgroups):
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise InvalidConfigurationError(f"groups_{axis}", count, "must be an int >= 0")

        missing = self.unbound_slots
        if missing:
            logger.error(f"Dispatch of '{self._kernel.entry_point}' refused: unbound slots {missing}")
            raise UnboundSlotError(missing)

        bindings = []
        for slot in self._kernel.slots:
            buffer = self._bindings[slot]
            if not buffer.is_allocated:
                raise BufferNotAllocatedError()
            declaration = self._kernel.declaration_for_slot(slot)
            bindings.append(
                BufferBinding(
                    slot=slot,
                    name=declaration.name if declaration else str(slot),
                    buffer=buffer.handle,
                    nbytes=buffer.capacity,
                )
            )

        return KernelDescriptor(source=self._kernel, bindings=tuple(bindings), workgroups=workgroups)

    def _submit(self, descriptor: KernelDescriptor) -> Submission:
        handle = self._context.require("dispatch")
        try:
            submission = self._context.backend.dispatch(handle.device, handle.queue, descriptor)
        except MiniGPUError:
            raise
        except Exception as e:
            logger.error(f"Dispatch of '{descriptor.entry_point}' failed: {e}")
            raise SubmissionError(f"dispatch of '{descriptor.entry_point}'", e) from e

        logger.debug(f"Dispatched '{descriptor.entry_point}' with workgroups={descriptor.workgroups}")
        return submission

    def _wait(self, submission: Submission) -> None:
        try:
            self._context.wait_for_completion(submission)
        except MiniGPUError:
            raise
        except Exception as e:
            raise SubmissionError(f"completion of {submission.label}", e) from e

    def __repr__(self) -> str:
        """String representation."""
        entry = self._kernel.entry_point if self._kernel else None
        return (
            f"ComputeShader(kernel={entry}, policy={self._policy.name}, "
            f"bound_slots={sorted(self._bindings)})"
        )
