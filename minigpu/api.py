"""
Handle-style API.

Flat functions mirroring the exported surface of the native minigpu
library: one process-wide default context, opaque shader and buffer
handles, and status values instead of exceptions. Every error is
detected at the call boundary, logged, and turned into a False or None
return; nothing raises across this layer.

Example:
    >>> from minigpu import api
    >>> api.initialize_context()
    >>> shader = api.create_compute_shader()
    >>> api.load_kernel(shader, KERNEL)
    >>> buf = api.create_buffer(400)
    >>> api.set_buffer_data(buf, np.arange(100, dtype=np.float32))
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from minigpu.core.buffer import Buffer
from minigpu.core.compute_shader import BindingPolicy, ComputeShader
from minigpu.core.context import Context, ContextConfig
from minigpu.exceptions import ContextNotInitializedError, InvalidHandleError, MiniGPUError

if TYPE_CHECKING:
    from minigpu.backends.base import Backend


F = TypeVar("F", bound=Callable[..., Any])
logger = logging.getLogger(__name__)

_REPORTED = (MiniGPUError, TypeError, ValueError, OSError)

_context: Context | None = None
_pending_init: Future[Context] | None = None
_context_lock = threading.Lock()


def _reports(default: Any) -> Callable[[F], F]:
    """Log library errors raised by the wrapped call and return default instead."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except _REPORTED as e:
                logger.error(f"{func.__name__} failed: {e}")
                return default

        return wrapper  # type: ignore[return-value]

    return decorator


def _discard_failed_context() -> None:
    """Drop a process-wide context whose initialization failed. Caller holds _context_lock."""
    global _context, _pending_init
    if _context is None or _context.is_initialized:
        return
    if _pending_init is not None and not _pending_init.done():
        return
    stale, _context, _pending_init = _context, None, None
    stale.destroy()


def _require_context(operation: str) -> Context:
    if _context is None or not _context.is_initialized:
        raise ContextNotInitializedError(operation)
    return _context


def _check_shader(shader: object, operation: str) -> ComputeShader:
    if not isinstance(shader, ComputeShader):
        raise InvalidHandleError("compute shader", operation)
    return shader


def _check_buffer(buffer: object, operation: str) -> Buffer:
    if not isinstance(buffer, Buffer):
        raise InvalidHandleError("buffer", operation)
    return buffer


def get_context() -> Context | None:
    """Get the process-wide context, if one was initialized."""
    return _context


@_reports(False)
def initialize_context(
    config: ContextConfig | None = None,
    *,
    backend: Backend | None = None,
) -> bool:
    """
    Create and initialize the process-wide context.

    Returns:
        True if the context is ready.
    """
    global _context
    with _context_lock:
        _discard_failed_context()
        if _context is None:
            context = Context(config, backend=backend)
            try:
                context.initialize()
            except MiniGPUError:
                context.destroy()
                raise
            _context = context
            return True
        context = _context
    # Ready, or still initializing on a worker: initialize() waits for it.
    context.initialize()
    return True


@_reports(None)
def initialize_context_async(
    callback: Callable[[], None] | None = None,
    config: ContextConfig | None = None,
    *,
    backend: Backend | None = None,
) -> Future[Context] | None:
    """
    Initialize the process-wide context on a worker thread.

    The context must not be used before callback fires.

    Returns:
        Future resolving to the context, or None on error.
    """
    global _context, _pending_init
    with _context_lock:
        _discard_failed_context()
        if _context is None:
            _context = Context(config, backend=backend)
        future = _context.initialize_async(callback)
        if not _context.is_initialized:
            _pending_init = future
        return future


def destroy_context() -> None:
    """Destroy the process-wide context. Existing handles become invalid."""
    global _context, _pending_init
    with _context_lock:
        context, _context, _pending_init = _context, None, None
    if context is None:
        logger.warning("destroy_context called without a context")
        return
    context.destroy()


@_reports(None)
def create_compute_shader(policy: BindingPolicy = BindingPolicy.BY_NAME) -> ComputeShader | None:
    """Create a compute shader handle on the process-wide context."""
    return ComputeShader(_require_context("create compute shader"), policy=policy)


@_reports(None)
def destroy_compute_shader(shader: ComputeShader | None) -> None:
    """Release a compute shader handle."""
    _check_shader(shader, "destroy_compute_shader").release()


@_reports(False)
def load_kernel(shader: ComputeShader | None, source: str) -> bool:
    """Load kernel source into a shader."""
    _check_shader(shader, "load_kernel").load_kernel(source)
    return True


@_reports(False)
def load_kernel_file(shader: ComputeShader | None, path: str | Path) -> bool:
    """Load kernel source from a file into a shader."""
    _check_shader(shader, "load_kernel_file").load_kernel_file(path)
    return True


@_reports(False)
def has_kernel(shader: ComputeShader | None) -> bool:
    """Check if a shader has non-empty kernel source loaded."""
    return _check_shader(shader, "has_kernel").has_kernel


@_reports(None)
def create_buffer(nbytes: int = 0) -> Buffer | None:
    """Create a buffer handle of nbytes (0 allocates lazily)."""
    return Buffer(_require_context("create buffer"), nbytes)


@_reports(None)
def destroy_buffer(buffer: Buffer | None) -> None:
    """Release a buffer handle."""
    _check_buffer(buffer, "destroy_buffer").release()


@_reports(False)
def set_buffer_data(buffer: Buffer | None, data: Any, nbytes: int | None = None) -> bool:
    """Write host data into a buffer, growing it if needed."""
    _check_buffer(buffer, "set_buffer_data").write(data, nbytes)
    return True


@_reports(False)
def set_buffer(shader: ComputeShader | None, tag: str | int, buffer: Buffer | None) -> bool:
    """Bind a buffer to a shader slot."""
    _check_shader(shader, "set_buffer").set_buffer(tag, _check_buffer(buffer, "set_buffer"))
    return True


@_reports(False)
def dispatch(shader: ComputeShader | None, groups_x: int, groups_y: int = 1, groups_z: int = 1) -> bool:
    """Dispatch a shader and wait for completion."""
    _check_shader(shader, "dispatch").dispatch(groups_x, groups_y, groups_z)
    return True


@_reports(None)
def dispatch_async(
    shader: ComputeShader | None,
    groups_x: int,
    groups_y: int = 1,
    groups_z: int = 1,
    callback: Callable[[], None] | None = None,
) -> Future[Any] | None:
    """Dispatch a shader; callback fires on a worker after completion."""
    return _check_shader(shader, "dispatch_async").dispatch_async(
        groups_x, groups_y, groups_z, on_complete=callback
    )


@_reports(False)
def read_buffer_sync(
    buffer: Buffer | None,
    out: Any,
    nbytes: int | None = None,
    offset: int = 0,
) -> bool:
    """Blocking read of nbytes at offset into out."""
    _check_buffer(buffer, "read_buffer_sync").read_sync(out, nbytes, offset)
    return True


@_reports(None)
def read_buffer_async(
    buffer: Buffer | None,
    out: Any,
    nbytes: int | None = None,
    offset: int = 0,
    callback: Callable[[], None] | None = None,
) -> Future[Any] | None:
    """Non-blocking read; callback fires on a worker after out is written."""
    return _check_buffer(buffer, "read_buffer_async").read_async(
        out, nbytes, offset, on_complete=callback
    )
