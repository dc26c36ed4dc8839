"""
Device context.

Owns the backend device and queue that every Buffer and ComputeShader
borrows, and the worker pool on which asynchronous completions run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from minigpu.backends import BACKEND_NAMES, create_backend
from minigpu.backends.base import DEFAULT_BUFFER_USAGE, Backend, BufferUsage, DeviceHandle
from minigpu.exceptions import (
    BackendNotAvailableError,
    ContextNotInitializedError,
    InvalidConfigurationError,
    MiniGPUError,
)

if TYPE_CHECKING:
    from minigpu.backends.base import Submission
    from minigpu.core.buffer import Buffer
    from minigpu.core.compute_shader import BindingPolicy, ComputeShader


R = TypeVar("R")
logger = logging.getLogger(__name__)

POWER_PREFERENCES = ("high-performance", "low-power")


@dataclass
class ContextConfig:
    """Configuration for a device context."""

    backend: str = "auto"  # auto, webgpu, cpu
    power_preference: str = "high-performance"
    max_workers: int = 2  # Threads running async read/dispatch completions
    label: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.backend not in BACKEND_NAMES:
            raise InvalidConfigurationError(
                "backend", self.backend, f"must be one of {BACKEND_NAMES}"
            )
        if self.power_preference not in POWER_PREFERENCES:
            raise InvalidConfigurationError(
                "power_preference", self.power_preference, f"must be one of {POWER_PREFERENCES}"
            )
        if self.max_workers < 1:
            raise InvalidConfigurationError("max_workers", self.max_workers, "must be >= 1")


class Context:
    """
    Owning handle for a GPU device and its command queue.

    A Context is created and destroyed explicitly by its owner. Buffers
    and compute shaders keep a non-owning reference to it; after
    destroy() they must not be used.

    Example:
        >>> with Context(ContextConfig(backend="webgpu")) as ctx:
        ...     buf = ctx.create_buffer(400)
        ...     shader = ctx.create_compute_shader()
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        *,
        backend: Backend | None = None,
    ) -> None:
        """
        Initialize a context (call initialize() before use).

        Args:
            config: Context configuration.
            backend: Explicit backend instance; overrides config.backend.
        """
        self._config = config or ContextConfig()
        self._backend = backend
        self._handle: DeviceHandle | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._init_lock = threading.Lock()

    def __enter__(self) -> Context:
        """Context manager entry."""
        return self.initialize()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Context manager exit."""
        self.destroy()

    def initialize(self) -> Context:
        """
        Acquire a device and queue from the backend.

        Returns:
            Self for method chaining.

        Raises:
            BackendNotAvailableError: If no backend device is available.
        """
        with self._init_lock:
            if self._handle is not None:
                return self

            backend_name = self._backend.name if self._backend else self._config.backend
            try:
                backend = self._backend or create_backend(self._config.backend)
                handle = backend.create_device(self._config.power_preference)
            except BackendNotAvailableError as e:
                logger.error(f"Context initialization failed: {e}")
                raise
            except MiniGPUError:
                raise
            except Exception as e:
                logger.error(f"Context initialization failed: {e}")
                raise BackendNotAvailableError(backend_name, str(e)) from e

            self._backend = backend
            self._handle = handle
        logger.info(f"Context initialized: backend={backend.name}, device={handle.name}")
        return self

    def initialize_async(self, on_ready: Callable[[], None] | None = None) -> Future[Context]:
        """
        Acquire the device on a worker thread.

        Args:
            on_ready: Called without arguments on the worker once the
                device is ready. Not called if initialization fails.

        Returns:
            Future resolving to this context.
        """

        def _run() -> Context:
            try:
                self.initialize()
            except Exception:
                logger.exception("Asynchronous context initialization failed")
                raise
            if on_ready is not None:
                on_ready()
            return self

        return self._ensure_executor().submit(_run)

    def destroy(self) -> None:
        """
        Wait for outstanding asynchronous work and release the device.

        Must not be called from a completion callback.
        """
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

        handle, self._handle = self._handle, None
        if handle is None or self._backend is None:
            return

        try:
            self._backend.destroy_device(handle)
        except Exception as e:
            logger.warning(f"Error while destroying device {handle.name}: {e}")
        logger.info(f"Context destroyed: device={handle.name}")

    @property
    def is_initialized(self) -> bool:
        """Check if the context holds a live device."""
        return self._handle is not None

    @property
    def config(self) -> ContextConfig:
        """Get the context configuration."""
        return self._config

    @property
    def backend(self) -> Backend:
        """Get the backend."""
        self.require("access backend")
        return self._backend  # type: ignore[return-value]

    @property
    def device(self) -> Any:
        """Get the backend device."""
        return self.require("access device").device

    @property
    def queue(self) -> Any:
        """Get the backend command queue."""
        return self.require("access queue").queue

    @property
    def backend_name(self) -> str:
        """Get the backend name."""
        if self._backend is not None:
            return self._backend.name
        return self._config.backend

    @property
    def device_name(self) -> str:
        """Get the device name."""
        return self._handle.name if self._handle else "none"

    def require(self, operation: str) -> DeviceHandle:
        """
        Return the device handle or fail.

        Args:
            operation: Description used in the error message.

        Raises:
            ContextNotInitializedError: If the context is not initialized.
        """
        if self._handle is None:
            raise ContextNotInitializedError(operation)
        return self._handle

    def wait_for_completion(self, submission: Submission) -> None:
        """Block until a submission has completed on the device."""
        handle = self.require("wait for completion")
        self._backend.wait(handle.device, handle.queue, submission)  # type: ignore[union-attr]

    def submit_background(self, fn: Callable[..., R], *args: Any) -> Future[R]:
        """
        Run a blocking completion sequence on the context's worker pool.

        Args:
            fn: Callable to run.
            *args: Arguments for fn.

        Returns:
            Future for the call.
        """
        self.require("submit background work")
        return self._ensure_executor().submit(fn, *args)

    def create_buffer(
        self,
        nbytes: int = 0,
        *,
        usage: BufferUsage = DEFAULT_BUFFER_USAGE,
    ) -> Buffer:
        """Create a Buffer against this context."""
        from minigpu.core.buffer import Buffer

        return Buffer(self, nbytes, usage=usage)

    def create_compute_shader(self, policy: BindingPolicy | None = None) -> ComputeShader:
        """Create a ComputeShader against this context."""
        from minigpu.core.compute_shader import BindingPolicy, ComputeShader

        return ComputeShader(self, policy=policy or BindingPolicy.BY_NAME)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                prefix = f"minigpu-{self._config.label}" if self._config.label else "minigpu"
                self._executor = ThreadPoolExecutor(
                    max_workers=self._config.max_workers,
                    thread_name_prefix=prefix,
                )
            return self._executor

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"Context(backend={self.backend_name}, device={self.device_name}, "
            f"initialized={self.is_initialized})"
        )
