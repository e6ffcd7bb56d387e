from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Mapping

import numpy as np

from simcam.errors import AllocationError, PipelineStateError, ReadbackError

logger = logging.getLogger(__name__)

# Packed words are little-endian so readback bytes keep the BGR stream order.
WORD_DTYPE = np.dtype("<u4")


class Surface:
    """
    Device-resident 2D image: (H,W,4) uint8, BGRA channel order.

    `random_write` marks surfaces a compute kernel may write to; the render
    target is written by the renderer only.
    """

    def __init__(self, name: str, width: int, height: int, random_write: bool = False):
        self.name = name
        self.width = int(width)
        self.height = int(height)
        self.random_write = bool(random_write)
        self._data: np.ndarray | None = np.zeros((self.height, self.width, 4), dtype=np.uint8)

    @property
    def data(self) -> np.ndarray:
        if self._data is None:
            raise PipelineStateError(f"surface {self.name!r} was released")
        return self._data

    @property
    def released(self) -> bool:
        return self._data is None

    def release(self) -> None:
        self._data = None

    def __repr__(self) -> str:
        return f"Surface({self.name!r}, {self.width}x{self.height}, random_write={self.random_write})"


class LinearBuffer:
    """Device-resident linear buffer of 32-bit words."""

    def __init__(self, name: str, count: int):
        self.name = name
        self.count = int(count)
        self._data: np.ndarray | None = np.zeros(self.count, dtype=WORD_DTYPE)

    @property
    def data(self) -> np.ndarray:
        if self._data is None:
            raise PipelineStateError(f"buffer {self.name!r} was released")
        return self._data

    @property
    def nbytes(self) -> int:
        return self.count * 4

    @property
    def released(self) -> bool:
        return self._data is None

    def release(self) -> None:
        self._data = None

    def __repr__(self) -> str:
        return f"LinearBuffer({self.name!r}, count={self.count})"


class ReadbackRequest:
    """
    Handle on one asynchronous device -> host transfer.

    Poll `done`; once done, `data()` returns the bytes or raises ReadbackError.
    `invalidate()` renders the request inert: its result can no longer be read.
    """

    def __init__(self, future: Future, source_name: str):
        self._future = future
        self.source_name = source_name
        self._invalidated = False

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    @property
    def error(self) -> BaseException | None:
        if self._invalidated:
            return ReadbackError(f"readback of {self.source_name!r} was invalidated")
        if not self._future.done():
            return None
        return self._future.exception()

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def invalidate(self) -> None:
        self._invalidated = True

    def wait(self, timeout: float | None = None) -> bool:
        done, _ = wait([self._future], timeout=timeout)
        return bool(done)

    def data(self) -> bytes:
        if self._invalidated:
            raise ReadbackError(f"readback of {self.source_name!r} was invalidated")
        if not self._future.done():
            raise ReadbackError(f"readback of {self.source_name!r} is not complete")
        exc = self._future.exception()
        if isinstance(exc, ReadbackError):
            raise exc
        if exc is not None:
            raise ReadbackError(f"readback of {self.source_name!r} failed: {exc}") from exc
        return self._future.result()


KernelFn = Callable[[Mapping[str, Any], np.ndarray, np.ndarray, tuple[int, int]], None]


class ComputeDevice:
    """
    In-order command queue executing compute kernels off the calling thread.

    With `asynchronous=False` every command runs at submission and returns an
    already completed future, which keeps tests and batch tools deterministic.
    """

    def __init__(self, asynchronous: bool = True, max_surface_dim: int = 16384, name: str = "simcam-device"):
        self.name = name
        self.asynchronous = bool(asynchronous)
        self.max_surface_dim = int(max_surface_dim)
        self._executor: ThreadPoolExecutor | None = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=name) if self.asynchronous else None
        )
        self._outstanding: list[Future] = []
        self._since_readback: list[Future] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        if self._closed:
            raise PipelineStateError(f"device {self.name!r} is closed")
        if self._executor is None:
            fut: Future = Future()
            try:
                fut.set_result(fn(*args))
            except Exception as e:
                fut.set_exception(e)
        else:
            fut = self._executor.submit(fn, *args)
        self._outstanding = [f for f in self._outstanding if not f.done()]
        self._outstanding.append(fut)
        return fut

    def create_surface(self, name: str, width: int, height: int, random_write: bool = False) -> Surface:
        self._check_extent(name, width, height)
        try:
            return Surface(name, width, height, random_write=random_write)
        except (MemoryError, ValueError) as e:
            raise AllocationError(f"cannot create surface {name!r} ({width}x{height}): {e}") from e

    def create_buffer(self, name: str, count: int) -> LinearBuffer:
        if int(count) <= 0:
            raise AllocationError(f"buffer {name!r} needs a positive word count, got {count}")
        try:
            return LinearBuffer(name, count)
        except (MemoryError, ValueError) as e:
            raise AllocationError(f"cannot create buffer {name!r} ({count} words): {e}") from e

    def _check_extent(self, name: str, width: int, height: int) -> None:
        if self._closed:
            raise AllocationError(f"device {self.name!r} is closed")
        w, h = int(width), int(height)
        if w <= 0 or h <= 0:
            raise AllocationError(f"surface {name!r} needs a positive size, got {w}x{h}")
        if w > self.max_surface_dim or h > self.max_surface_dim:
            raise AllocationError(f"surface {name!r} ({w}x{h}) exceeds device limit {self.max_surface_dim}")

    def dispatch(
        self,
        kernel_fn: KernelFn,
        uniforms: Mapping[str, Any],
        src: Surface,
        dst: Surface | LinearBuffer,
        extent: tuple[int, int],
    ) -> Future:
        """
        Enqueue one kernel invocation covering `extent` (threads in x, y).

        Uniforms are copied at submission, so later parameter edits never
        reach work already queued.
        """
        if src is dst:
            raise PipelineStateError(f"kernel would read and write {src.name!r}")
        fut = self._submit(kernel_fn, dict(uniforms), src.data, dst.data, (int(extent[0]), int(extent[1])))
        self._since_readback.append(fut)
        return fut

    def request_readback(self, buffer: LinearBuffer) -> ReadbackRequest:
        upstream = self._since_readback
        self._since_readback = []
        fut = self._submit(self._readback_job, buffer, upstream)
        return ReadbackRequest(fut, buffer.name)

    def _readback_job(self, buffer: LinearBuffer, upstream: list[Future]) -> bytes:
        # Queue order guarantees every upstream dispatch has finished here.
        for f in upstream:
            exc = f.exception()
            if exc is not None:
                raise ReadbackError(f"dispatch feeding {buffer.name!r} failed: {exc}") from exc
        return self._read_buffer(buffer)

    def _read_buffer(self, buffer: LinearBuffer) -> bytes:
        return buffer.data.tobytes()

    def finish(self, timeout: float | None = None) -> None:
        """Block until every submitted command has completed."""
        pending = [f for f in self._outstanding if not f.done()]
        if pending:
            wait(pending, timeout=timeout)
        self._outstanding = [f for f in self._outstanding if not f.done()]

    def close(self) -> None:
        if self._closed:
            return
        self.finish()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._closed = True
        logger.debug("device %s closed", self.name)

    def __enter__(self) -> ComputeDevice:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
