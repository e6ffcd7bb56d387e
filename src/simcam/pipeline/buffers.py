from __future__ import annotations

import logging

from simcam.device.compute import ComputeDevice, LinearBuffer, Surface
from simcam.errors import AllocationError, PipelineStateError
from simcam.params import CameraParameters

logger = logging.getLogger(__name__)

RENDER_TARGET = "render_target"
SHARPEN_TARGET = "sharpen_target"
DISTORT_TARGET = "distort_target"
CORRECTION_TARGET = "correction_target"
PACKED_BUFFER = "packed_buffer"

SURFACE_NAMES = (RENDER_TARGET, SHARPEN_TARGET, DISTORT_TARGET, CORRECTION_TARGET)


class FrameBufferSet:
    """
    The surface chain of one camera pipeline plus its packed and host buffers.

    All surfaces share the same width/height. `output_bytes` is reused across
    frames; consumers copy it if they keep a frame.
    """

    def __init__(self, device: ComputeDevice):
        self.device = device
        self.render_target: Surface | None = None
        self.sharpen_target: Surface | None = None
        self.distort_target: Surface | None = None
        self.correction_target: Surface | None = None
        self.packed_buffer: LinearBuffer | None = None
        self.output_bytes: bytearray | None = None
        self.width = 0
        self.height = 0
        self.generation = 0
        self.locked = False
        self._released = False

    @property
    def allocated(self) -> bool:
        return self.packed_buffer is not None

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    def surface(self, name: str) -> Surface | LinearBuffer:
        if name not in SURFACE_NAMES and name != PACKED_BUFFER:
            raise KeyError(name)
        res = getattr(self, name)
        if res is None:
            raise PipelineStateError(f"{name} is not allocated")
        return res

    def ensure_allocated(self, params: CameraParameters) -> bool:
        """
        Allocate every surface and buffer for `params`.

        Returns False (no-op) when the existing allocation already has the
        same width and height, True after a (re)allocation. Raises AllocationError, in
        which case the set is left unallocated.
        """
        if self._released:
            raise PipelineStateError("frame buffers were released")
        if self.allocated and (self.width, self.height) == (params.width, params.height):
            return False
        if self.locked:
            raise PipelineStateError("cannot reallocate frame buffers while a frame is in flight")

        self._drop()
        dev = self.device
        w, h = params.width, params.height
        try:
            self.render_target = dev.create_surface(RENDER_TARGET, w, h, random_write=False)
            self.sharpen_target = dev.create_surface(SHARPEN_TARGET, w, h, random_write=True)
            self.distort_target = dev.create_surface(DISTORT_TARGET, w, h, random_write=True)
            self.correction_target = dev.create_surface(CORRECTION_TARGET, w, h, random_write=True)
            self.packed_buffer = dev.create_buffer(PACKED_BUFFER, params.packed_words)
            self.output_bytes = bytearray(params.output_nbytes)
        except AllocationError:
            self._drop()
            raise
        except MemoryError as e:
            self._drop()
            raise AllocationError(f"out of memory allocating {w}x{h} frame buffers") from e

        self.width, self.height = w, h
        self.generation += 1
        logger.info(
            "allocated frame buffers %dx%d (%d packed words, generation %d)",
            w,
            h,
            params.packed_words,
            self.generation,
        )
        return True

    def _drop(self) -> None:
        for name in SURFACE_NAMES + (PACKED_BUFFER,):
            res = getattr(self, name)
            if res is not None:
                res.release()
                setattr(self, name, None)
        self.output_bytes = None
        self.width = self.height = 0

    def release(self) -> None:
        """Tear down all device and host buffers. Later calls are no-ops."""
        if self._released:
            return
        if self.locked:
            raise PipelineStateError("cannot release frame buffers while a frame is in flight")
        self._drop()
        self._released = True
        logger.debug("frame buffers released")

    @property
    def released(self) -> bool:
        return self._released

    def __enter__(self) -> FrameBufferSet:
        return self

    def __exit__(self, *exc: object) -> None:
        self.locked = False
        self.release()
