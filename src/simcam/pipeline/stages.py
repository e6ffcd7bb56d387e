from __future__ import annotations

import logging
from concurrent.futures import Future
from enum import Enum
from typing import Any

from simcam.device.compute import ComputeDevice, LinearBuffer, Surface
from simcam.device.kernels import (
    CORRECT_ENTRY,
    DISTORT_ENTRY,
    PACK_ENTRY,
    SHARPEN_ENTRY,
    ComputeKernel,
    KernelLibrary,
)
from simcam.errors import PipelineStateError
from simcam.params import PACK_WORD_SIZE, CameraParameters
from simcam.pipeline.buffers import (
    CORRECTION_TARGET,
    DISTORT_TARGET,
    PACKED_BUFFER,
    RENDER_TARGET,
    SHARPEN_TARGET,
)

logger = logging.getLogger(__name__)

# Uploaded with flipped sign relative to the stored plumb-bob coefficients;
# p1 is uploaded as is. This matches the distortion convention of the remap
# kernels and must not change without re-deriving that convention.
NEGATED_COEFFICIENTS = ("k1", "k2", "p2", "k3")


class StageId(str, Enum):
    SHARPEN = "sharpen"
    DISTORT = "distort"
    CORRECT = "correct"
    PACK = "pack"

    @property
    def entry_point(self) -> str:
        return _ENTRY_POINTS[self]


_ENTRY_POINTS = {
    StageId.SHARPEN: SHARPEN_ENTRY,
    StageId.DISTORT: DISTORT_ENTRY,
    StageId.CORRECT: CORRECT_ENTRY,
    StageId.PACK: PACK_ENTRY,
}


def build_stage_chain(enable_correction: bool) -> list[tuple[StageId, str, str]]:
    """
    Fixed (stage, source, destination) order over the surface chain.

    Sources and destinations alternate, so no stage reads its own output.
    """
    chain = [
        (StageId.SHARPEN, RENDER_TARGET, SHARPEN_TARGET),
        (StageId.DISTORT, SHARPEN_TARGET, DISTORT_TARGET),
    ]
    last = DISTORT_TARGET
    if enable_correction:
        chain.append((StageId.CORRECT, DISTORT_TARGET, CORRECTION_TARGET))
        last = CORRECTION_TARGET
    chain.append((StageId.PACK, last, PACKED_BUFFER))
    return chain


class StageExecutor:
    """One compute stage: kernel resolution, uniform binding and dispatch."""

    def __init__(self, stage: StageId):
        self.stage = StageId(stage)
        self.kernel: ComputeKernel | None = None
        self.uniforms: dict[str, Any] = {}

    @property
    def configured(self) -> bool:
        return self.kernel is not None

    def configure(self, library: KernelLibrary) -> ComputeKernel:
        self.kernel = library.resolve(self.stage.entry_point)
        if self.stage is StageId.PACK and not self.kernel.is_1d:
            raise PipelineStateError(f"{self.kernel.entry_point} must be a one-dimensional kernel")
        logger.debug(
            "stage %s -> %s, threads per group %s",
            self.stage.value,
            self.kernel.entry_point,
            self.kernel.threads_per_group,
        )
        return self.kernel

    def bind_parameters(self, params: CameraParameters, sharpening_strength: float = 0.0) -> dict[str, Any]:
        if self.stage is StageId.SHARPEN:
            uniforms: dict[str, Any] = {"sharpening_strength": float(sharpening_strength)}
        elif self.stage is StageId.PACK:
            uniforms = {"width": params.width, "height": params.height}
        else:
            uniforms = {
                "width": params.width,
                "height": params.height,
                "fx": float(params.fx),
                "fy": float(params.fy),
                "cx": float(params.cx),
                "cy": float(params.cy),
            }
            for name in ("k1", "k2", "p1", "p2", "k3"):
                v = float(getattr(params, name))
                uniforms[name] = -v if name in NEGATED_COEFFICIENTS else v
        self.uniforms = uniforms
        return uniforms

    def group_counts(self, params: CameraParameters) -> tuple[int, int]:
        kernel = self._require_kernel()
        tx, ty = kernel.threads_per_group
        if self.stage is StageId.PACK:
            words = (params.width * params.height * 3) // PACK_WORD_SIZE
            return -(-words // tx), 1
        return -(-params.width // tx), -(-params.height // ty)

    def dispatch(
        self,
        device: ComputeDevice,
        src: Surface,
        dst: Surface | LinearBuffer,
        group_x: int,
        group_y: int = 1,
    ) -> Future:
        kernel = self._require_kernel()
        if src is dst:
            raise PipelineStateError(f"stage {self.stage.value} would read and write {src.name!r}")
        if isinstance(dst, Surface) and not dst.random_write:
            raise PipelineStateError(f"stage {self.stage.value} cannot write to {dst.name!r}")
        tx, ty = kernel.threads_per_group
        return device.dispatch(kernel.fn, self.uniforms, src, dst, (int(group_x) * tx, int(group_y) * ty))

    def _require_kernel(self) -> ComputeKernel:
        if self.kernel is None:
            raise PipelineStateError(f"stage {self.stage.value} is not configured")
        return self.kernel
