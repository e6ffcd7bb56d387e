from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping

import cv2
import numpy as np

from simcam.core.distortion import BrownDistortion, distortion_maps
from simcam.device.compute import WORD_DTYPE, KernelFn
from simcam.errors import KernelResolutionError

SHARPEN_ENTRY = "SharpenTexture"
DISTORT_ENTRY = "DistortTexture"
CORRECT_ENTRY = "CameraDistortionCorrection"
PACK_ENTRY = "PackBgr8"


@dataclass(frozen=True)
class ComputeKernel:
    """
    A compiled compute entry point.

    threads_per_group: (x, y) threads per execution group. One-dimensional
    kernels use y == 1.
    """

    entry_point: str
    threads_per_group: tuple[int, int]
    fn: KernelFn

    @property
    def is_1d(self) -> bool:
        return self.threads_per_group[1] == 1


class KernelLibrary:
    """Explicit entry point -> kernel mapping, resolved once at startup."""

    def __init__(self, kernels: list[ComputeKernel] | None = None):
        self._kernels: dict[str, ComputeKernel] = {}
        for k in kernels or []:
            self.register(k)

    @classmethod
    def default(cls) -> KernelLibrary:
        return cls(
            [
                ComputeKernel(SHARPEN_ENTRY, (8, 8), sharpen_kernel),
                ComputeKernel(DISTORT_ENTRY, (8, 8), distort_kernel),
                ComputeKernel(CORRECT_ENTRY, (8, 8), correct_kernel),
                ComputeKernel(PACK_ENTRY, (64, 1), pack_bgr8_kernel),
            ]
        )

    def register(self, kernel: ComputeKernel) -> None:
        tx, ty = kernel.threads_per_group
        if int(tx) < 1 or int(ty) < 1:
            raise ValueError(f"{kernel.entry_point}: threads_per_group must be >= 1")
        self._kernels[kernel.entry_point] = kernel

    def resolve(self, entry_point: str) -> ComputeKernel:
        try:
            return self._kernels[entry_point]
        except KeyError:
            raise KernelResolutionError(
                f"compute entry point {entry_point!r} not found (available: {sorted(self._kernels)})"
            ) from None

    def __contains__(self, entry_point: object) -> bool:
        return entry_point in self._kernels

    def entry_points(self) -> list[str]:
        return sorted(self._kernels)


def _covered(dst: np.ndarray, extent: tuple[int, int]) -> tuple[int, int]:
    h, w = dst.shape[:2]
    return min(w, extent[0]), min(h, extent[1])


def sharpen_kernel(uniforms: Mapping[str, Any], src: np.ndarray, dst: np.ndarray, extent: tuple[int, int]) -> None:
    """3x3 Laplacian sharpening of the color channels; alpha is passed through."""
    ex, ey = _covered(dst, extent)
    s = float(uniforms.get("sharpening_strength", 0.0))
    if s == 0.0:
        dst[:ey, :ex] = src[:ey, :ex]
        return
    k = np.array([[0.0, -s, 0.0], [-s, 1.0 + 4.0 * s, -s], [0.0, -s, 0.0]], dtype=np.float32)
    color = cv2.filter2D(np.ascontiguousarray(src[..., :3]), -1, k, borderType=cv2.BORDER_REPLICATE)
    dst[:ey, :ex, :3] = color[:ey, :ex]
    dst[:ey, :ex, 3] = src[:ey, :ex, 3]


@lru_cache(maxsize=8)
def _cached_maps(
    width: int, height: int, fx: float, fy: float, cx: float, cy: float, model: BrownDistortion, inverse: bool
) -> tuple[np.ndarray, np.ndarray]:
    map_x, map_y = distortion_maps(width, height, fx, fy, cx, cy, model, inverse=inverse)
    map_x.setflags(write=False)
    map_y.setflags(write=False)
    return map_x, map_y


def _remap(uniforms: Mapping[str, Any], src: np.ndarray, dst: np.ndarray, extent: tuple[int, int], inverse: bool) -> None:
    ex, ey = _covered(dst, extent)
    model = BrownDistortion.from_uniforms(uniforms)
    if model.is_identity:
        dst[:ey, :ex] = src[:ey, :ex]
        return
    map_x, map_y = _cached_maps(
        int(uniforms["width"]),
        int(uniforms["height"]),
        float(uniforms["fx"]),
        float(uniforms["fy"]),
        float(uniforms["cx"]),
        float(uniforms["cy"]),
        model,
        inverse,
    )
    out = cv2.remap(
        src,
        map_x,
        map_y,
        interpolation=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0, 0),
    )
    dst[:ey, :ex] = out[:ey, :ex]


def distort_kernel(uniforms: Mapping[str, Any], src: np.ndarray, dst: np.ndarray, extent: tuple[int, int]) -> None:
    """Synthesize lens distortion: dst(p) = src(distort(p))."""
    _remap(uniforms, src, dst, extent, inverse=False)


def correct_kernel(uniforms: Mapping[str, Any], src: np.ndarray, dst: np.ndarray, extent: tuple[int, int]) -> None:
    """Inverse of distort_kernel for the same uniforms: dst(p) = src(undistort(p))."""
    _remap(uniforms, src, dst, extent, inverse=True)


def pack_bgr8_kernel(uniforms: Mapping[str, Any], src: np.ndarray, dst: np.ndarray, extent: tuple[int, int]) -> None:
    """
    Serialize a BGRA surface into row-major BGR8 bytes, four bytes per 32-bit word.

    One thread writes one word; `extent[0]` words are written.
    """
    h, w = src.shape[:2]
    if int(uniforms.get("width", w)) != w or int(uniforms.get("height", h)) != h:
        raise ValueError(f"pack uniforms {uniforms.get('width')}x{uniforms.get('height')} do not match surface {w}x{h}")
    flat = np.ascontiguousarray(src[..., :3]).reshape(-1)
    pad = (-flat.size) % WORD_DTYPE.itemsize
    if pad:
        flat = np.concatenate([flat, np.zeros(pad, dtype=np.uint8)])
    words = flat.view(WORD_DTYPE)
    n = min(int(extent[0]), dst.size, words.size)
    dst[:n] = words[:n]
