from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import numpy as np


@dataclass(frozen=True)
class BrownDistortion:
    """
    Brown-Conrady ("plumb bob") distortion on normalized camera coordinates (x=X/Z, y=Y/Z).

    Parameters follow common OpenCV naming:
      radial: k1, k2, k3
      tangential: p1, p2
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0

    @classmethod
    def from_uniforms(cls, uniforms: Mapping[str, float]) -> BrownDistortion:
        return cls(
            k1=float(uniforms.get("k1", 0.0)),
            k2=float(uniforms.get("k2", 0.0)),
            p1=float(uniforms.get("p1", 0.0)),
            p2=float(uniforms.get("p2", 0.0)),
            k3=float(uniforms.get("k3", 0.0)),
        )

    @property
    def is_identity(self) -> bool:
        return self.k1 == 0.0 and self.k2 == 0.0 and self.p1 == 0.0 and self.p2 == 0.0 and self.k3 == 0.0

    def radial(self, r2: np.ndarray) -> np.ndarray:
        return 1.0 + r2 * (self.k1 + r2 * (self.k2 + r2 * self.k3))

    def tangential(self, x: np.ndarray, y: np.ndarray, r2: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        two_xy = 2.0 * x * y
        return (
            self.p1 * two_xy + self.p2 * (r2 + 2.0 * x * x),
            self.p1 * (r2 + 2.0 * y * y) + self.p2 * two_xy,
        )

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Undistorted -> distorted normalized coordinates."""
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        scale = self.radial(r2)
        dx, dy = self.tangential(x, y, r2)
        return x * scale + dx, y * scale + dy

    def undistort(self, xd: np.ndarray, yd: np.ndarray, iterations: int = 7) -> tuple[np.ndarray, np.ndarray]:
        """
        Distorted -> undistorted normalized coordinates.

        Fixed-point refinement starting at the distorted point: each pass moves
        the estimate by the residual of distort(). Converges while the model
        stays close to the identity over the image.
        """
        xd = np.asarray(xd, dtype=np.float64)
        yd = np.asarray(yd, dtype=np.float64)
        x, y = xd, yd
        for _ in range(int(iterations)):
            xe, ye = self.distort(x, y)
            x = x - (xe - xd)
            y = y - (ye - yd)
        return x, y


def distortion_maps(
    width: int,
    height: int,
    fx: float,
    fy: float,
    cx: float,
    cy: float,
    model: BrownDistortion,
    inverse: bool = False,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Sampling maps (map_x, map_y), float32 (H,W), for cv2.remap.

    For every destination pixel the normalized coordinate is pushed through
    `model.distort` (or `model.undistort` when `inverse`) and mapped back to the
    source pixel grid. cx, cy are 1-based, so 0-based index u is evaluated at u + 1.
    """
    u = np.arange(width, dtype=np.float64) + 1.0
    v = np.arange(height, dtype=np.float64) + 1.0
    uu, vv = np.meshgrid(u, v)
    x = (uu - cx) / fx
    y = (vv - cy) / fy
    if inverse:
        xs, ys = model.undistort(x, y)
    else:
        xs, ys = model.distort(x, y)
    map_x = xs * fx + cx - 1.0
    map_y = ys * fy + cy - 1.0
    return map_x.astype(np.float32), map_y.astype(np.float32)
