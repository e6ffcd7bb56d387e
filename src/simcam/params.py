from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, fields, replace
from enum import Enum

import numpy as np

from simcam.errors import ConfigurationError, ParameterMismatchWarning

logger = logging.getLogger(__name__)

BYTES_PER_PIXEL = 3
PACK_WORD_SIZE = 4
MIN_IMAGE_DIM = 256
MAX_IMAGE_DIM = 2048
FOCAL_LENGTH_TOLERANCE = 0.001
K_RANGE = (-1.0, 1.0)
P_RANGE = (-0.5, 0.5)

COEFFICIENT_NAMES = ("k1", "k2", "p1", "p2", "k3")


class FocalAxis(str, Enum):
    FX = "fx"
    FY = "fy"


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigurationError(msg)


@dataclass(frozen=True)
class LensGeometry:
    """
    Physical camera model the pixel intrinsics are derived from.

    Sensor sizes and focal length are in millimetres.
    """

    sensor_width_mm: float = 10.0
    sensor_height_mm: float = 5.625
    focal_length_mm: float = 5.0

    def validate(self) -> LensGeometry:
        for f in fields(self):
            v = float(getattr(self, f.name))
            _require(math.isfinite(v) and v > 0.0, f"lens.{f.name} must be a finite value > 0")
        return self


@dataclass(frozen=True)
class CameraParameters:
    """
    Intrinsic and plumb-bob distortion parameters of one camera sensor.

    fx, fy: focal lengths in pixels (0 means "derive from the lens geometry").
    cx, cy: principal point in 1-based pixel coordinates.
    k1, k2, k3: radial coefficients; p1, p2: tangential coefficients.

    Instances are immutable; coefficient edits between frames produce a new
    record through `with_coefficients`, which doubles as the snapshot
    attached to each delivered frame.
    """

    width: int = 1280
    height: int = 720
    fx: float = 0.0
    fy: float = 0.0
    cx: float = 0.0
    cy: float = 0.0
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0

    def validate(self) -> CameraParameters:
        w, h = self.width, self.height
        _require(isinstance(w, int) and isinstance(h, int), "width and height must be integers")
        _require(
            MIN_IMAGE_DIM <= w <= MAX_IMAGE_DIM and MIN_IMAGE_DIM <= h <= MAX_IMAGE_DIM,
            f"image size {w} x {h} must lie in [{MIN_IMAGE_DIM}, {MAX_IMAGE_DIM}]",
        )
        _require(
            (w * h * BYTES_PER_PIXEL) % PACK_WORD_SIZE == 0,
            f"image size {w} x {h} at {BYTES_PER_PIXEL} bytes/pixel must be a multiple of {PACK_WORD_SIZE} bytes",
        )
        for name in ("fx", "fy", "cx", "cy") + COEFFICIENT_NAMES:
            _require(math.isfinite(float(getattr(self, name))), f"{name} must be finite")
        _require(self.fx >= 0.0 and self.fy >= 0.0, "fx and fy must be >= 0")
        for name in ("k1", "k2", "k3"):
            v = float(getattr(self, name))
            _require(K_RANGE[0] <= v <= K_RANGE[1], f"{name}={v} must lie in [{K_RANGE[0]}, {K_RANGE[1]}]")
        for name in ("p1", "p2"):
            v = float(getattr(self, name))
            _require(P_RANGE[0] <= v <= P_RANGE[1], f"{name}={v} must lie in [{P_RANGE[0]}, {P_RANGE[1]}]")
        return self

    @property
    def image_size(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def output_nbytes(self) -> int:
        return self.width * self.height * BYTES_PER_PIXEL

    @property
    def packed_words(self) -> int:
        return -(-self.output_nbytes // PACK_WORD_SIZE)

    def camera_matrix(self) -> np.ndarray:
        """
        Intrinsic matrix K projecting camera-frame points to pixels:

            [fx  0 cx]
            [ 0 fy cy]
            [ 0  0  1]
        """
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def projection_matrix(self) -> np.ndarray:
        """Monocular projection matrix P = [K | 0] (Tx = Ty = 0)."""
        return np.hstack([self.camera_matrix(), np.zeros((3, 1), dtype=np.float64)])

    def distortion_vector(self) -> np.ndarray:
        """Plumb-bob coefficients in OpenCV order (k1, k2, p1, p2, k3)."""
        return np.array([self.k1, self.k2, self.p1, self.p2, self.k3], dtype=np.float64)

    def with_coefficients(self, **coeffs: float) -> CameraParameters:
        unknown = sorted(set(coeffs) - set(COEFFICIENT_NAMES))
        _require(not unknown, f"only distortion coefficients can be edited between frames, got {unknown}")
        return replace(self, **{k: float(v) for k, v in coeffs.items()}).validate()

    def resized(self, width: int, height: int, lens: LensGeometry) -> CameraParameters:
        """Copy with new dimensions; intrinsics are re-derived from `lens`."""
        return derive_camera_parameters(replace(self, width=int(width), height=int(height), fx=0.0, fy=0.0), lens)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def principal_point(width: int, height: int) -> tuple[float, float]:
    return (width + 1) / 2.0, (height + 1) / 2.0


def compute_focal_length(
    supplied: float,
    image_size_px: int,
    sensor_size_mm: float,
    lens_focal_length_mm: float,
    axis: FocalAxis = FocalAxis.FX,
) -> float:
    """
    Focal length in pixels for one axis: image_size / sensor_size * focal_length.

    A supplied value of 0 is replaced by the computed one. A non-zero value that
    disagrees beyond FOCAL_LENGTH_TOLERANCE is kept, with a ParameterMismatchWarning.
    """
    expected = float(image_size_px) / float(sensor_size_mm) * float(lens_focal_length_mm)
    supplied = float(supplied)
    if supplied == 0.0:
        return expected
    if abs(supplied - expected) >= FOCAL_LENGTH_TOLERANCE:
        name = FocalAxis(axis).value
        msg = (
            f"The <{name}> [{supplied}] provided for the camera is inconsistent with image size "
            f"[{image_size_px}] and sensor size [{sensor_size_mm}]. Expected {name} = image size / "
            f"sensor size * focal length = [{expected}]. Set {name} to 0 to compute it automatically."
        )
        logger.warning(msg)
        warnings.warn(msg, ParameterMismatchWarning, stacklevel=2)
    return supplied


def derive_camera_parameters(params: CameraParameters, lens: LensGeometry) -> CameraParameters:
    """One-time derivation of fx, fy, cx, cy at sensor start. Returns a validated copy."""
    params.validate()
    lens.validate()
    fx = compute_focal_length(params.fx, params.width, lens.sensor_width_mm, lens.focal_length_mm, FocalAxis.FX)
    fy = compute_focal_length(params.fy, params.height, lens.sensor_height_mm, lens.focal_length_mm, FocalAxis.FY)
    cx, cy = principal_point(params.width, params.height)
    return replace(params, fx=fx, fy=fy, cx=cx, cy=cy).validate()
