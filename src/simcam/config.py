from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from simcam.errors import ConfigurationError
from simcam.params import COEFFICIENT_NAMES, CameraParameters, LensGeometry

SCHEMA_VERSION = "simcam.sensor.v0"


class OverlapPolicy(str, Enum):
    """What to do with a render trigger that arrives while a frame is in flight."""

    QUEUE = "queue"
    DROP = "drop"


@dataclass(frozen=True)
class PipelineOptions:
    enable_lens_distortion_correction: bool = False
    sharpening_strength: float = 0.0
    overlap_policy: OverlapPolicy = OverlapPolicy.QUEUE
    max_queued_triggers: int = 1

    def validate(self) -> PipelineOptions:
        s = float(self.sharpening_strength)
        _require(math.isfinite(s) and 0.0 <= s <= 1.0, "pipeline.sharpening_strength must lie in [0, 1]")
        _require(int(self.max_queued_triggers) >= 1, "pipeline.max_queued_triggers must be >= 1")
        _require(isinstance(self.overlap_policy, OverlapPolicy), "pipeline.overlap_policy must be an OverlapPolicy")
        return self


@dataclass(frozen=True)
class SensorConfig:
    camera: CameraParameters
    lens: LensGeometry = field(default_factory=LensGeometry)
    pipeline: PipelineOptions = field(default_factory=PipelineOptions)


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigurationError(msg)


def _number(section: dict[str, Any], key: str, prefix: str, default: float = 0.0) -> float:
    raw = section.get(key, default)
    _require(isinstance(raw, (int, float)) and not isinstance(raw, bool), f"{prefix}.{key} must be a number")
    v = float(raw)
    _require(math.isfinite(v), f"{prefix}.{key} must be finite")
    return v


def load_sensor_config(path: str | Path) -> SensorConfig:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{p}: invalid JSON: {e}") from e
    return parse_sensor_config(data)


def parse_sensor_config(data: dict[str, Any]) -> SensorConfig:
    _require(isinstance(data, dict), "sensor config must be a JSON object")
    schema_version = data.get("schema_version")
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    camera = data.get("camera")
    _require(isinstance(camera, dict), "camera section is required")
    lens = data.get("lens", {})
    _require(isinstance(lens, dict), "lens must be an object")
    pipeline = data.get("pipeline", {})
    _require(isinstance(pipeline, dict), "pipeline must be an object")

    w_raw = camera.get("width")
    h_raw = camera.get("height")
    _require(w_raw is not None and h_raw is not None, "camera.width and camera.height are required")
    _require(
        isinstance(w_raw, int) and isinstance(h_raw, int) and not isinstance(w_raw, bool) and not isinstance(h_raw, bool),
        "camera.width and camera.height must be integers",
    )

    cam = CameraParameters(
        width=int(w_raw),
        height=int(h_raw),
        fx=_number(camera, "fx", "camera"),
        fy=_number(camera, "fy", "camera"),
        **{name: _number(camera, name, "camera") for name in COEFFICIENT_NAMES},
    ).validate()

    lens_defaults = LensGeometry()
    lens_geom = LensGeometry(
        sensor_width_mm=_number(lens, "sensor_width_mm", "lens", lens_defaults.sensor_width_mm),
        sensor_height_mm=_number(lens, "sensor_height_mm", "lens", lens_defaults.sensor_height_mm),
        focal_length_mm=_number(lens, "focal_length_mm", "lens", lens_defaults.focal_length_mm),
    ).validate()

    policy_raw = pipeline.get("overlap_policy", OverlapPolicy.QUEUE.value)
    try:
        policy = OverlapPolicy(str(policy_raw))
    except ValueError as e:
        raise ConfigurationError(
            f"pipeline.overlap_policy must be one of {[p.value for p in OverlapPolicy]}"
        ) from e
    correction = pipeline.get("enable_lens_distortion_correction", False)
    _require(isinstance(correction, bool), "pipeline.enable_lens_distortion_correction must be a boolean")
    max_queued = pipeline.get("max_queued_triggers", 1)
    _require(isinstance(max_queued, int) and not isinstance(max_queued, bool), "pipeline.max_queued_triggers must be an integer")

    options = PipelineOptions(
        enable_lens_distortion_correction=correction,
        sharpening_strength=_number(pipeline, "sharpening_strength", "pipeline"),
        overlap_policy=policy,
        max_queued_triggers=int(max_queued),
    ).validate()

    return SensorConfig(camera=cam, lens=lens_geom, pipeline=options)


def sensor_config_to_dict(cfg: SensorConfig) -> dict[str, Any]:
    camera = cfg.camera.to_dict()
    # Derived principal point is not part of the input schema.
    camera.pop("cx")
    camera.pop("cy")
    return {
        "schema_version": SCHEMA_VERSION,
        "camera": camera,
        "lens": {
            "sensor_width_mm": cfg.lens.sensor_width_mm,
            "sensor_height_mm": cfg.lens.sensor_height_mm,
            "focal_length_mm": cfg.lens.focal_length_mm,
        },
        "pipeline": {
            "enable_lens_distortion_correction": cfg.pipeline.enable_lens_distortion_correction,
            "sharpening_strength": cfg.pipeline.sharpening_strength,
            "overlap_policy": cfg.pipeline.overlap_policy.value,
            "max_queued_triggers": cfg.pipeline.max_queued_triggers,
        },
    }
