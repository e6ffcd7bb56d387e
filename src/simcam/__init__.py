from simcam.config import OverlapPolicy, PipelineOptions, SensorConfig, load_sensor_config, parse_sensor_config
from simcam.errors import (
    AllocationError,
    ConfigurationError,
    KernelResolutionError,
    ParameterMismatchWarning,
    PipelineStateError,
    ReadbackError,
)
from simcam.params import CameraParameters, LensGeometry, compute_focal_length, derive_camera_parameters, principal_point
from simcam.pipeline import CameraPipeline, FrameRecorder, OutputData, PipelineState, StaticImageSource

__all__ = [
    "AllocationError",
    "CameraParameters",
    "CameraPipeline",
    "ConfigurationError",
    "FrameRecorder",
    "KernelResolutionError",
    "LensGeometry",
    "OutputData",
    "OverlapPolicy",
    "ParameterMismatchWarning",
    "PipelineOptions",
    "PipelineState",
    "PipelineStateError",
    "ReadbackError",
    "SensorConfig",
    "StaticImageSource",
    "compute_focal_length",
    "derive_camera_parameters",
    "load_sensor_config",
    "parse_sensor_config",
    "principal_point",
]
