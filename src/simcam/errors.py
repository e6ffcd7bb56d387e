from __future__ import annotations


class SimcamError(Exception):
    pass


class ConfigurationError(SimcamError, ValueError):
    """Invalid image dimensions, coefficients or pipeline options."""


class ParameterMismatchWarning(UserWarning):
    """A user supplied focal length disagrees with the sensor geometry."""


class AllocationError(SimcamError):
    """A device surface or buffer could not be created."""


class ReadbackError(SimcamError):
    """A device to host transfer failed; the frame it belongs to is dropped."""


class KernelResolutionError(SimcamError, LookupError):
    pass


class PipelineStateError(SimcamError, RuntimeError):
    pass
