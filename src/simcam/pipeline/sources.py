from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol

import cv2
import numpy as np

from simcam.core.image_io import load_bgra_u8
from simcam.device.compute import Surface
from simcam.params import CameraParameters

if TYPE_CHECKING:
    from simcam.pipeline.orchestrator import OutputData


class RenderSource(Protocol):
    def render(self, target: Surface, params: CameraParameters) -> None:
        """Write one rendered BGRA frame into `target`."""


OutputSink = Callable[["OutputData"], None]


class StaticImageSource:
    """Renders the same BGRA image every frame, resized to the target when needed."""

    def __init__(self, image_bgra: np.ndarray):
        img = np.asarray(image_bgra)
        if img.ndim != 3 or img.shape[2] != 4 or img.dtype != np.uint8:
            raise ValueError("image must be (H,W,4) uint8 BGRA")
        self.image = img
        self._resized: np.ndarray | None = None

    @classmethod
    def from_file(cls, path: str | Path) -> StaticImageSource:
        return cls(load_bgra_u8(path))

    def render(self, target: Surface, params: CameraParameters) -> None:
        h, w = target.height, target.width
        if self.image.shape[:2] == (h, w):
            target.data[...] = self.image
            return
        if self._resized is None or self._resized.shape[:2] != (h, w):
            self._resized = cv2.resize(self.image, (w, h), interpolation=cv2.INTER_AREA)
        target.data[...] = self._resized


class FrameRecorder:
    """Sink that keeps a private copy of every delivered frame."""

    def __init__(self) -> None:
        self.frames: list[bytes] = []
        self.parameters: list[CameraParameters] = []
        self.indices: list[int] = []

    def __call__(self, output: OutputData) -> None:
        self.frames.append(bytes(output.output_bytes))
        self.parameters.append(output.camera_parameters)
        self.indices.append(output.frame_index)

    def __len__(self) -> int:
        return len(self.frames)
