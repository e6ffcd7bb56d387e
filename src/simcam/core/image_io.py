from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image


def load_bgra_u8(path: str | Path) -> np.ndarray:
    """
    Load an image as a (H,W,4) uint8 BGRA array, the layout of render targets.

    Any Pillow-readable format is accepted; images without alpha get an opaque one.
    """
    p = Path(path)
    with Image.open(p) as im:
        rgba = np.asarray(im.convert("RGBA"), dtype=np.uint8)
    return np.ascontiguousarray(rgba[..., [2, 1, 0, 3]])


def bgr_bytes_to_image(data: bytes | bytearray | memoryview, width: int, height: int) -> np.ndarray:
    """View delivered BGR8 bytes (row-major, no padding) as a (H,W,3) array."""
    arr = np.frombuffer(data, dtype=np.uint8)
    expected = int(width) * int(height) * 3
    if arr.size != expected:
        raise ValueError(f"expected {expected} bytes for {width}x{height} bgr8, got {arr.size}")
    return arr.reshape(int(height), int(width), 3)


def save_bgr_bytes(path: str | Path, data: bytes | bytearray | memoryview, width: int, height: int) -> Path:
    p = Path(path)
    bgr = bgr_bytes_to_image(data, width, height)
    Image.fromarray(np.ascontiguousarray(bgr[..., ::-1])).save(p)
    return p
