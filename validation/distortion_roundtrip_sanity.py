"""
Sanity check for the distort -> correct kernel pair.

A smooth synthetic image is distorted with the uniforms the pipeline uploads
for a set of plumb-bob coefficients, corrected with the same uniforms, and
compared to the source image on the region that stays inside the frame. Also
reports how far the first-order sign flip is from the exact inverse.
"""
from __future__ import annotations

import numpy as np

from simcam.core.distortion import BrownDistortion
from simcam.device.kernels import correct_kernel, distort_kernel
from simcam.params import CameraParameters, LensGeometry, derive_camera_parameters
from simcam.pipeline.stages import StageExecutor, StageId


def smooth_image(width: int, height: int) -> np.ndarray:
    u = np.linspace(0.0, 1.0, width)[None, :]
    v = np.linspace(0.0, 1.0, height)[:, None]
    img = np.zeros((height, width, 4), dtype=np.uint8)
    img[..., 0] = np.clip(255.0 * (0.5 + 0.5 * np.sin(6.0 * u) * np.cos(4.0 * v)), 0, 255).astype(np.uint8)
    img[..., 1] = np.clip(255.0 * u, 0, 255).astype(np.uint8)
    img[..., 2] = np.clip(255.0 * v, 0, 255).astype(np.uint8)
    img[..., 3] = 255
    return img


def main():
    params = derive_camera_parameters(
        CameraParameters(width=640, height=480, k1=0.12, k2=-0.03, p1=0.002, p2=-0.001),
        LensGeometry(sensor_width_mm=10.0, sensor_height_mm=7.5, focal_length_mm=5.0),
    )
    uniforms = StageExecutor(StageId.DISTORT).bind_parameters(params)
    src = smooth_image(params.width, params.height)

    distorted = np.zeros_like(src)
    restored = np.zeros_like(src)
    extent = (params.width, params.height)
    distort_kernel(uniforms, src, distorted, extent)
    correct_kernel(uniforms, distorted, restored, extent)

    h, w = params.height, params.width
    crop = (slice(h // 6, h - h // 6), slice(w // 6, w - w // 6), slice(0, 3))
    diff = np.abs(restored[crop].astype(np.int32) - src[crop].astype(np.int32))
    print(f"Image {w}x{h}, fx={params.fx:.2f} fy={params.fy:.2f}")
    print(f"Roundtrip |diff| on center crop: mean={diff.mean():.3f}, p99={np.quantile(diff, 0.99):.1f}, max={diff.max()}")

    # First-order check: distorting with the flipped coefficients vs the exact inverse.
    stored = BrownDistortion(params.k1, params.k2, params.p1, params.p2, params.k3)
    uploaded = BrownDistortion.from_uniforms(uniforms)
    x = np.linspace(-0.4, 0.4, 81)
    xx, yy = np.meshgrid(x, x * 0.75)
    xf, yf = uploaded.distort(xx, yy)
    xi, yi = stored.undistort(xx, yy, iterations=10)
    err_px = np.hypot((xf - xi) * params.fx, (yf - yi) * params.fy)
    print(f"Sign-flip vs exact inverse (px): mean={err_px.mean():.3f}, max={err_px.max():.3f}")


if __name__ == "__main__":
    main()
