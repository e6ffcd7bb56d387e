"""
Camera pipeline demo.

This script is meant to be:
- readable (commented step by step),
- runnable (only a sensor config and an image are needed),
- aligned with docs/index.md.

It does:
1) load a sensor config and derive the intrinsics,
2) drive the pipeline from a fake host frame loop (trigger + tick),
3) sweep k1 between frames (hot-reloaded coefficients),
4) write each delivered frame and a small JSON report.
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path

import numpy as np

from simcam.config import load_sensor_config
from simcam.core.image_io import bgr_bytes_to_image, save_bgr_bytes
from simcam.pipeline import CameraPipeline, OutputData, StaticImageSource


def main() -> None:
    ap = argparse.ArgumentParser(description="Drive a simulated camera from a host frame loop.")
    ap.add_argument("config", type=Path)
    ap.add_argument("--image", type=Path, required=True)
    ap.add_argument("--out", type=Path, default=Path("docs/examples/_out"))
    ap.add_argument("--frames", type=int, default=8)
    ap.add_argument("--host-fps", type=float, default=60.0)
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")
    args.out.mkdir(parents=True, exist_ok=True)

    cfg = load_sensor_config(args.config)
    source = StaticImageSource.from_file(args.image)

    report: list[dict] = []

    def consume(output: OutputData) -> None:
        # output_bytes is reused by the next frame: use it (or copy it) here.
        cam = output.camera_parameters
        img = bgr_bytes_to_image(output.output_bytes, cam.width, cam.height)
        save_bgr_bytes(args.out / f"frame_{output.frame_index:06d}.png", output.output_bytes, cam.width, cam.height)
        report.append({"frame": output.frame_index, "k1": cam.k1, "mean_bgr": img.reshape(-1, 3).mean(axis=0).tolist()})

    # The pipeline owns its device here (asynchronous queue thread).
    with CameraPipeline.from_config(cfg, source, sink=consume) as pipeline:
        k1_sweep = np.linspace(-0.2, 0.2, max(args.frames, 2))
        period = 1.0 / float(args.host_fps)
        requested = 0
        while requested < args.frames or pipeline.in_flight or pipeline.queued_triggers:
            if requested < args.frames and pipeline.trigger():
                requested += 1
            pipeline.tick()
            # Coefficient edits are staged while a frame is in flight.
            if requested < args.frames:
                pipeline.update_coefficients(k1=float(k1_sweep[requested]))
            time.sleep(period)
        metrics = pipeline.metrics.snapshot()

    (args.out / "report.json").write_text(json.dumps({"frames": report, "metrics": metrics}, indent=2), encoding="utf-8")
    print(f"wrote {len(report)} frames to {args.out}")


if __name__ == "__main__":
    main()
