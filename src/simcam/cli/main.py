from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from simcam.config import load_sensor_config
from simcam.core.image_io import save_bgr_bytes
from simcam.device.compute import ComputeDevice
from simcam.errors import SimcamError
from simcam.params import derive_camera_parameters
from simcam.pipeline.orchestrator import CameraPipeline, OutputData
from simcam.pipeline.sources import StaticImageSource

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="simcam")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    val = sub.add_parser("validate-config", help="Validate a sensor config and print the derived intrinsics.")
    val.add_argument("config", type=Path)

    run = sub.add_parser("run", help="Push a still image through the camera pipeline and write the delivered frames.")
    run.add_argument("config", type=Path)
    run.add_argument("--image", type=Path, required=True, help="Image used as the rendered frame.")
    run.add_argument("--frames", type=int, default=1)
    run.add_argument("--out", type=Path, required=True, help="Output directory for frame_XXXXXX.png files.")
    run.add_argument(
        "--sync",
        action="store_true",
        help="Execute device commands at submission instead of on the device queue thread.",
    )
    run.add_argument("--max-ticks", type=int, default=100000, help="Give up after this many ticks.")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        if args.cmd == "validate-config":
            return _validate_config(args.config)
        if args.cmd == "run":
            return _run(args.config, args.image, args.frames, args.out, args.sync, args.max_ticks)
    except SimcamError as e:
        logger.error("%s", e)
        return 2
    raise AssertionError(f"unhandled command {args.cmd}")


def _validate_config(config_path: Path) -> int:
    cfg = load_sensor_config(config_path)
    params = derive_camera_parameters(cfg.camera, cfg.lens)
    report = {
        "image": {"width": params.width, "height": params.height},
        "camera_matrix": params.camera_matrix().tolist(),
        "projection_matrix": params.projection_matrix().tolist(),
        "distortion": params.distortion_vector().tolist(),
        "pipeline": {
            "enable_lens_distortion_correction": cfg.pipeline.enable_lens_distortion_correction,
            "sharpening_strength": cfg.pipeline.sharpening_strength,
            "overlap_policy": cfg.pipeline.overlap_policy.value,
        },
    }
    print(json.dumps(report, indent=2))
    return 0


def _run(config_path: Path, image_path: Path, frames: int, out_dir: Path, sync: bool, max_ticks: int) -> int:
    if frames < 1:
        logger.error("--frames must be >= 1")
        return 2
    cfg = load_sensor_config(config_path)
    out_dir.mkdir(parents=True, exist_ok=True)
    source = StaticImageSource.from_file(image_path)

    written: list[Path] = []

    def write_frame(output: OutputData) -> None:
        p = out_dir / f"frame_{output.frame_index:06d}.png"
        cam = output.camera_parameters
        save_bgr_bytes(p, output.output_bytes, cam.width, cam.height)
        written.append(p)

    device = ComputeDevice(asynchronous=not sync)
    with device, CameraPipeline.from_config(cfg, source, sink=write_frame, device=device) as pipeline:
        if pipeline.halted:
            logger.error("pipeline could not allocate its frame buffers")
            return 2
        ticks = 0
        requested = 0
        while requested < frames and ticks < max_ticks:
            if pipeline.trigger():
                requested += 1
            pipeline.tick()
            ticks += 1
        pipeline.flush()
        summary = {
            "frames_written": len(written),
            "ticks": ticks,
            "metrics": pipeline.metrics.snapshot(),
        }
    print(json.dumps(summary, indent=2))
    return 0 if len(written) >= frames else 1


if __name__ == "__main__":
    sys.exit(main())
