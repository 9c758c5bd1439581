"""
CLI entry point for gridwatch: replay a recording through the detector.

Run with:
    python -m gridwatch video.mp4 --pattern pattern.yaml
    python -m gridwatch video.mp4 --grid 8x6 --spacing 60 --profile paranormal_high
    gridwatch video.mp4 --pattern pattern.yaml --config detection_settings.yaml

Each emitted disturbance is printed to stdout as one JSON line.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

import cv2

from .logging_utils import get_logger
from .models import CameraFrame, GridDisturbance, GridPattern
from .pipeline import DISTURBANCE_DETECTED, GridDisturbanceDetector
from .settings import get_default_settings, get_profile, load_pattern, load_settings, merge_settings


def _parse_grid(value: str):
    try:
        cols, rows = (int(v) for v in value.lower().split("x"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected COLSxROWS, got {value!r}")
    if cols <= 0 or rows <= 0:
        raise argparse.ArgumentTypeError("grid dimensions must be positive")
    return cols, rows


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gridwatch",
        description="gridwatch: detect disturbances in a projected dot grid.",
    )
    parser.add_argument(
        "video",
        help="Path to input video file.",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "-p", "--pattern",
        help="Path to YAML/JSON grid pattern file.",
    )
    source.add_argument(
        "--grid",
        type=_parse_grid,
        help="Generate a regular COLSxROWS grid centred in the frame.",
    )
    parser.add_argument(
        "--spacing",
        type=float,
        default=50.0,
        help="Dot spacing in pixels for --grid (default: 50).",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to YAML/JSON settings file (default: built-in defaults).",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="Sensitivity profile applied on top of the settings.",
    )
    parser.add_argument(
        "--max-frames",
        type=int,
        default=None,
        help="Stop after this many frames.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = _build_parser().parse_args(argv)
    logger = get_logger("gridwatch", logging.DEBUG if args.verbose else logging.INFO)

    # Validate input
    if not os.path.isfile(args.video):
        print(f"Error: video not found: {args.video}", file=sys.stderr)
        sys.exit(1)

    for path in (args.config, args.pattern):
        if path and not os.path.isfile(path):
            print(f"Error: file not found: {path}", file=sys.stderr)
            sys.exit(1)

    # Load settings
    settings = load_settings(args.config) if args.config else get_default_settings()
    if args.profile:
        settings = merge_settings(settings, get_profile(args.profile))

    cap = cv2.VideoCapture(args.video)
    if not cap.isOpened():
        print(f"Error: could not open video: {args.video}", file=sys.stderr)
        sys.exit(1)

    width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
    height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
    fps = cap.get(cv2.CAP_PROP_FPS)

    if args.pattern:
        pattern = load_pattern(args.pattern)
    else:
        cols, rows = args.grid
        pattern = GridPattern.regular_grid(cols, rows, args.spacing, center=(width / 2, height / 2))

    logger.info("Processing %s (%dx%d @ %.1f fps), %d pattern dots",
                args.video, width, height, fps, len(pattern))

    emitted: List[GridDisturbance] = []

    def on_disturbance(disturbance: GridDisturbance) -> None:
        emitted.append(disturbance)
        print(json.dumps(disturbance.to_dict()))

    detector = GridDisturbanceDetector(settings)
    detector.add_listener(DISTURBANCE_DETECTED, on_disturbance)

    # Replay
    frame_num = 0
    while args.max_frames is None or frame_num < args.max_frames:
        ret, frame = cap.read()
        if not ret:
            break
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        timestamp = frame_num / fps if fps > 0 else float(frame_num)
        detector.process_frame(
            CameraFrame(gray, width=gray.shape[1], height=gray.shape[0],
                        timestamp=timestamp, frame_number=frame_num),
            pattern,
        )
        frame_num += 1

    cap.release()

    # Summary
    alignment = detector.grid_alignment
    logger.info("Frames:       %d", detector.frame_count)
    logger.info("Calibrated:   %s (confidence %.2f)",
                detector.is_calibrated, alignment.confidence if alignment else 0.0)
    logger.info("Disturbances: %d emitted", len(emitted))

    detector.dispose()


if __name__ == "__main__":
    main()
