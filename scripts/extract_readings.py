#!/usr/bin/env python3
"""Extract instrument readings from a video using a region config.

Samples every Nth frame between the first and last keyframe, reads each
region with the neural + tesseract backends and writes a CSV of readings.

Usage:
    python scripts/extract_readings.py regions.json
    python scripts/extract_readings.py regions.json --output runs/readings.csv
    python scripts/extract_readings.py regions.json --fps-sample 5 --models models
    python scripts/extract_readings.py regions.json --lang en,de --threshold 0.85
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path

# Add src to path for local imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from meterscan.extraction import (
    CancelToken,
    ExtractParams,
    FrameDecodeError,
    FrameProgress,
    extract,
)
from meterscan.regions import load_config


def print_progress(event: FrameProgress):
    """Print one line per processed frame."""
    parts = []
    for r in event.regions:
        value = r.value if r.value else "-"
        parts.append(f"{r.region_name}={value} ({r.confidence:.2f} {r.source or 'none'})")
    print(
        f"  [{event.elapsed_frames + 1}/{event.total}] "
        f"t={event.timestamp:8.3f}s  " + "  ".join(parts)
    )


def main():
    parser = argparse.ArgumentParser(
        description="Extract numeric instrument readings from video regions"
    )
    parser.add_argument("config", type=str, help="Path to region config JSON")
    parser.add_argument(
        "--video",
        type=str,
        default=None,
        help="Video path (default: video_path from the config)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="runs/readings.csv",
        help="Output CSV path (default: runs/readings.csv)",
    )
    parser.add_argument(
        "--fps-sample",
        type=int,
        default=1,
        help="Process every Nth frame (default: 1)",
    )
    parser.add_argument(
        "--models",
        type=str,
        default="models",
        help="Directory with pp-ocrv5_mobile_rec.onnx and ppocrv5_dict.txt",
    )
    parser.add_argument(
        "--tessdata",
        type=str,
        default=None,
        help="Tesseract traineddata directory (default: system)",
    )
    parser.add_argument(
        "--lang",
        type=str,
        default="eng",
        help="Comma-separated tesseract languages (default: eng)",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=0.9,
        help="Fast-path confidence threshold 0-1 (default: 0.9)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Region worker threads (default: CPU count)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every OCR candidate",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    video_path = args.video or config.video_path

    print("=" * 70)
    print("Instrument Reading Extraction")
    print("=" * 70)
    print(f"Config:    {args.config}")
    print(f"Video:     {video_path}")
    print(f"Keyframes: {len(config.keyframes)}")
    print(f"Regions:   {sorted({r.name for kf in config.keyframes for r in kf.regions})}")
    print(f"Output:    {args.output}")
    print()

    params = ExtractParams(
        video_path=video_path,
        config=config,
        fps_sample=args.fps_sample,
        languages=[s.strip() for s in args.lang.split(",") if s.strip()],
        fast_threshold=args.threshold,
        model_dir=args.models,
        tessdata_dir=args.tessdata,
        output_path=args.output,
        max_workers=args.workers,
    )

    # Ctrl+C stops after the current frame; the partial CSV is still written
    cancel = CancelToken()
    signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel())

    start = time.perf_counter()
    try:
        result = extract(params, progress=print_progress, cancel=cancel)
    except (ValueError, FrameDecodeError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    elapsed = time.perf_counter() - start

    empty = sum(1 for m in result.measurements if not m.value)
    print()
    print(f"Measurements: {len(result.measurements)} ({empty} empty)")
    print(f"Elapsed:      {elapsed:.1f}s")
    print(f"CSV:          {args.output}")
    print("\nDone!")


if __name__ == "__main__":
    main()
