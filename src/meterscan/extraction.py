"""Frame loop: sample a video between its first and last keyframe and read
every region of every sampled frame.

Frames are processed strictly in order because deviation scoring depends on
the previous frame's accepted values. Within a frame all regions are read
in parallel against a snapshot of those values; the snapshot is updated only
after the whole frame has finished.

Classes:
    VideoInfo        - Basic stream properties
    VideoFileSource  - Seekable OpenCV frame source returning RGB frames
    CancelToken      - Cooperative cancellation, polled once per frame
    ExtractParams    - Run parameters
    Measurement      - One accepted reading (one CSV row)
    FrameProgress    - Per-frame progress notification, all regions batched
    ExtractResult    - Measurements plus the CSV text
"""

from __future__ import annotations

import csv
import io
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from meterscan.backends import Recognizer, default_backends
from meterscan.inference import TextRecognitionPredictor, find_model_dir
from meterscan.recognition import RegionReading, read_region
from meterscan.regions import Region, RegionConfig, round_half_away

log = logging.getLogger(__name__)

DEFAULT_FPS = 30.0


class FrameDecodeError(RuntimeError):
    """A frame (or the whole video) could not be decoded."""


# ---------------------------------------------------------------------------
# Frame source
# ---------------------------------------------------------------------------


@dataclass
class VideoInfo:
    fps: float
    width: int
    height: int
    total_frames: int
    duration: float


class VideoFileSource:
    """Seekable frame source backed by ``cv2.VideoCapture``.

    Args:
        path: Video file path.

    Raises:
        FrameDecodeError: The video cannot be opened.
    """

    def __init__(self, path: str):
        self.path = path
        self._cap = cv2.VideoCapture(path)
        if not self._cap.isOpened():
            raise FrameDecodeError(f"cannot open '{path}'")
        self.info = self._read_info()

    def _read_info(self) -> VideoInfo:
        fps = self._cap.get(cv2.CAP_PROP_FPS)
        if not fps or fps <= 0:
            log.warning("could not read FPS from '%s', defaulting to %.0f", self.path, DEFAULT_FPS)
            fps = DEFAULT_FPS

        width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        nb_frames = int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT))
        if nb_frames > 0:
            duration = nb_frames / fps
            total_frames = nb_frames
        else:
            duration = self._probe_duration()
            total_frames = round_half_away(duration * fps)
        return VideoInfo(
            fps=fps,
            width=width,
            height=height,
            total_frames=total_frames,
            duration=duration,
        )

    def _probe_duration(self) -> float:
        """Stream duration in seconds from a seek to the end (frame count unknown)."""
        self._cap.set(cv2.CAP_PROP_POS_AVI_RATIO, 1.0)
        end_ms = self._cap.get(cv2.CAP_PROP_POS_MSEC)
        self._cap.set(cv2.CAP_PROP_POS_AVI_RATIO, 0.0)
        return max(end_ms, 0.0) / 1000.0

    def frame_at(self, timestamp: float) -> np.ndarray:
        """Decode the frame at *timestamp* seconds as an (H, W, 3) RGB array."""
        self._cap.set(cv2.CAP_PROP_POS_MSEC, max(timestamp, 0.0) * 1000.0)
        ok, frame_bgr = self._cap.read()
        if not ok or frame_bgr is None:
            raise FrameDecodeError(f"no frame decoded at {timestamp:.3f}s")
        return cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)

    def close(self):
        self._cap.release()

    def __enter__(self) -> "VideoFileSource":
        return self

    def __exit__(self, *exc):
        self.close()


# ---------------------------------------------------------------------------
# Run parameters and results
# ---------------------------------------------------------------------------


class CancelToken:
    """Cancellation flag shared between the caller and the frame loop."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def reset(self):
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ExtractParams:
    """Extraction run parameters.

    Args:
        video_path: Video to sample.
        config: Region layout and expectations.
        fps_sample: Process every Nth frame.
        languages: Tesseract language codes.
        fast_threshold: Effective score at which the neural tier is trusted
            without running tesseract.
        model_dir: Directory with the recognition model and dictionary.
            ``None`` means tesseract only.
        tessdata_dir: Tesseract traineddata directory (system default if None).
        output_path: Where to write the CSV (not written if None).
        max_workers: Region-level worker threads (CPU count if None).
    """

    video_path: str
    config: RegionConfig
    fps_sample: int = 1
    languages: List[str] = field(default_factory=lambda: ["eng"])
    fast_threshold: float = 0.9
    model_dir: Optional[str] = None
    tessdata_dir: Optional[str] = None
    output_path: Optional[str] = None
    max_workers: Optional[int] = None


@dataclass(frozen=True)
class Measurement:
    """One accepted reading for one region in one processed frame."""

    timestamp: float
    frame_number: int
    region_name: str
    value: str  # "" when no candidate was acceptable
    confidence: float
    raw_text: str
    source: str  # Winning engine name


@dataclass(frozen=True)
class RegionProgress:
    region_name: str
    value: str
    confidence: float
    preview: str
    source: str


@dataclass(frozen=True)
class FrameProgress:
    """Progress notification for one processed frame."""

    frame: int
    total: int  # Total sampled steps between first and last keyframe
    timestamp: float
    elapsed_frames: int
    regions: List[RegionProgress]


@dataclass
class ExtractResult:
    measurements: List[Measurement]
    csv: str


ProgressSink = Callable[[FrameProgress], None]


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------


CSV_HEADER = [
    "timestamp",
    "frame_number",
    "region_name",
    "value",
    "confidence",
    "raw_text",
    "source",
]


def build_csv(measurements: Sequence[Measurement]) -> str:
    """Render measurements as CSV text, one row per region per frame."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for m in measurements:
        writer.writerow(
            [
                f"{m.timestamp:.3f}",
                m.frame_number,
                m.region_name,
                m.value,
                f"{m.confidence:.4f}",
                m.raw_text,
                m.source,
            ]
        )
    return buf.getvalue()


def write_csv(path: str, text: str) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text, encoding="utf-8", newline="")


# ---------------------------------------------------------------------------
# Frame loop
# ---------------------------------------------------------------------------


def load_predictor(model_dir: Optional[str]) -> Optional[TextRecognitionPredictor]:
    """Load the neural predictor if its model files are present."""
    if model_dir is None:
        return None
    found = find_model_dir([Path(model_dir)])
    if found is None:
        log.warning("recognition model not found in %s, tesseract only", model_dir)
        return None
    try:
        return TextRecognitionPredictor.from_model_dir(str(found))
    except Exception as e:  # corrupt model or missing runtime degrades to tesseract
        log.warning("recognition model failed to load from %s: %s, tesseract only", found, e)
        return None


def _accepted_value(reading: RegionReading) -> Optional[float]:
    if not reading.value:
        return None
    try:
        return float(reading.value)
    except ValueError:
        return None


def frame_range(config: RegionConfig, fps: float, fps_sample: int) -> Tuple[int, int, int]:
    """First frame, last frame and number of sampled steps between keyframes."""
    timestamps = sorted(kf.timestamp for kf in config.keyframes)
    first_frame = round_half_away(timestamps[0] * fps)
    last_frame = round_half_away(timestamps[-1] * fps)
    total_steps = max(last_frame - first_frame, 0) // fps_sample + 1
    return first_frame, last_frame, total_steps


def extract(
    params: ExtractParams,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[CancelToken] = None,
    source=None,
    backends: Optional[Tuple[Sequence[Recognizer], Sequence[Recognizer]]] = None,
) -> ExtractResult:
    """Read every region of every sampled frame between the first and last
    keyframe.

    Args:
        params: Run parameters.
        progress: Called once per processed frame with all its regions.
        cancel: Polled before each frame; in-flight frames finish normally.
        source: Frame source with ``info`` and ``frame_at(ts)``; opens
            ``params.video_path`` with OpenCV when omitted.
        backends: (priority, fallback) recognizer tiers; built from
            ``params`` when omitted.

    Raises:
        ValueError: Fewer than two keyframes.
        FrameDecodeError: The video cannot be opened.
    """
    config = params.config
    if len(config.keyframes) < 2:
        raise ValueError("At least 2 keyframes are required to run extraction.")

    owns_source = source is None
    if source is None:
        source = VideoFileSource(params.video_path)

    if backends is None:
        predictor = load_predictor(params.model_dir)
        backends = default_backends(
            predictor, languages=params.languages, tessdata_dir=params.tessdata_dir
        )
    priority, fallback = backends
    log.info(
        "backends: priority=%s fallback=%s",
        [b.name() for b in priority],
        [b.name() for b in fallback],
    )

    cancel = cancel or CancelToken()
    fps = source.info.fps
    fps_sample = max(int(params.fps_sample), 1)
    first_frame, last_frame, total_steps = frame_range(config, fps, fps_sample)

    measurements: List[Measurement] = []
    prev_values: Dict[str, float] = {}
    elapsed = 0
    max_workers = params.max_workers or os.cpu_count() or 1

    try:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for frame_num in range(first_frame, last_frame + 1, fps_sample):
                if cancel.cancelled:
                    log.info("extraction cancelled at frame %d", frame_num)
                    break

                timestamp = frame_num / fps
                regions = config.regions_at(timestamp)
                if not regions:
                    elapsed += 1
                    continue

                try:
                    frame = source.frame_at(timestamp)
                except FrameDecodeError as e:
                    log.warning("skipping frame %d: %s", frame_num, e)
                    elapsed += 1
                    continue

                # Every region in this frame sees the previous frame's values
                snapshot = dict(prev_values)

                def read(region: Region) -> RegionReading:
                    return read_region(
                        frame,
                        (region.x, region.y, region.width, region.height),
                        priority,
                        fallback,
                        params.fast_threshold,
                        config.expectation_for(region.name),
                        snapshot.get(region.name),
                    )

                readings = list(executor.map(read, regions))

                frame_progress = []
                for region, reading in zip(regions, readings):
                    value = _accepted_value(reading)
                    if value is not None:
                        prev_values[region.name] = value

                    measurements.append(
                        Measurement(
                            timestamp=timestamp,
                            frame_number=frame_num,
                            region_name=region.name,
                            value=reading.value,
                            confidence=reading.confidence,
                            raw_text=reading.raw_text,
                            source=reading.engine_name,
                        )
                    )
                    frame_progress.append(
                        RegionProgress(
                            region_name=region.name,
                            value=reading.value,
                            confidence=reading.confidence,
                            preview=reading.preview,
                            source=reading.engine_name,
                        )
                    )

                if progress is not None:
                    progress(
                        FrameProgress(
                            frame=frame_num,
                            total=total_steps,
                            timestamp=timestamp,
                            elapsed_frames=elapsed,
                            regions=frame_progress,
                        )
                    )
                elapsed += 1
    finally:
        if owns_source:
            source.close()

    text = build_csv(measurements)
    if params.output_path:
        write_csv(params.output_path, text)

    return ExtractResult(measurements=measurements, csv=text)
