"""OCR backends: one recognizer per (engine, preprocessing) configuration.

The set of backends is closed, so it is modelled as the ``BackendKind``
enum and a single ``Recognizer`` that dispatches on it:

    paddle/rgb, paddle/gray         - neural predictor, RGB or gray-as-RGB
    tesseract/binary                - full pipeline with Sauvola binarization
    tesseract/gray                  - full pipeline, stops at enhanced gray
    tesseract/raw-gray              - luminance only
    tesseract/rgb                   - crop passed through unmodified
    tesseract/channel-{r,g,b}       - one colour channel, full binary pipeline

Every tesseract invocation tries several page segmentation modes in
parallel and keeps the most confident hypothesis.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pytesseract

from meterscan.preprocess import (
    PipelineMode,
    encode_preview,
    prepare_neural_input,
    preprocess_for_tesseract,
    to_gray,
)

log = logging.getLogger(__name__)

# single line, single block, single word, raw line
PSMS = (7, 6, 8, 13)

LANGUAGE_CODES = {
    "en": "eng",
    "de": "deu",
    "fr": "fra",
    "es": "spa",
}


@dataclass(frozen=True)
class OcrResult:
    """Output of one recognizer for one crop."""

    text: str  # Raw backend text
    confidence: float  # 0.0-1.0
    preview: str  # Base64 PNG of exactly what the engine consumed
    engine_name: str


class BackendKind(Enum):
    """Closed set of backend configurations; the value is the engine name."""

    NEURAL_RGB = "paddle/rgb"
    NEURAL_GRAY = "paddle/gray"
    TESSERACT_BINARY = "tesseract/binary"
    TESSERACT_GRAY = "tesseract/gray"
    TESSERACT_RAW_GRAY = "tesseract/raw-gray"
    TESSERACT_RGB = "tesseract/rgb"
    TESSERACT_CHANNEL_R = "tesseract/channel-r"
    TESSERACT_CHANNEL_G = "tesseract/channel-g"
    TESSERACT_CHANNEL_B = "tesseract/channel-b"

    @property
    def is_neural(self) -> bool:
        return self in (BackendKind.NEURAL_RGB, BackendKind.NEURAL_GRAY)


NEURAL_KINDS = (BackendKind.NEURAL_RGB, BackendKind.NEURAL_GRAY)
TESSERACT_KINDS = tuple(k for k in BackendKind if not k.is_neural)

# Tesseract kinds that run the full preprocessing pipeline
_PIPELINE_MODES: Dict[BackendKind, PipelineMode] = {
    BackendKind.TESSERACT_BINARY: PipelineMode.BINARY,
    BackendKind.TESSERACT_GRAY: PipelineMode.GRAY,
    BackendKind.TESSERACT_CHANNEL_R: PipelineMode.CHANNEL_R,
    BackendKind.TESSERACT_CHANNEL_G: PipelineMode.CHANNEL_G,
    BackendKind.TESSERACT_CHANNEL_B: PipelineMode.CHANNEL_B,
}


# ---------------------------------------------------------------------------
# Tesseract helpers
# ---------------------------------------------------------------------------


def build_lang(languages: Sequence[str]) -> str:
    """Tesseract language string, e.g. ``["en", "de"]`` -> ``"eng+deu"``."""
    codes = [LANGUAGE_CODES.get(lang.strip(), lang.strip()) for lang in languages if lang.strip()]
    return "+".join(codes) if codes else "eng"


def pool_size(tasks: int) -> int:
    """Worker count for a fan-out of *tasks*, capped at the CPU count."""
    return max(1, min(tasks, os.cpu_count() or 1))


def tesseract_config(psm: int, tessdata_dir: Optional[str] = None) -> str:
    config = f"--psm {psm}"
    if tessdata_dir:
        config += f' --tessdata-dir "{tessdata_dir}"'
    return config


def _text_and_confidence(data: Dict[str, list]) -> Optional[Tuple[str, float]]:
    """Rebuild line-structured text and mean word confidence from image_to_data."""
    lines: Dict[Tuple[int, int, int], List[str]] = {}
    confs: List[float] = []

    for i, word in enumerate(data.get("text", [])):
        conf = float(data["conf"][i])
        word = (word or "").strip()
        if conf < 0 or not word:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        confs.append(conf)

    if not confs:
        return None

    text = "\n".join(" ".join(words) for words in lines.values()).strip()
    if not text:
        return None
    confidence = max(sum(confs) / len(confs), 0.0) / 100.0
    return text, confidence


def try_ocr(
    image: np.ndarray,
    lang: str,
    psm: int,
    tessdata_dir: Optional[str] = None,
) -> Optional[Tuple[str, float]]:
    """Run tesseract with one page segmentation mode.

    Returns:
        (text, confidence) or None if tesseract failed or read nothing.
    """
    try:
        data = pytesseract.image_to_data(
            image,
            lang=lang,
            config=tesseract_config(psm, tessdata_dir),
            output_type=pytesseract.Output.DICT,
        )
    except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError) as e:
        log.debug("tesseract psm %d failed: %s", psm, e)
        return None
    return _text_and_confidence(data)


def run_psms(
    image: np.ndarray,
    lang: str,
    tessdata_dir: Optional[str] = None,
    psms: Sequence[int] = PSMS,
) -> Optional[Tuple[str, float]]:
    """Try every PSM in parallel; keep the most confident hypothesis."""
    with ThreadPoolExecutor(max_workers=pool_size(len(psms))) as executor:
        hypotheses = list(
            executor.map(lambda psm: try_ocr(image, lang, psm, tessdata_dir), psms)
        )

    hypotheses = [h for h in hypotheses if h is not None]
    if not hypotheses:
        return None
    return max(hypotheses, key=lambda h: h[1])


# ---------------------------------------------------------------------------
# Recognizer
# ---------------------------------------------------------------------------


class Recognizer:
    """One backend configuration: ``recognize(crop) -> Optional[OcrResult]``.

    Args:
        kind: Which backend configuration this is.
        predictor: Shared neural predictor (required for neural kinds). Any
            object with ``predict(rgb) -> (text, score)``.
        languages: Tesseract language codes.
        tessdata_dir: Directory holding ``<lang>.traineddata`` files.
    """

    def __init__(
        self,
        kind: BackendKind,
        predictor=None,
        languages: Sequence[str] = ("eng",),
        tessdata_dir: Optional[str] = None,
    ):
        if kind.is_neural and predictor is None:
            raise ValueError(f"{kind.value} requires a predictor")
        self.kind = kind
        self.predictor = predictor
        self.lang = build_lang(languages)
        self.tessdata_dir = tessdata_dir

    def __repr__(self) -> str:
        return f"Recognizer({self.kind.value})"

    def name(self) -> str:
        return self.kind.value

    def recognize(self, crop: np.ndarray) -> Optional[OcrResult]:
        """Recognize an RGB crop. Empty text is reported as no result."""
        if self.kind.is_neural:
            return self._recognize_neural(crop)
        return self._recognize_tesseract(crop)

    def _recognize_neural(self, crop: np.ndarray) -> Optional[OcrResult]:
        img = prepare_neural_input(crop, grayscale=self.kind is BackendKind.NEURAL_GRAY)
        log.debug(
            "%s %dx%d (orig %dx%d)",
            self.name(), img.shape[1], img.shape[0], crop.shape[1], crop.shape[0],
        )
        preview = encode_preview(img)

        text, score = self.predictor.predict(img)
        log.debug("%s result: %r conf=%.3f", self.name(), text, score)
        if not text or not text.strip():
            return None

        return OcrResult(
            text=text,
            confidence=float(score),
            preview=preview,
            engine_name=self.name(),
        )

    def _prepare_tesseract_input(self, crop: np.ndarray) -> np.ndarray:
        if self.kind is BackendKind.TESSERACT_RGB:
            return np.ascontiguousarray(crop)
        if self.kind is BackendKind.TESSERACT_RAW_GRAY:
            return to_gray(crop)
        return preprocess_for_tesseract(crop, _PIPELINE_MODES[self.kind])

    def _recognize_tesseract(self, crop: np.ndarray) -> Optional[OcrResult]:
        img = self._prepare_tesseract_input(crop)
        best = run_psms(img, self.lang, self.tessdata_dir)
        if best is None:
            return None

        text, confidence = best
        return OcrResult(
            text=text,
            confidence=confidence,
            preview=encode_preview(img),
            engine_name=self.name(),
        )


def default_backends(
    predictor=None,
    languages: Sequence[str] = ("eng",),
    tessdata_dir: Optional[str] = None,
) -> Tuple[List[Recognizer], List[Recognizer]]:
    """Build the (priority, fallback) tiers.

    The neural predictor, when available, forms the fast priority tier; all
    tesseract configurations form the fallback tier.
    """
    priority: List[Recognizer] = []
    if predictor is not None:
        priority = [Recognizer(kind, predictor=predictor) for kind in NEURAL_KINDS]

    fallback = [
        Recognizer(kind, languages=languages, tessdata_dir=tessdata_dir)
        for kind in TESSERACT_KINDS
    ]
    return priority, fallback
