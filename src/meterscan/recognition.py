"""
Reading fusion for one region of one frame.

Validation scoring:
- clean_number: Normalize raw OCR text to a number string
- validation_score: Multiplicative penalty in (0, 1] from a RegionExpectation
- passes_hard_constraints: Parseability / range / deviation gate

Fusion:
- read_region: Cascaded multi-backend OCR. The priority tier runs first and
  short-circuits when its best eligible candidate is trustworthy; otherwise
  the fallback tier runs too and the best eligible candidate of the whole
  pool wins. When nothing is eligible the empty reading is returned.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from meterscan.backends import OcrResult, pool_size
from meterscan.regions import RegionExpectation

log = logging.getLogger(__name__)

Rect = Tuple[int, int, int, int]  # (x, y, width, height)


# ---------------------------------------------------------------------------
# Number cleanup
# ---------------------------------------------------------------------------


# Common OCR letter-to-digit confusions on instrument displays
LETTER_TO_DIGIT = {
    "O": "0",
    "l": "1",
    "I": "1",
    "S": "5",
}

# Dropped before token extraction
_STRIP_CHARS = {"'", "°", " "}


def clean_number(text: str) -> str:
    """Normalize raw OCR output to a clean number string.

    Only the first line is considered. Commas become decimal points,
    apostrophe thousands-separators, degree signs and spaces are dropped,
    common letter/digit confusions are fixed, and the first numeric token
    (optional minus, digits, optional single decimal part) is returned.

    Examples:
        "1'234,56" -> "1234.56"
        "T= -4.2 °C" -> "-4.2"
        "no digits" -> ""
    """
    lines = text.splitlines()
    line = lines[0].strip() if lines else ""

    chars = []
    for c in line:
        if c == ",":
            c = "."
        if c in _STRIP_CHARS:
            continue
        chars.append(LETTER_TO_DIGIT.get(c, c))
    s = "".join(chars)

    i = 0
    n = len(s)
    while i < n:
        c = s[i]
        if c == "-" or c.isascii() and c.isdigit():
            start = i
            if c == "-":
                i += 1
            while i < n and s[i].isascii() and s[i].isdigit():
                i += 1
            if i < n and s[i] == ".":
                i += 1
                while i < n and s[i].isascii() and s[i].isdigit():
                    i += 1
            return s[start:i]
        i += 1
    return ""


def parse_number(text: str) -> Optional[float]:
    """Parse the cleaned numeric token of *text*, or None."""
    try:
        return float(clean_number(text))
    except ValueError:
        return None


def count_decimal_places(s: str) -> int:
    """Digits after the decimal point ("3.14" -> 2, "42" -> 0)."""
    pos = s.find(".")
    return 0 if pos < 0 else len(s) - pos - 1


def count_total_digits(s: str) -> int:
    """Total digit characters ("3.14" -> 3, "-007" -> 3)."""
    return sum(1 for c in s if c.isascii() and c.isdigit())


# ---------------------------------------------------------------------------
# Validation scoring
# ---------------------------------------------------------------------------


# Penalty multipliers; all stack
UNPARSEABLE_SCORE = 0.1
OUT_OF_RANGE_PENALTY = 0.4
DECIMAL_PLACES_PENALTY = 0.65
TOTAL_DIGITS_PENALTY = 0.65
DEVIATION_PENALTY = 0.5


def _deviates(value: float, expectation: RegionExpectation, prev_value: Optional[float]) -> bool:
    max_dev = expectation.max_deviation
    if max_dev is None or prev_value is None or max_dev <= 0:
        return False
    return abs(value - prev_value) > max_dev


def validation_score(
    text: str,
    expectation: Optional[RegionExpectation],
    prev_value: Optional[float] = None,
) -> float:
    """Multiplier in (0, 1] scaling a candidate's confidence.

    An unparseable numeric candidate scores 0.1 rather than 0 so a pool of
    all-bad candidates still has a rankable maximum.
    """
    if expectation is None or not expectation.numeric:
        return 1.0

    cleaned = clean_number(text)
    try:
        value = float(cleaned)
    except ValueError:
        return UNPARSEABLE_SCORE

    score = 1.0

    if expectation.min is not None and value < expectation.min:
        score *= OUT_OF_RANGE_PENALTY
    if expectation.max is not None and value > expectation.max:
        score *= OUT_OF_RANGE_PENALTY

    if (
        expectation.decimal_places is not None
        and count_decimal_places(cleaned) != expectation.decimal_places
    ):
        score *= DECIMAL_PLACES_PENALTY

    if (
        expectation.total_digits is not None
        and count_total_digits(cleaned) != expectation.total_digits
    ):
        score *= TOTAL_DIGITS_PENALTY

    if _deviates(value, expectation, prev_value):
        score *= DEVIATION_PENALTY

    return score


def passes_hard_constraints(
    text: str,
    expectation: Optional[RegionExpectation],
    prev_value: Optional[float] = None,
) -> bool:
    """True when *text* parses (if numeric) and satisfies range and deviation."""
    if expectation is None or not expectation.numeric:
        return True

    value = parse_number(text)
    if value is None:
        return False

    if expectation.min is not None and value < expectation.min:
        return False
    if expectation.max is not None and value > expectation.max:
        return False
    return not _deviates(value, expectation, prev_value)


def effective_score(
    result: OcrResult,
    expectation: Optional[RegionExpectation],
    prev_value: Optional[float] = None,
) -> float:
    """Ranking key: confidence x validation score."""
    return result.confidence * validation_score(result.text, expectation, prev_value)


def eligible_candidates(
    results: Sequence[OcrResult],
    expectation: Optional[RegionExpectation],
    prev_value: Optional[float] = None,
) -> List[OcrResult]:
    """Candidates allowed to win at all, in their original order."""
    return [r for r in results if passes_hard_constraints(r.text, expectation, prev_value)]


def best_eligible(
    results: Sequence[OcrResult],
    expectation: Optional[RegionExpectation],
    prev_value: Optional[float] = None,
) -> Optional[OcrResult]:
    """Highest effective-score eligible candidate; first one wins ties."""
    pool = eligible_candidates(results, expectation, prev_value)
    if not pool:
        return None
    return max(pool, key=lambda r: effective_score(r, expectation, prev_value))


# ---------------------------------------------------------------------------
# Region reading
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegionReading:
    """Accepted reading for one region of one frame.

    An empty ``value`` means "no reading", which is distinct from "0".
    """

    value: str
    confidence: float
    raw_text: str
    preview: str  # Base64 PNG
    engine_name: str

    @property
    def is_empty(self) -> bool:
        return self.value == "" and self.engine_name == ""


EMPTY_READING = RegionReading(value="", confidence=0.0, raw_text="", preview="", engine_name="")


def frame_from_bytes(data: bytes, width: int, height: int) -> np.ndarray:
    """View raw interleaved RGB bytes as an (height, width, 3) array."""
    return np.frombuffer(data, dtype=np.uint8, count=width * height * 3).reshape(height, width, 3)


def clamp_rect(rect: Rect, frame_width: int, frame_height: int) -> Optional[Rect]:
    """Intersect *rect* with the frame; None if nothing is left."""
    x, y, w, h = rect
    x0 = max(x, 0)
    y0 = max(y, 0)
    x1 = min(x + w, frame_width)
    y1 = min(y + h, frame_height)
    if x1 <= x0 or y1 <= y0:
        return None
    return x0, y0, x1 - x0, y1 - y0


def _recognize_safely(backend, crop: np.ndarray) -> Optional[OcrResult]:
    try:
        return backend.recognize(crop)
    except Exception as e:  # backend failures only cost that backend's candidate
        log.warning("%s failed: %s", backend.name(), e)
        return None


def run_tier(backends: Sequence, crop: np.ndarray) -> List[OcrResult]:
    """Run every backend on *crop* concurrently; results keep backend order."""
    if not backends:
        return []
    with ThreadPoolExecutor(max_workers=pool_size(len(backends))) as executor:
        results = list(executor.map(lambda b: _recognize_safely(b, crop), backends))
    return [r for r in results if r is not None]


def _log_candidates(
    results: Sequence[OcrResult],
    expectation: Optional[RegionExpectation],
    prev_value: Optional[float],
) -> None:
    for r in results:
        log.debug(
            "%-25s %r conf=%.3f valid=%.3f",
            r.engine_name,
            r.text,
            r.confidence,
            validation_score(r.text, expectation, prev_value),
        )


def make_reading(result: OcrResult, numeric: bool) -> RegionReading:
    raw = result.text.strip()
    return RegionReading(
        value=clean_number(result.text) if numeric else raw,
        confidence=result.confidence,
        raw_text=raw,
        preview=result.preview,
        engine_name=result.engine_name,
    )


def read_region(
    frame: np.ndarray,
    rect: Rect,
    priority: Sequence,
    fallback: Sequence,
    fast_threshold: float,
    expectation: Optional[RegionExpectation] = None,
    prev_value: Optional[float] = None,
) -> RegionReading:
    """Read one region of an RGB frame with cascaded multi-backend OCR.

    Args:
        frame: (H, W, 3) RGB frame.
        rect: (x, y, width, height) region, clamped to the frame.
        priority: Fast backends, tried first.
        fallback: Slower backends, run only if the priority tier is not
            trustworthy enough.
        fast_threshold: Effective score at which an eligible priority
            candidate is accepted without running the fallback tier.
        expectation: Optional content contract for the region.
        prev_value: Previous accepted numeric value for the region.

    Returns:
        RegionReading, or EMPTY_READING when the rectangle is empty or no
        candidate satisfies the hard constraints.
    """
    numeric = expectation is not None and expectation.numeric

    frame_h, frame_w = frame.shape[:2]
    clamped = clamp_rect(rect, frame_w, frame_h)
    if clamped is None:
        return EMPTY_READING

    x, y, w, h = clamped
    crop = frame[y : y + h, x : x + w].copy()

    # Step 1: priority tier (fast path)
    priority_results = run_tier(priority, crop)
    _log_candidates(priority_results, expectation, prev_value)

    best = best_eligible(priority_results, expectation, prev_value)
    if best is not None:
        eff = effective_score(best, expectation, prev_value)
        numeric_ok = not numeric or parse_number(best.text) is not None
        if eff >= fast_threshold and numeric_ok:
            log.info(
                "fast-path via %s (eff=%.3f >= %.3f), skipping fallback",
                best.engine_name,
                eff,
                fast_threshold,
            )
            return make_reading(best, numeric)

    # Step 2: fallback tier
    fallback_results = run_tier(fallback, crop)
    _log_candidates(fallback_results, expectation, prev_value)

    # Step 3: best eligible candidate across the whole pool
    best = best_eligible(priority_results + fallback_results, expectation, prev_value)
    if best is None:
        log.info("no candidate satisfied constraints, reporting empty")
        return EMPTY_READING
    return make_reading(best, numeric)
