"""Tests for meterscan.backends (tesseract calls are faked)."""

import os
import threading
import time

import numpy as np
import pytest
import pytesseract

from meterscan import backends
from meterscan.backends import (
    NEURAL_KINDS,
    PSMS,
    TESSERACT_KINDS,
    BackendKind,
    Recognizer,
    build_lang,
    default_backends,
    pool_size,
    run_psms,
    tesseract_config,
    try_ocr,
)


def tess_data(words, confs, lines=None):
    """Minimal image_to_data DICT output."""
    n = len(words)
    return {
        "text": list(words),
        "conf": list(confs),
        "block_num": [1] * n,
        "par_num": [1] * n,
        "line_num": list(lines) if lines is not None else [1] * n,
    }


class FakeTesseract:
    """Stand-in for pytesseract.image_to_data keyed on the --psm value."""

    def __init__(self, by_psm=None, default=None, error=None):
        self.by_psm = by_psm or {}
        self.default = default if default is not None else tess_data([], [])
        self.error = error
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, image, lang=None, config="", output_type=None):
        psm = int(config.split("--psm")[1].split()[0])
        with self._lock:
            self.calls.append({"psm": psm, "lang": lang, "config": config, "shape": image.shape})
        if self.error is not None:
            raise self.error
        return self.by_psm.get(psm, self.default)


class ConcurrencyTracker:
    """Context manager recording the peak number of overlapping calls."""

    def __init__(self, hold=0.02):
        self.hold = hold
        self.active = 0
        self.peak = 0
        self.calls = 0
        self._lock = threading.Lock()

    def __enter__(self):
        with self._lock:
            self.active += 1
            self.calls += 1
            self.peak = max(self.peak, self.active)
        time.sleep(self.hold)
        return self

    def __exit__(self, *exc):
        with self._lock:
            self.active -= 1


class FakePredictor:
    def __init__(self, text="42", score=0.97):
        self.text = text
        self.score = score
        self.images = []

    def predict(self, image_rgb):
        self.images.append(image_rgb)
        return self.text, self.score


@pytest.fixture
def crop():
    img = np.full((10, 24, 3), 30, dtype=np.uint8)
    img[2:8, 3:6] = (200, 220, 90)
    img[2:8, 12:15] = (200, 220, 90)
    return img


@pytest.fixture
def fake_tess(monkeypatch):
    def install(**kwargs):
        fake = FakeTesseract(**kwargs)
        monkeypatch.setattr(pytesseract, "image_to_data", fake)
        return fake

    return install


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_build_lang(self):
        assert build_lang(["en"]) == "eng"
        assert build_lang(["en", "de"]) == "eng+deu"
        assert build_lang(["eng", " fra "]) == "eng+fra"
        assert build_lang([]) == "eng"

    def test_tesseract_config(self):
        assert tesseract_config(7) == "--psm 7"
        assert tesseract_config(6, "/opt/tessdata") == '--psm 6 --tessdata-dir "/opt/tessdata"'

    def test_text_and_confidence(self):
        data = tess_data(
            ["12", "", "3", "kg"],
            [90, -1, 70, 50],
            lines=[1, 1, 1, 2],
        )
        text, conf = backends._text_and_confidence(data)

        assert text == "12 3\nkg"
        assert conf == pytest.approx(0.7)

    def test_text_and_confidence_empty(self):
        assert backends._text_and_confidence(tess_data(["", " "], [-1, 95])) is None

    def test_kind_partition(self):
        assert len(NEURAL_KINDS) == 2
        assert len(TESSERACT_KINDS) == 7
        assert all(k.is_neural for k in NEURAL_KINDS)
        assert BackendKind.TESSERACT_RGB.value == "tesseract/rgb"


# ---------------------------------------------------------------------------
# Tesseract invocation
# ---------------------------------------------------------------------------


class TestTesseractCalls:
    def test_try_ocr_success(self, fake_tess, crop):
        fake = fake_tess(default=tess_data(["21.5"], [88]))

        assert try_ocr(crop, "eng", 7) == ("21.5", pytest.approx(0.88))
        assert fake.calls[0]["config"] == "--psm 7"

    def test_try_ocr_tesseract_error(self, fake_tess, crop):
        fake_tess(error=pytesseract.TesseractError(1, "boom"))
        assert try_ocr(crop, "eng", 7) is None

    def test_try_ocr_not_installed(self, fake_tess, crop):
        fake_tess(error=pytesseract.TesseractNotFoundError())
        assert try_ocr(crop, "eng", 7) is None

    def test_run_psms_keeps_most_confident(self, fake_tess, crop):
        fake = fake_tess(
            by_psm={
                7: tess_data(["21.5"], [60]),
                6: tess_data(["2l.5"], [40]),
                8: tess_data(["21.6"], [91]),
            }
        )

        assert run_psms(crop, "eng") == ("21.6", pytest.approx(0.91))
        assert sorted(c["psm"] for c in fake.calls) == sorted(PSMS)

    def test_run_psms_nothing_read(self, fake_tess, crop):
        fake_tess()
        assert run_psms(crop, "eng") is None

    def test_psm_fan_out_capped_at_cpu_count(self, monkeypatch, crop):
        monkeypatch.setattr(os, "cpu_count", lambda: 1)
        tracker = ConcurrencyTracker()

        def image_to_data(image, lang=None, config="", output_type=None):
            with tracker:
                return tess_data(["5"], [70])

        monkeypatch.setattr(pytesseract, "image_to_data", image_to_data)

        assert run_psms(crop, "eng") == ("5", pytest.approx(0.7))
        assert tracker.calls == len(PSMS)
        assert tracker.peak == 1


class TestPoolSize:
    def test_capped(self, monkeypatch):
        monkeypatch.setattr(os, "cpu_count", lambda: 2)
        assert pool_size(7) == 2
        assert pool_size(1) == 1

    def test_never_zero(self, monkeypatch):
        monkeypatch.setattr(os, "cpu_count", lambda: None)
        assert pool_size(0) == 1
        assert pool_size(4) == 1


# ---------------------------------------------------------------------------
# Recognizer
# ---------------------------------------------------------------------------


class TestRecognizer:
    def test_neural_requires_predictor(self):
        with pytest.raises(ValueError):
            Recognizer(BackendKind.NEURAL_RGB)

    def test_neural_rgb(self, crop):
        predictor = FakePredictor("42.0", 0.93)
        result = Recognizer(BackendKind.NEURAL_RGB, predictor=predictor).recognize(crop)

        assert result.text == "42.0"
        assert result.confidence == pytest.approx(0.93)
        assert result.engine_name == "paddle/rgb"
        assert result.preview
        # ceil(48 / 10) = 5x upscale
        assert predictor.images[0].shape == (50, 120, 3)

    def test_neural_gray_replicates_channels(self, crop):
        predictor = FakePredictor()
        Recognizer(BackendKind.NEURAL_GRAY, predictor=predictor).recognize(crop)

        img = predictor.images[0]
        assert np.array_equal(img[..., 0], img[..., 2])

    @pytest.mark.parametrize("text", ["", "   "])
    def test_neural_empty_text(self, crop, text):
        recognizer = Recognizer(BackendKind.NEURAL_RGB, predictor=FakePredictor(text, 0.99))
        assert recognizer.recognize(crop) is None

    def test_tesseract_rgb_passthrough(self, fake_tess, crop):
        fake = fake_tess(default=tess_data(["7"], [80]))
        recognizer = Recognizer(BackendKind.TESSERACT_RGB, languages=["en", "de"])

        result = recognizer.recognize(crop)

        assert result.text == "7"
        assert result.engine_name == "tesseract/rgb"
        assert fake.calls[0]["shape"] == crop.shape
        assert fake.calls[0]["lang"] == "eng+deu"

    def test_tesseract_raw_gray(self, fake_tess, crop):
        fake = fake_tess(default=tess_data(["7"], [80]))
        Recognizer(BackendKind.TESSERACT_RAW_GRAY).recognize(crop)
        assert fake.calls[0]["shape"] == crop.shape[:2]

    def test_tesseract_binary_runs_pipeline(self, fake_tess, crop):
        fake = fake_tess(default=tess_data(["7"], [80]))
        Recognizer(BackendKind.TESSERACT_BINARY, tessdata_dir="/td").recognize(crop)

        call = fake.calls[0]
        assert call["shape"] == (10 * 6 + 30, 24 * 6 + 30)
        assert '--tessdata-dir "/td"' in call["config"]

    def test_tesseract_nothing_read(self, fake_tess, crop):
        fake_tess()
        assert Recognizer(BackendKind.TESSERACT_GRAY).recognize(crop) is None


class TestDefaultBackends:
    def test_with_predictor(self):
        priority, fallback = default_backends(FakePredictor())

        assert [b.name() for b in priority] == ["paddle/rgb", "paddle/gray"]
        assert [b.kind for b in fallback] == list(TESSERACT_KINDS)

    def test_without_predictor(self):
        priority, fallback = default_backends(None, languages=["de"])

        assert priority == []
        assert len(fallback) == 7
        assert all(b.lang == "deu" for b in fallback)
