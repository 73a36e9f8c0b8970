"""Tests for meterscan.preprocess module."""

import base64

import cv2
import numpy as np
import pytest

from meterscan.preprocess import (
    BORDER_PAD,
    UPSCALE_FACTOR,
    PipelineMode,
    _tile_mapping,
    clahe,
    encode_preview,
    gamma_lut,
    integral_images,
    mean_brightness,
    prepare_neural_input,
    preprocess_for_tesseract,
    sauvola_threshold,
)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


def dark_display_crop():
    """Light segment-like bars on a dark LCD background (RGB)."""
    crop = np.full((12, 30, 3), 25, dtype=np.uint8)
    crop[2:10, 4:7] = (40, 220, 60)
    crop[2:10, 12:15] = (40, 220, 60)
    crop[2:4, 20:27] = (40, 220, 60)
    return crop


# ---------------------------------------------------------------------------
# CLAHE
# ---------------------------------------------------------------------------


class TestTileMapping:
    def test_clip_and_redistribute(self):
        """A single-valued tile is clipped and the excess spread over the bins."""
        tile = np.zeros((16, 16), dtype=np.uint8)
        mapping = _tile_mapping(tile, 2.0)

        # clip = 2, excess = 254 -> +1 on bins 0..253
        assert mapping[0] == 3 * 255 // 256
        assert mapping[253] == 255
        assert mapping[255] == 255

    def test_monotonic(self, rng):
        tile = rng.integers(0, 256, size=(32, 32), dtype=np.uint8)
        mapping = _tile_mapping(tile, 2.0)

        assert mapping.shape == (256,)
        assert np.all(np.diff(mapping.astype(int)) >= 0)
        assert mapping[-1] == 255


class TestClahe:
    def test_shape_and_dtype(self, rng):
        img = rng.integers(0, 256, size=(70, 45), dtype=np.uint8)
        out = clahe(img)

        assert out.shape == img.shape
        assert out.dtype == np.uint8

    def test_uniform_image_stays_uniform(self):
        img = np.full((64, 64), 120, dtype=np.uint8)
        out = clahe(img)

        assert len(np.unique(out)) == 1

    def test_increases_local_contrast(self, rng):
        img = rng.integers(100, 111, size=(64, 64), dtype=np.uint8)
        out = clahe(img)

        assert out.std() > img.std()

    def test_tile_larger_than_image(self, rng):
        img = rng.integers(0, 256, size=(5, 7), dtype=np.uint8)
        out = clahe(img, tile_size=32)
        assert out.shape == (5, 7)

    def test_preserves_order_within_tile(self):
        """Brighter input pixels never map darker within one tile grid."""
        img = np.tile(np.arange(0, 256, 8, dtype=np.uint8), (32, 1))
        out = clahe(img, tile_size=32)
        assert np.all(np.diff(out[16].astype(int)) >= 0)


# ---------------------------------------------------------------------------
# Sauvola
# ---------------------------------------------------------------------------


class TestSauvola:
    def test_integral_images(self, rng):
        img = rng.integers(0, 256, size=(9, 13), dtype=np.uint8)
        isum, isumsq = integral_images(img)

        assert isum.shape == (10, 14)
        assert isum[0].sum() == 0 and isum[:, 0].sum() == 0
        assert isum[-1, -1] == int(img.astype(np.int64).sum())
        assert isumsq[-1, -1] == int((img.astype(np.int64) ** 2).sum())
        assert isum[4, 6] == int(img[:4, :6].astype(np.int64).sum())

    def test_dark_text_on_light_background(self):
        img = np.full((60, 60), 200, dtype=np.uint8)
        img[25:35, 25:35] = 0

        out = sauvola_threshold(img)

        assert np.all(out[25:35, 25:35] == 0)
        assert out[0, 0] == 255
        assert out[5:20, 5:20].min() == 255

    def test_uniform_image_is_background(self):
        img = np.full((30, 30), 90, dtype=np.uint8)
        assert np.all(sauvola_threshold(img) == 255)

    def test_binary_output(self, rng):
        img = rng.integers(0, 256, size=(40, 40), dtype=np.uint8)
        out = sauvola_threshold(img)
        assert set(np.unique(out)) <= {0, 255}


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_gamma_lut(self):
        lut = gamma_lut(0.5)

        assert lut[0] == 0
        assert lut[255] == 255
        assert lut[64] > 64

    def test_mean_brightness_floors(self):
        img = np.array([[0, 1]], dtype=np.uint8)
        assert mean_brightness(img) == 0

    def test_encode_preview_png(self):
        img = np.zeros((4, 6, 3), dtype=np.uint8)
        img[..., 0] = 255  # pure red in RGB

        data = base64.b64decode(encode_preview(img))
        decoded = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)

        assert decoded.shape == (4, 6, 3)
        assert tuple(decoded[0, 0]) == (0, 0, 255)  # BGR

    def test_pipeline_mode_properties(self):
        assert PipelineMode.GRAY.binarize is False
        assert PipelineMode.BINARY.channel is None
        assert PipelineMode.CHANNEL_G.channel == 1
        assert PipelineMode.CHANNEL_B.binarize is True


class TestNeuralInput:
    def test_upscale_ceil_factor(self):
        crop = np.zeros((10, 30, 3), dtype=np.uint8)
        out = prepare_neural_input(crop)

        # ceil(48 / 10) = 5
        assert out.shape == (50, 150, 3)

    def test_tall_crop_unchanged(self):
        crop = np.zeros((60, 20, 3), dtype=np.uint8)
        out = prepare_neural_input(crop)
        assert out.shape == (60, 20, 3)

    def test_grayscale_promoted_to_rgb(self):
        crop = dark_display_crop()
        out = prepare_neural_input(crop, grayscale=True)

        assert out.shape[2] == 3
        assert np.array_equal(out[..., 0], out[..., 1])
        assert np.array_equal(out[..., 1], out[..., 2])


class TestTesseractPipeline:
    @pytest.mark.parametrize(
        "mode",
        [PipelineMode.BINARY, PipelineMode.CHANNEL_R, PipelineMode.CHANNEL_G, PipelineMode.CHANNEL_B],
    )
    def test_binarized_modes(self, mode):
        crop = dark_display_crop()
        out = preprocess_for_tesseract(crop, mode)

        h, w = crop.shape[:2]
        assert out.ndim == 2
        assert out.shape == (h * UPSCALE_FACTOR + 2 * BORDER_PAD, w * UPSCALE_FACTOR + 2 * BORDER_PAD)
        assert set(np.unique(out)) <= {0, 255}
        # Padding is white
        assert np.all(out[:BORDER_PAD] == 255)

    def test_gray_mode_not_binarized(self):
        crop = dark_display_crop()
        out = preprocess_for_tesseract(crop, PipelineMode.GRAY)

        assert out.shape == (12 * UPSCALE_FACTOR, 30 * UPSCALE_FACTOR)
        assert len(np.unique(out)) > 2

    def test_dark_background_inverted(self):
        """Dark displays come out as a light background."""
        out = preprocess_for_tesseract(dark_display_crop(), PipelineMode.BINARY)
        assert out.mean() > 127
