"""Image preprocessing for the OCR backends.

Two independent pipelines:

Neural predictor:
    upscale to a minimum height (ceil scale factor, Lanczos), optionally
    reduce to grayscale and replicate back to three channels.

Tesseract ("full" pipeline, used by the binary / gray / channel modes):
    1. Lanczos 6x upscale
    2. Luminance or single colour-channel extraction
    3. Auto-invert dark backgrounds (text always dark on light)
    4. Gamma correction if still underexposed
    5. CLAHE - tiled, clip-limited adaptive histogram equalization
    6. Light Gaussian blur (removes CLAHE quantization steps)
    7. Sauvola adaptive threshold + morphological opening (binarizing modes)
    8. White border padding

All images are numpy ``uint8`` arrays; colour images are RGB, HxWx3.
"""

import base64
from enum import Enum
from typing import Optional

import cv2
import numpy as np

# Neural predictor
NEURAL_MIN_HEIGHT = 48  # PaddleOCR v5 mobile normalises inputs to 48 px

# Tesseract pipeline
UPSCALE_FACTOR = 6
DARK_BG_THRESHOLD = 140  # mean below this -> dark background, invert
GAMMA_VALUE = 0.5  # < 1 brightens shadows
GAMMA_DARK_THRESHOLD = 80  # mean below this after inversion -> apply gamma
BLUR_SIGMA = 1.0
BORDER_PAD = 15

# CLAHE (tile size is on the upscaled image, ~5 source pixels at 6x)
CLAHE_TILE_SIZE = 32
CLAHE_CLIP_LIMIT = 2.0

# Sauvola
SAUVOLA_WINDOW = 25  # odd diameter
SAUVOLA_K = 0.34
SAUVOLA_R = 128.0  # dynamic range of std for 8-bit images


class PipelineMode(Enum):
    """How far the full pipeline runs and which channel it starts from."""

    BINARY = "binary"  # luminance, steps 1-8
    GRAY = "gray"  # luminance, steps 1-6
    CHANNEL_R = "channel-r"  # red channel, steps 1-8
    CHANNEL_G = "channel-g"
    CHANNEL_B = "channel-b"

    @property
    def channel(self) -> Optional[int]:
        return {
            PipelineMode.CHANNEL_R: 0,
            PipelineMode.CHANNEL_G: 1,
            PipelineMode.CHANNEL_B: 2,
        }.get(self)

    @property
    def binarize(self) -> bool:
        return self is not PipelineMode.GRAY


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def to_gray(rgb: np.ndarray) -> np.ndarray:
    """Standard luminance of an RGB image (pass-through for single channel)."""
    if rgb.ndim == 2:
        return rgb
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)


def extract_channel(rgb: np.ndarray, channel: int) -> np.ndarray:
    """Extract one raw colour channel (0=R, 1=G, 2=B) as a grayscale image."""
    return np.ascontiguousarray(rgb[:, :, channel])


def mean_brightness(gray: np.ndarray) -> int:
    """Integer (floored) mean intensity."""
    return int(gray.sum(dtype=np.uint64) // max(gray.size, 1))


def gamma_lut(gamma: float = GAMMA_VALUE) -> np.ndarray:
    """256-entry power-law lookup table."""
    levels = np.arange(256, dtype=np.float64) / 255.0
    return np.floor(np.power(levels, gamma) * 255.0 + 0.5).astype(np.uint8)


def encode_preview(image: np.ndarray) -> str:
    """Base64 PNG of an RGB or grayscale image; empty string on failure."""
    if image.size == 0:
        return ""
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    ok, buf = cv2.imencode(".png", image)
    if not ok:
        return ""
    return base64.b64encode(buf.tobytes()).decode("ascii")


# ---------------------------------------------------------------------------
# Neural predictor preprocessing
# ---------------------------------------------------------------------------


def prepare_neural_input(
    crop_rgb: np.ndarray,
    grayscale: bool = False,
    min_height: int = NEURAL_MIN_HEIGHT,
) -> np.ndarray:
    """Prepare a crop for the recognition model.

    Grayscale mode converts to luminance and replicates it to three channels,
    since the model always expects 3-channel input. Crops shorter than
    *min_height* are upscaled by the integer factor ``ceil(min_height / h)``.
    """
    if grayscale:
        img = cv2.cvtColor(to_gray(crop_rgb), cv2.COLOR_GRAY2RGB)
    else:
        img = crop_rgb

    h, w = img.shape[:2]
    if 0 < h < min_height:
        scale = (min_height + h - 1) // h
        img = cv2.resize(img, (w * scale, h * scale), interpolation=cv2.INTER_LANCZOS4)

    return np.ascontiguousarray(img)


# ---------------------------------------------------------------------------
# CLAHE
# ---------------------------------------------------------------------------


def _tile_mapping(tile: np.ndarray, clip_limit_factor: float) -> np.ndarray:
    """Clipped-histogram CDF tone mapping (256 entries) for one tile."""
    tile_area = tile.size
    hist = np.bincount(tile.ravel(), minlength=256).astype(np.int64)

    clip = int(max(tile_area / 256.0 * clip_limit_factor, 1.0))
    excess = int(np.maximum(hist - clip, 0).sum())
    hist = np.minimum(hist, clip)

    # Redistribute the clipped excess uniformly, remainder to the first bins
    hist += excess // 256
    hist[: excess % 256] += 1

    cdf = np.cumsum(hist)
    return np.minimum(cdf * 255 // tile_area, 255).astype(np.uint8)


def _tile_axis(length: int, tile_size: int, n_tiles: int):
    """Per-coordinate neighbour tile indices and blend weight along one axis."""
    half = tile_size / 2.0
    pos = (np.arange(length, dtype=np.float32) - half) / tile_size
    t0 = np.clip(np.floor(pos).astype(np.int64), 0, n_tiles - 1)
    t1 = np.minimum(t0 + 1, n_tiles - 1)
    frac = np.clip(pos - t0, 0.0, 1.0).astype(np.float32)
    return t0, t1, frac


def clahe(
    gray: np.ndarray,
    tile_size: int = CLAHE_TILE_SIZE,
    clip_limit_factor: float = CLAHE_CLIP_LIMIT,
) -> np.ndarray:
    """Contrast-Limited Adaptive Histogram Equalization.

    The image is split into non-overlapping ``tile_size`` squares. Each tile
    gets a clipped-histogram tone mapping; every pixel is then mapped through
    the four tiles whose centres are nearest and the results are blended
    bilinearly. Tile indices are clamped at the image borders.
    """
    h, w = gray.shape[:2]
    if h == 0 or w == 0:
        return gray.copy()

    tiles_x = (w + tile_size - 1) // tile_size
    tiles_y = (h + tile_size - 1) // tile_size

    maps = np.empty((tiles_y, tiles_x, 256), dtype=np.uint8)
    for ty in range(tiles_y):
        for tx in range(tiles_x):
            tile = gray[
                ty * tile_size : (ty + 1) * tile_size,
                tx * tile_size : (tx + 1) * tile_size,
            ]
            maps[ty, tx] = _tile_mapping(tile, clip_limit_factor)

    tx0, tx1, fx = _tile_axis(w, tile_size, tiles_x)
    ty0, ty1, fy = _tile_axis(h, tile_size, tiles_y)

    rows0, rows1 = ty0[:, None], ty1[:, None]
    cols0, cols1 = tx0[None, :], tx1[None, :]
    v00 = maps[rows0, cols0, gray].astype(np.float32)
    v10 = maps[rows0, cols1, gray].astype(np.float32)
    v01 = maps[rows1, cols0, gray].astype(np.float32)
    v11 = maps[rows1, cols1, gray].astype(np.float32)

    fx = fx[None, :]
    fy = fy[:, None]
    top = v00 + (v10 - v00) * fx
    bot = v01 + (v11 - v01) * fx
    out = top + (bot - top) * fy
    return np.clip(np.floor(out + 0.5), 0, 255).astype(np.uint8)


# ---------------------------------------------------------------------------
# Sauvola adaptive threshold
# ---------------------------------------------------------------------------


def integral_images(gray: np.ndarray):
    """Zero-padded summed-area tables of intensity and intensity squared.

    Both tables have shape ``(h + 1, w + 1)``; entry ``[y, x]`` is the sum
    over ``gray[:y, :x]``.
    """
    h, w = gray.shape[:2]
    values = gray.astype(np.int64)
    isum = np.zeros((h + 1, w + 1), dtype=np.int64)
    isumsq = np.zeros((h + 1, w + 1), dtype=np.int64)
    isum[1:, 1:] = values.cumsum(axis=0).cumsum(axis=1)
    isumsq[1:, 1:] = (values * values).cumsum(axis=0).cumsum(axis=1)
    return isum, isumsq


def sauvola_threshold(
    gray: np.ndarray,
    window: int = SAUVOLA_WINDOW,
    k: float = SAUVOLA_K,
    r: float = SAUVOLA_R,
) -> np.ndarray:
    """Sauvola binarization: ``T = mean * (1 + k * (std / R - 1))``.

    Local statistics come from the integral images in O(1) per pixel over a
    ``window`` square clamped at the borders. Pixels at or above the local
    threshold become 255 (background), the rest 0 (text).
    """
    h, w = gray.shape[:2]
    if h == 0 or w == 0:
        return gray.copy()

    half = window // 2
    isum, isumsq = integral_images(gray)

    xs = np.arange(w)
    ys = np.arange(h)
    x0 = np.maximum(xs - half, 0)[None, :]
    x1 = np.minimum(xs + half + 1, w)[None, :]
    y0 = np.maximum(ys - half, 0)[:, None]
    y1 = np.minimum(ys + half + 1, h)[:, None]
    count = ((x1 - x0) * (y1 - y0)).astype(np.float64)

    total = isum[y1, x1] - isum[y1, x0] - isum[y0, x1] + isum[y0, x0]
    total_sq = isumsq[y1, x1] - isumsq[y1, x0] - isumsq[y0, x1] + isumsq[y0, x0]

    mean = total / count
    var = total_sq / count - mean * mean
    std = np.sqrt(np.maximum(var, 0.0))

    threshold = mean * (1.0 + k * (std / r - 1.0))
    return np.where(gray.astype(np.float64) >= threshold, 255, 0).astype(np.uint8)


# ---------------------------------------------------------------------------
# Full Tesseract pipeline
# ---------------------------------------------------------------------------


def preprocess_for_tesseract(crop_rgb: np.ndarray, mode: PipelineMode) -> np.ndarray:
    """Run the full preprocessing pipeline and return a grayscale image."""
    h, w = crop_rgb.shape[:2]
    scaled = cv2.resize(
        crop_rgb,
        (w * UPSCALE_FACTOR, h * UPSCALE_FACTOR),
        interpolation=cv2.INTER_LANCZOS4,
    )

    if mode.channel is not None:
        gray = extract_channel(scaled, mode.channel)
    else:
        gray = to_gray(scaled)

    if mean_brightness(gray) < DARK_BG_THRESHOLD:
        gray = 255 - gray

    if mean_brightness(gray) < GAMMA_DARK_THRESHOLD:
        gray = cv2.LUT(gray, gamma_lut())

    gray = clahe(gray)
    gray = cv2.GaussianBlur(gray, (0, 0), BLUR_SIGMA)

    if not mode.binarize:
        return gray

    gray = sauvola_threshold(gray)
    # Opening on the white background fills white specks inside dark strokes
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
    gray = cv2.morphologyEx(gray, cv2.MORPH_OPEN, kernel)

    return cv2.copyMakeBorder(
        gray, BORDER_PAD, BORDER_PAD, BORDER_PAD, BORDER_PAD, cv2.BORDER_CONSTANT, value=255
    )
