# src/ladderocr/preprocess.py
"""
Image preprocessing that feeds the OCR engine.

Every stage takes a PIL image and returns a new one; inputs are never
modified, so stages compose freely. Pixel math is done on numpy arrays.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Optional

import numpy as np
from PIL import Image, ImageFilter

from .models import Attempt
from .presets import ImageOptions

logger = logging.getLogger("ladderocr")

# Otsu histogram is built on at most this many samples
HISTOGRAM_SAMPLE_CAP = 400_000
SMALL_IMAGE_PIXELS = 1_000_000
SHARPEN_BLUR_RADIUS = 1.1
FALLBACK_SCALE = 1.6

_LOGO_NAME = re.compile(r"logo|brand|mark|icon|badge", re.IGNORECASE)

# Small images and logos skip the heavy preset settings
FAST_MODE_OPTIONS = ImageOptions(scale=2.0, contrast=1.05, sharpen=0.0, grayscale=True, binarize=False)


def _to_rgb(image: Image.Image) -> Image.Image:
    return image if image.mode in ("RGB", "L") else image.convert("RGB")


def capped_size(width: int, height: int, scale: float, cap_mpx: float) -> tuple[int, int]:
    want_w = max(1, round(width * scale))
    want_h = max(1, round(height * scale))
    target = cap_mpx * 1_000_000
    if want_w * want_h <= target:
        return want_w, want_h
    k = math.sqrt(target / (want_w * want_h))
    return max(1, round(want_w * k)), max(1, round(want_h * k))


def resize_with_cap(image: Image.Image, scale: float, cap_mpx: float) -> Image.Image:
    """Scale by `scale`, then shrink uniformly so the result stays under `cap_mpx` megapixels."""
    size = capped_size(image.width, image.height, scale, cap_mpx)
    src = _to_rgb(image)
    if size == src.size:
        return src.copy()
    return src.resize(size, Image.Resampling.LANCZOS)


def luma(arr: np.ndarray) -> np.ndarray:
    if arr.ndim == 2:
        return arr.astype(np.float32)
    rgb = arr[..., :3].astype(np.float32)
    return rgb[..., 0] * 0.299 + rgb[..., 1] * 0.587 + rgb[..., 2] * 0.114


def apply_tone(image: Image.Image, grayscale: bool, contrast: float) -> Image.Image:
    """Optional luma grayscale fused with a contrast stretch around 128."""
    c = max(0.5, min(2.0, float(contrast)))
    arr = np.asarray(_to_rgb(image))
    base = luma(arr) if grayscale else arr.astype(np.float32)
    out = np.clip((base - 128.0) * c + 128.0, 0, 255).astype(np.uint8)
    return Image.fromarray(out)


def unsharp_mask(image: Image.Image, amount: float) -> Image.Image:
    """Amplify the high-frequency residual (original - blurred) by 1 + amount."""
    k = max(0.0, min(1.0, float(amount)))
    src = _to_rgb(image)
    if k == 0:
        return src.copy()
    blurred = np.asarray(src.filter(ImageFilter.GaussianBlur(SHARPEN_BLUR_RADIUS)), dtype=np.float32)
    base = np.asarray(src, dtype=np.float32)
    out = np.clip(base + (base - blurred) * (1.0 + k), 0, 255).astype(np.uint8)
    return Image.fromarray(out)


def otsu_threshold(hist: np.ndarray) -> int:
    """Threshold maximizing between-class variance over a 256-bin histogram."""
    hist = np.asarray(hist, dtype=np.float64)
    total = hist.sum()
    if total <= 0:
        return 128
    levels = np.arange(256, dtype=np.float64)
    sum_all = float((levels * hist).sum())

    sum_b = 0.0
    w_b = 0.0
    best = 0.0
    th = 128
    for i in range(256):
        w_b += hist[i]
        if not w_b:
            continue
        w_f = total - w_b
        if not w_f:
            break
        sum_b += i * hist[i]
        m_b = sum_b / w_b
        m_f = (sum_all - sum_b) / w_f
        between = w_b * w_f * (m_b - m_f) ** 2
        # ">=" keeps the highest of equally good thresholds
        if between >= best:
            best = between
            th = i
    return th


def histogram_stride(pixel_count: int) -> int:
    return max(1, int(math.sqrt(pixel_count / HISTOGRAM_SAMPLE_CAP)))


def binarize(image: Image.Image) -> Image.Image:
    """Global Otsu threshold estimated on a downsampled copy, applied at full resolution."""
    gray = luma(np.asarray(_to_rgb(image))).round().clip(0, 255).astype(np.uint8)
    stride = histogram_stride(gray.size)
    sample = gray[::stride, ::stride]
    hist = np.bincount(sample.ravel(), minlength=256)
    th = otsu_threshold(hist)
    logger.debug("Otsu threshold %d (stride %d, %dx%d)", th, stride, image.width, image.height)
    out = np.where(gray >= th, 255, 0).astype(np.uint8)
    return Image.fromarray(out)


def preprocess(image: Image.Image, options: ImageOptions, cap_mpx: float) -> Image.Image:
    out = resize_with_cap(image, options.scale, cap_mpx)
    out = apply_tone(out, options.grayscale, options.contrast)
    if options.sharpen > 0:
        out = unsharp_mask(out, options.sharpen)
    if options.binarize:
        out = binarize(out)
    return out


def is_fast_mode(image: Image.Image, name: Optional[str] = None) -> bool:
    if image.width * image.height < SMALL_IMAGE_PIXELS:
        return True
    return bool(name and _LOGO_NAME.search(name))


def attempt_variant(base: Image.Image, attempt: Attempt, cap_mpx: float) -> Image.Image:
    """Re-scale (and optionally binarize) the preprocessed base for one ladder attempt."""
    opts = ImageOptions(scale=attempt.scale_mul, contrast=1.0, sharpen=0.0,
                        grayscale=True, binarize=attempt.binarize)
    return preprocess(base, opts, cap_mpx)


def fallback_variant(base: Image.Image, cap_mpx: float) -> Image.Image:
    opts = ImageOptions(scale=FALLBACK_SCALE, contrast=1.0, sharpen=0.0, grayscale=True, binarize=False)
    return preprocess(base, opts, cap_mpx)
