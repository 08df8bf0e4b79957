"""Classify decoded images into compression categories."""

import logging
from typing import Optional, Sequence

import numpy as np

from ..config import Category, ColorType
from .records import DecodedImage

logger = logging.getLogger("texture_composer")

# Rows scanned per block before checking for a counter-example.
_SCAN_BLOCK_ROWS = 64

_GRAYSCALE_TYPES = {ColorType.L8, ColorType.LA8, ColorType.L16, ColorType.LA16}
_RGB_TYPES = {ColorType.RGB8, ColorType.RGB16, ColorType.RGB32F}
_SCANNED_ALPHA_TYPES = {ColorType.RGBA8, ColorType.RGBA16}


def all_samples_in(channel: np.ndarray, allowed: Sequence,
                   block_rows: int = _SCAN_BLOCK_ROWS) -> bool:
    """Return True when every sample of ``channel`` equals one of ``allowed``.

    The channel is scanned in blocks of rows and the scan stops at the
    first block holding a sample outside ``allowed``.
    """
    if block_rows < 1:
        raise ValueError("block_rows must be >= 1")
    values = np.asarray(list(allowed), dtype=channel.dtype)
    for start in range(0, channel.shape[0], block_rows):
        block = channel[start:start + block_rows]
        if not np.isin(block, values).all():
            return False
    return True


def has_alpha(image: DecodedImage) -> bool:
    """Return True when the color type carries an alpha channel."""
    return image.has_alpha


def is_cutout_alpha(alpha: np.ndarray) -> bool:
    """Return True when alpha is purely on/off (type minimum or maximum only)."""
    info = np.iinfo(alpha.dtype)
    return all_samples_in(alpha, (info.min, info.max))


def is_opaque(alpha: np.ndarray) -> bool:
    """Return True when every alpha sample equals the type maximum."""
    return all_samples_in(alpha, (np.iinfo(alpha.dtype).max,))


def classify_image(image: DecodedImage) -> Optional[Category]:
    """Pick the category of one image from its own layout and alpha content.

    Returns None for pixel formats no category covers.
    """
    color_type = image.color_type
    if color_type in _GRAYSCALE_TYPES:
        return Category.GRAYSCALE
    if color_type in _RGB_TYPES:
        return Category.RGB
    if color_type in _SCANNED_ALPHA_TYPES:
        if is_cutout_alpha(image.pixels[:, :, 3]):
            return Category.RGB_CUTOUT_ALPHA
        return Category.RGB_FULL_ALPHA
    if color_type == ColorType.RGBA32F:
        return Category.RGB_FULL_ALPHA
    logger.warning(
        "Unsupported pixel format %s in %s", color_type.value, image.path or "<memory>"
    )
    return None
