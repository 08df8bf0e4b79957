"""Split composite textures back into color and alpha images.

This is the mirror of packing height, specular or depth into alpha during
composition. The extracted alpha carries no record of which role it came
from, and DDS block compression is lossy, so the result only approximates
the original sources.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from ..core import is_opaque

logger = logging.getLogger("texture_composer.extract")


def split_alpha(rgba: np.ndarray) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Return ``(rgb, alpha)`` for an ``(H, W, 4)`` uint8 buffer.

    ``alpha`` is None when every alpha sample is fully opaque.
    """
    if rgba.ndim != 3 or rgba.shape[-1] != 4:
        raise ValueError(f"split_alpha expects an HxWx4 array, got shape {rgba.shape}")
    if rgba.dtype != np.uint8:
        raise ValueError(f"split_alpha expects uint8 samples, got {rgba.dtype}")

    rgb = rgba[:, :, :3].copy()
    alpha_view = rgba[:, :, 3]
    if is_opaque(alpha_view):
        return rgb, None
    return rgb, alpha_view.copy()
