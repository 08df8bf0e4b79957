"""Decoded image and composite texture records."""

from dataclasses import dataclass, field
from typing import Tuple

import numpy as np

from ..config import Category, ColorType, CompressionFormat, Role

_CHANNELS = {
    ColorType.L8: 1, ColorType.L16: 1, ColorType.L32F: 1, ColorType.I32: 1,
    ColorType.LA8: 2, ColorType.LA16: 2,
    ColorType.RGB8: 3, ColorType.RGB16: 3, ColorType.RGB32F: 3,
    ColorType.RGBA8: 4, ColorType.RGBA16: 4, ColorType.RGBA32F: 4,
}

_DTYPES = {
    ColorType.L8: np.uint8, ColorType.LA8: np.uint8,
    ColorType.RGB8: np.uint8, ColorType.RGBA8: np.uint8,
    ColorType.L16: np.uint16, ColorType.LA16: np.uint16,
    ColorType.RGB16: np.uint16, ColorType.RGBA16: np.uint16,
    ColorType.L32F: np.float32, ColorType.RGB32F: np.float32,
    ColorType.RGBA32F: np.float32,
    ColorType.I32: np.int32,
}

_BIT_DEPTHS = {np.dtype(np.uint8): 8, np.dtype(np.uint16): 16,
               np.dtype(np.float32): 32, np.dtype(np.int32): 32}


def channel_count(color_type: ColorType) -> int:
    """Return the number of channels stored for a color type."""
    return _CHANNELS[color_type]


def expected_dtype(color_type: ColorType) -> np.dtype:
    """Return the numpy sample type stored for a color type."""
    return np.dtype(_DTYPES[color_type])


@dataclass
class DecodedImage:
    """A decoded raster with an explicit pixel layout.

    ``pixels`` always has shape ``(H, W, C)``. The array is frozen on
    construction so no composition step can write into a source image.
    """

    pixels: np.ndarray
    color_type: ColorType
    path: str = ""

    def __post_init__(self) -> None:
        """Normalize to a 3-D read-only array and check it matches the layout."""
        arr = np.asarray(self.pixels)
        if arr.ndim == 2:
            arr = arr[:, :, np.newaxis]
        if arr.ndim != 3:
            raise ValueError(
                f"DecodedImage pixels must be HxW or HxWxC, got shape {arr.shape}"
            )
        expected_channels = channel_count(self.color_type)
        if arr.shape[-1] != expected_channels:
            raise ValueError(
                f"{self.color_type.value} expects {expected_channels} channel(s), "
                f"got array with shape {arr.shape}"
            )
        dtype = expected_dtype(self.color_type)
        if arr.dtype != dtype:
            raise ValueError(
                f"{self.color_type.value} expects {dtype} samples, got {arr.dtype}"
            )
        if arr.shape[0] < 1 or arr.shape[1] < 1:
            raise ValueError(f"DecodedImage must be at least 1x1, got shape {arr.shape}")
        if arr.flags.writeable:
            arr = arr.copy()
            arr.flags.writeable = False
        self.pixels = arr

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """Return ``(width, height)``."""
        return (self.width, self.height)

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[-1])

    @property
    def bit_depth(self) -> int:
        return _BIT_DEPTHS[self.pixels.dtype]

    @property
    def has_alpha(self) -> bool:
        return self.color_type in (
            ColorType.LA8, ColorType.LA16,
            ColorType.RGBA8, ColorType.RGBA16, ColorType.RGBA32F,
        )


@dataclass
class Composite:
    """An RGBA8 buffer assembled for one output slot, ready for encoding."""

    slot: str
    suffix: str
    pixels: np.ndarray
    category: Category
    format: CompressionFormat
    roles: Tuple[Role, ...] = field(default_factory=tuple)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def to_dict(self) -> dict:
        """Return a JSON-friendly summary (pixel data excluded)."""
        return {
            "slot": self.slot,
            "suffix": self.suffix,
            "width": self.width,
            "height": self.height,
            "category": self.category.value,
            "format": self.format.value,
            "roles": [r.value for r in self.roles],
        }
