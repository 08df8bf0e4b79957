"""Core utilities -- re-exports all public symbols for convenience."""

from .records import DecodedImage, Composite, channel_count
from .io import (
    ImageDecodeError,
    load_image,
    load_container,
    save_png,
    is_composable,
    to_uint8,
    to_rgba8,
    first_channel8,
)
from .classify import (
    all_samples_in, has_alpha, is_cutout_alpha, is_opaque, classify_image,
)
from .formats import pick_format
from .scanning import scan_directory, scan_containers
from .paths import get_output_path
from .logging import setup_logging

__all__ = [
    "DecodedImage", "Composite", "channel_count",
    "ImageDecodeError", "load_image", "load_container", "save_png",
    "is_composable", "to_uint8", "to_rgba8", "first_channel8",
    "all_samples_in", "has_alpha", "is_cutout_alpha", "is_opaque", "classify_image",
    "pick_format",
    "scan_directory", "scan_containers",
    "get_output_path",
    "setup_logging",
]
