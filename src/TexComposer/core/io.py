"""Image I/O utilities -- decode rasters with their native layout, write PNGs."""

import logging
import os
import threading
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from ..config import ColorType
from .records import DecodedImage, channel_count

logger = logging.getLogger("texture_composer")

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_TIFF_EXTS = {".tif", ".tiff"}

# Pillow mode -> cv2 sample type -> layout, for multi-channel data Pillow
# would silently truncate to 8 bits.
_CV2_LAYOUTS = {
    "LA": {np.uint16: ColorType.LA16},
    "RGB": {np.uint16: ColorType.RGB16, np.float32: ColorType.RGB32F},
    "RGBA": {np.uint16: ColorType.RGBA16, np.float32: ColorType.RGBA32F},
}

_UNSUPPORTED_COMPOSE_TYPES = {ColorType.L32F, ColorType.I32}


class ImageDecodeError(IOError):
    """Raised when a source raster or container cannot be decoded."""


def _infer_integer_mode_bit_depth(img: Image.Image, ext: str) -> int:
    """Infer bit depth for Pillow mode ``I`` images.

    Prefers explicit metadata over the file extension.
    """
    bits_info = img.info.get("bits")
    if isinstance(bits_info, int) and bits_info > 0:
        return bits_info

    # TIFF BitsPerSample tag
    tag_v2 = getattr(img, "tag_v2", None)
    if tag_v2 is not None:
        bits_tag = tag_v2.get(258)
        if isinstance(bits_tag, tuple) and bits_tag:
            bits_tag = bits_tag[0]
        if isinstance(bits_tag, int) and bits_tag > 0:
            return bits_tag

    # PNG never stores more than 16 bits per sample.
    if ext in (".png", ".tif", ".tiff"):
        return 16
    return 32


def _png_bit_depth(path: str) -> int:
    """Read the per-sample bit depth from a PNG's IHDR chunk."""
    with open(path, "rb") as f:
        header = f.read(26)
    if len(header) < 26 or header[:8] != _PNG_SIGNATURE or header[12:16] != b"IHDR":
        return 8
    return header[24]


def _stored_bits(img: Image.Image, path: str) -> int:
    """Return the widest sample depth the file stores, before Pillow narrows it."""
    if img.format == "PNG":
        return _png_bit_depth(path)
    if img.format == "TIFF":
        bits = img.tag_v2.get(258)
        if isinstance(bits, tuple):
            bits = max(bits) if bits else None
        if isinstance(bits, int):
            return bits
    return 8


def _needs_cv2(img: Image.Image, path: str) -> bool:
    """True when Pillow would truncate wide multi-channel samples to 8 bits."""
    return img.mode in _CV2_LAYOUTS and _stored_bits(img, path) > 8


def _load_high_depth_with_cv2(path: str, mode: Optional[str] = None):
    """Return a DecodedImage for 16-bit/float LA, RGB or RGBA rasters, else None.

    ``mode`` is the channel layout Pillow reported for the file. cv2 expands
    gray+alpha to four channels, so it is needed to tell LA from RGBA.
    """
    arr = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if arr is None or arr.ndim != 3 or arr.shape[-1] not in (3, 4):
        return None
    if arr.shape[-1] == 4:
        arr = arr[:, :, [2, 1, 0, 3]]  # BGRA -> RGBA
    else:
        arr = arr[:, :, ::-1]  # BGR -> RGB
    if mode is None:
        mode = "RGBA" if arr.shape[-1] == 4 else "RGB"
    if mode == "LA" and arr.shape[-1] == 4:
        arr = arr[:, :, [0, 3]]
    color_type = _CV2_LAYOUTS.get(mode, {}).get(arr.dtype.type)
    if color_type is None or channel_count(color_type) != arr.shape[-1]:
        return None
    logger.debug("Loaded %s through cv2 as %s", path, color_type.value)
    return DecodedImage(np.ascontiguousarray(arr), color_type, path)


def _decode_pillow(img: Image.Image, path: str, ext: str) -> DecodedImage:
    mode = img.mode
    if mode in ("I;16", "I;16L", "I;16B", "I;16N"):
        arr = np.asarray(img).astype(np.uint16)
        return DecodedImage(arr, ColorType.L16, path)

    if mode == "I":
        arr = np.asarray(img)
        bit_depth = _infer_integer_mode_bit_depth(img, ext)
        if bit_depth <= 16:
            logger.debug("Loading %s mode I as %d-bit grayscale", path, bit_depth)
            return DecodedImage(
                np.clip(arr, 0, 65535).astype(np.uint16), ColorType.L16, path
            )
        return DecodedImage(arr.astype(np.int32), ColorType.I32, path)

    if mode == "F":
        return DecodedImage(np.asarray(img, dtype=np.float32), ColorType.L32F, path)

    if mode == "1":
        with img.convert("L") as converted:
            return DecodedImage(np.asarray(converted, dtype=np.uint8), ColorType.L8, path)

    if mode in ("P", "PA"):
        has_transparency = mode == "PA" or "transparency" in img.info
        target = "RGBA" if has_transparency else "RGB"
        logger.debug("Converting palette image '%s' from %s->%s", path, mode, target)
        with img.convert(target) as converted:
            color_type = ColorType.RGBA8 if target == "RGBA" else ColorType.RGB8
            return DecodedImage(np.asarray(converted, dtype=np.uint8), color_type, path)

    native = {
        "L": ColorType.L8,
        "LA": ColorType.LA8,
        "RGB": ColorType.RGB8,
        "RGBA": ColorType.RGBA8,
    }
    if mode in native:
        return DecodedImage(np.asarray(img, dtype=np.uint8), native[mode], path)

    converted_modes = {
        "La": ("LA", ColorType.LA8),
        "RGBa": ("RGBA", ColorType.RGBA8),
        "RGBX": ("RGB", ColorType.RGB8),
        "CMYK": ("RGB", ColorType.RGB8),
        "YCbCr": ("RGB", ColorType.RGB8),
        "LAB": ("RGB", ColorType.RGB8),
        "HSV": ("RGB", ColorType.RGB8),
    }
    if mode in converted_modes:
        target, color_type = converted_modes[mode]
        logger.debug("Converting image '%s' from %s->%s", path, mode, target)
        with img.convert(target) as converted:
            return DecodedImage(np.asarray(converted, dtype=np.uint8), color_type, path)

    raise ImageDecodeError(f"Unsupported Pillow image mode '{mode}' in {path}")


def load_image(path: str) -> DecodedImage:
    """Decode a raster into a DecodedImage that keeps its native layout."""
    ext = Path(path).suffix.lower()
    try:
        try:
            img = Image.open(path)
        except UnidentifiedImageError:
            # Pillow has no mode for float RGB(A) TIFF.
            decoded = _load_high_depth_with_cv2(path) if ext in _TIFF_EXTS else None
            if decoded is None:
                raise
            return decoded
        with img:
            if _needs_cv2(img, path):
                decoded = _load_high_depth_with_cv2(path, img.mode)
                if decoded is not None:
                    return decoded
            img.load()
            return _decode_pillow(img, path, ext)
    except ImageDecodeError:
        raise
    except Exception as e:
        logger.debug("Failed to decode image '%s' (ext=%s): %s", path, ext, e)
        raise ImageDecodeError(f"Failed to decode {path}: {e}") from e


def load_container(path: str) -> np.ndarray:
    """Decode the top mip of a DDS container into an ``(H, W, 4)`` uint8 array."""
    try:
        from PIL import DdsImagePlugin  # noqa: F401
        with Image.open(path) as img:
            pixel_format = getattr(img, "pixel_format", "unknown")
            logger.debug(
                "DDS loaded: %s mode=%s pixel_format=%s size=%s",
                path, img.mode, pixel_format, img.size,
            )
            with img.convert("RGBA") as converted:
                return np.array(converted, dtype=np.uint8)
    except Exception as e:
        raise ImageDecodeError(f"Failed to decode container {path}: {e}") from e


def save_png(arr: np.ndarray, path: str):
    """Save a uint8 grayscale, RGB or RGBA array as PNG.

    Uses atomic write (temp file + ``os.replace``) to prevent truncated
    output on crash.
    """
    if arr.dtype != np.uint8:
        raise ValueError(f"save_png expects uint8 samples, got {arr.dtype}")
    if arr.ndim == 3 and arr.shape[-1] == 1:
        arr = arr[:, :, 0]
    if arr.size == 0 or arr.ndim not in (2, 3) or (arr.ndim == 3 and arr.shape[-1] not in (3, 4)):
        raise ValueError(
            f"Cannot save array with shape {arr.shape} to {path}"
        )

    parent_dir = os.path.dirname(path) or "."
    os.makedirs(parent_dir, exist_ok=True)
    tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}.png"
    try:
        with Image.fromarray(np.ascontiguousarray(arr)) as img:
            img.save(tmp_path, format="PNG", optimize=True)
        os.replace(tmp_path, path)
        logger.debug("Saved: %s (%s)", path, arr.shape)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def is_composable(image: DecodedImage) -> bool:
    """Return whether the image layout can be converted to RGBA8."""
    return image.color_type not in _UNSUPPORTED_COMPOSE_TYPES


def to_uint8(arr: np.ndarray) -> np.ndarray:
    """Scale 8-bit, 16-bit or [0, 1] float samples to a new uint8 array."""
    if arr.dtype == np.uint8:
        return arr.copy()
    if arr.dtype == np.uint16:
        wide = arr.astype(np.uint32)
        return ((wide * 255 + 32767) // 65535).astype(np.uint8)
    if arr.dtype == np.float32 or arr.dtype == np.float64:
        clean = np.nan_to_num(arr.astype(np.float32), nan=0.0)
        return np.round(np.clip(clean, 0.0, 1.0) * 255.0).astype(np.uint8)
    raise ValueError(f"Cannot scale {arr.dtype} samples to 8 bits")


def to_rgba8(image: DecodedImage) -> np.ndarray:
    """Expand a decoded image into a freshly allocated ``(H, W, 4)`` uint8 buffer.

    Gray is replicated into RGB, missing alpha is filled opaque.
    """
    if not is_composable(image):
        raise ValueError(
            f"Pixel format {image.color_type.value} cannot be converted to RGBA8"
        )
    data = to_uint8(image.pixels)
    out = np.empty((image.height, image.width, 4), dtype=np.uint8)
    channels = image.channels
    if channels in (1, 2):
        out[:, :, :3] = data[:, :, 0:1]
        out[:, :, 3] = data[:, :, 1] if channels == 2 else 255
    elif channels == 3:
        out[:, :, :3] = data
        out[:, :, 3] = 255
    else:
        out[:] = data
    return out


def first_channel8(image: DecodedImage) -> np.ndarray:
    """Return channel 0 of an image as a new ``(H, W)`` uint8 array."""
    if not is_composable(image):
        raise ValueError(
            f"Pixel format {image.color_type.value} has no 8-bit channel view"
        )
    return to_uint8(image.pixels[:, :, 0])
