"""Compression format policy and encoder/DDS format vocabularies."""

from ..config import Category, CompressionFormat

_LEGACY = {
    Category.GRAYSCALE: CompressionFormat.BC1,
    Category.RGB: CompressionFormat.BC1,
    Category.RGB_FULL_ALPHA: CompressionFormat.BC3,
    Category.RGB_CUTOUT_ALPHA: CompressionFormat.BC1,
    Category.UNCOMPRESSED: CompressionFormat.RGBA8,
}

_MODERN = {
    Category.GRAYSCALE: CompressionFormat.BC4,
    Category.RGB: CompressionFormat.BC1,
    Category.RGB_FULL_ALPHA: CompressionFormat.BC7,
    Category.RGB_CUTOUT_ALPHA: CompressionFormat.BC1,
    Category.UNCOMPRESSED: CompressionFormat.RGBA8,
}

_MODERN_HQ = {
    Category.GRAYSCALE: CompressionFormat.BC4,
    Category.RGB: CompressionFormat.BC7,
    Category.RGB_FULL_ALPHA: CompressionFormat.BC7,
    Category.RGB_CUTOUT_ALPHA: CompressionFormat.BC7,
    Category.UNCOMPRESSED: CompressionFormat.RGBA8,
}


def pick_format(category: Category, legacy_mode: bool,
                high_quality: bool) -> CompressionFormat:
    """Map a category and the two policy flags to a DDS pixel format.

    Legacy mode restricts output to BC1/BC3, which older engines read;
    high quality only changes the modern table.
    """
    if legacy_mode:
        return _LEGACY[category]
    if high_quality:
        return _MODERN_HQ[category]
    return _MODERN[category]


# Encoder-specific format arguments.
COMPRESSONATOR_FORMATS = {
    CompressionFormat.BC1: "BC1",
    CompressionFormat.BC3: "BC3",
    CompressionFormat.BC4: "BC4",
    CompressionFormat.BC7: "BC7",
    CompressionFormat.RGBA8: "ARGB_8888",
}

TEXCONV_FORMATS = {
    CompressionFormat.BC1: "BC1_UNORM",
    CompressionFormat.BC3: "BC3_UNORM",
    CompressionFormat.BC4: "BC4_UNORM",
    CompressionFormat.BC7: "BC7_UNORM",
    CompressionFormat.RGBA8: "R8G8B8A8_UNORM",
}

# DDS header codes -> format, for checking what an encoder produced.
DDS_FORMAT_FROM_DXGI = {
    28: CompressionFormat.RGBA8, 29: CompressionFormat.RGBA8,
    87: CompressionFormat.RGBA8, 91: CompressionFormat.RGBA8,
    71: CompressionFormat.BC1, 72: CompressionFormat.BC1,
    77: CompressionFormat.BC3, 78: CompressionFormat.BC3,
    80: CompressionFormat.BC4, 81: CompressionFormat.BC4,
    98: CompressionFormat.BC7, 99: CompressionFormat.BC7,
}

DDS_FORMAT_FROM_FOURCC = {
    b"DXT1": CompressionFormat.BC1,
    b"DXT5": CompressionFormat.BC3,
    b"ATI1": CompressionFormat.BC4,
    b"BC4U": CompressionFormat.BC4,
}

# Bytes per 4x4 block for block-compressed formats.
BLOCK_BYTES = {
    CompressionFormat.BC1: 8,
    CompressionFormat.BC3: 16,
    CompressionFormat.BC4: 8,
    CompressionFormat.BC7: 16,
}
