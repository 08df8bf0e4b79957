"""Tests for image decoding, PNG writing and channel conversion."""

import os
import shutil
import struct
import tempfile
import unittest
import zlib
from unittest import mock

import cv2
import numpy as np
import pytest
from PIL import Image

from TexComposer.config import Category, ColorType
from TexComposer.core import (
    DecodedImage, ImageDecodeError, classify_image, first_channel8, is_composable,
    load_container, load_image, save_png, to_rgba8, to_uint8,
)


def _png_chunk(tag, data):
    return (struct.pack(">I", len(data)) + tag + data
            + struct.pack(">I", zlib.crc32(tag + data) & 0xFFFFFFFF))


def _write_png16_gray_alpha(path, gray, alpha):
    """Write a bit depth 16, colour type 4 PNG (neither Pillow nor cv2 can)."""
    height, width = gray.shape
    samples = np.stack([gray, alpha], axis=-1).astype(">u2")
    raw = b"".join(b"\x00" + samples[y].tobytes() for y in range(height))
    ihdr = struct.pack(">IIBBBBB", width, height, 16, 4, 0, 0, 0)
    with open(path, "wb") as f:
        f.write(b"\x89PNG\r\n\x1a\n")
        f.write(_png_chunk(b"IHDR", ihdr))
        f.write(_png_chunk(b"IDAT", zlib.compress(raw)))
        f.write(_png_chunk(b"IEND", b""))


class TestLoadImage(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _path(self, name):
        return os.path.join(self.tmpdir, name)

    def test_8bit_modes_keep_layout(self):
        cases = [
            ("L", np.zeros((3, 4), dtype=np.uint8), ColorType.L8),
            ("LA", np.zeros((3, 4, 2), dtype=np.uint8), ColorType.LA8),
            ("RGB", np.zeros((3, 4, 3), dtype=np.uint8), ColorType.RGB8),
            ("RGBA", np.zeros((3, 4, 4), dtype=np.uint8), ColorType.RGBA8),
        ]
        for mode, arr, expected in cases:
            path = self._path(f"{mode}.png")
            Image.fromarray(arr).save(path)
            image = load_image(path)
            self.assertEqual(image.color_type, expected, mode)
            self.assertEqual((image.width, image.height), (4, 3))
            self.assertEqual(image.path, path)

    def test_rgba_values_preserved(self):
        arr = np.random.default_rng(1).integers(0, 256, (5, 6, 4), dtype=np.uint8)
        path = self._path("diffuse.png")
        Image.fromarray(arr).save(path)
        image = load_image(path)
        np.testing.assert_array_equal(image.pixels, arr)

    def test_16bit_gray_png(self):
        arr = np.array([[0, 1000], [40000, 65535]], dtype=np.uint16)
        path = self._path("height.png")
        Image.fromarray(arr).save(path)
        image = load_image(path)
        self.assertEqual(image.color_type, ColorType.L16)
        np.testing.assert_array_equal(image.pixels[:, :, 0], arr)

    def test_16bit_rgb_png_through_cv2(self):
        bgr = np.zeros((2, 3, 3), dtype=np.uint16)
        bgr[:, :, 0] = 100    # B
        bgr[:, :, 2] = 60000  # R
        path = self._path("normal.png")
        self.assertTrue(cv2.imwrite(path, bgr))
        image = load_image(path)
        self.assertEqual(image.color_type, ColorType.RGB16)
        self.assertTrue((image.pixels[:, :, 0] == 60000).all())
        self.assertTrue((image.pixels[:, :, 2] == 100).all())

    def test_16bit_gray_alpha_png_stays_grayscale(self):
        gray = np.array([[0, 30000], [50000, 65535]], dtype=np.uint16)
        alpha = np.array([[65535, 0], [65535, 65535]], dtype=np.uint16)
        path = self._path("diffuse.png")
        _write_png16_gray_alpha(path, gray, alpha)
        image = load_image(path)
        self.assertEqual(image.color_type, ColorType.LA16)
        np.testing.assert_array_equal(image.pixels[:, :, 0], gray)
        np.testing.assert_array_equal(image.pixels[:, :, 1], alpha)
        self.assertEqual(classify_image(image), Category.GRAYSCALE)

    def test_8bit_png_skips_cv2(self):
        path = self._path("glow.png")
        Image.fromarray(np.zeros((2, 2, 3), dtype=np.uint8)).save(path)
        with mock.patch("TexComposer.core.io.cv2.imread") as imread:
            self.assertEqual(load_image(path).color_type, ColorType.RGB8)
        imread.assert_not_called()

    def test_float_tiff_is_not_composable(self):
        path = self._path("height.tiff")
        Image.fromarray(np.full((2, 2), 0.5, dtype=np.float32)).save(path)
        image = load_image(path)
        self.assertEqual(image.color_type, ColorType.L32F)
        self.assertFalse(is_composable(image))

    def test_palette_with_transparency_becomes_rgba(self):
        img = Image.new("P", (2, 2), 0)
        img.putpalette([0, 0, 0, 255, 0, 0] + [0] * 762)
        path = self._path("glow.png")
        img.save(path, transparency=0)
        self.assertEqual(load_image(path).color_type, ColorType.RGBA8)

    def test_garbage_raises_decode_error(self):
        path = self._path("diffuse.png")
        with open(path, "wb") as f:
            f.write(b"not an image at all")
        with self.assertRaises(ImageDecodeError):
            load_image(path)

    def test_missing_file_raises_decode_error(self):
        with self.assertRaises(ImageDecodeError):
            load_image(self._path("missing.tga"))


class TestSavePng(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_writes_gray_and_rgb(self):
        gray = np.arange(6, dtype=np.uint8).reshape(2, 3)
        rgb = np.zeros((2, 3, 3), dtype=np.uint8)
        gray_path = os.path.join(self.tmpdir, "sub", "a_alpha.png")
        rgb_path = os.path.join(self.tmpdir, "a.png")
        save_png(gray, gray_path)
        save_png(rgb, rgb_path)
        with Image.open(gray_path) as img:
            self.assertEqual(img.mode, "L")
            np.testing.assert_array_equal(np.asarray(img), gray)
        with Image.open(rgb_path) as img:
            self.assertEqual(img.mode, "RGB")
        leftovers = [n for n in os.listdir(self.tmpdir) if ".tmp." in n]
        self.assertEqual(leftovers, [])

    def test_rejects_non_uint8(self):
        with self.assertRaises(ValueError):
            save_png(np.zeros((2, 2), dtype=np.float32), os.path.join(self.tmpdir, "x.png"))
        with self.assertRaises(ValueError):
            save_png(np.zeros((2, 2, 2), dtype=np.uint8), os.path.join(self.tmpdir, "x.png"))


class TestChannelConversion(unittest.TestCase):
    def test_to_uint8_16bit_rounding(self):
        arr = np.array([0, 128, 257, 32768, 65535], dtype=np.uint16)
        np.testing.assert_array_equal(to_uint8(arr), [0, 0, 1, 128, 255])

    def test_to_uint8_float_clips(self):
        arr = np.array([-1.0, 0.0, 0.5, 1.0, 2.0, np.nan], dtype=np.float32)
        np.testing.assert_array_equal(to_uint8(arr), [0, 0, 128, 255, 255, 0])

    def test_to_rgba8_gray_alpha(self):
        arr = np.array([[[10, 20]]], dtype=np.uint8)
        out = to_rgba8(DecodedImage(arr, ColorType.LA8))
        self.assertEqual(out[0, 0].tolist(), [10, 10, 10, 20])

    def test_to_rgba8_rgb_gets_opaque_alpha(self):
        arr = np.array([[[1, 2, 3]]], dtype=np.uint8)
        out = to_rgba8(DecodedImage(arr, ColorType.RGB8))
        self.assertEqual(out[0, 0].tolist(), [1, 2, 3, 255])

    def test_to_rgba8_rgba32f(self):
        arr = np.array([[[1.0, 0.0, 0.5, 0.25]]], dtype=np.float32)
        out = to_rgba8(DecodedImage(arr, ColorType.RGBA32F))
        self.assertEqual(out[0, 0].tolist(), [255, 0, 128, 64])

    def test_unsupported_conversions_raise(self):
        image = DecodedImage(np.zeros((1, 1), dtype=np.int32), ColorType.I32)
        with self.assertRaises(ValueError):
            to_rgba8(image)
        with self.assertRaises(ValueError):
            first_channel8(image)


@pytest.mark.slow
class TestLoadContainer(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_uncompressed_rgba_dds(self):
        arr = np.zeros((4, 4, 4), dtype=np.uint8)
        arr[:, :, 0] = 200
        arr[:, :, 3] = 17
        path = os.path.join(self.tmpdir, "armor.dds")
        Image.fromarray(arr).save(path)
        out = load_container(path)
        self.assertEqual(out.shape, (4, 4, 4))
        self.assertEqual(out.dtype, np.uint8)
        np.testing.assert_array_equal(out, arr)

    def test_bad_container_raises(self):
        path = os.path.join(self.tmpdir, "broken.dds")
        with open(path, "wb") as f:
            f.write(b"DDS " + b"\x00" * 10)
        with self.assertRaises(ImageDecodeError):
            load_container(path)


if __name__ == "__main__":
    unittest.main(verbosity=2)
