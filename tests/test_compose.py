"""Tests for slot composition."""

import unittest

import numpy as np

from TexComposer.config import Category, ColorType, ComposeFlags, CompressionFormat, Role
from TexComposer.core import DecodedImage
from TexComposer.phases.compose import (
    PARALLAX_BASELINE, SLOTS, CompositionError, active_slots, compose_all,
    compose_slot,
)
from TexComposer.phases.extract import split_alpha


def gray(values, dtype=np.uint8):
    arr = np.asarray(values, dtype=dtype)
    color_type = ColorType.L8 if dtype == np.uint8 else ColorType.L16
    return DecodedImage(arr, color_type)


def rgb(h, w, value=(10, 20, 30)):
    arr = np.empty((h, w, 3), dtype=np.uint8)
    arr[:] = value
    return DecodedImage(arr, ColorType.RGB8)


def rgba(h, w, alpha=255, value=(10, 20, 30)):
    arr = np.empty((h, w, 4), dtype=np.uint8)
    arr[:, :, :3] = value
    arr[:, :, 3] = alpha
    return DecodedImage(arr, ColorType.RGBA8)


def ramp(h, w):
    return gray(np.arange(h * w, dtype=np.uint8).reshape(h, w) * 7)


def by_suffix(report):
    return {c.suffix: c for c in report.composites}


def spec_for(name, flags=ComposeFlags()):
    return next(s for s in active_slots(flags) if s.name == name)


class TestSlotRegistry(unittest.TestCase):
    def test_emission_order(self):
        suffixes = [s.suffix for s in active_slots(ComposeFlags())]
        self.assertEqual(
            suffixes,
            ["", "_n", "_g", "_sk", "_p", "_e", "_m", "_i", "_subsurface", "_s", "_b"],
        )

    def test_env_mask_variants_are_exclusive(self):
        for complex_parallax in (False, True):
            flags = ComposeFlags(complex_parallax=complex_parallax)
            env = [s for s in active_slots(flags) if s.suffix == "_m"]
            self.assertEqual(len(env), 1)
        self.assertEqual(sum(1 for s in SLOTS if s.suffix == "_m"), 2)


class TestTerrainParallax(unittest.TestCase):
    def test_height_lands_in_diffuse_alpha(self):
        height = ramp(4, 4)
        images = {Role.DIFFUSE: rgba(4, 4, alpha=255), Role.HEIGHT: height}
        report = compose_all(images, ComposeFlags(terrain_parallax=True))
        self.assertEqual(report.errors, {})
        diffuse = by_suffix(report)[""]
        self.assertEqual(diffuse.category, Category.RGB_FULL_ALPHA)
        self.assertEqual(diffuse.format, CompressionFormat.BC7)
        np.testing.assert_array_equal(diffuse.pixels[:, :, 3], height.pixels[:, :, 0])
        np.testing.assert_array_equal(diffuse.pixels[:, :, :3],
                                      np.broadcast_to([10, 20, 30], (4, 4, 3)))
        self.assertIn("_p", by_suffix(report))

    def test_round_trip_through_alpha_extractor(self):
        height = ramp(3, 5)
        images = {Role.DIFFUSE: rgb(3, 5), Role.HEIGHT: height}
        diffuse = by_suffix(compose_all(images, ComposeFlags(terrain_parallax=True)))[""]
        color, alpha = split_alpha(diffuse.pixels)
        self.assertIsNotNone(alpha)
        np.testing.assert_array_equal(alpha, height.pixels[:, :, 0])
        np.testing.assert_array_equal(color, images[Role.DIFFUSE].pixels)

    def test_missing_height_keeps_diffuse(self):
        images = {Role.DIFFUSE: rgb(2, 2)}
        with self.assertLogs("texture_composer.compose", level="WARNING"):
            report = compose_all(images, ComposeFlags(terrain_parallax=True))
        diffuse = by_suffix(report)[""]
        self.assertEqual(diffuse.category, Category.RGB)
        self.assertTrue((diffuse.pixels[:, :, 3] == 255).all())

    def test_height_ignored_without_flag(self):
        images = {Role.DIFFUSE: rgb(2, 2), Role.HEIGHT: ramp(2, 2)}
        diffuse = by_suffix(compose_all(images, ComposeFlags()))[""]
        self.assertTrue((diffuse.pixels[:, :, 3] == 255).all())
        self.assertEqual(diffuse.roles, (Role.DIFFUSE,))

    def test_height_size_mismatch_fails_diffuse_only(self):
        images = {Role.DIFFUSE: rgb(4, 4), Role.HEIGHT: ramp(2, 2)}
        report = compose_all(images, ComposeFlags(terrain_parallax=True))
        self.assertIn("diffuse", report.errors)
        self.assertNotIn("", by_suffix(report))
        self.assertIn("_p", by_suffix(report))


class TestDiffuseClassification(unittest.TestCase):
    def test_cutout_diffuse(self):
        image = rgba(2, 2, alpha=np.array([[0, 255], [255, 0]]))
        diffuse = by_suffix(compose_all({Role.DIFFUSE: image}, ComposeFlags()))[""]
        self.assertEqual(diffuse.category, Category.RGB_CUTOUT_ALPHA)
        self.assertEqual(diffuse.format, CompressionFormat.BC1)

    def test_legacy_full_alpha(self):
        image = rgba(2, 2, alpha=np.array([[0, 128], [255, 0]]))
        diffuse = by_suffix(compose_all({Role.DIFFUSE: image},
                                        ComposeFlags(legacy_format=True)))[""]
        self.assertEqual(diffuse.format, CompressionFormat.BC3)

    def test_unsupported_diffuse_is_reported(self):
        image = DecodedImage(np.zeros((2, 2), dtype=np.float32), ColorType.L32F)
        report = compose_all({Role.DIFFUSE: image, Role.GLOW: rgb(2, 2)}, ComposeFlags())
        self.assertIn("diffuse", report.errors)
        self.assertEqual(list(by_suffix(report)), ["_g"])


class TestNormalSlot(unittest.TestCase):
    def test_specular_packed_into_alpha(self):
        spec = ramp(2, 2)
        images = {Role.NORMAL: rgb(2, 2, (128, 128, 255)), Role.SPECULAR: spec}
        normal = by_suffix(compose_all(images, ComposeFlags()))["_n"]
        self.assertEqual(normal.category, Category.RGB_FULL_ALPHA)
        self.assertEqual(normal.format, CompressionFormat.BC7)
        np.testing.assert_array_equal(normal.pixels[:, :, 3], spec.pixels[:, :, 0])

    def test_normal_without_specular_is_always_high_quality(self):
        normal = by_suffix(compose_all({Role.NORMAL: rgb(2, 2)}, ComposeFlags()))["_n"]
        self.assertEqual(normal.category, Category.RGB)
        self.assertEqual(normal.format, CompressionFormat.BC7)

    def test_normal_with_own_alpha(self):
        normal = by_suffix(compose_all({Role.NORMAL: rgba(2, 2, alpha=40)},
                                       ComposeFlags()))["_n"]
        self.assertEqual(normal.category, Category.RGB_FULL_ALPHA)
        self.assertTrue((normal.pixels[:, :, 3] == 40).all())

    def test_size_mismatch_skips_normal_only(self):
        images = {
            Role.NORMAL: rgb(2, 2),
            Role.SPECULAR: ramp(3, 3),
            Role.GLOW: rgb(2, 2),
        }
        with self.assertLogs("texture_composer.compose", level="ERROR"):
            report = compose_all(images, ComposeFlags())
        self.assertIn("normal", report.errors)
        suffixes = list(by_suffix(report))
        self.assertNotIn("_n", suffixes)
        self.assertEqual(suffixes, ["_g", "_s"])

    def test_larger_secondary_is_also_rejected(self):
        images = {Role.NORMAL: rgb(3, 3), Role.SPECULAR: ramp(2, 2)}
        with self.assertRaises(CompositionError):
            compose_slot(spec_for("normal"), images, ComposeFlags())

    def test_mixed_bit_depth_rejected(self):
        spec16 = gray(np.full((2, 2), 1000), dtype=np.uint16)
        images = {Role.NORMAL: rgb(2, 2), Role.SPECULAR: spec16}
        with self.assertRaises(CompositionError):
            compose_slot(spec_for("normal"), images, ComposeFlags())


class TestInnerSlot(unittest.TestCase):
    def test_inner_depth_in_alpha(self):
        depth = ramp(2, 3)
        images = {Role.INNER_DIFFUSE: rgb(2, 3), Role.INNER_DEPTH: depth}
        inner = by_suffix(compose_all(images, ComposeFlags(legacy_format=True)))["_i"]
        self.assertEqual(inner.category, Category.RGB_FULL_ALPHA)
        self.assertEqual(inner.format, CompressionFormat.BC3)
        np.testing.assert_array_equal(inner.pixels[:, :, 3], depth.pixels[:, :, 0])

    def test_depth_alone_emits_nothing(self):
        report = compose_all({Role.INNER_DEPTH: ramp(2, 2)}, ComposeFlags())
        self.assertEqual(report.composites, [])
        self.assertEqual(report.errors, {})


class TestSingleRoleSlots(unittest.TestCase):
    def test_specular_only_emits_only_s(self):
        spec = gray([[1, 2], [3, 4]])
        report = compose_all({Role.SPECULAR: spec}, ComposeFlags())
        self.assertEqual([c.suffix for c in report.composites], ["_s"])
        out = report.composites[0]
        self.assertEqual(out.category, Category.GRAYSCALE)
        self.assertEqual(out.format, CompressionFormat.BC4)
        self.assertEqual(out.roles, (Role.SPECULAR,))
        for channel in range(3):
            np.testing.assert_array_equal(out.pixels[:, :, channel], [[1, 2], [3, 4]])
        self.assertTrue((out.pixels[:, :, 3] == 255).all())

    def test_fixed_categories(self):
        images = {
            Role.GLOW: rgb(1, 1), Role.SKIN_TINT: rgb(1, 1),
            Role.HEIGHT: ramp(1, 1), Role.CUBEMAP: rgb(1, 1),
            Role.ENV_MASK: ramp(1, 1), Role.SUBSURFACE: rgb(1, 1),
            Role.BACKLIGHT: rgb(1, 1),
        }
        out = by_suffix(compose_all(images, ComposeFlags()))
        expected = {
            "_g": Category.RGB, "_sk": Category.RGB, "_p": Category.GRAYSCALE,
            "_e": Category.GRAYSCALE, "_m": Category.GRAYSCALE,
            "_subsurface": Category.RGB, "_b": Category.RGB,
        }
        self.assertEqual({k: v.category for k, v in out.items()}, expected)

    def test_sixteen_bit_source_is_scaled(self):
        height = gray([[0, 65535], [257, 32768]], dtype=np.uint16)
        out = by_suffix(compose_all({Role.HEIGHT: height}, ComposeFlags()))["_p"]
        np.testing.assert_array_equal(out.pixels[:, :, 0], [[0, 255], [1, 128]])

    def test_sources_are_not_mutated(self):
        diffuse = rgb(2, 2)
        height = ramp(2, 2)
        before = diffuse.pixels.copy()
        out = by_suffix(compose_all({Role.DIFFUSE: diffuse, Role.HEIGHT: height},
                                    ComposeFlags(terrain_parallax=True)))[""]
        np.testing.assert_array_equal(diffuse.pixels, before)
        self.assertFalse(np.shares_memory(out.pixels, diffuse.pixels))


class TestComplexParallax(unittest.TestCase):
    def test_baseline_fill_for_missing_channels(self):
        env = gray([[9, 8], [7, 6]])
        height = gray([[1, 2], [3, 4]])
        flags = ComposeFlags(complex_parallax=True)
        out = by_suffix(compose_all({Role.ENV_MASK: env, Role.HEIGHT: height}, flags))["_m"]
        self.assertEqual(out.category, Category.RGB_FULL_ALPHA)
        np.testing.assert_array_equal(out.pixels[:, :, 0], [[9, 8], [7, 6]])
        self.assertTrue((out.pixels[:, :, 1] == 5).all())
        self.assertTrue((out.pixels[:, :, 2] == 0).all())
        np.testing.assert_array_equal(out.pixels[:, :, 3], [[1, 2], [3, 4]])

    def test_all_channels_present(self):
        flags = ComposeFlags(complex_parallax=True)
        images = {
            Role.ENV_MASK: gray([[1]]), Role.GLOSSINESS: gray([[2]]),
            Role.METALLIC: gray([[3]]), Role.HEIGHT: gray([[4]]),
        }
        out = by_suffix(compose_all(images, flags))["_m"]
        self.assertEqual(out.pixels[0, 0].tolist(), [1, 2, 3, 4])

    def test_glossiness_alone_sets_dimensions(self):
        flags = ComposeFlags(complex_parallax=True)
        out = by_suffix(compose_all({Role.GLOSSINESS: ramp(3, 2)}, flags))["_m"]
        self.assertEqual((out.width, out.height), (2, 3))
        self.assertTrue((out.pixels[:, :, 0] == PARALLAX_BASELINE[0]).all())
        self.assertTrue((out.pixels[:, :, 3] == PARALLAX_BASELINE[3]).all())

    def test_no_inputs_is_reported(self):
        flags = ComposeFlags(complex_parallax=True)
        report = compose_all({Role.DIFFUSE: rgb(1, 1)}, flags)
        self.assertIn("env_mask", report.errors)
        self.assertEqual([c.suffix for c in report.composites], [""])


if __name__ == "__main__":
    unittest.main(verbosity=2)
