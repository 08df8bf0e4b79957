"""Compose role images into per-slot RGBA composites.

Every output texture is described by one `SlotSpec` in `SLOTS`: the roles
that trigger it, the builder that assigns source channels to composite
channels, and whether format selection is forced to high quality.
`compose_slot` is the single driver for all of them; `compose_all` runs
the whole registry and isolates failures per slot.

All builders copy channels at identical pixel coordinates and allocate a
new RGBA8 buffer; source images are never written to.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import Category, ComposeFlags, Role
from ..core import (
    Composite, DecodedImage, classify_image, first_channel8, has_alpha, is_composable,
    pick_format, to_rgba8,
)

logger = logging.getLogger("texture_composer.compose")

RoleImages = Mapping[Role, DecodedImage]
# A builder returns (rgba8 pixels, category, roles that contributed).
BuildResult = Tuple[np.ndarray, Category, Tuple[Role, ...]]

# Fill value for complex parallax env maps before any source is copied in.
PARALLAX_BASELINE = (0, 5, 0, 255)

# Complex parallax channel layout: R env_mask, G glossiness, B metallic, A height.
PARALLAX_CHANNELS: Tuple[Tuple[Role, int], ...] = (
    (Role.ENV_MASK, 0),
    (Role.GLOSSINESS, 1),
    (Role.METALLIC, 2),
    (Role.HEIGHT, 3),
)


class CompositionError(RuntimeError):
    """Raised when one slot cannot be composed from its sources."""


@dataclass(frozen=True)
class SlotSpec:
    """Declarative description of one output texture slot.

    ``primary`` lists the roles that trigger the slot, in priority order;
    the first present one is the reference image. ``mode`` restricts the
    slot to certain flag combinations (None means always active).
    """

    name: str
    suffix: str
    primary: Tuple[Role, ...]
    build: Callable[["SlotSpec", RoleImages, ComposeFlags], BuildResult]
    optional: Tuple[Role, ...] = ()
    force_high_quality: bool = False
    report_missing: bool = False
    mode: Optional[Callable[[ComposeFlags], bool]] = None

    def is_active(self, flags: ComposeFlags) -> bool:
        return self.mode is None or bool(self.mode(flags))

    def primary_source(self, images: RoleImages) -> Optional[Tuple[Role, DecodedImage]]:
        for role in self.primary:
            image = images.get(role)
            if image is not None:
                return role, image
        return None


@dataclass
class ComposeReport:
    """Composites produced by one run plus the slots that failed."""

    composites: List[Composite] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


def _check_sources(spec: SlotSpec, sources: Sequence[Tuple[Role, DecodedImage]]) -> None:
    """Reject sources that cannot share one composite.

    The first source is the reference; every other one must match its
    resolution and bit depth exactly.
    """
    for role, image in sources:
        if not is_composable(image):
            raise CompositionError(
                f"{role.value} uses unsupported pixel format {image.color_type.value}"
            )
    ref_role, ref = sources[0]
    for role, image in sources[1:]:
        if image.size != ref.size:
            raise CompositionError(
                f"{role.value} is {image.width}x{image.height} but {ref_role.value} is "
                f"{ref.width}x{ref.height}; images combined into the {spec.name} "
                f"texture must have the same resolution"
            )
        if image.bit_depth != ref.bit_depth:
            raise CompositionError(
                f"{role.value} is {image.bit_depth}-bit but {ref_role.value} is "
                f"{ref.bit_depth}-bit; mixed bit depths are not supported in one texture"
            )


def _copy_as(category: Category):
    """Builder for single-role slots: straight RGBA copy with a fixed category."""
    def build(spec: SlotSpec, images: RoleImages, flags: ComposeFlags) -> BuildResult:
        role, source = spec.primary_source(images)
        _check_sources(spec, [(role, source)])
        return to_rgba8(source), category, (role,)
    return build


def _build_diffuse(spec: SlotSpec, images: RoleImages, flags: ComposeFlags) -> BuildResult:
    diffuse = images[Role.DIFFUSE]
    category = classify_image(diffuse)
    if category is None:
        raise CompositionError(
            f"diffuse uses unsupported pixel format {diffuse.color_type.value}"
        )
    sources = [(Role.DIFFUSE, diffuse)]
    height = None
    if flags.terrain_parallax:
        height = images.get(Role.HEIGHT)
        if height is None:
            logger.warning(
                "Terrain parallax selected, but no height image supplied; "
                "diffuse alpha is kept as is."
            )
        else:
            sources.append((Role.HEIGHT, height))
    _check_sources(spec, sources)

    pixels = to_rgba8(diffuse)
    if height is not None:
        pixels[:, :, 3] = first_channel8(height)
        category = Category.RGB_FULL_ALPHA
    return pixels, category, tuple(role for role, _ in sources)


def _with_alpha_from(alpha_role: Role):
    """Builder for color + packed alpha slots (normal/specular, inner/depth)."""
    def build(spec: SlotSpec, images: RoleImages, flags: ComposeFlags) -> BuildResult:
        role, color = spec.primary_source(images)
        alpha = images.get(alpha_role)
        sources = [(role, color)]
        if alpha is not None:
            sources.append((alpha_role, alpha))
        _check_sources(spec, sources)

        pixels = to_rgba8(color)
        if alpha is not None:
            pixels[:, :, 3] = first_channel8(alpha)
        if alpha is not None or has_alpha(color):
            category = Category.RGB_FULL_ALPHA
        else:
            category = Category.RGB
        return pixels, category, tuple(r for r, _ in sources)
    return build


def _build_complex_parallax(spec: SlotSpec, images: RoleImages,
                            flags: ComposeFlags) -> BuildResult:
    # Present roles in priority order; the first one sets the dimensions.
    present = [
        (role, channel, images[role])
        for role, channel in PARALLAX_CHANNELS
        if images.get(role) is not None
    ]
    _check_sources(spec, [(role, image) for role, _, image in present])

    ref = present[0][2]
    pixels = np.empty((ref.height, ref.width, 4), dtype=np.uint8)
    pixels[:] = PARALLAX_BASELINE
    for role, channel, image in present:
        pixels[:, :, channel] = first_channel8(image)
    return pixels, Category.RGB_FULL_ALPHA, tuple(role for role, _, _ in present)


def _complex(flags: ComposeFlags) -> bool:
    return flags.complex_parallax


def _simple(flags: ComposeFlags) -> bool:
    return not flags.complex_parallax


SLOTS: Tuple[SlotSpec, ...] = (
    SlotSpec("diffuse", "", (Role.DIFFUSE,), _build_diffuse,
             optional=(Role.HEIGHT,)),
    SlotSpec("normal", "_n", (Role.NORMAL,), _with_alpha_from(Role.SPECULAR),
             optional=(Role.SPECULAR,), force_high_quality=True),
    SlotSpec("glow", "_g", (Role.GLOW,), _copy_as(Category.RGB)),
    SlotSpec("skin_tint", "_sk", (Role.SKIN_TINT,), _copy_as(Category.RGB)),
    SlotSpec("height", "_p", (Role.HEIGHT,), _copy_as(Category.GRAYSCALE)),
    SlotSpec("cubemap", "_e", (Role.CUBEMAP,), _copy_as(Category.GRAYSCALE)),
    SlotSpec("env_mask", "_m",
             tuple(role for role, _ in PARALLAX_CHANNELS), _build_complex_parallax,
             report_missing=True, mode=_complex),
    SlotSpec("env_mask", "_m", (Role.ENV_MASK,), _copy_as(Category.GRAYSCALE),
             mode=_simple),
    SlotSpec("inner", "_i", (Role.INNER_DIFFUSE,), _with_alpha_from(Role.INNER_DEPTH),
             optional=(Role.INNER_DEPTH,), force_high_quality=True),
    SlotSpec("subsurface", "_subsurface", (Role.SUBSURFACE,), _copy_as(Category.RGB)),
    SlotSpec("specular", "_s", (Role.SPECULAR,), _copy_as(Category.GRAYSCALE)),
    SlotSpec("backlight", "_b", (Role.BACKLIGHT,), _copy_as(Category.RGB)),
)


def active_slots(flags: ComposeFlags,
                 slots: Sequence[SlotSpec] = SLOTS) -> List[SlotSpec]:
    """Return the slots that apply under ``flags``, in emission order."""
    return [spec for spec in slots if spec.is_active(flags)]


def compose_slot(spec: SlotSpec, images: RoleImages,
                 flags: ComposeFlags) -> Optional[Composite]:
    """Compose one slot.

    Returns None when none of the slot's primary roles is present. Raises
    CompositionError when the sources cannot be combined.
    """
    if spec.primary_source(images) is None:
        if spec.report_missing:
            raise CompositionError(
                f"{spec.name} texture selected, but none of the images "
                f"({', '.join(role.value for role in spec.primary)}) is available"
            )
        return None

    pixels, category, roles = spec.build(spec, images, flags)
    high_quality = True if spec.force_high_quality else flags.high_quality
    fmt = pick_format(category, flags.legacy_format, high_quality)
    return Composite(
        slot=spec.name,
        suffix=spec.suffix,
        pixels=pixels,
        category=category,
        format=fmt,
        roles=roles,
    )


def compose_all(images: RoleImages, flags: ComposeFlags,
                slots: Sequence[SlotSpec] = SLOTS) -> ComposeReport:
    """Compose every active slot; a failing slot is reported and skipped."""
    report = ComposeReport()
    for spec in active_slots(flags, slots):
        try:
            composite = compose_slot(spec, images, flags)
        except CompositionError as exc:
            logger.error("Skipping %s texture (%s): %s",
                         spec.name, spec.suffix or "<base>", exc)
            report.errors[spec.name] = str(exc)
            continue
        if composite is None:
            logger.debug("No source for %s texture; not emitted.", spec.name)
            continue
        logger.info(
            "Composed %s texture from %s: %dx%d, %s -> %s",
            spec.name,
            ", ".join(role.value for role in composite.roles),
            composite.width, composite.height,
            composite.category.value, composite.format.value,
        )
        report.composites.append(composite)
    return report
