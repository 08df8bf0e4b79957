"""Orchestrate forward (images -> DDS) and backward (DDS -> PNG) runs.

`TexturePipeline` resolves the working directories, maps file stems to
texture roles, drives composition and encoding, and reports one result per
output slot or per split container.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from tqdm import tqdm

from .config import PipelineConfig, Role
from .core import (
    Composite, DecodedImage, ImageDecodeError, get_output_path, load_container,
    load_image, save_png, scan_containers, scan_directory,
)
from . import __version__
from .phases.compose import SLOTS, compose_all
from .phases.encode import DDSEncoder
from .phases.extract import split_alpha

logger = logging.getLogger("texture_composer")


# Both env_mask variants share "_m".
_SUFFIX_BY_SLOT = {spec.name: spec.suffix for spec in SLOTS}


class PipelineSetupError(RuntimeError):
    """Raised when the run cannot start (input directory not readable)."""


@dataclass
class SlotResult:
    """Outcome of one forward output slot."""

    slot: str
    suffix: str
    output_path: str = ""
    format: Optional[str] = None
    roles: Tuple[str, ...] = field(default_factory=tuple)
    ok: bool = False
    skipped: bool = False
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "slot": self.slot,
            "suffix": self.suffix,
            "output_path": self.output_path,
            "format": self.format,
            "roles": list(self.roles),
            "ok": self.ok,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class SplitResult:
    """Outcome of splitting one DDS container."""

    source_path: str
    rgb_path: str = ""
    alpha_path: Optional[str] = None
    ok: bool = False
    skipped: bool = False
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "source_path": self.source_path,
            "rgb_path": self.rgb_path,
            "alpha_path": self.alpha_path,
            "ok": self.ok,
            "skipped": self.skipped,
            "error": self.error,
        }


class TexturePipeline:
    """Run one material set through composition or extraction.

    Modes:
    - forward: role images in ``input_dir`` -> ``{name}{suffix}.dds``
    - backward: ``*.dds`` in ``input_dir`` -> ``{name}{stem}.png`` and
      ``{name}{stem}_alpha.png``
    """

    def __init__(self, config: PipelineConfig, encoder: Optional[DDSEncoder] = None):
        """Initialize pipeline state; the encoder is created on demand."""
        self.config = config
        self.flags = config.compose_flags()
        self._encoder = encoder
        self.input_dir: Optional[str] = None
        self.output_dir: Optional[str] = None
        self.results: list = []

    @property
    def encoder(self) -> DDSEncoder:
        if self._encoder is None:
            self._encoder = DDSEncoder(self.config)
        return self._encoder

    # ------------------------------------------
    # Setup
    # ------------------------------------------

    def resolve_directories(self) -> Tuple[str, str]:
        """Resolve input/output directories, creating the output if needed.

        Input defaults to the working directory and output to
        ``<input>/output``. When the output cannot be created, outputs are
        written to the input directory instead.

        Raises PipelineSetupError when the input cannot be enumerated.
        """
        input_dir = os.path.abspath(self.config.input_dir or os.getcwd())
        if not os.path.isdir(input_dir):
            raise PipelineSetupError(f"Input directory not found: {input_dir}")
        try:
            with os.scandir(input_dir):
                pass
        except OSError as exc:
            raise PipelineSetupError(
                f"Cannot read input directory {input_dir}: {exc}"
            ) from exc

        output_dir = os.path.abspath(
            self.config.output_dir or os.path.join(input_dir, "output")
        )
        if not self.config.dry_run:
            try:
                os.makedirs(output_dir, exist_ok=True)
            except OSError as exc:
                logger.warning(
                    "Cannot create output directory %s (%s); writing outputs "
                    "to the input directory instead.", output_dir, exc,
                )
                output_dir = input_dir

        self.input_dir = input_dir
        self.output_dir = output_dir
        return input_dir, output_dir

    def _ensure_directories(self) -> None:
        if self.input_dir is None or self.output_dir is None:
            self.resolve_directories()

    @property
    def output_prefix(self) -> str:
        """File name prefix for outputs.

        Forward runs fall back to the input directory's name so the diffuse
        texture never ends up as a bare ``.dds``.
        """
        name = self.config.name or ""
        if name or self.config.backward:
            return name
        self._ensure_directories()
        return os.path.basename(os.path.normpath(self.input_dir))

    def load_roles(self, stems: Mapping[str, str]) -> Dict[Role, DecodedImage]:
        """Decode every role whose stem is present; failures leave the role absent."""
        images: Dict[Role, DecodedImage] = {}
        for role in Role:
            path = stems.get(role.value)
            if path is None:
                continue
            try:
                images[role] = load_image(path)
            except ImageDecodeError as exc:
                logger.warning("Ignoring %s image: %s", role.value, exc)
                continue
            image = images[role]
            logger.debug(
                "Loaded %s: %s %dx%d", role.value, image.color_type.value,
                image.width, image.height,
            )
        return images

    # ------------------------------------------
    # Forward
    # ------------------------------------------

    def _encode_composite(self, composite: Composite, output_path: str) -> SlotResult:
        result = SlotResult(
            slot=composite.slot,
            suffix=composite.suffix,
            output_path=output_path,
            format=composite.format.value,
            roles=tuple(role.value for role in composite.roles),
        )
        if self.config.dry_run:
            logger.info("[dry-run] Would write %s (%s)", output_path, composite.format.value)
            result.skipped = True
            result.ok = True
            return result
        if self.encoder.encode(composite.pixels, composite.format, output_path):
            logger.info("Wrote %s (%s)", output_path, composite.format.value)
            result.ok = True
        else:
            result.error = "DDS encoding failed"
        return result

    def run_forward(self) -> List[SlotResult]:
        """Compose every active slot from the role images and encode it."""
        self._ensure_directories()
        try:
            stems = scan_directory(
                self.input_dir, self.config.supported_formats,
                watched_stems=[role.value for role in Role],
            )
        except OSError as exc:
            raise PipelineSetupError(
                f"Cannot read input directory {self.input_dir}: {exc}"
            ) from exc

        images = self.load_roles(stems)
        if not images:
            logger.warning(
                "No role images found in %s (expected stems: %s)",
                self.input_dir, ", ".join(role.value for role in Role),
            )

        report = compose_all(images, self.flags)
        results: List[SlotResult] = []
        jobs = []
        prefix = self.output_prefix
        for composite in report.composites:
            try:
                output_path = get_output_path(self.output_dir, prefix, composite.suffix)
            except ValueError as exc:
                logger.error("Skipping %s texture: %s", composite.slot, exc)
                results.append(SlotResult(composite.slot, composite.suffix, error=str(exc)))
                continue
            jobs.append((composite, output_path))

        workers = max(1, int(self.config.max_workers))
        show_progress = self.config.show_progress and len(jobs) > 1
        if workers > 1 and len(jobs) > 1:
            with ThreadPoolExecutor(max_workers=min(workers, len(jobs))) as pool:
                futures = [
                    pool.submit(self._encode_composite, composite, path)
                    for composite, path in jobs
                ]
                for future in tqdm(futures, desc="Encoding", unit="tex",
                                   disable=not show_progress):
                    results.append(future.result())
        else:
            for composite, path in tqdm(jobs, desc="Encoding", unit="tex",
                                        disable=not show_progress):
                results.append(self._encode_composite(composite, path))

        for slot, message in report.errors.items():
            results.append(SlotResult(
                slot=slot, suffix=_SUFFIX_BY_SLOT.get(slot, ""), error=message,
            ))
        return results

    # ------------------------------------------
    # Backward
    # ------------------------------------------

    def _split_one(self, stem: str, path: str) -> SplitResult:
        result = SplitResult(source_path=path)
        prefix = self.output_prefix
        try:
            rgb_path = get_output_path(self.output_dir, prefix, stem, ".png")
            alpha_path = get_output_path(self.output_dir, prefix, f"{stem}_alpha", ".png")
            rgba = load_container(path)
        except (ImageDecodeError, ValueError) as exc:
            logger.error("Skipping %s: %s", os.path.basename(path), exc)
            result.error = str(exc)
            return result

        rgb, alpha = split_alpha(rgba)
        result.rgb_path = rgb_path
        result.alpha_path = alpha_path if alpha is not None else None
        if self.config.dry_run:
            logger.info(
                "[dry-run] Would write %s%s", rgb_path,
                f" and {alpha_path}" if alpha is not None else "",
            )
            result.skipped = True
            result.ok = True
            return result

        try:
            save_png(rgb, rgb_path)
            if alpha is not None:
                save_png(alpha, alpha_path)
        except (OSError, ValueError) as exc:
            logger.error("Failed to write split of %s: %s", os.path.basename(path), exc)
            result.error = str(exc)
            return result
        logger.info(
            "Split %s -> %s%s", os.path.basename(path), os.path.basename(rgb_path),
            f" + {os.path.basename(alpha_path)}" if alpha is not None else "",
        )
        result.ok = True
        return result

    def run_backward(self) -> List[SplitResult]:
        """Split every DDS container in the input directory into PNG images."""
        self._ensure_directories()
        try:
            containers = scan_containers(self.input_dir)
        except OSError as exc:
            raise PipelineSetupError(
                f"Cannot read input directory {self.input_dir}: {exc}"
            ) from exc
        if not containers:
            logger.warning("No .dds files found in %s", self.input_dir)

        results = []
        items = sorted(containers.items())
        for stem, path in tqdm(items, desc="Splitting", unit="file",
                               disable=not (self.config.show_progress and len(items) > 1)):
            results.append(self._split_one(stem, path))
        return results

    # ------------------------------------------
    # Entry point
    # ------------------------------------------

    def run(self) -> list:
        """Run the configured mode and log a summary.

        Only PipelineSetupError escapes; per-slot and per-file failures are
        logged and recorded in the returned result list.
        """
        start_time = time.time()
        self.resolve_directories()
        mode = "backward" if self.config.backward else "forward"

        logger.info("=" * 60)
        logger.info("TEXTURE COMPOSER v%s (%s)", __version__, mode)
        logger.info("=" * 60)
        logger.info("Input:      %s", self.input_dir)
        logger.info("Output:     %s", self.output_dir)
        if not self.config.backward:
            logger.info(
                "Format:     %s%s",
                "legacy" if self.flags.legacy_format else "modern",
                ", high quality" if self.flags.high_quality else "",
            )
            if self.flags.terrain_parallax:
                logger.info("Parallax:   terrain")
            if self.flags.complex_parallax:
                logger.info("Parallax:   complex")
        if self.config.dry_run:
            logger.info("*** DRY RUN MODE ***")

        if self.config.backward:
            self.results = self.run_backward()
        else:
            self.results = self.run_forward()

        succeeded = sum(1 for r in self.results if r.ok)
        failed = len(self.results) - succeeded
        elapsed = time.time() - start_time
        logger.info("=" * 60)
        if not self.results:
            logger.warning("FINISHED WITH WARNINGS in %.1fs -- nothing to do", elapsed)
        elif failed:
            logger.warning(
                "FINISHED WITH WARNINGS in %.1fs -- %d/%d output(s) failed",
                elapsed, failed, len(self.results),
            )
        else:
            logger.info("COMPLETE in %.1fs -- %d output(s)", elapsed, succeeded)
        logger.info("Output: %s", self.output_dir)
        logger.info("=" * 60)
        return self.results
