"""Define typed configuration models and texture vocabularies.

Use `PipelineConfig` to load, validate, and persist runtime settings and
`ComposeFlags` to thread the user policy bits into composition.
"""

import os
import logging
import yaml
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger("texture_composer.config")


class Role(Enum):
    """Enumerate the named input roles, matched by exact file stem."""

    DIFFUSE = "diffuse"
    NORMAL = "normal"
    SPECULAR = "specular"
    GLOW = "glow"
    SKIN_TINT = "skin_tint"
    HEIGHT = "height"
    CUBEMAP = "cubemap"
    ENV_MASK = "env_mask"
    INNER_DIFFUSE = "inner_diffuse"
    INNER_DEPTH = "inner_depth"
    SUBSURFACE = "subsurface"
    BACKLIGHT = "backlight"
    METALLIC = "metallic"
    GLOSSINESS = "glossiness"


class Category(Enum):
    """Enumerate the semantic pixel classes used to select a compression format."""

    GRAYSCALE = "grayscale"
    RGB = "rgb"
    RGB_FULL_ALPHA = "rgb_full_alpha"
    RGB_CUTOUT_ALPHA = "rgb_cutout_alpha"
    UNCOMPRESSED = "uncompressed"


class CompressionFormat(Enum):
    """Enumerate supported DDS pixel formats."""

    BC1 = "bc1"
    BC3 = "bc3"
    BC4 = "bc4"
    BC7 = "bc7"
    RGBA8 = "rgba8"


class ColorType(Enum):
    """Enumerate decoded pixel layouts (channels + sample type)."""

    L8 = "L8"
    LA8 = "LA8"
    RGB8 = "RGB8"
    RGBA8 = "RGBA8"
    L16 = "L16"
    LA16 = "LA16"
    RGB16 = "RGB16"
    RGBA16 = "RGBA16"
    RGB32F = "RGB32F"
    RGBA32F = "RGBA32F"
    # Decodable, but no composition rule accepts them.
    L32F = "L32F"
    I32 = "I32"


@dataclass(frozen=True)
class ComposeFlags:
    """Immutable policy bits threaded into classification and composition."""

    legacy_format: bool = False
    high_quality: bool = False
    terrain_parallax: bool = False
    complex_parallax: bool = False


@dataclass
class CompressionConfig:
    """Store settings for the external DDS encoder."""

    tool: str = "compressonator"
    tool_path: str = ""
    tool_timeout_seconds: int = 120
    # 0.0 (fastest) .. 1.0 (best); the slow/best setting is the default.
    quality: float = 1.0
    generate_mipmaps: bool = True
    compressonator_no_progress: bool = True


_SUPPORTED_CONFIG_VERSION = 1


@dataclass
class PipelineConfig:
    """Master pipeline configuration."""

    config_version: int = 1
    name: str = ""
    input_dir: str = ""
    output_dir: str = ""
    backward: bool = False
    high_quality: bool = False
    legacy_format: bool = False
    terrain_parallax: bool = False
    complex_parallax: bool = False
    dry_run: bool = False
    max_workers: int = 1
    log_level: str = "INFO"
    log_file: str = ""
    show_progress: bool = True
    supported_formats: list = field(default_factory=lambda: [
        ".png", ".jpg", ".jpeg", ".tga", ".bmp", ".tiff", ".tif",
    ])

    compression: CompressionConfig = field(default_factory=CompressionConfig)

    def compose_flags(self) -> ComposeFlags:
        """Snapshot the composition policy bits."""
        return ComposeFlags(
            legacy_format=bool(self.legacy_format),
            high_quality=bool(self.high_quality),
            terrain_parallax=bool(self.terrain_parallax),
            complex_parallax=bool(self.complex_parallax),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load pipeline configuration from YAML or return defaults."""
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            config = cls()
            config.validate()
            return config
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(
                f"Failed to parse YAML config '{path}': {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"Config file '{path}' must contain a YAML mapping, "
                f"got {type(data).__name__}"
            )
        yaml_version = data.get("config_version", 1)
        if isinstance(yaml_version, int) and yaml_version > _SUPPORTED_CONFIG_VERSION:
            logger.warning(
                "Config file '%s' has config_version=%d, but this build only "
                "supports up to version %d. Some settings may be ignored.",
                path, yaml_version, _SUPPORTED_CONFIG_VERSION,
            )
        config = cls()
        _merge_dict_to_dataclass(config, data)
        try:
            config.validate()
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from exc
        return config

    def to_yaml(self, path: str):
        """Write pipeline configuration to a YAML file."""
        import dataclasses
        import threading as _th
        data = dataclasses.asdict(self)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        ext = os.path.splitext(path)[1]
        tmp_path = f"{path}.tmp.{os.getpid()}.{_th.get_ident()}{ext}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def validate(self):
        """Validate configuration values. Raises ValueError on invalid config."""
        errors = []

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if not isinstance(self.log_level, str) or self.log_level.upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {sorted(valid_log_levels)}, "
                f"got '{self.log_level}'"
            )

        if self.max_workers < 1:
            errors.append("max_workers must be >= 1")
        if self.max_workers > 64:
            errors.append("max_workers must be <= 64")

        if any(sep in self.name for sep in ("/", "\\")):
            errors.append(
                f"name must be a plain file name prefix without path separators, "
                f"got '{self.name}'"
            )

        if not self.supported_formats:
            errors.append(
                "supported_formats must not be empty; no input would be recognized"
            )
        for ext in self.supported_formats:
            if not isinstance(ext, str) or not ext.startswith("."):
                errors.append(
                    f"supported_formats entries must start with '.', got {ext!r}"
                )

        if self.legacy_format and self.high_quality:
            logger.warning(
                "high_quality has no effect together with legacy_format: "
                "legacy output is always BC1/BC3."
            )
        if self.backward and (self.terrain_parallax or self.complex_parallax):
            logger.warning(
                "Parallax options only affect forward composition and are "
                "ignored in backward mode."
            )

        # Compression
        valid_tools = {"compressonator", "texconv"}
        if self.compression.tool not in valid_tools:
            errors.append(
                f"compression.tool must be one of {sorted(valid_tools)}, "
                f"got '{self.compression.tool}'"
            )
        if not (0 < self.compression.quality <= 1.0):
            errors.append("compression.quality must be in (0, 1.0]")
        if self.compression.tool_timeout_seconds < 1:
            errors.append("compression.tool_timeout_seconds must be >= 1")

        if errors:
            raise ValueError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )


def _merge_dict_to_dataclass(obj, data: dict, _path: str = ""):
    import dataclasses
    for key, value in data.items():
        if hasattr(obj, key):
            field_val = getattr(obj, key)
            if dataclasses.is_dataclass(field_val) and isinstance(value, dict):
                _merge_dict_to_dataclass(field_val, value, f"{_path}{key}.")
            else:
                full_key = f"{_path}{key}"
                if value is None and field_val is not None:
                    logger.warning(
                        "Config key '%s' is null but field default is %s. "
                        "Using default value.",
                        full_key, type(field_val).__name__,
                    )
                    continue
                expected_type = type(field_val)
                # int->float and integral float->int promotions are allowed
                if (field_val is not None
                        and not isinstance(value, expected_type)
                        and not (expected_type is float
                                 and isinstance(value, int)
                                 and not isinstance(value, bool))
                        and not (expected_type is int
                                 and isinstance(value, float)
                                 and value == int(value))):
                    logger.warning(
                        "Config type mismatch for '%s': expected %s, got %s (%r). "
                        "Using default value.",
                        full_key, expected_type.__name__, type(value).__name__, value,
                    )
                    continue
                if (expected_type is int and isinstance(value, float)
                        and value == int(value)):
                    value = int(value)
                if expected_type is float and isinstance(value, int):
                    value = float(value)
                setattr(obj, key, value)
        else:
            full_key = f"{_path}{key}"
            logger.warning("Unknown config key ignored: '%s'", full_key)
