"""Command-line interface for the texture composer."""

import argparse
import logging
import os
import sys

from .config import PipelineConfig
from .core import setup_logging

logger = logging.getLogger("texture_composer")


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser (``-h`` is taken by ``--high-quality``)."""
    parser = argparse.ArgumentParser(
        prog="texcomposer",
        description="Pack single-purpose texture images into game-ready DDS composites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        epilog="""
Input images are matched by file name: diffuse, normal, specular, glow,
skin_tint, height, cubemap, env_mask, inner_diffuse, inner_depth,
subsurface, backlight, metallic, glossiness.

Examples:
  texcomposer -i ./armor -n armor
  texcomposer -i ./rock -n rock -t
  texcomposer -i ./metal -c -H
  texcomposer -i ./armor/output -b
  texcomposer --generate-config
        """
    )
    parser.add_argument("--help", action="help",
                        help="Show this help message and exit")
    parser.add_argument("--name", "-n",
                        help="Prefix for every output file name (forward mode "
                             "default: the input directory's name; backward "
                             "mode default: no prefix)")
    parser.add_argument("--high-quality", "-H", "-h", action="store_true",
                        dest="high_quality", default=None,
                        help="Use BC7 for RGB and cutout-alpha textures")
    parser.add_argument("--archaic-format", "-a", action="store_true",
                        dest="archaic_format", default=None,
                        help="Restrict output to BC1/BC3 for older engines")
    parser.add_argument("--terrain-parallax", "-t", action="store_true",
                        dest="terrain_parallax", default=None,
                        help="Pack height into the diffuse alpha channel")
    parser.add_argument("--complex-parallax", "-c", action="store_true",
                        dest="complex_parallax", default=None,
                        help="Build the _m texture from env_mask, glossiness, "
                             "metallic and height")
    parser.add_argument("--input-dir", "-i", help="Directory holding the source images "
                                                  "(default: current directory)")
    parser.add_argument("--output-dir", "-o", help="Output directory "
                                                   "(default: <input>/output)")
    parser.add_argument("--backward", "-b", action="store_true", default=None,
                        help="Split DDS files into PNG color and alpha images")
    parser.add_argument("--config", help="Path to config YAML")
    parser.add_argument("--generate-config", action="store_true",
                        help="Generate default config.yaml")
    parser.add_argument("--dry-run", action="store_true",
                        help="Compose and report without writing files")
    parser.add_argument("--workers", type=int, help="Parallel DDS encodes")
    parser.add_argument("--tool", choices=["compressonator", "texconv"],
                        help="External DDS encoder")
    parser.add_argument("--tool-path", help="Path to the encoder executable")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", help="Also write the log to this file")
    return parser


def _apply_overrides(config: PipelineConfig, args: argparse.Namespace) -> None:
    if args.name is not None:
        config.name = args.name
    if args.input_dir:
        config.input_dir = args.input_dir
    if args.output_dir:
        config.output_dir = args.output_dir
    if args.high_quality:
        config.high_quality = True
    if args.archaic_format:
        config.legacy_format = True
    if args.terrain_parallax:
        config.terrain_parallax = True
    if args.complex_parallax:
        config.complex_parallax = True
    if args.backward:
        config.backward = True
    if args.dry_run:
        config.dry_run = True
    if args.workers is not None:
        config.max_workers = args.workers
    if args.tool:
        config.compression.tool = args.tool
    if args.tool_path:
        config.compression.tool_path = args.tool_path
    if args.log_level:
        config.log_level = args.log_level
    if args.log_file:
        config.log_file = args.log_file


def main(argv=None):
    """Parse CLI arguments and run the pipeline.

    Exits 0 when the run could start (even if some outputs failed) and 1
    on invalid configuration or unreadable directories.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.generate_config:
        config = PipelineConfig()
        dest = args.config or args.output_dir or "config.yaml"
        if os.path.isdir(dest):
            dest = os.path.join(dest, "config.yaml")
        config.to_yaml(dest)
        logger.info("Generated default %s", dest)
        print(f"Generated default {dest}")
        return 0

    # Ensure early validation warnings from from_yaml() are visible on stderr
    # before the full logging is configured.
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    if args.config:
        if not os.path.exists(args.config):
            logger.error("Config file not found: %s", args.config)
            print(f"Error: Config file not found: {args.config}")
            sys.exit(1)
        try:
            config = PipelineConfig.from_yaml(args.config)
        except ValueError as e:
            logger.error("Invalid config file '%s': %s", args.config, e)
            print(f"Error: Invalid config: {e}")
            sys.exit(1)
    else:
        config = PipelineConfig()

    _apply_overrides(config, args)

    try:
        config.validate()
    except ValueError as e:
        logger.error(str(e))
        print(f"Error: {e}")
        sys.exit(1)

    setup_logging(config.log_level, config.log_file or None)

    from .pipeline import PipelineSetupError, TexturePipeline
    pipeline = TexturePipeline(config)
    try:
        pipeline.run()
    except PipelineSetupError as exc:
        logger.error("Cannot start: %s", exc)
        print(f"Error: {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user.")
        sys.exit(130)
    return 0


if __name__ == "__main__":
    main()
