"""Entrypoint for `python -m TexComposer`.

Usage:
  - Forward (images -> dds):  `python -m TexComposer [-n NAME] [-t] [-c] ...`
  - Backward (dds -> png):    `python -m TexComposer -b`
"""
import logging

logger = logging.getLogger("texture_composer")


def _run_cli():
    from .cli import main as cli_main
    logger.debug("Dispatching to CLI entrypoint.")
    cli_main()


if __name__ == "__main__":
    _run_cli()
