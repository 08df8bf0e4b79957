"""Directory scanning: map file stems to paths."""

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, Optional

logger = logging.getLogger("texture_composer")


def scan_directory(input_dir: str,
                   extensions: Optional[Iterable[str]] = None,
                   watched_stems: Iterable[str] = ()) -> Dict[str, str]:
    """Map each regular file's stem (case-sensitive) to its path.

    Only the top level of ``input_dir`` is scanned. When ``extensions`` is
    given, files whose lower-cased suffix is not listed are ignored, with a
    warning when their stem is in ``watched_stems``. Files are visited in
    sorted order and on a stem collision the first one wins.

    Raises OSError when the directory cannot be enumerated.
    """
    allowed = None
    if extensions is not None:
        allowed = {ext.lower() for ext in extensions}
    watched = set(watched_stems)

    stems: Dict[str, str] = {}
    with os.scandir(input_dir) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        try:
            if not entry.is_file():
                continue
        except OSError as exc:
            logger.warning("Skipping unreadable entry %s: %s", entry.path, exc)
            continue
        p = Path(entry.name)
        if allowed is not None and p.suffix.lower() not in allowed:
            if p.stem in watched:
                logger.warning(
                    "Ignoring %s: extension '%s' is not in supported_formats",
                    entry.name, p.suffix,
                )
            continue
        stem = p.stem
        if stem in stems:
            logger.warning(
                "Multiple files share the name '%s'; using %s and ignoring %s",
                stem, os.path.basename(stems[stem]), entry.name,
            )
            continue
        stems[stem] = entry.path
    logger.debug("Scanned %s: %d candidate file(s)", input_dir, len(stems))
    return stems


def scan_containers(input_dir: str) -> Dict[str, str]:
    """Map the stem of every ``.dds`` file in ``input_dir`` to its path."""
    return scan_directory(input_dir, extensions=(".dds",))
