"""Output path helpers."""

import os


def get_output_path(output_dir: str, name: str, suffix: str = "",
                    ext: str = ".dds") -> str:
    """Return ``{output_dir}/{name}{suffix}{ext}``.

    ``name`` is a bare prefix; path separators are rejected so outputs
    cannot escape ``output_dir``.
    """
    stem = f"{name}{suffix}"
    if not stem:
        raise ValueError("Output file name is empty (no name and no suffix)")
    if any(sep in stem for sep in ("/", "\\")) or stem in (".", ".."):
        raise ValueError(f"Output file name must not contain path separators: {stem!r}")
    if ext and not ext.startswith("."):
        ext = "." + ext
    return os.path.join(output_dir, stem + ext)
