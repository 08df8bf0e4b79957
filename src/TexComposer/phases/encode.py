"""Encode composite buffers to DDS through an external block compressor.

Compressonator CLI (default) and Microsoft texconv are supported. The
composite is staged as a lossless PNG next to the output, the tool builds
the mipmap chain and block-compresses it, and the resulting DDS header is
normalized and checked against the requested format.
"""

import logging
import math
import os
import shutil
import struct
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional
from uuid import uuid4

import numpy as np

from ..config import CompressionFormat, PipelineConfig
from ..core import save_png
from ..core.formats import (
    BLOCK_BYTES, COMPRESSONATOR_FORMATS, DDS_FORMAT_FROM_DXGI,
    DDS_FORMAT_FROM_FOURCC, TEXCONV_FORMATS,
)

logger = logging.getLogger("texture_composer.encode")

# Known Windows NTSTATUS crash codes (as signed int32)
_CRASH_CODES_WIN = {
    -1073741819: "ACCESS_VIOLATION (0xC0000005)",
    -1073741795: "ILLEGAL_INSTRUCTION (0xC000001D)",
    -1073740791: "STACK_BUFFER_OVERRUN (0xC0000409)",
    -1073741571: "STACK_OVERFLOW (0xC00000FD)",
    -1073741515: "DLL_NOT_FOUND (0xC0000135)",
}

_DDPF_FOURCC = 0x4
_DDPF_RGB = 0x40


def _is_crash_code(returncode: int) -> Optional[str]:
    """Return a human-readable crash description, or None if not a crash."""
    if sys.platform == "win32":
        desc = _CRASH_CODES_WIN.get(returncode)
        if desc:
            return desc
        if returncode < 0:
            return f"NTSTATUS 0x{returncode & 0xFFFFFFFF:08X}"
        return None
    # Unix: negative returncode means killed by signal
    if returncode < 0:
        sig_num = -returncode
        try:
            import signal
            return f"{signal.Signals(sig_num).name} (signal {sig_num})"
        except (ValueError, AttributeError):
            return f"signal {sig_num}"
    return None


def _bundled_tool_dirs() -> list:
    """Existing directories that may hold a bundled encoder, in lookup order.

    ``TEXCOMPOSER_BIN_DIR`` first, then ``bin/`` at the project root of a
    source checkout, then ``bin/`` under the working directory.
    """
    candidates = []
    env = os.environ.get("TEXCOMPOSER_BIN_DIR")
    if env:
        candidates.append(Path(env).expanduser())
    candidates.append(Path(__file__).resolve().parents[3] / "bin")
    candidates.append(Path.cwd() / "bin")
    return [c for c in candidates if c.is_dir()]


def _forward_output(text: str, tool_label: str, stream_name: str,
                    level: int, max_lines: int = 60) -> None:
    """Log subprocess output line-by-line at the given level."""
    if not text or not text.strip():
        return
    lines = text.splitlines()
    if len(lines) > max_lines:
        logger.log(level, "[%s] ... %d earlier %s lines omitted",
                   tool_label, len(lines) - max_lines, stream_name)
        lines = lines[-max_lines:]
    for line in lines:
        if len(line) > 500:
            line = line[:500] + "..."
        logger.log(level, "[%s] %s: %s", tool_label, stream_name, line)


def full_mip_count(width: int, height: int) -> int:
    """Return the number of levels in a full chain down to 1x1."""
    return int(math.floor(math.log2(max(width, height, 1)))) + 1


def read_dds_header(path: str) -> Optional[dict]:
    """Parse the fixed DDS header fields needed to verify an encoder result.

    Returns None when the file is not a DDS container.
    """
    with open(path, "rb") as f:
        raw = f.read(148)
    if len(raw) < 128 or raw[:4] != b"DDS ":
        return None
    header = raw[4:128]
    pf_flags = struct.unpack_from("<I", header, 76)[0]
    fourcc = bytes(header[80:84])
    dxgi = None
    fmt = None
    if pf_flags & _DDPF_FOURCC:
        if fourcc == b"DX10":
            if len(raw) >= 132:
                dxgi = struct.unpack_from("<I", raw, 128)[0]
                fmt = DDS_FORMAT_FROM_DXGI.get(dxgi)
        else:
            fmt = DDS_FORMAT_FROM_FOURCC.get(fourcc)
    elif pf_flags & _DDPF_RGB and struct.unpack_from("<I", header, 84)[0] == 32:
        fmt = CompressionFormat.RGBA8
    return {
        "height": struct.unpack_from("<I", header, 8)[0],
        "width": struct.unpack_from("<I", header, 12)[0],
        "mip_count": max(1, struct.unpack_from("<I", header, 24)[0]),
        "fourcc": fourcc,
        "dxgi": dxgi,
        "format": fmt,
    }


class DDSEncoder:
    """Drive an external compressor to turn RGBA8 buffers into DDS files."""

    def __init__(self, config: PipelineConfig):
        """Initialize the encoder with runtime configuration."""
        self.config = config
        self.cfg = config.compression
        self._tool_path: Optional[str] = None
        self._tool_resolved = False

    @staticmethod
    def _make_local_temp_dir(base_dir: str, prefix: str = ".tmp_") -> str:
        """Create a writable temp directory next to the outputs."""
        os.makedirs(base_dir, exist_ok=True)
        for _ in range(256):
            candidate = os.path.join(base_dir, f"{prefix}{uuid4().hex}")
            try:
                os.makedirs(candidate, exist_ok=False)
                return candidate
            except FileExistsError:
                continue
        raise RuntimeError(f"Unable to allocate temp directory under {base_dir}")

    @staticmethod
    def _is_transient_tool_failure(text: str, returncode: int) -> bool:
        """Return True when the failure likely came from temporary I/O contention."""
        msg = (text or "").lower()
        if "format is unsupported" in msg:
            return False
        transient_markers = (
            "sharing violation",
            "being used by another process",
            "temporarily unavailable",
            "resource busy",
            "access is denied",
            "permission denied",
        )
        if any(marker in msg for marker in transient_markers):
            return True
        return returncode in (1, 2) and ("lock" in msg or "busy" in msg)

    def _run_tool(self, cmd: list, source_info: str) -> bool:
        """Run the compressor with output forwarding, crash detection and retries."""
        tool_label = self.cfg.tool
        timeout = max(1, int(self.cfg.tool_timeout_seconds))
        logger.debug("Running %s: %s", tool_label, " ".join(cmd))
        max_attempts = 3
        for attempt in range(1, max_attempts + 1):
            try:
                proc = subprocess.run(
                    cmd, capture_output=True, timeout=timeout, text=True,
                    encoding="utf-8", errors="replace",
                )
            except FileNotFoundError:
                logger.error("%s tool not found: %s", tool_label, cmd[0])
                return False
            except PermissionError:
                logger.error("%s tool is not executable: %s", tool_label, cmd[0])
                return False
            except subprocess.TimeoutExpired:
                logger.error("%s timed out after %ds for %s",
                             tool_label, timeout, source_info)
                return False

            if proc.returncode == 0:
                _forward_output(proc.stdout, tool_label, "stdout", logging.DEBUG)
                _forward_output(proc.stderr, tool_label, "stderr", logging.DEBUG)
                return True

            _forward_output(proc.stdout, tool_label, "stdout", logging.ERROR)
            _forward_output(proc.stderr, tool_label, "stderr", logging.ERROR)
            crash = _is_crash_code(proc.returncode)
            if crash:
                logger.error(
                    "%s crashed processing %s: %s (exit code %d)",
                    tool_label, source_info, crash, proc.returncode,
                )
            else:
                logger.error(
                    "%s failed for %s with exit code %d",
                    tool_label, source_info, proc.returncode,
                )

            merged_output = f"{proc.stdout or ''}\n{proc.stderr or ''}"
            if (
                attempt < max_attempts
                and not crash
                and self._is_transient_tool_failure(merged_output, proc.returncode)
            ):
                delay = 0.3 * attempt
                logger.warning(
                    "%s retrying after transient failure (%s), attempt %d/%d in %.1fs",
                    tool_label, source_info, attempt + 1, max_attempts, delay,
                )
                time.sleep(delay)
                continue
            break
        return False

    def resolve_tool(self) -> Optional[str]:
        """Resolve and cache the compressor executable path."""
        if self._tool_resolved:
            return self._tool_path

        self._tool_resolved = True
        tool_path = self.cfg.tool_path
        exe_name = "compressonatorcli" if self.cfg.tool == "compressonator" else "texconv"

        if not tool_path:
            tool_path = shutil.which(exe_name)

        if not tool_path:
            exe_suffix = ".exe" if sys.platform == "win32" else ""
            for bin_dir in _bundled_tool_dirs():
                candidates = []
                if self.cfg.tool == "compressonator":
                    # Release archives unpack to compressonatorcli-<version>/.
                    candidates.extend(
                        d / f"{exe_name}{exe_suffix}"
                        for d in sorted(bin_dir.glob("compressonatorcli*"), reverse=True)
                        if d.is_dir()
                    )
                candidates.append(bin_dir / f"{exe_name}{exe_suffix}")
                found = next((c for c in candidates if c.is_file()), None)
                if found is not None:
                    tool_path = str(found)
                    logger.info("Using bundled compression tool: %s", tool_path)
                    break

        if not tool_path:
            logger.warning(
                "Compression tool '%s' not found. Set compression.tool_path in "
                "config or install it on PATH.", exe_name,
            )
        self._tool_path = tool_path
        return tool_path

    def build_command(self, tool_path: str, source_path: str, output_path: str,
                      fmt: CompressionFormat, mip_levels: int) -> list:
        """Return the argument vector for the configured tool."""
        quality = float(self.cfg.quality)
        if self.cfg.tool == "texconv":
            out_dir = os.path.dirname(output_path) or "."
            cmd = [
                tool_path,
                "-nologo",
                "-f", TEXCONV_FORMATS[fmt],
                "-m", str(mip_levels if self.cfg.generate_mipmaps else 1),
                "-o", out_dir,
                "-y",
            ]
            # texconv: -bc q (quick) / default / u (uniform, slowest)
            if quality <= 0.33:
                cmd.extend(["-bc", "q"])
            elif quality >= 0.9:
                cmd.extend(["-bc", "u"])
            cmd.append(source_path)
            return cmd

        cmd = [tool_path, "-fd", COMPRESSONATOR_FORMATS[fmt]]
        if self.cfg.generate_mipmaps:
            cmd.extend(["-miplevels", str(mip_levels)])
        else:
            cmd.append("-nomipmap")
        if fmt in BLOCK_BYTES:
            cmd.extend(["-Quality", f"{quality:.2f}"])
        if self.cfg.compressonator_no_progress:
            cmd.append("-noprogress")
        cmd.extend([source_path, output_path])
        return cmd

    def encode(self, pixels: np.ndarray, fmt: CompressionFormat,
               output_path: str) -> bool:
        """Write an ``(H, W, 4)`` uint8 buffer to ``output_path`` as DDS.

        Returns True on success, False (after logging) on any failure.
        """
        if pixels.ndim != 3 or pixels.shape[-1] != 4 or pixels.dtype != np.uint8:
            logger.error(
                "Cannot encode %s: expected HxWx4 uint8 buffer, got %s %s",
                output_path, pixels.shape, pixels.dtype,
            )
            return False

        tool_path = self.resolve_tool()
        if not tool_path:
            logger.error(
                "Skipping %s: compression tool unavailable.", output_path
            )
            return False

        out_dir = os.path.dirname(output_path) or "."
        try:
            temp_dir = self._make_local_temp_dir(out_dir, prefix=".texcomposer_tmp_")
        except (OSError, RuntimeError) as exc:
            logger.error("Cannot stage %s for encoding: %s", output_path, exc)
            return False

        try:
            stem = Path(output_path).stem
            source_path = os.path.join(temp_dir, f"{stem}.png")
            save_png(pixels, source_path)

            height, width = pixels.shape[:2]
            cmd = self.build_command(
                tool_path, source_path, output_path, fmt,
                full_mip_count(width, height),
            )
            if not self._run_tool(cmd, os.path.basename(output_path)):
                return False

            # texconv writes {out_dir}/{input_stem}.dds, whatever was requested.
            if self.cfg.tool == "texconv":
                for candidate in (f"{stem}.DDS", f"{stem}.dds"):
                    actual = os.path.join(out_dir, candidate)
                    if os.path.exists(actual):
                        if os.path.normcase(actual) != os.path.normcase(output_path):
                            os.replace(actual, output_path)
                        break

            if not os.path.exists(output_path):
                logger.error("%s reported success but wrote no %s",
                             self.cfg.tool, output_path)
                return False

            self._normalize_dds_header(output_path)
            self._check_output_format(output_path, fmt)
            logger.debug("DDS created: %s", output_path)
            return True
        except (OSError, ValueError) as exc:
            logger.error("Encoding %s failed: %s", output_path, exc)
            return False
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _check_output_format(self, dds_path: str, fmt: CompressionFormat) -> None:
        info = read_dds_header(dds_path)
        if info is None:
            logger.warning("%s does not start with a DDS header", dds_path)
            return
        if info["format"] is not None and info["format"] != fmt:
            logger.warning(
                "%s was written as %s, but %s was requested",
                dds_path, info["format"].value, fmt.value,
            )
        if self.cfg.generate_mipmaps and info["mip_count"] <= 1 and max(
                info["width"], info["height"]) > 1:
            logger.warning("%s has no mipmap chain", dds_path)

    @staticmethod
    def _normalize_dds_header(dds_path: str) -> bool:
        """Normalize DDS header flags/caps for stricter loader compatibility."""
        info = read_dds_header(dds_path)
        if info is None:
            return False
        try:
            with open(dds_path, "r+b") as f:
                f.seek(4)
                header = bytearray(f.read(124))

                # Required fixed sizes for valid DDS header blocks.
                struct.pack_into("<I", header, 0, 124)   # dwSize
                struct.pack_into("<I", header, 72, 32)   # ddspf.dwSize
                mip_count = info["mip_count"]
                struct.pack_into("<I", header, 24, mip_count)

                flags = struct.unpack_from("<I", header, 4)[0]
                flags |= (0x1 | 0x2 | 0x4 | 0x1000)  # CAPS|HEIGHT|WIDTH|PIXELFORMAT
                if mip_count > 1:
                    flags |= 0x00020000  # DDSD_MIPMAPCOUNT

                block_bytes = BLOCK_BYTES.get(info["format"])
                width, height = info["width"], info["height"]
                if block_bytes is not None and width > 0 and height > 0:
                    linear_size = max(1, (width + 3) // 4) * max(1, (height + 3) // 4) * block_bytes
                    struct.pack_into("<I", header, 16, linear_size)
                    flags |= 0x00080000   # DDSD_LINEARSIZE
                    flags &= ~0x00000008  # clear DDSD_PITCH for BCn
                struct.pack_into("<I", header, 4, flags)

                caps = struct.unpack_from("<I", header, 104)[0]
                caps |= 0x00001000  # DDSCAPS_TEXTURE
                if mip_count > 1:
                    caps |= (0x00000008 | 0x00400000)  # COMPLEX | MIPMAP
                struct.pack_into("<I", header, 104, caps)

                f.seek(4)
                f.write(bytes(header))
            return True
        except OSError as exc:
            logger.warning("Failed to normalize DDS header for %s: %s", dds_path, exc)
            return False
