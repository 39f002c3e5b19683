"""Shared utilities used by multiple modules."""

import logging
import os
import subprocess
import sys
from typing import List

from .models import NS_PER_SEC

logger = logging.getLogger(__name__)

FFMPEG_ENV = "CAMVIGIL_FFMPEG"


def ffmpeg_exe() -> str:
    """Return the ffmpeg binary path.

    ``$CAMVIGIL_FFMPEG`` wins; otherwise the binary bundled via
    imageio-ffmpeg is used.
    """
    override = os.environ.get(FFMPEG_ENV, "")
    if override:
        return override
    import imageio_ffmpeg
    return imageio_ffmpeg.get_ffmpeg_exe()


def subprocess_kwargs() -> dict:
    """Extra kwargs to hide the console window on Windows."""
    kw: dict = {}
    if sys.platform == "win32":
        si = subprocess.STARTUPINFO()
        si.dwFlags |= subprocess.STARTF_USESHOWWINDOW
        kw["startupinfo"] = si
        kw["creationflags"] = subprocess.CREATE_NO_WINDOW
    return kw


def fmt_time(ms: float) -> str:
    """Format milliseconds as m:ss."""
    s = int(ms / 1000)
    m = s // 60
    return f"{m}:{s % 60:02d}"


def fmt_hms(ns: int) -> str:
    """Format a nanosecond duration (or day offset) as HH:MM:SS."""
    s = max(0, int(ns // NS_PER_SEC))
    return f"{s // 3600:02d}:{(s % 3600) // 60:02d}:{s % 60:02d}"


def parse_hms(text: str) -> int:
    """Parse ``HH:MM:SS`` (or ``HH:MM``) into nanoseconds from midnight.

    Raises ``ValueError`` for malformed input or out-of-range fields.
    """
    parts = text.strip().split(":")
    if len(parts) == 2:
        parts.append("0")
    if len(parts) != 3:
        raise ValueError(f"Expected HH:MM:SS, got {text!r}")
    h, m, s = (int(p) for p in parts)
    if not (0 <= h <= 24 and 0 <= m < 60 and 0 <= s < 60):
        raise ValueError(f"Time out of range: {text!r}")
    total = h * 3600 + m * 60 + s
    if total > 86400:
        raise ValueError(f"Time past end of day: {text!r}")
    return total * NS_PER_SEC


def secs(ns: int) -> str:
    """Render nanoseconds as an ffmpeg time argument (seconds, 6 dp)."""
    return f"{ns / NS_PER_SEC:.6f}"


def build_encoder_args(codec: str, preset: str, crf: int) -> List[str]:
    """Return ffmpeg video encoder arguments for a re-encode.

    Returns ``["-c:v", codec, "-preset", preset, "-crf", crf]``.
    """
    return ["-c:v", codec, "-preset", preset, "-crf", str(crf)]
