from __future__ import annotations

import os
import re
import unicodedata
from typing import Optional


VIDEO_EXTENSIONS = (".mp4", ".webm", ".mkv")
ENCODING_MARKER = ".encoding."

PATREON_URL_PATTERN = re.compile(r"^https?://(www\.)?patreon\.com/(posts/|collection/|[^/]+/?$)")


def is_supported_url(url: Optional[str]) -> bool:
    """True for Patreon post, collection or creator page URLs."""
    if not url or not isinstance(url, str):
        return False
    return PATREON_URL_PATTERN.match(url.strip()) is not None


def is_video_path(path: str) -> bool:
    return path.lower().endswith(VIDEO_EXTENSIONS)


def is_encoding_temp(path: str) -> bool:
    """Temp outputs of an in-progress transcode carry the ``.encoding.`` marker."""
    return ENCODING_MARKER in os.path.basename(path)


def safe_filename(name: str) -> str:
    """Convert to a safe filename while preserving spaces and dashes."""
    # normalize
    name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    # remove bad chars
    name = re.sub(r'[\\/:*?"<>|]', "", name)
    # collapse whitespace
    name = re.sub(r"\s+", " ", name).strip()
    return name


def basename_any(path: str) -> str:
    """Return filename component regardless of slash type (handles Windows paths on *nix)."""
    normalized = path.replace("\\", "/")
    if "/" not in normalized:
        return normalized
    return normalized.rsplit("/", 1)[-1]


def format_bytes(num: Optional[float]) -> str:
    """Human readable byte count, e.g. ``1.5 MiB``."""
    if num is None:
        return "?"
    value = float(num)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(value) < 1024.0 or unit == "GiB":
            if unit == "B":
                return f"{value:.0f} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024.0


def format_speed(bytes_per_sec: Optional[float]) -> str:
    if not bytes_per_sec:
        return "?"
    return f"{format_bytes(bytes_per_sec)}/s"
