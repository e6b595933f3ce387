"""Reader/writer for ``embed.conf``, the INI-style downloader settings file.

The file holds the session cookie, the output directory override, free-form
``[include]`` filters and one ``[embed.downloader.<provider>]`` section per
external embed handler::

    [embed.downloader.youtube]
    exec = yt-dlp -o "{dest.dir}/%(title)s.%(ext)s" "{embed.url}"

    [downloader]
    cookie = session_id=abc
    out.dir = /archive

    [include]
    locked.content = false
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

EMBED_CONF_NAME = "embed.conf"
EMBED_SECTION_PREFIX = "embed.downloader."

_SECTION_RE = re.compile(r"^\[(.+)\]$")


@dataclass
class EmbedDownloader:
    """One embed handler: a fixed provider name plus ordered ``key = value`` fields."""

    provider: str
    fields: List[Tuple[str, str]] = field(default_factory=list)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.fields:
            if k == key:
                return v
        return default

    def set(self, key: str, value: str) -> None:
        """Update ``key`` in place, or append it keeping insertion order."""
        for i, (k, _) in enumerate(self.fields):
            if k == key:
                self.fields[i] = (key, value)
                return
        self.fields.append((key, value))

    @property
    def exec(self) -> Optional[str]:
        return self.get("exec")

    def to_dict(self) -> Dict[str, str]:
        payload = {"provider": self.provider}
        for k, v in self.fields:
            payload[k] = v
        return payload


@dataclass
class EmbedConfSettings:
    cookie: str = ""
    embed_downloaders: List[EmbedDownloader] = field(default_factory=list)
    include: Dict[str, str] = field(default_factory=dict)
    out_dir: Optional[str] = None

    def find_downloader(self, provider: str) -> Optional[EmbedDownloader]:
        for entry in self.embed_downloaders:
            if entry.provider == provider:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape used by the settings API."""
        return {
            "cookie": self.cookie,
            "embedDownloaders": [d.to_dict() for d in self.embed_downloaders],
            "include": dict(self.include),
            "outDir": self.out_dir,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "EmbedConfSettings":
        """Build settings from an API payload; unknown keys are ignored."""
        settings = cls(cookie=_clean(payload.get("cookie")))
        settings.out_dir = _clean(payload.get("outDir")) or None
        include = payload.get("include") or {}
        if isinstance(include, dict):
            for key, value in include.items():
                key = _clean(key)
                if key:
                    settings.include[key] = _clean(value)
        for raw in payload.get("embedDownloaders") or []:
            if not isinstance(raw, dict):
                continue
            provider = _clean(raw.get("provider"))
            if not provider:
                continue
            entry = settings.find_downloader(provider)
            if entry is None:
                entry = EmbedDownloader(provider=provider)
                settings.embed_downloaders.append(entry)
            for key, value in raw.items():
                if key == "provider" or value is None:
                    continue
                entry.set(_clean(key), _clean(value))
        return settings


def _clean(value: Any) -> str:
    # A stray newline would split one directive into two lines of the file.
    if value is None:
        return ""
    return " ".join(str(value).splitlines()).strip()


def parse_embed_conf(content: str) -> EmbedConfSettings:
    """Parse embed.conf text. Malformed lines are skipped, never raised."""
    result = EmbedConfSettings()
    section: Optional[str] = None

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or line.startswith(";"):
            continue

        m = _SECTION_RE.match(line)
        if m:
            section = m.group(1).strip()
            continue

        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        value = value.strip()

        if section == "downloader":
            if key == "cookie":
                result.cookie = value
            elif key == "out.dir":
                result.out_dir = value
        elif section and section.startswith(EMBED_SECTION_PREFIX):
            provider = section[len(EMBED_SECTION_PREFIX):]
            if not provider:
                continue
            entry = result.find_downloader(provider)
            if entry is None:
                entry = EmbedDownloader(provider=provider)
                result.embed_downloaders.append(entry)
            entry.set(key, value)
        elif section == "include":
            result.include[key] = value

    return result


def serialize_embed_conf(settings: EmbedConfSettings) -> str:
    lines: List[str] = []

    for dl in settings.embed_downloaders:
        lines.append(f"[{EMBED_SECTION_PREFIX}{dl.provider}]")
        for key, value in dl.fields:
            lines.append(f"{key} = {value}")
        lines.append("")

    lines.append("[downloader]")
    if settings.cookie:
        lines.append(f"cookie = {settings.cookie}")
    if settings.out_dir:
        lines.append(f"out.dir = {settings.out_dir}")
    lines.append("")

    if settings.include:
        lines.append("[include]")
        for key, value in settings.include.items():
            lines.append(f"{key} = {value}")
        lines.append("")

    return "\n".join(lines)


def embed_conf_path(data_dir: str) -> str:
    return os.path.join(data_dir, EMBED_CONF_NAME)


def read_embed_conf(data_dir: str) -> EmbedConfSettings:
    """Load ``<data_dir>/embed.conf``; a missing file yields the defaults."""
    path = embed_conf_path(data_dir)
    if not os.path.exists(path):
        return EmbedConfSettings()
    with open(path, "r", encoding="utf-8") as f:
        return parse_embed_conf(f.read())


def write_embed_conf(data_dir: str, settings: EmbedConfSettings) -> str:
    os.makedirs(data_dir, exist_ok=True)
    path = embed_conf_path(data_dir)
    with open(path, "w", encoding="utf-8") as f:
        f.write(serialize_embed_conf(settings))
    return path
