from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import threading
from typing import Any, Dict, Iterable, Optional, Set

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadCancelled, DownloadError

from postvault.downloader import DownloadBackend, DownloaderEvents, DownloadProgress, EndPayload
from postvault.utils.formatting import basename_any, safe_filename

ARCHIVE_NAME = ".postvault-archive.txt"
LOCKED_AVAILABILITY = {"subscriber_only", "premium_only", "needs_auth"}

_ALREADY_DOWNLOADED_RE = re.compile(r"\[download\] (.+?) has already been downloaded")
_ALREADY_ARCHIVED_RE = re.compile(r"\[download\] (.+?) has already been recorded in the archive")


def _clean_error(exc: BaseException) -> str:
    text = str(exc).strip()
    if text.startswith("ERROR: "):
        text = text[len("ERROR: "):]
    return text or type(exc).__name__


def _target_type(url: str) -> str:
    if "/posts/" in url:
        return "post"
    if "/collection/" in url:
        return "collection"
    return "creator"


class _YdlLogger:
    """Receives yt-dlp's console output; picks out "already downloaded" notices."""

    def __init__(self, logger: logging.Logger, on_skip) -> None:
        self.logger = logger
        self.on_skip = on_skip

    def _consume(self, message: str) -> None:
        for pattern, reason in ((_ALREADY_DOWNLOADED_RE, "file exists"), (_ALREADY_ARCHIVED_RE, "already in archive")):
            m = pattern.search(message)
            if m:
                self.on_skip(m.group(1), reason)
                return

    def debug(self, message: str) -> None:
        if message.startswith("[debug] "):
            return
        self._consume(message)
        self.logger.debug(message)

    def info(self, message: str) -> None:
        self._consume(message)
        self.logger.debug(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)


class YtDlpBackend(DownloadBackend):
    """Download backend built on the yt-dlp library (which ships a Patreon extractor)."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("postvault.yt_dlp")

    def build_params(self, options: Dict[str, Any]) -> Dict[str, Any]:
        out_dir = options["out_dir"]
        post_dir = os.path.join(out_dir, "%(uploader,channel|Unknown)s", "posts", "%(id)s - %(title).80B")
        params: Dict[str, Any] = {
            "outtmpl": {
                "default": os.path.join(post_dir, "video", "%(title).80B.%(ext)s"),
                "infojson": os.path.join(post_dir, "post_info", "info"),
            },
            "format": "bv*+ba/b",
            "merge_output_format": "mp4",
            "writeinfojson": True,
            "quiet": True,
            "noprogress": True,
            "no_warnings": False,
            "ignoreerrors": False,
        }
        if options.get("use_status_cache"):
            params["download_archive"] = os.path.join(out_dir, ARCHIVE_NAME)
        content_action = (options.get("file_exists_action") or {}).get("content", "skip")
        # None: rewrite metadata files, keep media that already exists
        params["overwrites"] = True if content_action == "overwrite" else None
        if options.get("cookie"):
            params["http_headers"] = {"Cookie": options["cookie"]}
        include = options.get("include") or {}
        if include.get("comments"):
            params["getcomments"] = True
        return params

    def run(
        self,
        url: str,
        options: Dict[str, Any],
        events: DownloaderEvents,
        cancel_event: threading.Event,
    ) -> None:
        started: Set[str] = set()
        skipped: Set[str] = set()

        def on_skip(filename: str, reason: str) -> None:
            key = os.path.splitext(filename)[0]
            if key in skipped:
                return
            skipped.add(key)
            events.task_skip(basename_any(filename), reason)

        def progress_hook(d: Dict[str, Any]) -> None:
            if cancel_event.is_set():
                raise DownloadCancelled("Download aborted")
            status = d.get("status")
            filename = d.get("filename") or "file"
            if status == "downloading":
                if filename not in started:
                    started.add(filename)
                    events.task_start(basename_any(filename))
                downloaded = d.get("downloaded_bytes") or 0
                total = d.get("total_bytes") or d.get("total_bytes_estimate")
                percent = (float(downloaded) / float(total) * 100.0) if total else 0.0
                events.task_progress(
                    DownloadProgress(
                        filename=basename_any(filename),
                        percent=round(min(percent, 100.0), 1),
                        speed=float(d.get("speed") or 0.0),
                        size_downloaded=int(downloaded),
                    )
                )
            elif status == "finished" and filename not in started:
                on_skip(filename, "file exists")
            elif status == "error":
                events.task_error(f"{basename_any(filename)} failed", False)

        def postprocessor_hook(d: Dict[str, Any]) -> None:
            if d.get("status") != "finished":
                return
            if d.get("postprocessor") not in ("MoveFiles", "MoveFilesAfterDownload"):
                return
            path = (d.get("info_dict") or {}).get("filepath")
            if path and os.path.splitext(path)[0] not in skipped:
                events.task_complete(path)

        params = self.build_params(options)
        params["logger"] = _YdlLogger(self.logger, on_skip)
        params["progress_hooks"] = [progress_hook]
        params["postprocessor_hooks"] = [postprocessor_hook]

        try:
            with YoutubeDL(params) as ydl:
                events.fetch_begin(_target_type(url))
                top = ydl.extract_info(url, download=False, process=False)
                for entry in self._iter_entries(top):
                    if cancel_event.is_set():
                        break
                    self._run_target(ydl, entry, options, events, cancel_event)
        except DownloadCancelled:
            events.end(EndPayload(aborted=True))
            return
        except Exception as exc:
            if cancel_event.is_set():
                events.end(EndPayload(aborted=True))
            else:
                events.end(EndPayload(error=True, message=_clean_error(exc)))
            return
        events.end(EndPayload(aborted=cancel_event.is_set()))

    def _iter_entries(self, result: Optional[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
        if not result:
            return []
        if result.get("_type") == "playlist":
            return (e for e in result.get("entries") or [] if e)
        return [result]

    def _skip_reason(self, ydl: YoutubeDL, entry: Dict[str, Any], options: Dict[str, Any]) -> Optional[str]:
        include = options.get("include") or {}
        media = include.get("posts_with_media_type")
        if media == "none" or (isinstance(media, list) and "video" not in media):
            return "excluded by media type filter"
        if include.get("locked_content") is False and entry.get("availability") in LOCKED_AVAILABILITY:
            return "locked content excluded"
        if options.get("use_status_cache") and ydl.in_download_archive(entry):
            return "already downloaded"
        return None

    def _run_target(
        self,
        ydl: YoutubeDL,
        entry: Dict[str, Any],
        options: Dict[str, Any],
        events: DownloaderEvents,
        cancel_event: threading.Event,
    ) -> None:
        name = entry.get("title") or entry.get("id") or entry.get("url") or "Unknown"
        events.target_begin(name)
        reason = self._skip_reason(ydl, entry, options)
        if reason:
            events.target_end(True, reason)
            return
        try:
            command = self._embed_command(entry, options)
            if command:
                self._run_embed(command, entry, options, events, cancel_event)
            else:
                ydl.process_ie_result(entry, download=True)
        except DownloadCancelled:
            events.target_end(True, "aborted")
            raise
        except (DownloadError, RuntimeError, OSError) as exc:
            if cancel_event.is_set():
                events.target_end(True, "aborted")
                raise DownloadCancelled("Download aborted") from exc
            message = _clean_error(exc)
            events.task_error(message, False)
            events.target_end(True, message)
            return
        events.target_end(False, None)

    def _embed_command(self, entry: Dict[str, Any], options: Dict[str, Any]) -> Optional[str]:
        extractor = (entry.get("ie_key") or entry.get("extractor_key") or "").lower()
        if not extractor:
            return None
        for dl in options.get("embed_downloaders") or []:
            if dl.get("exec") and dl.get("provider", "").lower() == extractor:
                return dl["exec"]
        return None

    def _run_embed(
        self,
        template: str,
        entry: Dict[str, Any],
        options: Dict[str, Any],
        events: DownloaderEvents,
        cancel_event: threading.Event,
    ) -> None:
        """Hand an embedded video to the user-configured external command."""
        embed_url = entry.get("url") or entry.get("webpage_url") or ""
        post_name = safe_filename(f"{entry.get('id') or 'embed'} - {entry.get('title') or 'untitled'}")
        dest_dir = os.path.join(options["out_dir"], "embeds", "posts", post_name, "embed")
        os.makedirs(dest_dir, exist_ok=True)
        try:
            parts = shlex.split(template)
        except ValueError as exc:
            raise RuntimeError(f"bad exec command {template!r}: {exc}") from exc
        if not parts:
            raise RuntimeError("empty exec command")
        args = [a.replace("{dest.dir}", dest_dir).replace("{embed.url}", embed_url) for a in parts]
        before = set(os.listdir(dest_dir))
        events.task_start(embed_url)
        try:
            proc = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
        except OSError as exc:
            raise RuntimeError(f"could not start {args[0]}: {exc}") from exc
        while True:
            try:
                _, stderr = proc.communicate(timeout=0.5)
                break
            except subprocess.TimeoutExpired:
                if cancel_event.is_set():
                    proc.terminate()
                    proc.wait()
                    raise DownloadCancelled("Download aborted")
        if proc.returncode != 0:
            tail = (stderr or "").strip().splitlines()[-1:] or [f"exit code {proc.returncode}"]
            raise RuntimeError(f"{args[0]} failed: {tail[0]}")
        for name in sorted(set(os.listdir(dest_dir)) - before):
            events.task_complete(os.path.join(dest_dir, name))
