from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from postvault.embed_conf import EmbedConfSettings, read_embed_conf
from postvault.utils.formatting import basename_any
from postvault.utils.logging import setup_logger

SUCCESS = "success"
ABORTED = "aborted"
ERROR = "error"


@dataclass
class DownloadProgress:
    filename: str
    percent: float = 0.0
    speed: float = 0.0  # bytes/s
    size_downloaded: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "percent": self.percent,
            "speed": self.speed,
            "sizeDownloaded": self.size_downloaded,
        }


@dataclass
class EndPayload:
    aborted: bool = False
    error: bool = False
    message: Optional[str] = None


def _noop(*_args: Any) -> None:
    return None


@dataclass
class DownloaderEvents:
    """Callback slots an external downloader drives while it runs.

    ``target_begin``/``target_end`` bracket one post or collection item;
    the ``task_*`` slots describe individual files inside it.
    """

    fetch_begin: Callable[[str], None] = _noop
    target_begin: Callable[[str], None] = _noop
    target_end: Callable[[bool, Optional[str]], None] = _noop
    task_start: Callable[[str], None] = _noop
    task_progress: Callable[[DownloadProgress], None] = _noop
    task_complete: Callable[[str], None] = _noop
    task_skip: Callable[[str, str], None] = _noop
    task_error: Callable[[str, bool], None] = _noop
    end: Callable[[EndPayload], None] = _noop


class DownloadBackend:
    """External downloader contract.

    ``run`` blocks until the download finishes, reporting through ``events``
    and finishing with exactly one ``events.end``. It must stop promptly once
    ``cancel_event`` is set.
    """

    def run(
        self,
        url: str,
        options: Dict[str, Any],
        events: DownloaderEvents,
        cancel_event: threading.Event,
    ) -> None:
        raise NotImplementedError


@dataclass
class DownloadCallbacks:
    """What the job controller wants to hear about, in its own vocabulary."""

    on_log: Optional[Callable[[str, str], None]] = None
    on_progress: Optional[Callable[[DownloadProgress], None]] = None
    on_target_begin: Optional[Callable[[str], None]] = None
    on_target_end: Optional[Callable[[bool], None]] = None
    on_file_downloaded: Optional[Callable[[str], None]] = None


@dataclass
class DownloadResult:
    outcome: str  # "success", "aborted" or "error"
    message: Optional[str] = None
    files: List[str] = field(default_factory=list)


def _include_flag(value: str) -> bool:
    return value.strip().lower() != "false"


def settings_to_downloader_options(settings: EmbedConfSettings, data_dir: str) -> Dict[str, Any]:
    """Translate embed.conf settings into the downloader's option mapping."""
    options: Dict[str, Any] = {
        "out_dir": data_dir,
        "use_status_cache": True,
        "file_exists_action": {
            "info": "overwrite",
            "info_api": "overwrite",
            "content": "skip",
        },
    }
    if settings.cookie:
        options["cookie"] = settings.cookie

    include: Dict[str, Any] = {}
    media_type = settings.include.get("posts.with.media.type")
    if media_type:
        if media_type in ("any", "none"):
            include["posts_with_media_type"] = media_type
        else:
            include["posts_with_media_type"] = [s.strip() for s in media_type.split(",") if s.strip()]
    if "locked.content" in settings.include:
        include["locked_content"] = _include_flag(settings.include["locked.content"])
    if "preview.media" in settings.include:
        include["preview_media"] = _include_flag(settings.include["preview.media"])
    if "comments" in settings.include:
        include["comments"] = _include_flag(settings.include["comments"])
    if include:
        options["include"] = include

    if settings.embed_downloaders:
        options["embed_downloaders"] = [
            {"provider": dl.provider, "exec": dl.exec} for dl in settings.embed_downloaders
        ]
    return options


class DownloadSupervisor:
    """Runs the external downloader for one URL and relays its events upward."""

    def __init__(self, backend: Optional[DownloadBackend] = None, logger: Optional[logging.Logger] = None) -> None:
        if backend is None:
            from postvault.ytdlp_backend import YtDlpBackend

            backend = YtDlpBackend()
        self.backend = backend
        self.logger = logger or setup_logger()

    def run(
        self,
        url: str,
        data_dir: str,
        callbacks: DownloadCallbacks,
        cancel_event: threading.Event,
    ) -> DownloadResult:
        def log(kind: str, message: str) -> None:
            if callbacks.on_log:
                callbacks.on_log(kind, message)
            else:
                self.logger.info(message)

        settings = read_embed_conf(data_dir)
        options = settings_to_downloader_options(settings, data_dir)
        log("info", f"Starting download: {url}")

        files: List[str] = []
        open_targets = [0]
        last_percent: Dict[str, float] = {}
        ended: List[EndPayload] = []

        def fetch_begin(target_type: str) -> None:
            log("info", f"Fetching {target_type} data...")

        def target_begin(name: str) -> None:
            open_targets[0] += 1
            log("info", f"Processing: {name or 'Unknown'}")
            if callbacks.on_target_begin:
                callbacks.on_target_begin(name or "Unknown")

        def target_end(skipped: bool, message: Optional[str] = None) -> None:
            if open_targets[0] <= 0:
                self.logger.warning("Downloader reported a target end with no target open")
                return
            open_targets[0] -= 1
            if skipped:
                log("skip", f"Skipped: {message or 'unknown reason'}")
            else:
                log("success", "Target completed")
            if callbacks.on_target_end:
                callbacks.on_target_end(skipped)

        def task_start(filename: str) -> None:
            log("info", f"Downloading: {filename or 'file'}")

        def task_progress(progress: DownloadProgress) -> None:
            previous = last_percent.get(progress.filename)
            if previous is not None and progress.percent < previous:
                return
            last_percent[progress.filename] = progress.percent
            if callbacks.on_progress:
                callbacks.on_progress(progress)

        def task_complete(path: str) -> None:
            log("success", f"Downloaded: {basename_any(path) or 'file'}")
            if path not in files:
                files.append(path)
            if callbacks.on_file_downloaded:
                callbacks.on_file_downloaded(path)

        def task_skip(filename: str, reason: str) -> None:
            log("skip", f"Skipped: {filename or 'file'} ({reason})")

        def task_error(message: str, will_retry: bool) -> None:
            suffix = " (will retry)" if will_retry else ""
            log("error", f"Download error: {message or 'Unknown error'}{suffix}")

        def end(payload: EndPayload) -> None:
            if ended:
                return
            ended.append(payload)
            if payload.aborted:
                log("warn", "Download aborted")
            elif payload.error:
                log("error", f"Download ended with error: {payload.message}")
            else:
                log("success", "Download completed")

        events = DownloaderEvents(
            fetch_begin=fetch_begin,
            target_begin=target_begin,
            target_end=target_end,
            task_start=task_start,
            task_progress=task_progress,
            task_complete=task_complete,
            task_skip=task_skip,
            task_error=task_error,
            end=end,
        )

        try:
            self.backend.run(url, options, events, cancel_event)
        except Exception as exc:
            if not cancel_event.is_set():
                raise
            self.logger.debug("Downloader unwound after cancellation: %s", exc)
            end(EndPayload(aborted=True))

        if not ended:
            end(EndPayload(aborted=cancel_event.is_set()))
        payload = ended[0]
        if payload.aborted:
            return DownloadResult(ABORTED, files=files)
        if payload.error:
            return DownloadResult(ERROR, message=payload.message or "Download failed", files=files)
        return DownloadResult(SUCCESS, files=[f for f in files if os.path.exists(f)])
