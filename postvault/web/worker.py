from __future__ import annotations

import logging
import threading
from typing import Optional

from postvault.downloader import ABORTED as DL_ABORTED
from postvault.downloader import ERROR as DL_ERROR
from postvault.downloader import DownloadBackend, DownloadCallbacks, DownloadProgress, DownloadSupervisor
from postvault.encoder import EncodeCallbacks, VideoEncoder, encode_videos
from postvault.utils.formatting import is_supported_url
from postvault.utils.logging import setup_logger
from postvault.web import state as st
from postvault.web.state import JobStateStore


class JobRejected(Exception):
    """A control-surface request that leaves the job state untouched."""


class InvalidTargetURL(JobRejected):
    pass


class JobConflict(JobRejected):
    pass


class NoActiveJob(JobRejected):
    pass


class JobController:
    """Single-flight download + encode job runner.

    ``start_job`` returns as soon as the job is accepted; the work runs on a
    daemon thread and every step is mirrored into ``store``.
    """

    def __init__(
        self,
        data_dir: str,
        store: Optional[JobStateStore] = None,
        backend: Optional[DownloadBackend] = None,
        encoder: Optional[VideoEncoder] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.data_dir = data_dir
        self.logger = logger or setup_logger()
        self.store = store or JobStateStore(logger=self.logger)
        self.backend = backend
        self.encoder = encoder
        self._thread: Optional[threading.Thread] = None

    def start_job(self, url: str) -> None:
        if not is_supported_url(url):
            raise InvalidTargetURL("Invalid URL. Provide a Patreon post, collection, or creator URL.")
        url = url.strip()
        store = self.store
        with store.lock:
            if store.status not in st.ACCEPTING_STATUSES:
                raise JobConflict("A download is already in progress.")
            store.reset()
            cancel_event = threading.Event()
            store.state.cancel_event = cancel_event
            store.set_status(st.DOWNLOADING, url=url)
            t = threading.Thread(target=self._run_job, args=(url, cancel_event), name="postvault-job", daemon=True)
            self._thread = t
        t.start()

    def request_abort(self) -> None:
        store = self.store
        with store.lock:
            cancel_event = store.state.cancel_event
            if cancel_event is None or store.status not in st.ACTIVE_STATUSES:
                raise NoActiveJob("No active download to abort.")
            already = cancel_event.is_set()
            cancel_event.set()
            if already:
                return
            store.set_status(st.ABORTING)
            store.append_log("warn", "Abort requested...")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the running job thread; True once no job thread is alive."""
        t = self._thread
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()

    def _run_job(self, url: str, cancel_event: threading.Event) -> None:
        """Background thread: download, then encode what was downloaded."""
        store = self.store
        try:
            def on_progress(progress: DownloadProgress) -> None:
                store.set_progress(progress.to_dict())

            supervisor = DownloadSupervisor(backend=self.backend, logger=self.logger)
            result = supervisor.run(
                url,
                self.data_dir,
                DownloadCallbacks(
                    on_log=store.append_log,
                    on_progress=on_progress,
                    on_target_begin=lambda _name: store.begin_target(),
                    on_target_end=store.end_target,
                ),
                cancel_event,
            )

            if result.outcome == DL_ABORTED or cancel_event.is_set():
                store.set_status(st.ABORTED)
                return
            if result.outcome == DL_ERROR:
                store.set_status(st.ERROR, error=result.message)
                return

            with store.lock:
                if cancel_event.is_set():
                    store.set_status(st.ABORTED)
                    return
                store.set_status(st.ENCODING)

            summary = encode_videos(
                result.files,
                self.data_dir,
                EncodeCallbacks(
                    on_log=store.append_log,
                    on_start=lambda total: store.update_encoding(total=total),
                    on_progress=lambda current, completed, total: store.update_encoding(
                        current=current, completed=completed, total=total
                    ),
                    on_end=lambda: store.update_encoding(current=None),
                ),
                cancel_event=cancel_event,
                encoder=self.encoder,
                logger=self.logger,
            )

            with store.lock:
                if summary.aborted or cancel_event.is_set():
                    store.set_status(st.ABORTED)
                    return
                store.set_status(st.COMPLETE)
            store.append_log("success", "All done!")
        except Exception as exc:
            self.logger.exception("Job for %s failed", url)
            store.set_status(st.ERROR, error=str(exc))
            store.append_log("error", f"Fatal error: {exc}")
