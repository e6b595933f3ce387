from __future__ import annotations

import json
import logging
import queue
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

MAX_LOG_ENTRIES = 500

IDLE = "idle"
DOWNLOADING = "downloading"
ENCODING = "encoding"
ABORTING = "aborting"
ABORTED = "aborted"
COMPLETE = "complete"
ERROR = "error"

ACTIVE_STATUSES = {DOWNLOADING, ENCODING, ABORTING}
ACCEPTING_STATUSES = {IDLE, COMPLETE, ERROR, ABORTED}

_LOG_LEVELS = {"error": logging.ERROR, "warn": logging.WARNING}


@dataclass
class LogEntry:
    kind: str  # "info", "success", "skip", "warn", "error"
    message: str
    timestamp: str


@dataclass
class TargetCounters:
    total: int = 0
    completed: int = 0
    skipped: int = 0


@dataclass
class EncodingCounters:
    total: int = 0
    completed: int = 0
    current: Optional[str] = None


@dataclass
class JobState:
    status: str = IDLE
    url: Optional[str] = None
    error: Optional[str] = None
    cancel_event: Optional[threading.Event] = None  # present only while a job is active
    log: Deque[LogEntry] = field(default_factory=lambda: deque(maxlen=MAX_LOG_ENTRIES))
    progress: Optional[Dict[str, Any]] = None  # last per-file transfer progress
    targets: TargetCounters = field(default_factory=TargetCounters)
    encoding: EncodingCounters = field(default_factory=EncodingCounters)


def format_sse(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


class Subscriber:
    """One connected progress listener; events queue up until the listener drains them."""

    def __init__(self) -> None:
        self._queue: "queue.Queue[Tuple[str, str]]" = queue.Queue()

    def send(self, event: str, data: str) -> None:
        self._queue.put((event, data))

    def get(self, timeout: Optional[float] = None) -> Tuple[str, str]:
        """Next ``(event, json_data)`` pair; raises ``queue.Empty`` on timeout."""
        return self._queue.get(timeout=timeout)

    def drain(self) -> List[Tuple[str, str]]:
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JobStateStore:
    """Process-wide record of the current (or last) job plus its broadcast fan-out.

    Every observable mutation is paired with a broadcast on the channel named
    after the field (``status``, ``log``, ``targets``, ``encoding``,
    ``progress``). All of it happens under one lock so a subscriber's initial
    ``state`` snapshot is always ordered before any later increment.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.lock = threading.RLock()
        self.state = JobState()
        self.subscribers: Set[Subscriber] = set()
        self.logger = logger or logging.getLogger("postvault")

    # -- broadcasting -----------------------------------------------------

    def broadcast(self, channel: str, payload: Any) -> None:
        data = json.dumps(payload)
        with self.lock:
            for sub in list(self.subscribers):
                sub.send(channel, data)

    def subscribe(self) -> Subscriber:
        sub = Subscriber()
        with self.lock:
            sub.send("state", json.dumps(self.snapshot()))
            self.subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        with self.lock:
            self.subscribers.discard(sub)

    # -- mutation primitives ---------------------------------------------

    def reset(self) -> None:
        with self.lock:
            self.state.status = IDLE
            self.state.url = None
            self.state.error = None
            self.state.cancel_event = None
            self.state.log = deque(maxlen=MAX_LOG_ENTRIES)
            self.state.progress = None
            self.state.targets = TargetCounters()
            self.state.encoding = EncodingCounters()

    def append_log(self, kind: str, message: str) -> LogEntry:
        entry = LogEntry(kind=kind, message=message, timestamp=_now_iso())
        self.logger.log(_LOG_LEVELS.get(kind, logging.INFO), message)
        with self.lock:
            self.state.log.append(entry)
            self.broadcast("log", asdict(entry))
        return entry

    def set_status(self, status: str, *, url: Optional[str] = None, error: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"status": status}
        with self.lock:
            self.state.status = status
            if url is not None:
                self.state.url = url
                payload["url"] = url
            if error is not None:
                self.state.error = error
                payload["error"] = error
            if status not in ACTIVE_STATUSES:
                self.state.cancel_event = None
            self.broadcast("status", payload)

    def begin_target(self) -> TargetCounters:
        with self.lock:
            self.state.targets.total += 1
            self.broadcast("targets", asdict(self.state.targets))
            return TargetCounters(**asdict(self.state.targets))

    def end_target(self, skipped: bool) -> TargetCounters:
        with self.lock:
            targets = self.state.targets
            if targets.completed + targets.skipped >= targets.total:
                # an end without a matching begin would break completed + skipped <= total
                self.logger.warning("Ignoring target end without a matching begin")
                return TargetCounters(**asdict(targets))
            if skipped:
                targets.skipped += 1
            else:
                targets.completed += 1
            self.broadcast("targets", asdict(targets))
            return TargetCounters(**asdict(targets))

    def set_progress(self, progress: Dict[str, Any]) -> None:
        with self.lock:
            self.state.progress = dict(progress)
            self.broadcast("progress", progress)

    def update_encoding(self, **changes: Any) -> EncodingCounters:
        """Apply ``total`` / ``completed`` / ``current`` changes and broadcast them."""
        with self.lock:
            enc = self.state.encoding
            for key, value in changes.items():
                if not hasattr(enc, key):
                    raise AttributeError(f"unknown encoding field: {key}")
                setattr(enc, key, value)
            if enc.completed > enc.total:
                enc.total = enc.completed
            self.broadcast("encoding", asdict(enc))
            return EncodingCounters(**asdict(enc))

    # -- reads -------------------------------------------------------------

    @property
    def status(self) -> str:
        return self.state.status

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "status": self.state.status,
                "url": self.state.url,
                "error": self.state.error,
                "log": [asdict(e) for e in self.state.log],
                "progress": dict(self.state.progress) if self.state.progress else None,
                "targets": asdict(self.state.targets),
                "encoding": asdict(self.state.encoding),
            }
