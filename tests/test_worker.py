import json
import os
import threading

import pytest

from postvault import downloader as dl
from postvault.encoder import EncodeAborted, Resolution, VideoEncoder
from postvault.web import state as st
from postvault.web.worker import InvalidTargetURL, JobConflict, JobController, NoActiveJob

POST_URL = "https://www.patreon.com/posts/example-123"


class FileBackend(dl.DownloadBackend):
    """Downloads one fake post containing a single 1080p clip."""

    def __init__(self, data_dir, gate=None):
        self.data_dir = data_dir
        self.gate = gate
        self.started = threading.Event()

    def run(self, url, options, events, cancel_event):
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        events.fetch_begin("post")
        events.target_begin("Example")
        path = os.path.join(self.data_dir, "Creator", "posts", "123 - Example", "video", "clip.mp4")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(b"1080p")
        events.task_complete(path)
        events.target_end(False, None)
        events.end(dl.EndPayload(aborted=cancel_event.is_set()))


class StallingBackend(dl.DownloadBackend):
    """Blocks until aborted; with a release gate it also lingers after the abort."""

    def __init__(self, release=None):
        self.started = threading.Event()
        self.release = release

    def run(self, url, options, events, cancel_event):
        self.started.set()
        cancel_event.wait(5)
        if self.release is not None:
            self.release.wait(5)
        events.end(dl.EndPayload(aborted=True))


class CrashingBackend(dl.DownloadBackend):
    def run(self, url, options, events, cancel_event):
        raise RuntimeError("extractor exploded")


class StubEncoder(VideoEncoder):
    def probe(self, path):
        return Resolution(1920, 1080)

    def transcode(self, input_path, output_path, vf, cancel_event=None):
        with open(output_path, "wb") as f:
            f.write(b"480p")


def _controller(data_dir, backend):
    return JobController(str(data_dir), backend=backend, encoder=StubEncoder())


def test_rejects_bad_url(data_dir):
    controller = _controller(data_dir, StallingBackend())
    for url in (None, "", "https://example.com/posts/1", "not a url"):
        with pytest.raises(InvalidTargetURL):
            controller.start_job(url)
    assert controller.store.status == st.IDLE


def test_full_job_completes(data_dir):
    controller = _controller(data_dir, FileBackend(str(data_dir)))
    controller.start_job(POST_URL)
    assert controller.wait(10)

    snap = controller.store.snapshot()
    assert snap["status"] == st.COMPLETE
    assert snap["url"] == POST_URL
    assert snap["targets"] == {"total": 1, "completed": 1, "skipped": 0}
    assert snap["encoding"] == {"total": 1, "completed": 1, "current": None}
    assert snap["log"][-1]["message"] == "All done!"
    assert controller.store.state.cancel_event is None
    clip = data_dir / "Creator" / "posts" / "123 - Example" / "video" / "clip.mp4"
    assert clip.read_bytes() == b"480p"


def test_status_sequence_is_broadcast(data_dir):
    controller = _controller(data_dir, FileBackend(str(data_dir)))
    sub = controller.store.subscribe()
    controller.start_job(POST_URL)
    assert controller.wait(10)
    statuses = [json.loads(data)["status"] for event, data in sub.drain() if event == "status"]
    assert statuses == [st.DOWNLOADING, st.ENCODING, st.COMPLETE]


def test_second_start_conflicts(data_dir):
    gate = threading.Event()
    backend = FileBackend(str(data_dir), gate=gate)
    controller = _controller(data_dir, backend)
    controller.start_job(POST_URL)
    assert backend.started.wait(5)

    with pytest.raises(JobConflict):
        controller.start_job("https://www.patreon.com/other")
    assert controller.store.snapshot()["url"] == POST_URL

    gate.set()
    assert controller.wait(10)
    assert controller.store.status == st.COMPLETE

    # a finished job accepts a new one
    controller.start_job(POST_URL)
    assert controller.wait(10)
    assert controller.store.status == st.COMPLETE


def test_abort_stops_job(data_dir):
    release = threading.Event()
    backend = StallingBackend(release=release)
    controller = _controller(data_dir, backend)
    controller.start_job(POST_URL)
    assert backend.started.wait(5)

    controller.request_abort()
    # a second request while aborting is a no-op
    controller.request_abort()
    assert controller.store.status == st.ABORTING
    release.set()
    assert controller.wait(10)

    snap = controller.store.snapshot()
    assert snap["status"] == st.ABORTED
    messages = [e["message"] for e in snap["log"]]
    assert messages.count("Abort requested...") == 1
    assert "Download aborted" in messages
    assert controller.store.state.cancel_event is None


def test_abort_without_job(data_dir):
    controller = _controller(data_dir, StallingBackend())
    with pytest.raises(NoActiveJob):
        controller.request_abort()
    assert controller.store.status == st.IDLE


def test_new_job_after_abort(data_dir):
    backend = StallingBackend()
    controller = _controller(data_dir, backend)
    controller.start_job(POST_URL)
    assert backend.started.wait(5)
    controller.request_abort()
    assert controller.wait(10)

    controller.backend = FileBackend(str(data_dir))
    controller.start_job(POST_URL)
    assert controller.wait(10)
    snap = controller.store.snapshot()
    assert snap["status"] == st.COMPLETE
    assert "Abort requested..." not in [e["message"] for e in snap["log"]]


def test_unexpected_failure_sets_error(data_dir):
    controller = _controller(data_dir, CrashingBackend())
    controller.start_job(POST_URL)
    assert controller.wait(10)
    snap = controller.store.snapshot()
    assert snap["status"] == st.ERROR
    assert snap["error"] == "extractor exploded"
    assert snap["log"][-1] == {
        "kind": "error",
        "message": "Fatal error: extractor exploded",
        "timestamp": snap["log"][-1]["timestamp"],
    }


class BlockingEncoder(StubEncoder):
    """Holds the transcode open until the job is aborted."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()

    def transcode(self, input_path, output_path, vf, cancel_event=None):
        with open(output_path, "wb") as f:
            f.write(b"partial")
        self.started.set()
        cancel_event.wait(5)
        raise EncodeAborted(input_path)


def test_abort_during_encoding(data_dir):
    encoder = BlockingEncoder()
    controller = JobController(str(data_dir), backend=FileBackend(str(data_dir)), encoder=encoder)
    controller.start_job(POST_URL)
    assert encoder.started.wait(5)
    assert controller.store.status == st.ENCODING

    controller.request_abort()
    assert controller.wait(10)

    snap = controller.store.snapshot()
    assert snap["status"] == st.ABORTED
    assert snap["error"] is None
    assert snap["encoding"]["current"] is None
    video_dir = data_dir / "Creator" / "posts" / "123 - Example" / "video"
    assert (video_dir / "clip.mp4").read_bytes() == b"1080p"
    assert not (video_dir / "clip.encoding.mp4").exists()
    assert "All done!" not in [e["message"] for e in snap["log"]]
