import os
import threading

from yt_dlp.utils import DownloadError

from postvault import ytdlp_backend as yb
from postvault.downloader import DownloaderEvents


class EventLog:
    def __init__(self):
        self.items = []

    def events(self):
        def rec(name):
            return lambda *args: self.items.append((name,) + args)

        return DownloaderEvents(
            fetch_begin=rec("fetch_begin"),
            target_begin=rec("target_begin"),
            target_end=rec("target_end"),
            task_start=rec("task_start"),
            task_progress=rec("task_progress"),
            task_complete=rec("task_complete"),
            task_skip=rec("task_skip"),
            task_error=rec("task_error"),
            end=rec("end"),
        )

    def names(self):
        return [item[0] for item in self.items]


def fake_ydl(result, archived=(), fail=(), existing=()):
    """YoutubeDL stand-in: drives the hooks the way a real download would."""

    class FakeYDL:
        def __init__(self, params):
            self.params = params

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def extract_info(self, url, download=True, process=True):
            return result

        def in_download_archive(self, entry):
            return entry.get("id") in archived

        def process_ie_result(self, entry, download=True):
            if entry.get("id") in fail:
                raise DownloadError("ERROR: HTTP Error 403: Forbidden")
            path = os.path.join(self.params["outtmpl"]["default"].split("%")[0], f"{entry['id']}.mp4")
            for hook in self.params["progress_hooks"]:
                if entry.get("id") not in existing:
                    hook({"status": "downloading", "filename": path, "downloaded_bytes": 50, "total_bytes": 100})
                hook({"status": "finished", "filename": path})
            for hook in self.params["postprocessor_hooks"]:
                hook({"status": "finished", "postprocessor": "MoveFiles", "info_dict": {"filepath": path}})
            return entry

    return FakeYDL


def _options(tmp_path, **extra):
    options = {"out_dir": str(tmp_path), "use_status_cache": True, "file_exists_action": {"content": "skip"}}
    options.update(extra)
    return options


def test_build_params(tmp_path):
    params = yb.YtDlpBackend().build_params(
        _options(tmp_path, cookie="session_id=abc", include={"comments": True})
    )
    assert params["download_archive"] == os.path.join(str(tmp_path), yb.ARCHIVE_NAME)
    assert params["http_headers"] == {"Cookie": "session_id=abc"}
    assert params["getcomments"] is True
    assert params["overwrites"] is None
    assert params["outtmpl"]["default"].startswith(str(tmp_path))


def test_playlist_download(tmp_path, monkeypatch):
    playlist = {
        "_type": "playlist",
        "entries": [
            {"id": "1", "title": "First"},
            {"id": "2", "title": "Second"},
            {"id": "3", "title": "Broken"},
        ],
    }
    monkeypatch.setattr(yb, "YoutubeDL", fake_ydl(playlist, archived={"2"}, fail={"3"}))
    log = EventLog()
    yb.YtDlpBackend().run("https://www.patreon.com/c/creator", _options(tmp_path), log.events(), threading.Event())

    assert log.items[0] == ("fetch_begin", "creator")
    assert ("target_begin", "First") in log.items
    assert ("task_start", "1.mp4") in log.items
    assert ("task_complete", os.path.join(str(tmp_path), "1.mp4")) in log.items
    assert ("target_end", True, "already downloaded") in log.items
    assert ("task_error", "HTTP Error 403: Forbidden", False) in log.items
    ends = [item for item in log.items if item[0] == "target_end"]
    assert [e[1] for e in ends] == [False, True, True]
    assert log.names()[-1] == "end"
    payload = log.items[-1][1]
    assert not payload.aborted and not payload.error


def test_media_type_filter_skips_posts(tmp_path, monkeypatch):
    monkeypatch.setattr(yb, "YoutubeDL", fake_ydl({"id": "9", "title": "Solo"}))
    log = EventLog()
    options = _options(tmp_path, include={"posts_with_media_type": ["image"]})
    yb.YtDlpBackend().run("https://www.patreon.com/posts/solo-9", options, log.events(), threading.Event())
    assert ("target_end", True, "excluded by media type filter") in log.items
    assert "task_complete" not in log.names()


def test_cancel_from_progress_hook(tmp_path, monkeypatch):
    monkeypatch.setattr(yb, "YoutubeDL", fake_ydl({"id": "9", "title": "Solo"}))
    cancel = threading.Event()
    cancel.set()
    log = EventLog()
    yb.YtDlpBackend().run("https://www.patreon.com/posts/solo-9", _options(tmp_path), log.events(), cancel)
    assert log.items[-1][0] == "end"
    assert log.items[-1][1].aborted


def test_extractor_failure_ends_with_error(tmp_path, monkeypatch):
    class Broken(fake_ydl(None)):
        def extract_info(self, url, download=True, process=True):
            raise DownloadError("ERROR: Unable to extract post")

    monkeypatch.setattr(yb, "YoutubeDL", Broken)
    log = EventLog()
    yb.YtDlpBackend().run("https://www.patreon.com/posts/x-1", _options(tmp_path), log.events(), threading.Event())
    payload = log.items[-1][1]
    assert payload.error
    assert payload.message == "Unable to extract post"


def test_logger_reports_existing_files():
    skipped = []
    logger = yb._YdlLogger(yb.logging.getLogger("test"), lambda f, r: skipped.append((f, r)))
    logger.debug("[download] /data/a/clip.mp4 has already been downloaded")
    logger.info("[download] Example has already been recorded in the archive")
    logger.debug("[debug] ignored")
    assert skipped == [("/data/a/clip.mp4", "file exists"), ("Example", "already in archive")]


def test_existing_file_is_reported_once(tmp_path, monkeypatch):
    monkeypatch.setattr(yb, "YoutubeDL", fake_ydl({"id": "7", "title": "Again"}, existing={"7"}))
    log = EventLog()
    yb.YtDlpBackend().run("https://www.patreon.com/posts/again-7", _options(tmp_path), log.events(), threading.Event())
    assert [item for item in log.items if item[0] == "task_skip"] == [("task_skip", "7.mp4", "file exists")]
    assert "task_complete" not in log.names()
    assert ("target_end", False, None) in log.items


def test_broken_embed_command_only_skips_its_target(tmp_path, monkeypatch):
    playlist = {
        "_type": "playlist",
        "entries": [
            {"id": "5", "title": "Embedded", "ie_key": "Youtube", "url": "https://youtu.be/abc"},
            {"id": "6", "title": "Quoted", "ie_key": "Vimeo", "url": "https://vimeo.com/1"},
            {"id": "7", "title": "Native"},
        ],
    }
    monkeypatch.setattr(yb, "YoutubeDL", fake_ydl(playlist))
    options = _options(
        tmp_path,
        embed_downloaders=[
            {"provider": "youtube", "exec": "no-such-binary-postvault {embed.url}"},
            {"provider": "vimeo", "exec": 'yt-dlp "{embed.url}'},
        ],
    )
    log = EventLog()
    yb.YtDlpBackend().run("https://www.patreon.com/c/creator", options, log.events(), threading.Event())

    begins = [item[1] for item in log.items if item[0] == "target_begin"]
    assert begins == ["Embedded", "Quoted", "Native"]
    ends = [item for item in log.items if item[0] == "target_end"]
    assert [e[1] for e in ends] == [True, True, False]
    assert "no-such-binary-postvault" in ends[0][2]
    assert "No closing quotation" in ends[1][2]
    assert ("task_complete", os.path.join(str(tmp_path), "7.mp4")) in log.items
    payload = log.items[-1][1]
    assert not payload.error and not payload.aborted
