from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from postvault.utils.formatting import VIDEO_EXTENSIONS, is_encoding_temp, is_video_path
from postvault.utils.logging import setup_logger

TARGET_HEIGHT = 480
OUTPUT_EXT = ".mp4"
TEMP_SUFFIX = ".encoding.mp4"


class EncodeAborted(Exception):
    """Raised when a transcode is stopped because the job was aborted."""


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    @property
    def is_portrait(self) -> bool:
        return self.height > self.width


@dataclass
class EncodeCallbacks:
    on_log: Optional[Callable[[str, str], None]] = None
    on_start: Optional[Callable[[int], None]] = None
    on_progress: Optional[Callable[[Optional[str], int, int], None]] = None  # current, completed, total
    on_end: Optional[Callable[[], None]] = None


@dataclass
class EncodeSummary:
    total: int = 0
    encoded: int = 0
    failed: int = 0
    already_target: int = 0
    unprobed: int = 0
    aborted: bool = False


def is_480p(resolution: Resolution) -> bool:
    """The smaller side decides: 854x480 and 480x854 are both 480p."""
    return min(resolution.width, resolution.height) == TARGET_HEIGHT


def scale_filter(resolution: Resolution) -> str:
    # -2 keeps the aspect ratio and rounds the free side to an even number (h264 needs it)
    if resolution.is_portrait:
        return f"scale={TARGET_HEIGHT}:-2"
    return f"scale=-2:{TARGET_HEIGHT}"


def video_codec_args(platform: Optional[str] = None) -> List[str]:
    platform = platform or sys.platform
    if platform == "darwin":
        return ["h264_videotoolbox", "-q:v", "65"]
    return ["libx264", "-crf", "23"]


def output_path_for(path: str) -> str:
    return os.path.splitext(path)[0] + OUTPUT_EXT


def temp_path_for(path: str) -> str:
    return os.path.splitext(path)[0] + TEMP_SUFFIX


def find_video_files(root: str) -> List[str]:
    """Recursively list video files below ``root``; unreadable directories are skipped."""
    found: List[str] = []

    def _onerror(exc: OSError) -> None:
        logging.getLogger("postvault").debug("Skipping unreadable directory: %s", exc)

    for dirpath, dirnames, filenames in os.walk(root, onerror=_onerror):
        dirnames.sort()
        for name in sorted(filenames):
            if name.lower().endswith(VIDEO_EXTENSIONS):
                found.append(os.path.join(dirpath, name))
    return found


class VideoEncoder:
    """ffprobe/ffmpeg wrapper."""

    def __init__(self, ffprobe: str = "ffprobe", ffmpeg: str = "ffmpeg", poll_s: float = 0.5) -> None:
        self.ffprobe = ffprobe
        self.ffmpeg = ffmpeg
        self.poll_s = poll_s

    def probe(self, path: str) -> Optional[Resolution]:
        """Width/height of the first video stream, or None when ffprobe can't tell."""
        command = [
            self.ffprobe,
            "-v",
            "error",
            "-select_streams",
            "v:0",
            "-show_entries",
            "stream=width,height",
            "-of",
            "csv=s=x:p=0",
            path,
        ]
        try:
            completed = subprocess.run(command, capture_output=True, text=True, check=True, timeout=30)
        except (OSError, subprocess.SubprocessError):
            return None
        first = (completed.stdout or "").strip().splitlines()[:1]
        if not first:
            return None
        try:
            width, height = (int(part) for part in first[0].strip().rstrip("x").split("x")[:2])
        except ValueError:
            return None
        if width <= 0 or height <= 0:
            return None
        return Resolution(width, height)

    def transcode(
        self,
        input_path: str,
        output_path: str,
        vf: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        command = [
            self.ffmpeg,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            input_path,
            "-vf",
            vf,
            "-c:v",
            *video_codec_args(),
            "-c:a",
            "copy",
            "-y",
            output_path,
        ]
        try:
            proc = subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
        except OSError as exc:
            raise RuntimeError(f"could not start ffmpeg: {exc}") from exc
        while True:
            try:
                _, stderr = proc.communicate(timeout=self.poll_s)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    proc.terminate()
                    try:
                        proc.wait(timeout=10)
                    except subprocess.TimeoutExpired:
                        proc.kill()
                        proc.wait()
                    raise EncodeAborted(input_path)
        if proc.returncode != 0:
            detail = (stderr or "").strip().splitlines()[-1:]
            suffix = f": {detail[0]}" if detail else ""
            raise RuntimeError(f"ffmpeg exited with code {proc.returncode}{suffix}")


def replace_original(input_path: str, temp_path: str) -> str:
    """Move a finished transcode over its source, normalising the container to .mp4."""
    output_path = output_path_for(input_path)
    converted = output_path != input_path
    if converted and os.path.exists(output_path):
        os.remove(output_path)
    os.replace(temp_path, output_path)
    if converted and os.path.exists(input_path):
        os.remove(input_path)
    return output_path


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def encode_videos(
    files: Optional[Sequence[str]],
    data_dir: Optional[str],
    callbacks: EncodeCallbacks,
    cancel_event: Optional[threading.Event] = None,
    encoder: Optional[VideoEncoder] = None,
    logger: Optional[logging.Logger] = None,
) -> EncodeSummary:
    """Transcode every candidate video that is not already 480p.

    ``files`` scopes the batch to an explicit list (the files a download just
    produced); when it is None the whole ``data_dir`` tree is scanned instead.
    A failing file is logged and counted; the batch always carries on.
    """
    encoder = encoder or VideoEncoder()
    logger = logger or setup_logger()

    def log(kind: str, message: str) -> None:
        if callbacks.on_log:
            callbacks.on_log(kind, message)
        else:
            logger.info(message)

    def end() -> None:
        if callbacks.on_end:
            callbacks.on_end()

    def progress(current: Optional[str], completed: int, total: int) -> None:
        if callbacks.on_progress:
            callbacks.on_progress(current, completed, total)

    summary = EncodeSummary()
    log("info", "Scanning for videos to encode...")
    if files is None:
        if not data_dir:
            raise ValueError("encode_videos needs a file list or a directory to scan")
        candidates = find_video_files(data_dir)
    else:
        candidates = [f for f in files if is_video_path(f) and os.path.isfile(f)]

    pending: List[tuple] = []
    for path in candidates:
        if is_encoding_temp(path):
            continue
        if cancel_event is not None and cancel_event.is_set():
            summary.aborted = True
            break
        resolution = encoder.probe(path)
        if resolution is None:
            summary.unprobed += 1
            logger.debug("Could not probe %s; leaving it alone", path)
            continue
        if is_480p(resolution):
            summary.already_target += 1
            continue
        pending.append((path, resolution))

    summary.total = len(pending)
    if summary.aborted or not pending:
        if not summary.aborted:
            log("info", "No videos need encoding")
        end()
        return summary

    log("info", f"Found {len(pending)} video(s) to encode")
    if callbacks.on_start:
        callbacks.on_start(len(pending))

    for path, resolution in pending:
        if cancel_event is not None and cancel_event.is_set():
            summary.aborted = True
            log("warn", "Encoding stopped: abort requested")
            break
        filename = os.path.basename(path)
        log("info", f"Encoding: {filename} ({resolution.width}x{resolution.height})")
        progress(filename, summary.encoded, summary.total)
        temp_path = temp_path_for(path)
        try:
            encoder.transcode(path, temp_path, scale_filter(resolution), cancel_event)
            replace_original(path, temp_path)
        except EncodeAborted:
            _discard(temp_path)
            summary.aborted = True
            log("warn", f"Encoding of {filename} interrupted by abort")
            break
        except (OSError, RuntimeError) as exc:
            _discard(temp_path)
            summary.failed += 1
            log("error", f"Failed to encode {filename}: {exc}")
            continue
        summary.encoded += 1
        log("success", f"Encoded: {filename}")
        progress(None, summary.encoded, summary.total)

    if not summary.aborted:
        log("success", f"Encoding complete: {summary.encoded}/{summary.total} videos processed")
    end()
    return summary
