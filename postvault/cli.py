from __future__ import annotations

import argparse
import json
import logging
import os
import queue
from typing import Optional

from colorama import Fore, Style, init as colorama_init
from dotenv import load_dotenv

from postvault.encoder import EncodeCallbacks, encode_videos
from postvault.utils.formatting import format_bytes, format_speed
from postvault.utils.logging import setup_logger
from postvault.web import state as st
from postvault.web.worker import JobController, JobRejected

KIND_COLORS = {
    "success": Fore.GREEN,
    "skip": Fore.YELLOW,
    "warn": Fore.YELLOW,
    "error": Fore.RED,
}
TERMINAL_STATUSES = {st.COMPLETE, st.ERROR, st.ABORTED}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Patreon archive viewer: download, transcode and browse posts")
    p.add_argument("--data-dir", default=None, help="Archive root (default: $DATA_DIR or ./data)")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the web app")
    serve.add_argument("--host", default=None, help="Bind address (default: $HOST or 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: $PORT or 8000)")

    fetch = sub.add_parser("fetch", help="Download a post, collection or creator and transcode new videos")
    fetch.add_argument("url", help="Patreon post, collection or creator URL")

    encode = sub.add_parser("encode", help="Transcode every video under a directory to 480p")
    encode.add_argument("directory", nargs="?", default=None, help="Directory to scan (default: the data dir)")
    return p


def print_log(kind: str, message: str) -> None:
    print(KIND_COLORS.get(kind, "") + message + Style.RESET_ALL)


def _run_serve(args: argparse.Namespace, data_dir: str) -> int:
    import uvicorn

    from postvault.web.app import create_app

    host = args.host or os.getenv("HOST", "127.0.0.1")
    port = args.port or int(os.getenv("PORT", "8000"))
    uvicorn.run(create_app(data_dir), host=host, port=port)
    return 0


def _follow_job(sub, status: str) -> str:
    """Print job events until a terminal status arrives; returns that status."""
    while status not in TERMINAL_STATUSES:
        try:
            event, data = sub.get(timeout=0.5)
        except queue.Empty:
            continue
        payload = json.loads(data)
        if event == "log":
            print_log(payload["kind"], payload["message"])
        elif event == "progress" and payload.get("percent", 0) >= 100:
            print(
                Style.DIM
                + f"  {payload['filename']}: {format_bytes(payload.get('sizeDownloaded'))}"
                + f" at {format_speed(payload.get('speed'))}"
                + Style.RESET_ALL
            )
        elif event == "status":
            status = payload["status"]
    return status


def _run_fetch(args: argparse.Namespace, data_dir: str) -> int:
    controller = JobController(data_dir, logger=setup_logger(level=logging.CRITICAL))
    sub = controller.store.subscribe()
    try:
        controller.start_job(args.url)
    except JobRejected as e:
        print_log("error", str(e))
        return 2

    status = controller.store.status
    while True:
        try:
            if status not in TERMINAL_STATUSES:
                status = _follow_job(sub, status)
            controller.wait()
            break
        except KeyboardInterrupt:
            try:
                controller.request_abort()
            except JobRejected:
                pass
            status = controller.store.status
    # The job thread may have logged after the terminal status.
    for event, data in sub.drain():
        if event == "log":
            payload = json.loads(data)
            print_log(payload["kind"], payload["message"])
    controller.store.unsubscribe(sub)
    return 0 if status == st.COMPLETE else 1


def _run_encode(args: argparse.Namespace, data_dir: str) -> int:
    directory = args.directory or data_dir
    if not os.path.isdir(directory):
        print_log("error", f"Not a directory: {directory}")
        return 2
    summary = encode_videos(None, directory, EncodeCallbacks(on_log=print_log))
    print(Fore.GREEN + "\n=== Summary ===" + Style.RESET_ALL)
    print(f"To encode: {summary.total}")
    print(f"Encoded: {summary.encoded}")
    print(f"Skipped (already 480p): {summary.already_target}")
    print(f"Unreadable: {summary.unprobed}")
    print(f"Failed: {summary.failed}")
    return 0 if summary.failed == 0 else 1


def run_cli(args: Optional[argparse.Namespace] = None) -> int:
    load_dotenv()
    colorama_init(autoreset=True)
    if args is None:
        args = build_parser().parse_args()
    data_dir = args.data_dir or os.getenv("DATA_DIR", "data")
    if args.command == "serve":
        return _run_serve(args, data_dir)
    if args.command == "fetch":
        return _run_fetch(args, data_dir)
    return _run_encode(args, data_dir)
