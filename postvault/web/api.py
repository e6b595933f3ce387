import os
import queue
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from postvault.embed_conf import EmbedConfSettings, read_embed_conf, write_embed_conf
from postvault.web.state import format_sse
from postvault.web.worker import InvalidTargetURL, JobConflict, JobController, NoActiveJob

KEEPALIVE_SECONDS = 15.0
STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")

router = APIRouter()


class StartRequest(BaseModel):
    url: Optional[str] = None


def get_controller(request: Request) -> JobController:
    return request.app.state.controller


@router.get("/download")
def download_page():
    page = os.path.join(STATIC_DIR, "download.html")
    if not os.path.exists(page):
        raise HTTPException(status_code=404, detail="Download page not found")
    return FileResponse(page, media_type="text/html")


@router.get("/download/progress")
async def download_progress(request: Request, controller: JobController = Depends(get_controller)):
    """Server-sent events: one ``state`` snapshot, then incremental updates."""
    store = controller.store

    async def event_stream():
        sub = store.subscribe()
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event, data = await run_in_threadpool(sub.get, KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(event, data)
        finally:
            store.unsubscribe(sub)

    headers = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


@router.get("/download/state")
def download_state(controller: JobController = Depends(get_controller)):
    return controller.store.snapshot()


@router.post("/download/start")
def start_download(req: StartRequest, controller: JobController = Depends(get_controller)):
    try:
        controller.start_job(req.url)
    except InvalidTargetURL as e:
        raise HTTPException(status_code=400, detail=str(e))
    except JobConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True}


@router.post("/download/abort")
def abort_download(controller: JobController = Depends(get_controller)):
    try:
        controller.request_abort()
    except NoActiveJob as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True}


@router.get("/download/settings")
def get_settings(controller: JobController = Depends(get_controller)):
    try:
        settings = read_embed_conf(controller.data_dir)
    except OSError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return settings.to_dict()


@router.post("/download/settings")
def save_settings(payload: Any = Body(None), controller: JobController = Depends(get_controller)):
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid settings object.")
    settings = EmbedConfSettings.from_dict(payload)
    try:
        write_embed_conf(controller.data_dir, settings)
    except OSError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True}
