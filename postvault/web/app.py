import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

try:
    load_dotenv()
except OSError as exc:
    # Prevent startup from crashing if .env is unreadable in the container.
    print(f"[postvault] Warning: could not load .env ({exc})")

from postvault.utils.logging import setup_logger
from postvault.web.api import router as download_router
from postvault.web.worker import JobController


def create_app(data_dir: Optional[str] = None, controller: Optional[JobController] = None) -> FastAPI:
    """Build the web app. Each app owns its own job controller and state store."""
    logger = setup_logger()
    if controller is None:
        controller = JobController(data_dir or os.getenv("DATA_DIR", "data"), logger=logger)

    app = FastAPI(title="Postvault")
    app.state.controller = controller

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(download_router)

    @app.get("/")
    def index():
        return RedirectResponse(url="/download", status_code=302)

    return app


app = create_app()
