"""
Image Gallery -- Web UI (FastAPI + Jinja2).

Run:
    python server.py
    # or: uvicorn server:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates

from gallery_config import GalleryConfig, load_config
from image_labeler import (
    IMAGE_EXTENSIONS,
    Classifier,
    GalleryItem,
    build_gallery,
    load_classifier,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO) -> None:
    """Send gallery diagnostics to stderr in whichever process serves requests."""
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    for name in (__name__, "image_labeler"):
        logging.getLogger(name).setLevel(level)


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

config = load_config()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Configure logging and load the classifier before the first request."""
    setup_logging()
    await asyncio.to_thread(get_classifier)
    yield


app = FastAPI(title="Image Gallery", lifespan=lifespan)
templates = Jinja2Templates(directory=Path(__file__).parent / "templates")

# ---------------------------------------------------------------------------
# Global model cache  (loaded once, reused across requests)
# ---------------------------------------------------------------------------

_model_cache: dict[str, Optional[Classifier]] = {}


def get_classifier() -> Optional[Classifier]:
    """Load or return the cached classifier (None when unavailable)."""
    if "classifier" not in _model_cache:
        logger.info("Loading classifier …")
        _model_cache["classifier"] = load_classifier(config)
    return _model_cache["classifier"]


# ---------------------------------------------------------------------------
# Gallery assembly
# ---------------------------------------------------------------------------


def collect_gallery(cfg: GalleryConfig) -> tuple[list[GalleryItem], Optional[str]]:
    """Return (items, error).  An unreadable directory gives no items and a message."""
    classifier = get_classifier()
    try:
        items = build_gallery(
            cfg.image_path,
            classifier=classifier,
            url_prefix=cfg.url_prefix,
        )
    except OSError as e:
        logger.error("Cannot read image directory %s: %s", cfg.image_path, e)
        return [], f"Could not read image directory: {cfg.image_dir}"
    return items, None


# ---------------------------------------------------------------------------
# Routes -- Pages
# ---------------------------------------------------------------------------


@app.get("/", response_class=HTMLResponse)
async def gallery(request: Request):
    items, error = await asyncio.to_thread(collect_gallery, config)
    return templates.TemplateResponse(
        request,
        "gallery.html",
        {
            "imgs": [item.to_dict() for item in items],
            "layout": False,
            "error": error,
        },
    )


# ---------------------------------------------------------------------------
# Routes -- API
# ---------------------------------------------------------------------------


@app.get("/api/gallery")
async def gallery_json():
    """Same listing as the gallery page, as JSON."""
    items, error = await asyncio.to_thread(collect_gallery, config)
    return JSONResponse(
        {"items": [item.to_dict() for item in items], "error": error}
    )


@app.get("/health")
async def health():
    return {"status": "ok", "classifier": _model_cache.get("classifier") is not None}


# ---------------------------------------------------------------------------
# Image serving
# ---------------------------------------------------------------------------


@app.get("/{prefix}/{filename}")
async def serve_image(prefix: str, filename: str):
    if prefix != config.url_prefix:
        return JSONResponse({"error": "Not found"}, 404)
    if (
        filename.startswith(".")
        or Path(filename).name != filename
        or Path(filename).suffix.lower() not in IMAGE_EXTENSIONS
    ):
        return JSONResponse({"error": "File not found"}, 404)

    file_path = config.image_path / filename
    if not file_path.is_file():
        return JSONResponse({"error": "File not found"}, 404)
    return FileResponse(file_path)


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    setup_logging()
    uvicorn.run(
        "server:app",
        host=config.host,
        port=config.port,
        reload=True,
        log_level="info",
    )
