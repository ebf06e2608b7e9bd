from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from pydantic import BaseModel, Field

load_dotenv()

from core import (
    backfill_lyrics,
    error_payload,
    get_song_lyrics,
    import_from_link,
    preview_link,
    refresh_lyrics_from_album,
    search_songs,
)
from lib.catalog import aggregate_top_albums
from lib.errors import PipelineError
from lib.platforms.netease import check_api_reachability
from lib.storage import HeaderIdentity, InMemoryStorage, LocalBlobStore
from playwright_pool import close_browser

# Basic logging configuration to ensure logger outputs appear in the terminal
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("uvicorn.error")
logger.setLevel(logging.INFO)


# =========================
# Pydantic models
# =========================

class ImportBody(BaseModel):
    input: str = Field(..., min_length=1, max_length=4000)
    category_id: Optional[str] = None


class PreviewBody(BaseModel):
    input: str = Field(..., min_length=1, max_length=4000)


class AlbumLyricsBody(BaseModel):
    album_id: str = Field(..., min_length=1)


class TrackModel(BaseModel):
    name: str
    artist_name: str
    album_name: str
    picture_url: str
    platform_track_id: Optional[str] = None
    original_link: Optional[str] = None
    platform_album_id: Optional[str] = None


class PreviewResponse(BaseModel):
    platform: str
    content_type: str
    content_id: str
    tracks: List[TrackModel]


class ImportResponse(BaseModel):
    importedCount: int
    trackIds: List[str]
    failedCount: int = 0
    skippedCount: int = 0
    platform: Optional[str] = None
    contentType: Optional[str] = None


class TopAlbumModel(BaseModel):
    album_name: str
    artist_name: Optional[str] = None
    image_url: str
    pick_count: int
    avg_rating: float
    review_count: int


class BackfillResponse(BaseModel):
    total_by_song: int
    updated_by_song: int
    total_by_album: int
    updated_by_album: int
    total: int
    updated: int


# =========================
# FastAPI app & CORS
# =========================

app = FastAPI(
    title="Music Wall Backend",
    version="1.0.0",
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

default_origins = [
    "http://localhost:3000",
]

# ALLOWED_ORIGINS (comma separated) overrides the defaults
env_origins = os.getenv("ALLOWED_ORIGINS")
if env_origins:
    origins = [o.strip() for o in env_origins.split(",") if o.strip()]
else:
    origins = default_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.storage = InMemoryStorage()
_blob_dir = os.getenv("BLOB_DIR")
app.state.blob_store = LocalBlobStore(_blob_dir) if _blob_dir else None


@app.on_event("startup")
def _log_startup():
    logger.info("music-wall: startup event triggered")


@app.on_event("shutdown")
async def _shutdown_playwright_state():
    await close_browser()


@app.exception_handler(PipelineError)
async def _pipeline_error_handler(request: Request, exc: PipelineError):
    logger.error(f"[api] {request.method} {request.url.path} code={exc.code}: {exc} meta={exc.meta}")
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc))


def get_identity(request: Request) -> HeaderIdentity:
    return HeaderIdentity(request.headers)


def require_user_id(identity: HeaderIdentity = Depends(get_identity)) -> str:
    user_id = identity.current_user_id()
    if not user_id:
        raise HTTPException(status_code=401, detail={"errorCode": "unauthorized", "message": "Please sign in first."})
    return user_id


# =========================
# Health check
# =========================

@app.get("/health", tags=["system"])
def health() -> Dict[str, Any]:
    return {
        "ok": True,
        "status": "ok",
        "build_commit": os.getenv("RENDER_GIT_COMMIT", "local")[:7],
    }


# =========================
# Endpoints
# =========================

@app.post("/api/import", response_model=ImportResponse)
async def api_import(
    body: ImportBody,
    request: Request,
    identity: HeaderIdentity = Depends(get_identity),
):
    result = await import_from_link(
        body.input,
        body.category_id,
        storage=request.app.state.storage,
        user_id=identity.current_user_id(),
        blob_store=request.app.state.blob_store,
    )
    return result.to_dict()


@app.post("/api/preview", response_model=PreviewResponse)
async def api_preview(body: PreviewBody):
    link, records = await preview_link(body.input)
    return {
        "platform": link.platform.value,
        "content_type": link.content_type.value,
        "content_id": link.content_id,
        "tracks": [r.to_dict() for r in records],
    }


@app.get("/api/albums/top", response_model=List[TopAlbumModel])
async def api_top_albums(request: Request, limit: int = Query(20, ge=1, le=100)):
    records = await aggregate_top_albums(request.app.state.storage, limit=limit)
    return [r.to_dict() for r in records]


@app.post("/api/albums/backfill-lyrics", response_model=BackfillResponse)
async def api_backfill_lyrics(
    request: Request,
    identity: HeaderIdentity = Depends(get_identity),
):
    return await backfill_lyrics(request.app.state.storage, user_id=identity.current_user_id())


@app.post("/api/albums/{item_id}/fetch-lyrics-by-album")
async def api_fetch_lyrics_by_album(
    item_id: str,
    body: AlbumLyricsBody,
    request: Request,
    user_id: str = Depends(require_user_id),
):
    item = await refresh_lyrics_from_album(request.app.state.storage, item_id, body.album_id, user_id)
    return {"success": True, "item": item}


# =========================
# Song search
# =========================

@app.get("/api/search-songs")
async def api_search_songs(
    keywords: str = Query("", max_length=200),
    type: str = Query("lyrics"),
):
    results = await search_songs(keywords, mode=type)
    return {"results": [m.to_dict() for m in results]}


@app.get("/api/song-lyrics")
async def api_song_lyrics(id: str = Query("")):
    return {"lyrics": await get_song_lyrics(id)}


@app.get("/api/check-netease", tags=["system"])
async def api_check_netease() -> Dict[str, Any]:
    return await check_api_reachability()
