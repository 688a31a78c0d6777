"""Backend CRUD service for maps, memories and photos.

Every route except /api/health needs a bearer token, verified against the
passkey identity service. Rows are always scoped to the token's user; a
map, memory or photo that belongs to someone else is reported as not found.
Errors are returned as {"error": "..."}.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import PasskeyVerifier, bearer_token
from .config import Settings
from .database import Database
from .error_handling import PersistenceError, setup_logging

logger = logging.getLogger(__name__)

PhotoPayload = Union[str, Dict[str, Any]]


class MapCreate(BaseModel):
    name: Optional[str] = None
    is_public: bool = False


class MapUpdate(BaseModel):
    name: Optional[str] = None
    is_public: Optional[bool] = None


class MemoryFields(BaseModel):
    """Columns shared by created and imported memories."""

    source_type: Literal["file", "text"] = "file"
    source_data: Optional[str] = None
    processed_image: Optional[str] = None
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    width: Optional[float] = None
    height: Optional[float] = None
    content_bounds: Optional[Union[Dict[str, Any], str]] = None
    flipped_horizontally: bool = False
    is_locked: bool = False
    log_location: Optional[str] = ""
    log_date: Optional[str] = ""
    log_musings: Optional[str] = ""
    photos: List[PhotoPayload] = []


class MemoryCreate(MemoryFields):
    map_id: int


class MemoryUpdate(BaseModel):
    processed_image: Optional[str] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    width: Optional[float] = None
    height: Optional[float] = None
    content_bounds: Optional[Union[Dict[str, Any], str]] = None
    flipped_horizontally: Optional[bool] = None
    is_locked: Optional[bool] = None
    log_location: Optional[str] = None
    log_date: Optional[str] = None
    log_musings: Optional[str] = None


class PhotoCreate(BaseModel):
    photo_data: str
    filename: Optional[str] = ""


class ImportRequest(BaseModel):
    memories: List[MemoryFields]
    clearExisting: bool = False


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(settings: Optional[Settings] = None,
               database: Optional[Database] = None,
               verifier: Optional[PasskeyVerifier] = None) -> FastAPI:
    """Create the FastAPI application for the PixelMap backend."""
    settings = settings or Settings.from_env()
    database = database or Database(settings.db_path)
    verifier = verifier or PasskeyVerifier(settings.passkey_api_url, timeout=settings.request_timeout)

    app = FastAPI(
        title="PixelMap API",
        description="Maps, memories and photos for the PixelMap editor",
        version="1.0.0",
    )
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.state.database = database
    app.state.verifier = verifier

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return _error(400, f"{location}: {message}" if location else message)

    @app.exception_handler(PersistenceError)
    async def persistence_error(request: Request, exc: PersistenceError):
        return _error(exc.status_code or 500, str(exc))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return _error(500, "Internal server error")

    def current_user(token: str = Depends(bearer_token)) -> Dict[str, Any]:
        user = verifier.verify(token)
        database.ensure_user(user["id"], user["username"])
        return user

    # Health and auth

    @app.get("/api/health")
    def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/api/auth/sync")
    def sync_user(user: Dict[str, Any] = Depends(current_user)):
        """Upsert the user and make sure they have a default map."""
        database.upsert_user(user["id"], user["username"], user.get("email"), user.get("displayName"))
        default_map = database.get_or_create_default_map(user["id"])
        logger.info(f"Synced user {user['id']} (default map {default_map['id']})")
        return {"user": user, "defaultMapId": default_map["id"]}

    @app.get("/api/auth/me")
    def me(user: Dict[str, Any] = Depends(current_user)):
        row = database.get_user(user["id"])
        if row is None:
            raise HTTPException(status_code=404, detail="User not found")
        return row

    # Maps

    @app.get("/api/maps")
    def list_maps(user: Dict[str, Any] = Depends(current_user)):
        return database.get_maps(user["id"])

    @app.get("/api/maps/{map_id}")
    def get_map(map_id: int, user: Dict[str, Any] = Depends(current_user)):
        result = database.get_map_with_memories(map_id, user["id"])
        if result is None:
            raise HTTPException(status_code=404, detail="Map not found")
        return result

    @app.post("/api/maps")
    def create_map(body: MapCreate, user: Dict[str, Any] = Depends(current_user)):
        return database.create_map(user["id"], body.name, body.is_public)

    @app.put("/api/maps/{map_id}")
    def update_map(map_id: int, body: MapUpdate, user: Dict[str, Any] = Depends(current_user)):
        result = database.update_map(map_id, user["id"], body.name, body.is_public)
        if result is None:
            raise HTTPException(status_code=404, detail="Map not found")
        return result

    @app.delete("/api/maps/{map_id}")
    def delete_map(map_id: int, user: Dict[str, Any] = Depends(current_user)):
        if not database.delete_map(map_id, user["id"]):
            raise HTTPException(status_code=404, detail="Map not found")
        return {"message": "Map deleted successfully"}

    @app.get("/api/maps/{map_id}/export")
    def export_map(map_id: int, user: Dict[str, Any] = Depends(current_user)):
        envelope = database.export_map(map_id, user["id"])
        if envelope is None:
            raise HTTPException(status_code=404, detail="Map not found")
        return envelope

    @app.post("/api/maps/{map_id}/import")
    def import_map(map_id: int, body: ImportRequest, user: Dict[str, Any] = Depends(current_user)):
        memories = [memory.model_dump() for memory in body.memories]
        count = database.import_memories(map_id, user["id"], memories, body.clearExisting)
        if count is None:
            raise HTTPException(status_code=404, detail="Map not found")
        logger.info(f"Imported {count} memories into map {map_id}")
        return {"message": "Map imported successfully", "count": count}

    # Memories

    @app.post("/api/memories")
    def add_memory(body: MemoryCreate, user: Dict[str, Any] = Depends(current_user)):
        memory = database.add_memory(user["id"], body.model_dump())
        if memory is None:
            raise HTTPException(status_code=404, detail="Map not found")
        return memory

    @app.put("/api/memories/{memory_id}")
    def update_memory(memory_id: int, body: MemoryUpdate, user: Dict[str, Any] = Depends(current_user)):
        memory = database.update_memory(memory_id, user["id"], body.model_dump(exclude_unset=True))
        if memory is None:
            raise HTTPException(status_code=404, detail="Memory not found")
        return memory

    @app.delete("/api/memories/{memory_id}")
    def delete_memory(memory_id: int, user: Dict[str, Any] = Depends(current_user)):
        if not database.delete_memory(memory_id, user["id"]):
            raise HTTPException(status_code=404, detail="Memory not found")
        return {"message": "Memory deleted successfully"}

    @app.post("/api/memories/{memory_id}/photos")
    def add_photo(memory_id: int, body: PhotoCreate, user: Dict[str, Any] = Depends(current_user)):
        photo = database.add_photo(memory_id, user["id"], body.photo_data, body.filename or "")
        if photo is None:
            raise HTTPException(status_code=404, detail="Memory not found")
        return photo

    @app.delete("/api/memories/{memory_id}/photos/{photo_id}")
    def delete_photo(memory_id: int, photo_id: int, user: Dict[str, Any] = Depends(current_user)):
        if not database.delete_photo(memory_id, photo_id, user["id"]):
            raise HTTPException(status_code=404, detail="Photo not found")
        return {"message": "Photo deleted successfully"}

    return app


def main():
    """Main entry point."""
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="PixelMap backend service")
    parser.add_argument(
        "--host",
        type=str,
        default=os.getenv("HOST", "127.0.0.1"),
        help="Host to bind to (default: 127.0.0.1 or HOST env var)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8080")),
        help="Port to bind to (default: 8080 or PORT env var)",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=os.getenv("PIXELMAP_DB_PATH", "pixelmap.db"),
        help="SQLite database file (default: pixelmap.db or PIXELMAP_DB_PATH env var)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.getenv("PIXELMAP_LOG_LEVEL", "info"),
        choices=["debug", "info", "warning", "error"],
        help="Logging level (default: info or PIXELMAP_LOG_LEVEL env var)",
    )

    args = parser.parse_args()
    setup_logging(args.log_level.upper(), os.getenv("PIXELMAP_LOG_FILE"))

    settings = Settings.from_env()
    settings.db_path = args.db_path
    logger.info(f"Starting PixelMap backend on {args.host}:{args.port} (db: {settings.db_path})")
    if not settings.passkey_api_url:
        logger.warning("PASSKEY_API_URL is not set; every authenticated request will fail")

    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
