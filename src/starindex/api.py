"""FastAPI service for starindex."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from functools import lru_cache
from typing import Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import settings
from .errors import (
    AlreadyIndexingError,
    ConfigurationError,
    ProviderAuthError,
    ProviderRateOrNetworkError,
    StarIndexError,
    StorageError,
)
from .indexer import iter_run
from .search import get_item_by_name, list_items
from .services import Services, build_services

# Configure logging at application level
log_level_str = os.getenv("STARINDEX_LOG_LEVEL", "INFO").upper()
valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
log_level = getattr(logging, log_level_str if log_level_str in valid_levels else "INFO")
logging.basicConfig(level=log_level, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="starindex API", version="0.1.0")


@app.exception_handler(ConfigurationError)
async def configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
    # Credentials are only needed by the routes that talk to GitHub or the embedder
    return JSONResponse(status_code=503, content={"detail": {"error": "ConfigurationError", "message": str(exc)}})


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(settings)


def _require_admin_token(x_admin_token: str | None) -> None:
    if not settings.admin_token:
        raise HTTPException(status_code=403, detail="Admin token not configured")
    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _http_error(exc: StarIndexError) -> HTTPException:
    if isinstance(exc, AlreadyIndexingError):
        status = 409
    elif isinstance(exc, ProviderAuthError):
        status = 401
    elif isinstance(exc, ProviderRateOrNetworkError):
        status = 502
    elif isinstance(exc, StorageError):
        status = 500
    else:
        status = 502
    detail: dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    if exc.page is not None:
        detail["page"] = exc.page
    if exc.phase is not None:
        detail["phase"] = exc.phase
    return HTTPException(status_code=status, detail=detail)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "running"}


@app.get("/config")
def get_config(services: Services = Depends(get_services)) -> dict[str, Any]:
    # Return only non-sensitive configuration details
    return {
        "embedding_backend": settings.embedding_backend,
        "embedding_model": settings.embedding_model,
        "embedding_dimension": settings.embedding_dimension,
        "store_backend": settings.store_backend,
        "indexing": asdict(services.config_manager.config),
    }


@app.put("/config")
def update_config(
    changes: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Update indexing settings; numbers are clamped, other values ignored."""
    return {"indexing": asdict(services.config_manager.update(changes))}


@app.get("/status")
def status(services: Services = Depends(get_services)) -> dict[str, Any]:
    try:
        return services.orchestrator.status()
    except StarIndexError as exc:
        raise _http_error(exc) from exc


@app.post("/index")
def index(
    page: int = Body(1, embed=True, ge=1),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Index one page of starred repositories."""
    try:
        return services.orchestrator.run(page).to_dict()
    except StarIndexError as exc:
        raise _http_error(exc) from exc


@app.post("/index/stream")
def index_stream(
    page: int = Body(1, embed=True, ge=1),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """Index one page and stream progress updates via SSE."""
    if services.is_running:
        raise _http_error(AlreadyIndexingError("An indexing run is already in progress", page=page))

    def event_stream():
        for event in iter_run(services.orchestrator, page):
            yield f"data: {json.dumps(event)}\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.post("/query")
def query_repositories(
    query: str = Body(...),
    num_results: int = Body(10, ge=1, le=100),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    if not query.strip():
        raise HTTPException(status_code=400, detail="query must be a non-empty string")
    try:
        results = services.search.search(query.strip(), k=num_results)
    except StarIndexError as exc:
        raise _http_error(exc) from exc
    return {"results": [result.to_dict() for result in results]}


@app.get("/repositories")
def list_repositories(services: Services = Depends(get_services)) -> dict[str, Any]:
    return list_items(services.store)


@app.get("/repositories/{owner}/{repo}")
def get_repository(owner: str, repo: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    item = get_item_by_name(services.store, f"{owner}/{repo}")
    if item is None:
        raise HTTPException(status_code=404, detail="Repository not found")
    return item.to_dict()


@app.post("/reindex")
def reindex(
    x_admin_token: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Delete everything and index the first page again (admin token required)."""
    _require_admin_token(x_admin_token)
    try:
        return services.orchestrator.reindex().to_dict()
    except StarIndexError as exc:
        raise _http_error(exc) from exc


@app.post("/clear")
def clear_db(
    x_admin_token: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Clear the database (admin token required)."""
    _require_admin_token(x_admin_token)
    try:
        services.clear()
    except StarIndexError as exc:
        raise _http_error(exc) from exc
    return {"status": "cleared", "db_path": str(settings.db_path)}
