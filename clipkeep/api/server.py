# Purpose: FastAPI for ClipKeep
# HTTP endpoints for history search, item retrieval, deletion, OCR status and stats
# the app is built around an AppContext (create_app), nothing global

import os
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from loguru import logger
from pydantic import BaseModel

from clipkeep.core import config
from clipkeep.core.context import AppContext
from clipkeep.core.errors import DecodeError, RuntimeUnavailable
from clipkeep.db.models import ClipboardItem, ItemType, OcrStatusInfo
from clipkeep.search.history import ClipboardHistoryService

API_VERSION = "0.3.0"


# Response Models
class SearchResponse(BaseModel):
    query: str
    type: Optional[str]
    results: List[ClipboardItem]
    count: int


class StatsResponse(BaseModel):
    total_items: int
    text_items: int
    image_items: int
    pending_ocr: int


def _resolve(future):
    """Wait for a history Future and turn boundary errors into HTTP errors"""
    try:
        return future.result()
    except RuntimeUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except DecodeError as e:
        logger.error(f"[API] Decode error: {e}")
        raise HTTPException(status_code=502, detail=str(e))


def create_app(context: AppContext, history: Optional[ClipboardHistoryService] = None) -> FastAPI:
    history = history or ClipboardHistoryService(context)

    app = FastAPI(
        title="ClipKeep API",
        description="Clipboard history with OCR search",
        version=API_VERSION,
    )
    app.state.context = context
    app.state.history = history

    # === ENDPOINTS ===
    @app.get("/")
    def root():
        """Health check endpoint"""
        storage_open = getattr(context.storage, "is_open", True)
        return {
            "service": "ClipKeep API",
            "status": "running" if storage_open else "storage unavailable",
            "version": API_VERSION,
        }

    @app.get("/search", response_model=SearchResponse, response_model_by_alias=True)
    def search(
            q: str = Query(default="", description="Search text, empty lists the newest items"),
            limit: int = Query(default=config.search_limit, ge=1, le=1000),
            type: Optional[ItemType] = Query(default=None, description="Filter by item type: text or image"),
    ):
        """
        Search clipboard history (content, plus OCR text when ocr.includeInSearch is on)
        Results are newest first
        """
        results = _resolve(history.search(q, limit, type))
        return SearchResponse(
            query=q,
            type=type.value if type is not None else None,
            results=results,
            count=len(results),
        )

    @app.get("/item/{item_id}", response_model=ClipboardItem, response_model_by_alias=True)
    def get_item(item_id: str):
        """
        Get a specific item by ID
        """
        item = _resolve(history.get(item_id))
        if item is None:
            raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
        return item

    @app.get("/item/{item_id}/image")
    def get_item_image(item_id: str):
        """
        Get the image file for an item
        Returns 404 if item is not an image or file doesn't exist
        """
        item = _resolve(history.get(item_id))
        if item is None:
            raise HTTPException(status_code=404, detail=f"Item {item_id} not found")

        if item.type != ItemType.IMAGE or not item.image_path:
            raise HTTPException(status_code=404, detail=f"Item {item_id} is not an image")

        path = context.image_file(item.image_path)
        if not os.path.exists(path):
            raise HTTPException(status_code=404, detail=f"Image file not found: {item.image_path}")

        return FileResponse(path)

    @app.get("/item/{item_id}/ocr", response_model=OcrStatusInfo, response_model_by_alias=True)
    def get_item_ocr(item_id: str):
        """OCR status (and text once completed) of an image item"""
        status = _resolve(history.ocr_status(item_id))
        if status is None:
            raise HTTPException(status_code=404, detail=f"Item {item_id} has no OCR status")
        return status

    @app.delete("/item/{item_id}")
    def delete_item(item_id: str):
        """
        Delete an item by ID (its image file too)
        """
        if not _resolve(history.delete(item_id)):
            raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
        return {"status": "deleted", "id": item_id}

    @app.delete("/items")
    def clear_items():
        """Delete every item"""
        if not _resolve(history.clear_all()):
            raise HTTPException(status_code=500, detail="Clear all history failed")
        return {"status": "cleared"}

    @app.get("/stats", response_model=StatsResponse)
    def get_stats():
        """
        Get system statistics
        """
        return StatsResponse(**_resolve(history.stats()))

    # CORS middleware, the API only listens on localhost by default
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app
