from __future__ import annotations

import logging
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import Response

from .database import init_db
from .services.compositor import encode_image
from .services.config import DEFAULT_CULTURE, OutputFormat, RetrievalConfig
from .services.null_tile import NullTileUnavailableError
from .services.retrieval import ImageRetrieval
from .services.tile_system import MAX_LEVEL
from .services.usage import list_api_usage

app = FastAPI(title="Aerial Image Retrieval", version="0.1.0")

logger = logging.getLogger(__name__)

# One session per style/culture so missing-tile placeholders are downloaded once.
_sessions: Dict[tuple, ImageRetrieval] = {}


def _session_for(config: RetrievalConfig) -> ImageRetrieval:
    key = (config.labeled, config.culture)
    session = _sessions.get(key)
    if session is None:
        session = ImageRetrieval(config)
        _sessions[key] = session
    return session


@app.on_event("startup")
def on_startup() -> None:
    init_db()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    sessions = list(_sessions.values())
    _sessions.clear()
    for session in sessions:
        await session.aclose()


@app.get("/api/imagery")
async def get_imagery(
    lat1: float = Query(...),
    lon1: float = Query(...),
    lat2: float = Query(...),
    lon2: float = Query(...),
    max_level: int = Query(MAX_LEVEL),
    labeled: bool = Query(True),
    culture: str = Query(DEFAULT_CULTURE),
    output_format: OutputFormat = Query(OutputFormat.PNG, alias="format"),
) -> Response:
    try:
        config = RetrievalConfig(labeled=labeled, culture=culture, output_format=output_format)
        result = await _session_for(config).retrieve_level(lat1, lon1, lat2, lon2, max_level)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NullTileUnavailableError as exc:
        logger.exception("Tile service placeholder unavailable: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    if result is None:
        raise HTTPException(status_code=404, detail="No imagery available for the given bounding box.")

    return Response(
        content=encode_image(result.image, output_format),
        media_type=output_format.media_type,
        headers={"X-Zoom-Level": str(result.level)},
    )


@app.get("/api/usage")
def get_usage() -> Dict[str, List[Dict[str, object]]]:
    return {"usage": list_api_usage()}
