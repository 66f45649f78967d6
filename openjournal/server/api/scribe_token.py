"""GET /api/scribe-token: single-use token for the realtime transcription socket."""

import structlog
from fastapi import APIRouter, Request

from openjournal.server.dependencies import get_upstream

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("")
async def scribe_token(request: Request):
    token = await get_upstream(request).realtime_token()
    logger.debug("Issued realtime transcription token")
    return {"token": token}
