"""POST /api/voice: synthesize one utterance to base64 MP3."""

import base64
from typing import Optional

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

from openjournal.errors import InvalidRequestError
from openjournal.server.dependencies import get_server_config, get_upstream, read_json_body

logger = structlog.get_logger(__name__)

router = APIRouter()


class VoiceRequest(BaseModel):
    text: Optional[str] = None
    voiceId: Optional[str] = None


@router.post("")
async def synthesize(request: Request):
    upstream = get_upstream(request)
    server = get_server_config(request)
    upstream.require_elevenlabs_key()

    body = await read_json_body(request, VoiceRequest)
    if not body.text or not body.text.strip():
        raise InvalidRequestError("text is required")

    voice_id = body.voiceId or server.default_voice_id
    audio = await upstream.text_to_speech(body.text.strip(), voice_id)
    logger.debug("Synthesized speech", voice_id=voice_id, bytes=len(audio))
    return {"audio": base64.b64encode(audio).decode("ascii"), "format": "mp3"}
