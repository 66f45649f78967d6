"""POST /api/transcribe: batch speech-to-text for a base64 WAV payload."""

import base64
import binascii
from typing import Optional

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

from openjournal.errors import InvalidRequestError
from openjournal.server.dependencies import get_upstream, read_json_body

logger = structlog.get_logger(__name__)

router = APIRouter()

MIN_AUDIO_BYTES = 100


class TranscribeRequest(BaseModel):
    audio: Optional[str] = None
    format: Optional[str] = None


@router.post("")
async def transcribe(request: Request):
    upstream = get_upstream(request)
    upstream.require_elevenlabs_key()

    body = await read_json_body(request, TranscribeRequest)
    if not body.audio or not body.audio.strip():
        raise InvalidRequestError("audio (base64) is required")
    try:
        audio = base64.b64decode(body.audio.strip())
    except (binascii.Error, ValueError):
        raise InvalidRequestError("audio (base64) is required")
    if len(audio) < MIN_AUDIO_BYTES:
        raise InvalidRequestError("Audio too short to transcribe")

    text = await upstream.speech_to_text(audio)
    logger.info("Batch transcription complete", audio_bytes=len(audio), chars=len(text))
    return {"text": text}
