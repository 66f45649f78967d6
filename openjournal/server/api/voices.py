"""GET /api/voices: selectable synthesis voices, never an error."""

from typing import Dict, List

import structlog
from fastapi import APIRouter, Request

from openjournal.config.models import DEFAULT_VOICE_ID
from openjournal.server.dependencies import get_upstream

logger = structlog.get_logger(__name__)

router = APIRouter()

FALLBACK_VOICES: List[Dict[str, str]] = [
    {"voice_id": "21m00Tcm4TlvDq8ikWAM", "name": "Rachel"},
    {"voice_id": "pNInz6obpgDQGcFmaJgB", "name": "Adam"},
    {"voice_id": "EXAVITQu4vr4xnSDxMaL", "name": "Bella"},
    {"voice_id": "ErXwobaYiN019PkySvjV", "name": "Antoni"},
    {"voice_id": "MF3mGyEYCl7XYWbV9V6O", "name": "Elli"},
    {"voice_id": "TxGEqnHWrfWFTfGW9XjX", "name": "Josh"},
    {"voice_id": "VR6AewLTigWG4xSOukaG", "name": "Arnold"},
    {"voice_id": "onwK4e9ZLuTAKqWW03F9", "name": "Domi"},
    {"voice_id": "N2lVS1w4EtoT3dr4eOWO", "name": "Sam"},
]


def normalize_voices(raw_voices: List[dict]) -> List[Dict[str, str]]:
    """Keep entries with an id and make sure the default voice is listed first."""
    voices = []
    for raw in raw_voices:
        if not isinstance(raw, dict):
            continue
        voice_id = raw.get("voice_id") or raw.get("id") or ""
        if not voice_id:
            continue
        voices.append({"voice_id": str(voice_id), "name": str(raw.get("name") or voice_id)})
    if not any(v["voice_id"] == DEFAULT_VOICE_ID for v in voices):
        voices.insert(0, {"voice_id": DEFAULT_VOICE_ID, "name": "Rachel"})
    return voices


@router.get("")
async def list_voices(request: Request):
    upstream = get_upstream(request)
    try:
        raw_voices = await upstream.list_voices()
    except Exception:
        logger.warning("Voice listing failed; serving fallback voices", exc_info=True)
        raw_voices = None
    if raw_voices is None:
        return {"voices": FALLBACK_VOICES}
    return {"voices": normalize_voices(raw_voices)}
