"""POST /api/interviewer: next interviewer question for the conversation so far."""

from typing import List, Optional

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

from openjournal.errors import InvalidRequestError
from openjournal.server.dependencies import get_server_config, get_upstream, read_json_body

logger = structlog.get_logger(__name__)

router = APIRouter()


class ChatMessage(BaseModel):
    role: str
    text: str


class InterviewerRequest(BaseModel):
    systemPrompt: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None


def build_chat_messages(system_prompt: str, messages: List[ChatMessage]) -> List[dict]:
    """System prompt first, then the transcript with ``ai`` mapped to ``assistant``."""
    chat = [{"role": "system", "content": system_prompt}]
    for message in messages:
        chat.append({
            "role": "user" if message.role == "user" else "assistant",
            "content": message.text,
        })
    return chat


@router.post("")
async def next_question(request: Request):
    upstream = get_upstream(request)
    server = get_server_config(request)
    upstream.require_openrouter_key()

    body = await read_json_body(request, InterviewerRequest)
    if not body.systemPrompt or not body.systemPrompt.strip():
        raise InvalidRequestError("systemPrompt is required")
    if not body.messages:
        raise InvalidRequestError("messages array is required and must not be empty")

    question, finish_reason = await upstream.chat_completion(
        "interviewer",
        server.interviewer_model,
        build_chat_messages(body.systemPrompt, body.messages),
        max_tokens=server.interviewer_max_tokens,
    )
    if finish_reason == "length":
        logger.warning("Interviewer reply hit token limit; response may be truncated")
    logger.info(
        "Interviewer response",
        finish_reason=finish_reason,
        length=len(question),
        preview=question[:80],
    )
    return {"question": question, "finish_reason": finish_reason}
