"""POST /api/reformat: rewrite a conversation as a first-person diary entry."""

from typing import List, Optional

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

from openjournal.errors import InvalidRequestError
from openjournal.server.api.interviewer import ChatMessage
from openjournal.server.dependencies import get_server_config, get_upstream, read_json_body

logger = structlog.get_logger(__name__)

router = APIRouter()

EDITOR_PROMPT = (
    "You are an expert editor. You will be given a transcript of a conversation between a User "
    "and an OpenJournal Assistant.\n"
    "TASK: Rewrite this conversation into a single, beautifully formatted, cohesive, first-person "
    "journal entry written from the User's perspective. The output should read like a polished "
    "diary entry.\n"
    "RULES:\n"
    "- Remove all AI questions and filler.\n"
    "- Merge the User's answers into a flowing narrative.\n"
    "- Capture the emotional tone (e.g., if the user was angry, write the entry with that emotion).\n"
    "- Do not add fictional details, but you can smooth out transitions.\n"
    "- The output should look like a diary entry starting with 'Today...'"
)


class ReformatRequest(BaseModel):
    messages: Optional[List[ChatMessage]] = None


def render_transcript(messages: List[ChatMessage]) -> str:
    return "\n\n".join(
        f"{'User' if m.role == 'user' else 'AI'}: {m.text}" for m in messages
    )


@router.post("")
async def reformat(request: Request):
    upstream = get_upstream(request)
    server = get_server_config(request)
    upstream.require_openrouter_key()

    body = await read_json_body(request, ReformatRequest)
    if not body.messages:
        raise InvalidRequestError("messages array is required and must not be empty")

    text, _ = await upstream.chat_completion(
        "reformat",
        server.narrator_model,
        [
            {"role": "system", "content": EDITOR_PROMPT},
            {
                "role": "user",
                "content": f"Here is the conversation transcript to rewrite:\n\n{render_transcript(body.messages)}",
            },
        ],
    )
    logger.info("Journal entry reformatted", messages=len(body.messages), chars=len(text))
    return {"text": text}
