"""Shared request helpers for the /api routes."""

import json
from typing import Any, Dict, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError

from openjournal.config.models import ServerConfig
from openjournal.errors import InvalidRequestError
from openjournal.server.upstream import UpstreamClient

ModelT = TypeVar("ModelT", bound=BaseModel)

INVALID_JSON_MESSAGE = "Invalid JSON in request body"


def get_upstream(request: Request) -> UpstreamClient:
    return request.app.state.upstream


def get_server_config(request: Request) -> ServerConfig:
    return request.app.state.config.server


async def read_json_body(request: Request, model: Type[ModelT]) -> ModelT:
    """Parse the request body into ``model``.

    Routes call this after their credential check so a missing key is
    reported before a bad body.
    """
    raw = await request.body()
    try:
        payload: Dict[str, Any] = json.loads(raw or b"null")
    except ValueError:
        raise InvalidRequestError(INVALID_JSON_MESSAGE)
    if not isinstance(payload, dict):
        payload = {}
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "body"
        raise InvalidRequestError(f"{field}: {first.get('msg', 'invalid value')}")
