"""Chat API: the single inbound endpoint of the gateway."""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from signal_gateway.gateway.errors import InvalidRequestError
from signal_gateway.gateway.gateway import ChatGateway
from signal_gateway.gateway.types import CallerContext, ChatRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

UNKNOWN_CALLER = "unknown"

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


# --- Schemas ---


class ChatBody(BaseModel):
    """Inbound JSON body. Unknown keys are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    model: str | None = None
    messages: Any = None
    response_format: dict[str, Any] | None = None
    plugins: list[dict[str, Any]] | None = None
    topic: str | None = None
    domain: str | None = None
    enrichment_guidance: str | None = Field(default=None, alias="enrichmentGuidance")
    skip_usage_count: bool = Field(default=False, alias="skipUsageCount")

    def to_chat_request(self) -> ChatRequest:
        return ChatRequest(
            messages=self.messages,
            model=self.model or "",
            response_format=self.response_format,
            plugins=self.plugins,
            topic=self.topic or "",
            domain=self.domain or "",
            enrichment_guidance=self.enrichment_guidance or "",
            skip_usage_count=self.skip_usage_count,
        )


# --- Dependencies ---


def get_gateway(request: Request) -> ChatGateway:
    return request.app.state.gateway


def get_caller_identity(request: Request) -> str:
    """First entry of X-Forwarded-For, else a fixed fallback."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    return first or UNKNOWN_CALLER


def get_own_api_key(request: Request) -> str | None:
    """Caller-supplied upstream key from ``Authorization: Bearer <key>``."""
    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def _parse_body(request: Request) -> ChatBody:
    raw = await request.body()
    try:
        data = json.loads(raw) if raw else {}
    except ValueError:
        # an unreadable body is treated as one without messages
        data = {}
    if not isinstance(data, dict):
        data = {}
    try:
        return ChatBody.model_validate(data)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid request body: {e.errors()[0].get('msg', 'validation failed')}") from e


# --- Routes ---


@router.post("/chat")
async def chat(request: Request, gateway: ChatGateway = Depends(get_gateway)):
    body = await _parse_body(request)
    caller = CallerContext(
        identity=get_caller_identity(request),
        own_api_key=get_own_api_key(request),
    )

    result = await gateway.handle(body.to_chat_request(), caller)
    return JSONResponse(content=result.body, status_code=result.status_code, headers=result.headers)


@router.options("/chat")
async def chat_preflight():
    return Response(status_code=200, headers=PREFLIGHT_HEADERS)
