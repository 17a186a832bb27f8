"""FastAPI HTTP edge for the PickleAI gateway."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from pickleai.assistant import PickleAssistant
from pickleai.config import Config
from pickleai.exceptions import (
    AuthenticationError,
    PickleAIError,
    UpstreamError,
    UpstreamTimeout,
    ValidationError,
)
from pickleai.identity import Identity, IdentityProvider, create_identity_provider
from pickleai.types import ActivityType, ChatMessage


# --- Request models ---

class ActivityRequest(BaseModel):
    type: ActivityType
    action: str
    duration: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ContentSummaryRequest(BaseModel):
    url: str


# --- Dependencies ---

def get_assistant(request: Request) -> PickleAssistant:
    return request.app.state.assistant


async def current_identity(request: Request) -> Identity:
    header = request.headers.get("authorization")
    if not header:
        raise AuthenticationError("Authorization header required")
    token = header.removeprefix("Bearer ").strip()
    provider: IdentityProvider = request.app.state.identity
    identity = await provider.verify(token) if token else None
    if identity is None:
        raise AuthenticationError("Invalid authentication")
    return identity


def _public_detail(exc: Exception) -> str:
    # Internal messages stay in the log.
    if isinstance(exc, UpstreamTimeout):
        return "The AI service timed out"
    if isinstance(exc, UpstreamError):
        return "The AI service is unavailable"
    return "Unexpected error"


def parse_chat_body(body: Any) -> tuple[str, list[ChatMessage], dict[str, Any]]:
    if not isinstance(body, dict):
        raise ValidationError("Message is required")
    message = body.get("message")
    if not message or not isinstance(message, str):
        raise ValidationError("Message is required")

    raw_history = body.get("conversationHistory") or []
    if not isinstance(raw_history, list):
        raise ValidationError("conversationHistory must be a list")
    history: list[ChatMessage] = []
    for item in raw_history:
        if not isinstance(item, dict) or item.get("role") not in {"user", "assistant", "system"}:
            raise ValidationError("Invalid conversationHistory entry")
        history.append(ChatMessage(role=item["role"], content=str(item.get("content") or "")))

    user_context = body.get("userContext") or {}
    if not isinstance(user_context, dict):
        raise ValidationError("userContext must be an object")
    return message, history, user_context


# --- App factory ---

def create_app(
    config: Config | None = None,
    assistant: PickleAssistant | None = None,
    identity: IdentityProvider | None = None,
) -> FastAPI:
    config = config or Config()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(app.state.assistant.maintenance_loop())
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await app.state.assistant.close()
            await app.state.identity.close()

    app = FastAPI(
        title="PickleAI Gateway",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.assistant = assistant or PickleAssistant(config)
    app.state.identity = identity or create_identity_provider(config.identity)

    @app.exception_handler(AuthenticationError)
    async def auth_error(request: Request, exc: AuthenticationError):
        return ORJSONResponse({"error": str(exc)}, status_code=401)

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return ORJSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(PickleAIError)
    async def internal_error(request: Request, exc: PickleAIError):
        logger.error("PickleAI API error on {}: {}", request.url.path, exc)
        return ORJSONResponse(
            {"error": "Internal server error", "details": _public_detail(exc)},
            status_code=500,
        )

    # --- Routes ---

    @app.get("/api/v1/health")
    async def health():
        return {"status": "ok", "service": "pickleai"}

    @app.post("/api/v1/chat")
    async def chat(
        request: Request,
        user: Identity = Depends(current_identity),
        assistant: PickleAssistant = Depends(get_assistant),
    ):
        try:
            body = await request.json()
        except ValueError as e:
            raise ValidationError("Message is required") from e
        message, history, user_context = parse_chat_body(body)
        try:
            reply = await assistant.handle_chat(user.user_id, message, history, user_context)
        except PickleAIError:
            raise
        except Exception as e:
            logger.exception("Unhandled chat failure for {}", user.user_id)
            return ORJSONResponse(
                {"error": "Internal server error", "details": _public_detail(e)},
                status_code=500,
            )
        return reply.model_dump(exclude_none=True)

    @app.get("/api/v1/analytics/me")
    async def my_analytics(
        user: Identity = Depends(current_identity),
        assistant: PickleAssistant = Depends(get_assistant),
    ):
        return assistant.analytics(user.user_id)

    @app.post("/api/v1/activity")
    async def record_activity(
        req: ActivityRequest,
        user: Identity = Depends(current_identity),
        assistant: PickleAssistant = Depends(get_assistant),
    ):
        record = await assistant.record_activity(
            user.user_id, req.type, req.action, req.duration, req.metadata,
        )
        return record.model_dump(mode="json")

    @app.get("/api/v1/usage")
    async def usage(
        user: Identity = Depends(current_identity),
        assistant: PickleAssistant = Depends(get_assistant),
    ):
        return assistant.usage_stats().model_dump()

    @app.get("/api/v1/context/export")
    async def export_context(
        user: Identity = Depends(current_identity),
        assistant: PickleAssistant = Depends(get_assistant),
    ):
        return await assistant.export_user_data(user.user_id)

    @app.delete("/api/v1/context")
    async def clear_context(
        user: Identity = Depends(current_identity),
        assistant: PickleAssistant = Depends(get_assistant),
    ):
        await assistant.clear_user_data(user.user_id)
        return {"status": "cleared", "user_id": user.user_id}

    @app.post("/api/v1/content/summary")
    async def content_summary(
        req: ContentSummaryRequest,
        user: Identity = Depends(current_identity),
        assistant: PickleAssistant = Depends(get_assistant),
    ):
        try:
            summary = await assistant.content_summary(req.url)
        except UpstreamError as e:
            logger.warning("Content summary failed for {}: {}", req.url, e)
            return ORJSONResponse({"error": "Content unavailable", "url": req.url}, status_code=502)
        return summary.model_dump()

    return app
