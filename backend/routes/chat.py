"""Buffered chat endpoint for clients without a WebSocket."""

import logging

from fastapi import APIRouter, HTTPException, Request

from cogsworth.emotion import collect
from cogsworth.llm import ConfigurationError, UpstreamError
from cogsworth.models import ChatPayload, GenerationRequest, ServerPayload, Turn
from cogsworth.prompts import PromptError, build_system_directive

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/chat", response_model=ServerPayload)
async def chat(body: ChatPayload, request: Request):
    """Run one turn and return the parsed {text, emotion} in a single response."""
    settings = request.app.state.settings
    try:
        directive = build_system_directive(
            body.personality,
            body.user_name,
            keywords=settings.emotion_keywords,
            template=settings.directive_template,
        )
    except PromptError as e:
        raise HTTPException(500, str(e))

    history = (body.history or [])[-settings.history_limit:]
    gen = GenerationRequest(
        system_directive=directive,
        turns=(*history, Turn(role="user", content=body.user_input)),
    )
    try:
        return await collect(request.app.state.llm.stream(gen), settings.emotion_keywords)
    except ConfigurationError as e:
        raise HTTPException(503, str(e))
    except UpstreamError as e:
        logger.warning("chat request failed: %s", e)
        raise HTTPException(502, str(e))
