"""WebSocket session endpoint.

One ChatSession + SessionOrchestrator per connection. The receive loop only
dispatches frames; generation runs in the orchestrator's background task so
a second chat frame can be rejected while the first is still streaming.
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from cogsworth.models import ServerMessage
from cogsworth.session import ChatSession, SessionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def chat_session(websocket: WebSocket):
    """Bidirectional chat session (one JSON message per frame)."""
    await websocket.accept()
    settings = websocket.app.state.settings
    session = ChatSession(history_limit=settings.history_limit)

    async def send(message: ServerMessage) -> None:
        logger.debug("[%s] -> %s", session.session_id, message.type)
        await websocket.send_text(message.model_dump_json())

    orchestrator = SessionOrchestrator(
        session,
        websocket.app.state.llm,
        send,
        keywords=settings.emotion_keywords,
        template=settings.directive_template,
    )
    logger.info("[%s] client connected", session.session_id)
    try:
        while True:
            raw = await websocket.receive_text()
            await orchestrator.handle_frame(raw)
    except WebSocketDisconnect as e:
        logger.info("[%s] client disconnected (code %s)", session.session_id, e.code)
    finally:
        await orchestrator.close()
