"""Session orchestrator: one per live connection.

Turn flow:
  1. A chat frame arrives while idle → mark generating, emit `processing`.
  2. Build one immutable GenerationRequest (directive + history + input).
  3. A background task drains the LLM event stream into an accumulator.
  4. Success → `fullResponse {text, emotion}`; failure → `error <reason>`.
  5. Always → `idle`, and the session is ready for the next turn.

A chat frame that arrives while a turn is running is answered with `error`
straight away. Nothing is queued and no upstream call is made.

Once the connection is closed every emission is dropped and the running
generation task is cancelled, which also closes the upstream HTTP stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterable

from pydantic import ValidationError

from cogsworth.emotion import ResponseAccumulator
from cogsworth.llm import DoneEvent, ErrorEvent, StreamingLLM, TokenEvent
from cogsworth.models import (
    EMOTION_KEYWORDS,
    ChatPayload,
    ClientChatMessage,
    GenerationRequest,
    MessageType,
    ServerMessage,
    ServerPayload,
    Turn,
)
from cogsworth.prompts import PromptError, build_system_directive

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "AI is already processing a request."
INVALID_FRAME_MESSAGE = "Invalid message format received."

Sender = Callable[[ServerMessage], Awaitable[None]]


class SessionBusyError(RuntimeError):
    """A chat request arrived while the session was already generating."""


class ChatSession:
    """Per-connection state. Owned by one connection handler, never shared."""

    def __init__(self, history_limit: int = 10, user_name: str | None = None) -> None:
        self.session_id = uuid.uuid4().hex[:12]
        self.is_generating = False
        self.is_closed = False
        self.history: deque[Turn] = deque(maxlen=history_limit)
        self.user_name = user_name

    def replace_history(self, turns: Iterable[Turn]) -> None:
        self.history.clear()
        self.history.extend(turns)

    def record_turn(self, user_input: str, reply: str) -> None:
        self.history.append(Turn(role="user", content=user_input))
        self.history.append(Turn(role="assistant", content=reply))


class SessionOrchestrator:
    """Translates inbound frames and LLM events into the outbound protocol.

    Args:
        session:   State object for this connection.
        llm:       Streaming LLM used for every turn.
        send:      Coroutine that writes one ServerMessage to the transport.
        keywords:  Emotion keyword set accepted in the trailing tag.
        template:  Optional Handlebars template for the system directive.
    """

    def __init__(
        self,
        session: ChatSession,
        llm: StreamingLLM,
        send: Sender,
        keywords: Iterable[str] = EMOTION_KEYWORDS,
        template: str | None = None,
    ) -> None:
        self.session = session
        self._llm = llm
        self._send = send
        self._keywords = tuple(keywords)
        self._template = template
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def emit(self, type: MessageType, payload: ServerPayload | str = "") -> None:
        if self.session.is_closed:
            logger.debug("[%s] connection closed, dropping %s", self.session.session_id, type)
            return
        message = ServerMessage(type=type, payload=payload)
        try:
            await self._send(message)
        except Exception as e:
            # A failed write means the peer is gone
            logger.warning("[%s] send failed (%s), closing session", self.session.session_id, e)
            self.session.is_closed = True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_frame(self, raw: str | bytes) -> None:
        """Dispatch one raw inbound frame."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("[%s] unparseable frame: %r", self.session.session_id, raw[:80])
            await self.emit("error", INVALID_FRAME_MESSAGE)
            return

        msg_type = data.get("type") if isinstance(data, dict) else None
        if msg_type != "chat":
            logger.warning("[%s] unknown message type %r", self.session.session_id, msg_type)
            await self.emit("error", f"Unknown message type: {msg_type}")
            return

        try:
            message = ClientChatMessage.model_validate(data)
        except ValidationError as e:
            logger.warning("[%s] invalid chat frame: %s", self.session.session_id, e)
            await self.emit("error", INVALID_FRAME_MESSAGE)
            return

        try:
            await self.handle_chat(message.payload)
        except SessionBusyError:
            await self.emit("error", BUSY_MESSAGE)

    async def handle_chat(self, payload: ChatPayload) -> asyncio.Task | None:
        """Start one turn. Raises SessionBusyError if a turn is running.

        Returns the background generation task, or None if the request could
        not be built (the error and idle frames are already sent).
        """
        if self.session.is_generating:
            logger.warning("[%s] chat request while generating, rejected", self.session.session_id)
            raise SessionBusyError(BUSY_MESSAGE)

        # Flag before the first await so a concurrent frame sees it
        self.session.is_generating = True
        if payload.user_name:
            self.session.user_name = payload.user_name
        if payload.history is not None:
            self.session.replace_history(payload.history)

        await self.emit("processing")
        try:
            request = self._build_request(payload)
        except PromptError as e:
            logger.error("[%s] cannot build directive: %s", self.session.session_id, e)
            self.session.is_generating = False
            await self.emit("error", f"AI Error: {e}")
            await self.emit("idle")
            return None
        self._task = asyncio.create_task(self._generate(request, payload.user_input))
        return self._task

    def _build_request(self, payload: ChatPayload) -> GenerationRequest:
        directive = build_system_directive(
            payload.personality,
            self.session.user_name,
            keywords=self._keywords,
            template=self._template,
        )
        turns = (*self.session.history, Turn(role="user", content=payload.user_input))
        logger.debug(
            "[%s] generation request turns=%d directive_len=%d",
            self.session.session_id, len(turns), len(directive),
        )
        return GenerationRequest(system_directive=directive, turns=turns)

    async def _generate(self, request: GenerationRequest, user_input: str) -> None:
        acc = ResponseAccumulator(self._keywords)
        error: str | None = None
        try:
            async for event in self._llm.stream(request):
                if isinstance(event, TokenEvent):
                    acc.add(event.text)
                elif isinstance(event, ErrorEvent):
                    error = event.reason
                elif isinstance(event, DoneEvent):
                    logger.debug("[%s] upstream stream done", self.session.session_id)
            if error is not None:
                await self.emit("error", f"AI Error: {error}")
            else:
                payload = acc.result()
                logger.info(
                    "[%s] response complete tokens=%d emotion=%s",
                    self.session.session_id, len(acc), payload.emotion,
                )
                self.session.record_turn(user_input, payload.text)
                await self.emit("fullResponse", payload)
        except asyncio.CancelledError:
            logger.info("[%s] generation cancelled", self.session.session_id)
            raise
        except Exception as e:
            logger.exception("[%s] generation failed", self.session.session_id)
            await self.emit("error", f"AI Error: {e}")
        finally:
            self.session.is_generating = False
            await self.emit("idle")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    async def close(self) -> None:
        """Mark the connection closed and tear down the running generation."""
        self.session.is_closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[%s] session closed", self.session.session_id)
