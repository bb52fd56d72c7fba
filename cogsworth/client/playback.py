"""Client-side playback of a streamed turn.

Three activities run independently on the receiving side: frames arriving
from the socket, characters being paced onto the visible message, and speech
playback. They meet at exactly one point, turn completion.

Each turn owns one ordered queue. Characters go in as they arrive and a single
STREAM_COMPLETE marker goes in when the server says the stream is over
(`fullResponse` or `idle`, whichever comes first). One pacing task drains the
queue; dequeuing the marker means every earlier character has been shown, so
"queue empty and stream complete" is a single ordered observation rather than
two flags polled against a timer.

Frame handling:
    processing    new message id, empty bot entry, start pacing
    chunk         enqueue characters
    fullResponse  enqueue the whole text, remember emotion, complete stream
    idle          complete stream (no flush, pacing continues)
    error         stop pacing, show the error, unblock input

Turn completion (once per message id): animation trigger from the emotion,
speech of the plain text, clear the message id, unblock input.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal, Protocol

from pydantic import BaseModel, ValidationError

from cogsworth.client.speech import SpeechOutput, strip_markdown
from cogsworth.emotion import DEFAULT_ANIMATION, animation_for, parse_response
from cogsworth.models import (
    ChatPayload,
    ClientChatMessage,
    ServerMessage,
    ServerPayload,
    Turn,
)

logger = logging.getLogger(__name__)

Sender = Literal["user", "bot", "system"]

STREAM_COMPLETE = object()


class ProtocolParseError(ValueError):
    """An inbound frame is not a valid ServerMessage."""


def parse_server_message(raw: str | bytes) -> ServerMessage:
    try:
        return ServerMessage.model_validate_json(raw)
    except ValidationError as e:
        raise ProtocolParseError(f"Malformed server frame: {e.error_count()} error(s)") from e


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class ChatDisplay(Protocol):
    def add_entry(self, entry_id: str, sender: Sender, text: str) -> None: ...

    def append_text(self, entry_id: str, text: str) -> None: ...

    def set_text(self, entry_id: str, text: str) -> None: ...


class AnimationSink(Protocol):
    def trigger(self, name: str) -> None: ...


class Outbound(Protocol):
    @property
    def connected(self) -> bool: ...

    async def send(self, message: BaseModel) -> bool: ...


@dataclass
class ChatEntry:
    id: str
    sender: Sender
    text: str


class Transcript:
    """In-memory ChatDisplay. Keeps every write for inspection."""

    def __init__(self) -> None:
        self.entries: list[ChatEntry] = []
        self.writes: list[tuple[str, str]] = []  # (entry_id, appended text)

    def get(self, entry_id: str) -> ChatEntry | None:
        return next((e for e in self.entries if e.id == entry_id), None)

    def add_entry(self, entry_id: str, sender: Sender, text: str) -> None:
        self.entries.append(ChatEntry(entry_id, sender, text))

    def append_text(self, entry_id: str, text: str) -> None:
        entry = self.get(entry_id)
        if entry is None:
            logger.warning("append to unknown entry %s", entry_id)
            return
        entry.text += text
        self.writes.append((entry_id, text))

    def set_text(self, entry_id: str, text: str) -> None:
        entry = self.get(entry_id)
        if entry is not None:
            entry.text = text


class RecordingAnimation:
    """AnimationSink that remembers the triggers it was given."""

    def __init__(self) -> None:
        self.triggers: list[str] = []

    @property
    def current(self) -> str | None:
        return self.triggers[-1] if self.triggers else None

    def trigger(self, name: str) -> None:
        logger.debug("animation trigger %s", name)
        self.triggers.append(name)


# ---------------------------------------------------------------------------
# Playback state
# ---------------------------------------------------------------------------

@dataclass
class PlaybackState:
    """State for exactly one response. Replaced wholesale on every turn."""

    message_id: str | None = None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    accumulated: str = ""
    emotion: str | None = None
    is_stream_complete: bool = False
    is_processing: bool = False


@dataclass(frozen=True)
class CompletedTurn:
    message_id: str
    text: str
    emotion: str
    animation: str


class PlaybackCoordinator:
    """Consumes server frames and drives display, speech and animation.

    Args:
        display:          Where messages are shown.
        speech:           Speech backend for finished turns.
        animation:        Receives animation trigger names.
        connection:       Outbound transport used by submit(); may be attached later.
        char_interval:    Seconds between paced characters.
        history_limit:    Turns of history sent with each request.
        on_turn_complete: Called with a CompletedTurn after each finished turn.
    """

    def __init__(
        self,
        display: ChatDisplay,
        speech: SpeechOutput,
        animation: AnimationSink,
        connection: Outbound | None = None,
        char_interval: float = 0.05,
        history_limit: int = 10,
        on_turn_complete: Callable[[CompletedTurn], None] | None = None,
    ) -> None:
        self.display = display
        self.speech = speech
        self.animation = animation
        self.connection = connection
        self.state = PlaybackState()
        self._char_interval = char_interval
        self._history: deque[Turn] = deque(maxlen=history_limit)
        # User input awaiting its reply; both enter history together
        self._pending_user: str | None = None
        self._on_turn_complete = on_turn_complete
        self._pacer: asyncio.Task | None = None
        self._speech_task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_processing(self) -> bool:
        return self.state.is_processing

    def _set_processing(self, flag: bool) -> None:
        self.state.is_processing = flag
        if flag:
            self._idle.clear()
        else:
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until the current turn has finished or failed."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    def handle_frame(self, raw: str | bytes) -> None:
        try:
            message = parse_server_message(raw)
        except ProtocolParseError as e:
            logger.error("Dropping malformed frame: %s", e)
            self._fail(f"Protocol error: {e}")
            return
        self.handle_message(message)

    def handle_message(self, message: ServerMessage) -> None:
        logger.debug("frame type=%s", message.type)
        if message.type == "processing":
            self._start_turn()
        elif message.type == "chunk":
            self._enqueue(message.payload_text())
        elif message.type == "fullResponse":
            if isinstance(message.payload, ServerPayload) and self.state.message_id:
                self.state.emotion = message.payload.emotion
            self._enqueue(message.payload_text())
            self._complete_stream()
        elif message.type == "idle":
            self._complete_stream()
        elif message.type == "error":
            logger.error("Server error: %s", message.payload_text())
            self._fail(message.payload_text())

    def _start_turn(self) -> None:
        self._stop_pacing()
        message_id = f"msg-{uuid.uuid4().hex}"
        self.state = PlaybackState(message_id=message_id)
        self._set_processing(True)
        self.display.add_entry(message_id, "bot", "")
        self._pacer = asyncio.create_task(self._pace(self.state))

    def _enqueue(self, text: str) -> None:
        state = self.state
        if state.message_id is None:
            logger.warning("Received text but no active bot message")
            return
        if state.is_stream_complete:
            logger.warning("Received text after stream completion, ignored")
            return
        state.accumulated += text
        for char in text:
            state.queue.put_nowait(char)

    def _complete_stream(self) -> None:
        state = self.state
        if state.message_id is None or state.is_stream_complete:
            return
        state.is_stream_complete = True
        state.queue.put_nowait(STREAM_COMPLETE)

    def _fail(self, reason: str) -> None:
        self._stop_pacing()
        message_id = self.state.message_id
        if message_id:
            self.display.set_text(message_id, f"Error: {reason}")
        else:
            self.display.add_entry(f"err-{uuid.uuid4().hex}", "system", f"Server Error: {reason}")
        self._pending_user = None
        self.state = PlaybackState()
        self._set_processing(False)

    # ------------------------------------------------------------------
    # Pacing
    # ------------------------------------------------------------------

    def _write(self, message_id: str, char: str) -> bool:
        # A superseded turn's pacer must never touch the current message
        if self.state.message_id != message_id:
            logger.debug("Rejected late write for superseded message %s", message_id)
            return False
        self.display.append_text(message_id, char)
        return True

    async def _pace(self, state: PlaybackState) -> None:
        message_id = state.message_id
        while True:
            item = await state.queue.get()
            if item is STREAM_COMPLETE:
                break
            if not self._write(message_id, item):
                return
            await asyncio.sleep(self._char_interval)
        self._finish_turn(state)

    def _stop_pacing(self) -> None:
        pacer, self._pacer = self._pacer, None
        if pacer is not None and not pacer.done():
            pacer.cancel()

    async def drain(self) -> None:
        """Wait for the current pacing task to finish."""
        if self._pacer is not None:
            try:
                await self._pacer
            except asyncio.CancelledError:
                pass

    def _finish_turn(self, state: PlaybackState) -> None:
        if self.state is not state or state.message_id is None:
            return
        message_id = state.message_id
        if state.emotion is not None:
            text, emotion = state.accumulated, state.emotion
        else:
            # Streamed chunks still carry the raw tag
            parsed = parse_response(state.accumulated)
            text, emotion = parsed.text, parsed.emotion
            if text != state.accumulated:
                self.display.set_text(message_id, text)
        animation = animation_for(emotion)
        logger.info("Turn %s complete emotion=%s animation=%s", message_id, emotion, animation)

        self.animation.trigger(animation)
        plain = strip_markdown(text)
        if plain:
            self._speech_task = asyncio.create_task(self._speak(plain))
        user_text, self._pending_user = self._pending_user, None
        if user_text is not None and text:
            self._history.append(Turn(role="user", content=user_text))
            self._history.append(Turn(role="assistant", content=text))

        state.message_id = None
        state.accumulated = ""
        self._set_processing(False)
        if self._on_turn_complete:
            self._on_turn_complete(CompletedTurn(message_id, text, emotion, animation))

    async def _speak(self, text: str) -> None:
        try:
            await self.speech.speak(text)
        except Exception:
            logger.exception("Speech playback failed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop speech and pacing and reset the robot to its neutral pose."""
        self.speech.cancel()
        speech_task, self._speech_task = self._speech_task, None
        if speech_task is not None and not speech_task.done():
            speech_task.cancel()
        self._stop_pacing()
        self.animation.trigger(DEFAULT_ANIMATION)
        self.state = PlaybackState()
        self._pending_user = None
        self._idle.set()

    async def submit(
        self,
        user_text: str,
        personality: str = "standard",
        user_name: str | None = None,
    ) -> bool:
        """Send a chat request, superseding whatever is still playing."""
        if self.connection is None or not self.connection.connected or not user_text.strip():
            logger.warning("Cannot send message: not connected or empty input")
            return False

        self.cancel()
        history = list(self._history)
        self.display.add_entry(f"user-{uuid.uuid4().hex}", "user", user_text)

        message = ClientChatMessage(
            type="chat",
            payload=ChatPayload(
                user_input=user_text,
                personality=personality,
                history=history,
                user_name=user_name,
            ),
        )
        sent = await self.connection.send(message)
        if sent:
            self._pending_user = user_text
            # Input stays blocked until the turn completes or fails
            self._set_processing(True)
        return sent


