"""Response accumulation and the trailing emotion tag.

The model is asked to end every reply with `[emotion:<keyword>]`. Parsing is
a pure function of the concatenated token stream:

    "Hello there[emotion:happy]"  → {"text": "Hello there", "emotion": "happy"}
    "ok[emotion:xyz]"             → {"text": "ok[emotion:xyz]", "emotion": "neutral"}
    "no tag at all"               → {"text": "no tag at all", "emotion": "neutral"}

Unknown keywords leave the tag in place so nothing the model wrote is lost.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Iterable

from cogsworth.llm import ErrorEvent, StreamEvent, TokenEvent
from cogsworth.models import DEFAULT_EMOTION, EMOTION_KEYWORDS, ServerPayload

logger = logging.getLogger(__name__)

_EMOTION_TAG = re.compile(r"\[emotion:(\w+)\]$", re.IGNORECASE)

# Emotion keyword → animation trigger understood by the robot model
EMOTION_ANIMATIONS: dict[str, str] = {
    "happy": "Jump",
    "excited": "Jump",
    "greeting": "Wave",
    "agreement": "Nod",
    "thinking": "Think",
    "neutral": "Idle",
    "sad": "Sad",
    "confused": "Think",
}
DEFAULT_ANIMATION = "Idle"


def parse_response(full_text: str, keywords: Iterable[str] = EMOTION_KEYWORDS) -> ServerPayload:
    """Split the trailing emotion tag off a complete response."""
    match = _EMOTION_TAG.search(full_text.strip())
    if not match:
        logger.debug("No emotion tag at end of response, defaulting to %s", DEFAULT_EMOTION)
        return ServerPayload(text=full_text, emotion=DEFAULT_EMOTION)

    keyword = match.group(1).lower()
    if keyword not in set(keywords):
        logger.warning("Ignoring unknown emotion tag %r", match.group(0))
        return ServerPayload(text=full_text, emotion=DEFAULT_EMOTION)

    text = full_text.strip()[:match.start()].strip()
    return ServerPayload(text=text, emotion=keyword)


def animation_for(emotion: str | None) -> str:
    """Animation trigger for an emotion keyword, Idle when unmapped."""
    if not emotion:
        return DEFAULT_ANIMATION
    return EMOTION_ANIMATIONS.get(emotion.lower(), DEFAULT_ANIMATION)


class ResponseAccumulator:
    """Concatenates stream tokens for one generation."""

    def __init__(self, keywords: Iterable[str] = EMOTION_KEYWORDS) -> None:
        self._parts: list[str] = []
        self._keywords = tuple(keywords)

    def add(self, token: str) -> None:
        self._parts.append(token)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def __len__(self) -> int:
        return len(self._parts)

    def result(self) -> ServerPayload:
        return parse_response(self.text, self._keywords)


async def collect(
    events: AsyncIterator[StreamEvent], keywords: Iterable[str] = EMOTION_KEYWORDS
) -> ServerPayload:
    """Drain an event stream into a parsed payload.

    Raises the stream's error if it carried one.
    """
    acc = ResponseAccumulator(keywords)
    error = None
    async for event in events:
        if isinstance(event, TokenEvent):
            acc.add(event.text)
        elif isinstance(event, ErrorEvent):
            error = event.error
    if error is not None:
        raise error
    return acc.result()
