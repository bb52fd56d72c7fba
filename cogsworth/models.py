"""Core wire and domain models.

Every frame crossing the session socket and every request handed to the
upstream client is one of these types. Pydantic is used for validation and
serialisation at every data boundary.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

EMOTION_KEYWORDS: tuple[str, ...] = (
    "happy",
    "excited",
    "greeting",
    "agreement",
    "thinking",
    "neutral",
    "sad",
    "confused",
)

DEFAULT_EMOTION = "neutral"

Role = Literal["user", "assistant"]

MessageType = Literal[
    "processing",
    "chunk",
    "fullResponse",
    "error",
    "idle",
]


class Turn(BaseModel):
    """One entry of conversation history as the upstream API expects it."""

    role: Role
    content: str


class GenerationRequest(BaseModel):
    """Everything needed for one upstream call. Immutable once issued."""

    model_config = ConfigDict(frozen=True)

    system_directive: str
    turns: tuple[Turn, ...]

    def messages(self) -> list[dict[str, str]]:
        """Chat-completions message list: system directive first, then turns."""
        return [
            {"role": "system", "content": self.system_directive},
            *({"role": t.role, "content": t.content} for t in self.turns),
        ]


class ServerPayload(BaseModel):
    """Parsed response: display text plus the trailing emotion keyword."""

    text: str
    emotion: str = DEFAULT_EMOTION


class ServerMessage(BaseModel):
    """Outbound session frame."""

    type: MessageType
    payload: ServerPayload | str = ""

    def payload_text(self) -> str:
        if isinstance(self.payload, ServerPayload):
            return self.payload.text
        return self.payload


class ChatPayload(BaseModel):
    """Body of an inbound chat request.

    `history` of None means "use what the session remembers"; a list (even an
    empty one) replaces it.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_input: str = Field(alias="userInput", min_length=1)
    personality: str = Field(default="standard", alias="personalityDirectiveInputs")
    history: list[Turn] | None = None
    user_name: str | None = Field(default=None, alias="userName")


class ClientChatMessage(BaseModel):
    """Inbound session frame."""

    type: Literal["chat"]
    payload: ChatPayload
