"""Environment-driven settings.

Values come from the process environment, optionally seeded from a `.env`
file at the repo root. Nothing here is persisted; the server reads its
settings once at startup.

    LLM_API_URL                  Base URL of the chat-completions API
    LLM_API_KEY                  Bearer token for the API
    LLM_MODEL_NAME               Model identifier (optional)
    LLM_TIMEOUT                  Request timeout in seconds (default 300)
    LLM_MAX_ATTEMPTS             Attempts for retryable failures (default 3)
    LLM_RETRY_DELAY              Seconds between attempts (default 1.0)
    HOST / BACKEND_PORT          Server bind address (default 0.0.0.0:3001)
    COGSWORTH_HISTORY_LIMIT      Turns of history kept per session (default 10)
    COGSWORTH_EXTRA_EMOTIONS     Comma-separated keywords added to the emotion set
    COGSWORTH_DIRECTIVE_TEMPLATE Path to a Handlebars system directive template
    COGSWORTH_ECHO               Serve with the echo LLM instead of the real API
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from cogsworth.models import DEFAULT_EMOTION, EMOTION_KEYWORDS

ROOT = Path(__file__).parent.parent


class Settings(BaseModel):
    api_url: str = ""
    api_key: str = ""
    model: str = ""
    timeout: float = 300.0
    max_attempts: int = 3
    retry_delay: float = 1.0
    host: str = "0.0.0.0"
    port: int = 3001
    history_limit: int = 10
    emotion_keywords: tuple[str, ...] = EMOTION_KEYWORDS
    directive_template: str | None = None
    echo: bool = False

    def public(self) -> dict:
        """Settings safe to show to clients (no credentials)."""
        data = self.model_dump(exclude={"api_key", "directive_template"})
        data["api_key_set"] = bool(self.api_key)
        return data


def _emotion_keywords(extra: str) -> tuple[str, ...]:
    keywords = list(EMOTION_KEYWORDS)
    for word in extra.split(","):
        word = word.strip().lower()
        if word and word not in keywords:
            keywords.append(word)
    if DEFAULT_EMOTION not in keywords:
        keywords.append(DEFAULT_EMOTION)
    return tuple(keywords)


def _read_template(path: str) -> str | None:
    if not path:
        return None
    return Path(path).read_text(encoding="utf-8")


def load_settings(env_file: Path | None = None) -> Settings:
    """Read settings from the environment (after loading `.env`)."""
    load_dotenv(env_file or ROOT / ".env")
    return Settings(
        api_url=os.getenv("LLM_API_URL", ""),
        api_key=os.getenv("LLM_API_KEY", ""),
        model=os.getenv("LLM_MODEL_NAME", ""),
        timeout=float(os.getenv("LLM_TIMEOUT", "300")),
        max_attempts=int(os.getenv("LLM_MAX_ATTEMPTS", "3")),
        retry_delay=float(os.getenv("LLM_RETRY_DELAY", "1.0")),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("BACKEND_PORT", "3001")),
        history_limit=int(os.getenv("COGSWORTH_HISTORY_LIMIT", "10")),
        emotion_keywords=_emotion_keywords(os.getenv("COGSWORTH_EXTRA_EMOTIONS", "")),
        directive_template=_read_template(os.getenv("COGSWORTH_DIRECTIVE_TEMPLATE", "")),
        echo=os.getenv("COGSWORTH_ECHO", "") not in ("", "0"),
    )
