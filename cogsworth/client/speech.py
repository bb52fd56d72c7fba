"""Speech output for finished turns.

The coordinator only needs two things from a speech backend: start speaking
some plain text (awaitable until done) and stop whatever is playing.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Protocol

logger = logging.getLogger(__name__)


class SpeechOutput(Protocol):
    async def speak(self, text: str) -> None: ...

    def cancel(self) -> None: ...


_MARKDOWN_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"```[\s\S]*?```"), ""),                  # code blocks
    (re.compile(r"(\*\*|__)(.*?)\1"), r"\2"),              # bold
    (re.compile(r"(\*|_)(.*?)\1"), r"\2"),                 # italic
    (re.compile(r"^#+\s*", re.MULTILINE), ""),             # headers
    (re.compile(r"\[(.*?)\]\(.*?\)"), r"\1"),              # links
    (re.compile(r"`(.*?)`"), r"\1"),                       # inline code
    (re.compile(r"^(---|___|\*\*\*)\s*$", re.MULTILINE), ""),
    (re.compile(r"^>\s*", re.MULTILINE), ""),              # blockquotes
    (re.compile(r"^(\*|-|\+)\s+", re.MULTILINE), ""),      # list items
    (re.compile(r"\n{2,}"), "\n"),
]


def strip_markdown(text: str) -> str:
    """Reduce markdown to the plain words a voice should read."""
    for pattern, repl in _MARKDOWN_RULES:
        text = pattern.sub(repl, text)
    return text.strip()


class SilentSpeech:
    """Records what would have been spoken and finishes immediately."""

    def __init__(self) -> None:
        self.spoken: list[str] = []
        self.cancelled = 0

    async def speak(self, text: str) -> None:
        logger.debug("SilentSpeech text_len=%d", len(text))
        self.spoken.append(text)

    def cancel(self) -> None:
        self.cancelled += 1


class CommandSpeech:
    """Speaks through an external TTS command such as `espeak` or `say`.

    The text is passed as the last argument. Cancelling terminates the
    running process.
    """

    def __init__(self, command: Sequence[str] = ("espeak",)) -> None:
        self._command = list(command)
        self._proc: asyncio.subprocess.Process | None = None

    async def speak(self, text: str) -> None:
        self.cancel()
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command, text,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Speech command %s unavailable: %s", self._command[0], e)
            return
        self._proc = proc
        await proc.wait()
        if self._proc is proc:
            self._proc = None

    def cancel(self) -> None:
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            proc.terminate()
