"""Terminal chat client.

Connects to the session endpoint, reads lines from stdin and paces the
robot's replies onto stdout one character at a time.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from cogsworth.client.connection import ConnectionManager
from cogsworth.client.playback import CompletedTurn, PlaybackCoordinator, Sender, Transcript
from cogsworth.client.speech import CommandSpeech, SilentSpeech, SpeechOutput

logger = logging.getLogger(__name__)

_PREFIXES = {"user": "you> ", "bot": "cogsworth> ", "system": "!! "}


class ConsoleDisplay(Transcript):
    """Transcript that also mirrors writes to a text stream."""

    def __init__(self, out=sys.stdout) -> None:
        super().__init__()
        self._out = out

    def add_entry(self, entry_id: str, sender: Sender, text: str) -> None:
        super().add_entry(entry_id, sender, text)
        if sender == "user":
            return  # already echoed by the terminal
        self._out.write(f"\n{_PREFIXES[sender]}{text}")
        self._out.flush()

    def append_text(self, entry_id: str, text: str) -> None:
        super().append_text(entry_id, text)
        self._out.write(text)
        self._out.flush()

    def set_text(self, entry_id: str, text: str) -> None:
        super().set_text(entry_id, text)
        self._out.write(f"\n{_PREFIXES['system']}{text}")
        self._out.flush()


class LoggingAnimation:
    def trigger(self, name: str) -> None:
        logger.info("animation: %s", name)


def _on_turn(turn: CompletedTurn) -> None:
    sys.stdout.write(f"  [{turn.emotion}]\n")
    sys.stdout.flush()


async def run_console(
    url: str,
    personality: str = "standard",
    user_name: str | None = None,
    speech_command: list[str] | None = None,
) -> None:
    speech: SpeechOutput = CommandSpeech(speech_command) if speech_command else SilentSpeech()
    coordinator = PlaybackCoordinator(
        ConsoleDisplay(), speech, LoggingAnimation(), on_turn_complete=_on_turn
    )
    manager = ConnectionManager(url, coordinator.handle_frame)
    coordinator.connection = manager

    await manager.connect()
    try:
        while True:
            line = await asyncio.to_thread(input, "\nyou> ")
            if line.strip() in ("/quit", "/exit"):
                break
            if not await coordinator.submit(line, personality, user_name):
                print("!! not connected, message not sent")
                continue
            await coordinator.wait_idle()
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        coordinator.cancel()
        await manager.disconnect()
