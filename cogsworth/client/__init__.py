"""Receiving side of the session protocol.

    connection : ConnectionManager: socket lifecycle, reconnect, send
    playback   : PlaybackCoordinator: pacing, speech and animation per turn
    speech     : speech backends and markdown stripping
    console    : terminal client wiring the three together
"""

from .connection import ConnectionManager  # noqa: F401
from .playback import (  # noqa: F401
    ChatDisplay,
    CompletedTurn,
    PlaybackCoordinator,
    PlaybackState,
    ProtocolParseError,
    RecordingAnimation,
    Transcript,
)
from .speech import CommandSpeech, SilentSpeech, strip_markdown  # noqa: F401
