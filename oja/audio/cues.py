import asyncio
from enum import Enum
from pathlib import Path

from loguru import logger

from audio.audio_player import AudioPlayer


class Cue(str, Enum):
    LISTEN = "listen"            # Manual mic open (medium impact)
    AUTO_LISTEN = "auto_listen"  # Continuous re-listen (soft)
    SUCCESS = "success"
    ERROR = "error"
    CONFIRM = "confirm"
    CANCEL = "cancel"


class CueSink:
    """Receives feedback cues. The base implementation ignores them."""

    def cue(self, kind: Cue) -> None:
        pass


class SoundCues(CueSink):
    """Plays a short earcon per cue from ``sounds_dir`` (e.g. ``listen.wav``).

    Missing sound files are skipped silently, so a sounds directory only
    needs the cues it wants to voice.
    """

    def __init__(self, player: AudioPlayer, sounds_dir: Path):
        self.player = player
        self.sounds_dir = sounds_dir

    def cue(self, kind: Cue) -> None:
        path = self.sounds_dir / f"{kind.value}.wav"
        if not path.exists():
            return
        try:
            asyncio.get_running_loop().create_task(self.player.play_file(path))
        except RuntimeError:
            logger.debug("No running loop for cue {}", kind.value)
