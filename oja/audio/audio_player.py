import asyncio
import subprocess
import tempfile
import threading
from pathlib import Path

from loguru import logger

PLAYBACK_TIMEOUT = 60


class AudioPlayer:
    """Plays WAV audio through PipeWire/PulseAudio (paplay).

    There is one playback resource. ``stop()`` is synchronous so a session
    close can halt audio immediately; it also invalidates playback that was
    requested but whose process has not started yet.
    """

    def __init__(self, command: str = "paplay"):
        self.command = command
        self._current_process: subprocess.Popen | None = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def is_playing(self) -> bool:
        proc = self._current_process
        return proc is not None and proc.poll() is None

    async def play(self, wav_bytes: bytes) -> bool:
        """Play WAV audio bytes. Returns True when playback ran to completion."""
        if not wav_bytes:
            return False

        generation = self._generation
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._play_sync, wav_bytes, generation)

    def _play_sync(self, wav_bytes: bytes, generation: int) -> bool:
        with tempfile.NamedTemporaryFile(suffix=".wav", delete=True) as tmp:
            tmp.write(wav_bytes)
            tmp.flush()
            return self._run(tmp.name, generation)

    async def play_file(self, path: Path) -> bool:
        """Play a WAV file from disk."""
        if not path.exists():
            logger.warning("Sound file not found: {}", path)
            return False

        generation = self._generation
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._run, str(path), generation)

    def _run(self, filename: str, generation: int) -> bool:
        try:
            proc = subprocess.Popen(
                [self.command, filename],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.error("{} not found. Install pulseaudio-utils.", self.command)
            return False

        with self._lock:
            if generation != self._generation:
                # stop() was called while this playback was being set up
                proc.kill()
                proc.wait()
                return False
            self._current_process = proc
        try:
            proc.wait(timeout=PLAYBACK_TIMEOUT)
        except subprocess.TimeoutExpired:
            proc.kill()
            logger.error("Audio playback timed out ({}s)", PLAYBACK_TIMEOUT)
            return False
        finally:
            with self._lock:
                if self._current_process is proc:
                    self._current_process = None

        if proc.returncode == -9:
            return False  # killed by stop()
        if proc.returncode != 0:
            stderr = proc.stderr.read().decode().strip() if proc.stderr else ""
            logger.error("{} error: {}", self.command, stderr)
            return False
        return True

    def stop(self) -> None:
        """Stop any currently playing audio immediately. No-op when idle."""
        with self._lock:
            self._generation += 1
            proc = self._current_process
            self._current_process = None
        if proc is not None and proc.poll() is None:
            try:
                proc.kill()
                logger.info("Audio playback stopped (killed {}).", self.command)
            except OSError as e:
                logger.debug("Error killing {}: {}", self.command, e)
