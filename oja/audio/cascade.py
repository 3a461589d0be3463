import asyncio
from enum import Enum
from typing import Callable, Optional, Sequence

from loguru import logger

from audio.audio_player import AudioPlayer
from audio.tts import DeviceSpeech, SynthesisProvider, VoiceHint
from core.errors import SynthesisFailure

DEVICE_PROVIDER = "device"


class SpeechOutcome(str, Enum):
    REMOTE = "remote"        # A remote provider's audio was played
    DEVICE = "device"        # On-device fallback spoke
    SILENT = "silent"        # Nothing could be played
    CANCELLED = "cancelled"  # stop() was called


class SynthesisAttempt:
    """One spoken response.

    Owns the audio playback resource until it finishes or is cancelled.
    ``completion`` resolves exactly once, whichever of finish, failure or
    cancellation happens first.
    """

    def __init__(self, text: str, providers: Sequence[str]):
        self.text = text
        self.providers = list(providers)
        self.successful_provider: Optional[str] = None
        self.completion: asyncio.Future = asyncio.get_running_loop().create_future()
        self._task: Optional[asyncio.Task] = None

    def resolve(self, outcome: SpeechOutcome) -> bool:
        if self.completion.done():
            return False
        self.completion.set_result(outcome)
        return True

    @property
    def done(self) -> bool:
        return self.completion.done()

    @property
    def cancelled(self) -> bool:
        return self.done and self.completion.result() == SpeechOutcome.CANCELLED

    async def wait(self) -> SpeechOutcome:
        return await asyncio.shield(self.completion)


class SpeechSynthesisCascade:
    """Speaks text through the first remote provider that can synthesize it.

    Remote failures are logged and skipped silently. If every remote
    provider fails, on-device speech is used; if that fails too the response
    is simply not spoken, and the completion still fires.
    """

    def __init__(
        self,
        providers: Sequence[SynthesisProvider],
        player: AudioPlayer,
        device: Optional[DeviceSpeech] = None,
        voice: VoiceHint = VoiceHint(),
        enabled: bool = True,
    ):
        self.providers = list(providers)
        self.player = player
        self.device = device
        self.voice = voice
        self.enabled = enabled
        self._current: Optional[SynthesisAttempt] = None

    @property
    def device_available(self) -> bool:
        return self.device is not None and self.device.available

    @property
    def is_speaking(self) -> bool:
        return self._current is not None and not self._current.done

    def speak(
        self,
        text: str,
        on_complete: Optional[Callable[[SpeechOutcome], None]] = None,
    ) -> SynthesisAttempt:
        """Start speaking ``text``; any previous attempt is stopped first."""
        self.stop()

        names = [p.name for p in self.providers] + [DEVICE_PROVIDER]
        attempt = SynthesisAttempt(text, names)
        if on_complete is not None:
            attempt.completion.add_done_callback(lambda fut: on_complete(fut.result()))

        if not self.enabled or not text.strip():
            attempt.resolve(SpeechOutcome.SILENT)
            return attempt

        self._current = attempt
        attempt._task = asyncio.create_task(self._run(attempt))
        return attempt

    async def _run(self, attempt: SynthesisAttempt) -> None:
        try:
            outcome = await self._speak_cascade(attempt)
            attempt.resolve(outcome)
        except asyncio.CancelledError:
            attempt.resolve(SpeechOutcome.CANCELLED)
            raise
        except Exception as e:
            logger.exception("[TTS] Unexpected synthesis error: {}", e)
            attempt.resolve(SpeechOutcome.SILENT)
        finally:
            if self._current is attempt:
                self._current = None

    async def _speak_cascade(self, attempt: SynthesisAttempt) -> SpeechOutcome:
        for provider in self.providers:
            try:
                audio = await provider.synthesize(attempt.text, self.voice)
            except SynthesisFailure as e:
                logger.warning("[TTS] {} failed, trying next: {}", provider.name, e)
                continue
            except Exception as e:
                logger.warning("[TTS] {} raised {}, trying next", provider.name, e)
                continue

            if attempt.done:
                return SpeechOutcome.CANCELLED
            attempt.successful_provider = provider.name
            logger.info("[TTS] Speaking via {}", provider.name)
            await self.player.play(audio)
            return SpeechOutcome.REMOTE

        if attempt.done:
            return SpeechOutcome.CANCELLED

        if self.device_available:
            logger.info("[TTS] Remote providers exhausted, using device speech")
            try:
                if await self.device.speak(attempt.text):
                    attempt.successful_provider = DEVICE_PROVIDER
                    return SpeechOutcome.DEVICE
            except Exception as e:
                logger.warning("[TTS] Device speech raised {}", e)

        error = SynthesisFailure("all synthesis providers failed")
        logger.error("[TTS] {}; response stays silent", error)
        return SpeechOutcome.SILENT

    def stop(self) -> None:
        """Halt playback and release the audio resource. No-op when idle."""
        attempt = self._current
        self._current = None
        if attempt is None or attempt.done:
            return
        attempt.resolve(SpeechOutcome.CANCELLED)
        if attempt._task is not None and not attempt._task.done():
            attempt._task.cancel()
        self.player.stop()
        if self.device is not None:
            self.device.stop()
        logger.debug("[TTS] Speech stopped")

    async def close(self) -> None:
        self.stop()
        for provider in self.providers:
            await provider.close()
