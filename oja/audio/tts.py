import asyncio
import base64
import io
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from xml.sax.saxutils import escape

import httpx
import numpy as np
from loguru import logger

from audio.audio_player import AudioPlayer
from core.errors import SynthesisFailure


@dataclass(frozen=True)
class VoiceHint:
    locale: str = "en-GB"
    gender: str = "MALE"  # "MALE" or "FEMALE"


class SynthesisProvider(ABC):
    """A remote text-to-speech service returning WAV audio."""

    name: str = "remote"

    @abstractmethod
    async def synthesize(self, text: str, voice: VoiceHint) -> bytes:
        """Return WAV bytes for ``text``.

        Raises:
            SynthesisFailure: on transport errors, error statuses, empty
                payloads, or an unsupported voice.
        """
        ...

    async def close(self) -> None:
        pass


class _HttpProvider(SynthesisProvider):
    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._ensure_client().post(url, **kwargs)
        except httpx.HTTPError as e:
            raise SynthesisFailure(f"{self.name}: {e}") from e
        if response.status_code >= 400:
            raise SynthesisFailure(f"{self.name}: HTTP {response.status_code}")
        return response

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class AzureSpeechProvider(_HttpProvider):
    """Azure Cognitive Services neural voices (British English by default)."""

    name = "azure"

    VOICES = {
        ("en-GB", "MALE"): "en-GB-RyanNeural",
        ("en-GB", "FEMALE"): "en-GB-SoniaNeural",
        ("en-US", "MALE"): "en-US-GuyNeural",
        ("en-US", "FEMALE"): "en-US-JennyNeural",
    }

    def __init__(self, api_key: str, region: str = "uksouth", timeout: float = 10.0):
        super().__init__(timeout)
        self.api_key = api_key
        self.region = region

    async def synthesize(self, text: str, voice: VoiceHint) -> bytes:
        voice_name = self.VOICES.get((voice.locale, voice.gender))
        if voice_name is None:
            raise SynthesisFailure(f"azure: no voice for {voice.locale}/{voice.gender}")

        ssml = (
            f'<speak version="1.0" xmlns="http://www.w3.org/2001/10/synthesis" xml:lang="{voice.locale}">'
            f'<voice name="{voice_name}">{escape(text)}</voice></speak>'
        )
        response = await self._post(
            f"https://{self.region}.tts.speech.microsoft.com/cognitiveservices/v1",
            headers={
                "Ocp-Apim-Subscription-Key": self.api_key,
                "Content-Type": "application/ssml+xml",
                "X-Microsoft-OutputFormat": "riff-24khz-16bit-mono-pcm",
            },
            content=ssml.encode("utf-8"),
        )
        if not response.content:
            raise SynthesisFailure("azure: empty audio payload")
        return response.content


class GoogleSpeechProvider(_HttpProvider):
    """Google Cloud Text-to-Speech Neural2 voices."""

    name = "google"

    VOICES = {
        ("en-GB", "MALE"): "en-GB-Neural2-D",
        ("en-GB", "FEMALE"): "en-GB-Neural2-C",
        ("en-US", "MALE"): "en-US-Neural2-D",
        ("en-US", "FEMALE"): "en-US-Neural2-C",
    }

    def __init__(self, api_key: str, timeout: float = 10.0):
        super().__init__(timeout)
        self.api_key = api_key

    async def synthesize(self, text: str, voice: VoiceHint) -> bytes:
        voice_name = self.VOICES.get((voice.locale, voice.gender))
        if voice_name is None:
            raise SynthesisFailure(f"google: no voice for {voice.locale}/{voice.gender}")

        response = await self._post(
            "https://texttospeech.googleapis.com/v1/text:synthesize",
            params={"key": self.api_key},
            json={
                "input": {"text": text},
                "voice": {"languageCode": voice.locale, "name": voice_name, "ssmlGender": voice.gender},
                "audioConfig": {
                    "audioEncoding": "LINEAR16",
                    "speakingRate": 1.0,
                    "effectsProfileId": ["small-bluetooth-speaker-class-device"],
                },
            },
        )
        try:
            audio = base64.b64decode(response.json().get("audioContent") or "")
        except ValueError as e:
            raise SynthesisFailure("google: malformed response") from e
        if not audio:
            raise SynthesisFailure("google: empty audio payload")
        return audio


class DeviceSpeech(ABC):
    """Speech synthesis that ships with the device; the last resort."""

    @property
    @abstractmethod
    def available(self) -> bool:
        ...

    @abstractmethod
    async def speak(self, text: str) -> bool:
        """Synthesize and play ``text``. Returns False if nothing was played."""
        ...

    def stop(self) -> None:
        pass


class PiperDeviceSpeech(DeviceSpeech):
    """On-device text-to-speech using Piper voices.

    Prefers a regional voice when its model is installed, otherwise falls
    back to the default voice.
    """

    def __init__(
        self,
        model_dir: Path,
        player: AudioPlayer,
        preferred_voice: str = "en_GB-alan-medium",
        default_voice: str = "en_US-lessac-medium",
    ):
        self.model_dir = model_dir
        self.player = player
        self.preferred_voice = preferred_voice
        self.default_voice = default_voice
        self.voice: str | None = None
        self._piper = None

    @property
    def available(self) -> bool:
        return self._piper is not None

    def select_voice(self) -> str | None:
        for voice in (self.preferred_voice, self.default_voice):
            if (self.model_dir / f"{voice}.onnx").exists():
                return voice
        return None

    async def load(self):
        """Load the Piper voice model."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._load_sync)

    def _load_sync(self):
        voice = self.select_voice()
        if voice is None:
            logger.warning("No Piper voice model found in {}. Device speech unavailable.", self.model_dir)
            return
        try:
            from piper import PiperVoice
        except ImportError:
            logger.warning("piper-tts not installed. Device speech unavailable.")
            return

        model_path = self.model_dir / f"{voice}.onnx"
        try:
            self._piper = PiperVoice.load(str(model_path), config_path=str(model_path) + ".json")
        except Exception as e:
            logger.error("Failed to load Piper voice {}: {}", voice, e)
            return
        self.voice = voice
        logger.info("Piper device voice loaded: {}", voice)

    async def speak(self, text: str) -> bool:
        if not self.available or not text.strip():
            return False
        loop = asyncio.get_running_loop()
        wav_bytes = await loop.run_in_executor(None, self._synthesize_sync, text)
        if not wav_bytes:
            return False
        return await self.player.play(wav_bytes)

    def _synthesize_sync(self, text: str) -> bytes:
        all_audio = []
        sample_rate = 22050
        for chunk in self._piper.synthesize(text):
            sample_rate = getattr(chunk, "sample_rate", sample_rate)
            # Convert float32 [-1, 1] to int16
            all_audio.append((chunk.audio_float_array * 32767).astype(np.int16))

        if not all_audio:
            logger.warning("Piper produced no audio for: '{}'", text[:50])
            return b""

        wav_buffer = io.BytesIO()
        with wave.open(wav_buffer, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)  # 16-bit
            wav.setframerate(sample_rate)
            wav.writeframes(np.concatenate(all_audio).tobytes())
        return wav_buffer.getvalue()

    def stop(self) -> None:
        self.player.stop()


def build_remote_providers(config) -> list[SynthesisProvider]:
    """Remote providers in configured order, skipping any without a key."""
    keys = config.api_keys
    timeout = config.voice.synthesis_timeout_seconds
    providers: list[SynthesisProvider] = []
    for name in config.voice.tts_providers:
        if name == "azure" and keys.azure_speech:
            providers.append(AzureSpeechProvider(keys.azure_speech, keys.azure_region, timeout))
        elif name == "google" and keys.google_cloud:
            providers.append(GoogleSpeechProvider(keys.google_cloud, timeout))
        elif name not in ("azure", "google"):
            logger.warning("Unknown TTS provider '{}' ignored.", name)
    logger.info("[TTS] Remote cascade: {}", [p.name for p in providers] or "none (device only)")
    return providers
