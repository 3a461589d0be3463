import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger

from core.config import ConfigManager
from core.state import ScreenContext, SessionState

# Base directory for the oja package
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
MODELS_DIR = BASE_DIR / "models"
SOUNDS_DIR = BASE_DIR / "audio" / "sounds"


async def build_assistant(config_manager: ConfigManager, speech_engine=None):
    """Wire up the voice assistant from configuration.

    Args:
        config_manager: Source of provider keys, limits and voice settings.
        speech_engine: Platform speech-to-text engine, or None when the host
            has no capture support (the session then reports it unavailable).
    """
    from audio.audio_player import AudioPlayer
    from audio.capture import CaptureController
    from audio.cascade import SpeechSynthesisCascade
    from audio.cues import SoundCues
    from audio.tts import PiperDeviceSpeech, VoiceHint, build_remote_providers
    from core.rate_limiter import JsonRateLimitStore, RateLimiter
    from core.session import VoiceAssistant
    from llm.base import create_provider
    from llm.dispatcher import ToolCallingDispatcher
    from tools.catalog import default_catalog
    from tools.executor import HttpToolExecutor

    config = config_manager.config

    player = AudioPlayer()
    device_speech = PiperDeviceSpeech(
        model_dir=MODELS_DIR / "tts",
        player=player,
        preferred_voice=config.voice.preferred_device_voice,
        default_voice=config.voice.default_device_voice,
    )
    await device_speech.load()

    speech = SpeechSynthesisCascade(
        providers=build_remote_providers(config),
        player=player,
        device=device_speech,
        voice=VoiceHint(locale=config.device.locale, gender=config.voice.voice_gender),
        enabled=config.voice.tts_enabled,
    )

    primary = create_provider(config.providers.primary, config)
    secondary = create_provider(config.providers.secondary, config) if config.providers.secondary else None
    if not primary.is_configured:
        logger.warning("Primary provider '{}' has no API key; requests will use the fallback.", primary.name)

    dispatcher = ToolCallingDispatcher(
        primary=primary,
        secondary=secondary,
        catalog=default_catalog(),
        executor=HttpToolExecutor(config.backend.url, config.backend.token, config.backend.timeout_seconds),
        max_rounds=config.conversation.max_tool_rounds,
        timeout=config.providers.timeout_seconds,
    )

    limiter = RateLimiter(
        JsonRateLimitStore(config_manager.data_dir / "rate_limit.json"),
        cooldown_seconds=config.limits.cooldown_seconds,
        daily_limit=config.limits.daily_limit,
    )

    # Earcons get their own player so they never cut off a spoken answer
    cues = SoundCues(AudioPlayer(), SOUNDS_DIR)

    assistant = VoiceAssistant(
        capture=CaptureController(speech_engine, locale=config.device.locale),
        limiter=limiter,
        dispatcher=dispatcher,
        speech=speech,
        cues=cues,
        max_history=config.conversation.max_history,
        continuous=config.conversation.continuous,
        resume_delay=config.conversation.resume_delay_seconds,
    )
    logger.info(
        "Voice assistant ready. Primary: {}, fallback: {}, TTS: {}",
        primary.name,
        secondary.name if secondary else "none",
        "on" if config.voice.tts_enabled else "off",
    )
    return assistant


async def run_console(config_manager: ConfigManager) -> None:
    """Terminal conversation: typed lines stand in for speech."""
    from audio.capture import ConsoleSpeechEngine

    assistant = await build_assistant(config_manager, speech_engine=ConsoleSpeechEngine())

    def show(previous: SessionState, state: SessionState) -> None:
        session = assistant.session
        if state in (SessionState.SPEAKING, SessionState.AWAITING_CONFIRMATION, SessionState.ERROR):
            print(f"oja> {session.last_response_text}")
            if state == SessionState.AWAITING_CONFIRMATION:
                print("oja> (say yes to confirm or no to cancel)")
        elif state == SessionState.IDLE and session.last_error:
            print(f"oja> {session.last_error}")

    assistant.add_state_listener(show)
    session = assistant.open(ScreenContext(current_screen="console"))

    try:
        while session.is_open and assistant.capture.available:
            if session.state in (SessionState.IDLE, SessionState.AWAITING_CONFIRMATION) \
                    and not assistant.continuous.scheduled and not assistant.speech.is_speaking:
                await assistant.start_listening()
            await asyncio.sleep(0.2)
    finally:
        await assistant.shutdown()


async def serve(config_manager: ConfigManager) -> None:
    """Run the control API; the host app drives the session over HTTP."""
    import uvicorn

    from api.server import create_app

    config = config_manager.config
    app = create_app(config_manager)
    server_config = uvicorn.Config(app, host=config.api.host, port=config.api.port, log_level="warning")
    server = uvicorn.Server(server_config)
    logger.info("API server starting on {}:{}", config.api.host, config.api.port)
    await server.serve()


def setup_logging(data_dir: Path = DATA_DIR) -> None:
    logger.remove()
    logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level:<7} | {message}")
    data_dir.mkdir(parents=True, exist_ok=True)
    logger.add(data_dir / "assistant.log", rotation="10 MB", retention="7 days", level="DEBUG")


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Oja voice assistant")
    parser.add_argument("--serve", action="store_true", help="run the control API instead of the console")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR)
    args = parser.parse_args()

    setup_logging(args.data_dir)
    config_manager = ConfigManager(args.data_dir)

    runner = serve(config_manager) if args.serve else run_console(config_manager)

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(runner)
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
