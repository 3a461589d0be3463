import json
import os
import uuid
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field


class DeviceConfig(BaseModel):
    device_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    locale: str = "en-GB"


class ProvidersConfig(BaseModel):
    primary: str = "gemini"  # "gemini" or "openai"
    secondary: str = "openai"
    gemini_model: str = "gemini-2.0-flash"
    openai_model: str = "gpt-4o-mini"
    timeout_seconds: float = 15.0
    temperature: float = 0.3
    max_output_tokens: int = 500


class APIKeysConfig(BaseModel):
    gemini: str = ""
    openai: str = ""
    azure_speech: str = ""
    azure_region: str = "uksouth"
    google_cloud: str = ""


class VoiceConfig(BaseModel):
    tts_enabled: bool = True
    voice_gender: str = "MALE"  # "MALE" or "FEMALE"
    tts_providers: list[str] = Field(default_factory=lambda: ["azure", "google"])
    preferred_device_voice: str = "en_GB-alan-medium"
    default_device_voice: str = "en_US-lessac-medium"
    synthesis_timeout_seconds: float = 10.0


class LimitsConfig(BaseModel):
    cooldown_seconds: float = 6.0
    daily_limit: int = 200


class ConversationConfig(BaseModel):
    max_history: int = 12  # 6 exchanges (user + assistant each)
    max_tool_rounds: int = 3
    continuous: bool = True
    resume_delay_seconds: float = 0.5


class BackendConfig(BaseModel):
    url: str = ""
    token: str = ""
    timeout_seconds: float = 10.0


class APIConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765
    token: str = ""


class AppConfig(BaseModel):
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    api_keys: APIKeysConfig = Field(default_factory=APIKeysConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    api: APIConfig = Field(default_factory=APIConfig)


# Environment fallbacks for secrets that are usually not written to disk.
_ENV_KEYS = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "azure_speech": "AZURE_SPEECH_KEY",
    "google_cloud": "GOOGLE_CLOUD_API_KEY",
}


class ConfigManager:
    """Manages assistant configuration with JSON persistence."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.config_path = data_dir / "config.json"
        self._config: Optional[AppConfig] = None
        # Keys taken from the environment, kept out of config.json
        self._env_keys: dict[str, str] = {}

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            self._config = self._load()
        return self._config

    def _load(self) -> AppConfig:
        """Load config from disk. Returns defaults if no config exists."""
        config = AppConfig()
        if self.config_path.exists():
            try:
                data = json.loads(self.config_path.read_text())
                config = AppConfig(**data)
                logger.info("Configuration loaded from {}", self.config_path)
            except Exception as e:
                logger.error("Failed to load config: {}. Using defaults.", e)
        else:
            logger.info("No existing config found. Using defaults.")
        self._apply_env_keys(config)
        return config

    def _apply_env_keys(self, config: AppConfig) -> None:
        for field_name, env_name in _ENV_KEYS.items():
            if not getattr(config.api_keys, field_name) and os.environ.get(env_name):
                setattr(config.api_keys, field_name, os.environ[env_name])
                self._env_keys[field_name] = os.environ[env_name]
                logger.debug("API key '{}' taken from ${}", field_name, env_name)

    def save(self) -> None:
        """Persist current config to disk."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = self.config.model_dump()
        for field_name, value in self._env_keys.items():
            # A key changed through settings is the user's own and is kept
            if data["api_keys"][field_name] == value:
                data["api_keys"][field_name] = ""
        self.config_path.write_text(json.dumps(data, indent=2))
        logger.debug("Configuration saved to {}", self.config_path)

    def update(self, **kwargs) -> AppConfig:
        """Update top-level config fields and save."""
        current = self.config.model_dump()
        for key, value in kwargs.items():
            if key in current:
                if isinstance(current[key], dict) and isinstance(value, dict):
                    current[key].update(value)
                else:
                    current[key] = value
        self._config = AppConfig(**current)
        self.save()
        return self._config

    def update_nested(self, section: str, **kwargs) -> AppConfig:
        """Update fields within a nested config section."""
        current = self.config.model_dump()
        if section in current and isinstance(current[section], dict):
            current[section].update(kwargs)
        self._config = AppConfig(**current)
        self.save()
        return self._config

    def reset(self) -> None:
        """Reset config to defaults."""
        self._config = AppConfig()
        self._apply_env_keys(self._config)
        if self.config_path.exists():
            self.config_path.unlink()
        logger.info("Configuration reset to defaults.")

    @property
    def continuous_enabled(self) -> bool:
        return self.config.conversation.continuous

    @property
    def tts_enabled(self) -> bool:
        return self.config.voice.tts_enabled
