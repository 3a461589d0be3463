"""Tests for configuration persistence."""
import json

from core.config import AppConfig, ConfigManager


class TestConfigManager:
    def test_defaults(self, tmp_path):
        cm = ConfigManager(tmp_path)
        config = cm.config
        assert config.device.locale == "en-GB"
        assert config.providers.primary == "gemini"
        assert config.providers.secondary == "openai"
        assert config.limits.cooldown_seconds == 6.0
        assert config.limits.daily_limit == 200
        assert config.conversation.max_history == 12
        assert config.conversation.max_tool_rounds == 3
        assert config.conversation.resume_delay_seconds == 0.5
        assert cm.continuous_enabled
        assert cm.tts_enabled

    def test_save_and_reload(self, tmp_path):
        cm = ConfigManager(tmp_path)
        cm.update_nested("voice", voice_gender="FEMALE")

        reloaded = ConfigManager(tmp_path)
        assert reloaded.config.voice.voice_gender == "FEMALE"
        assert reloaded.config.device.device_id == cm.config.device.device_id

    def test_update_merges_sections(self, tmp_path):
        cm = ConfigManager(tmp_path)
        cm.update(conversation={"continuous": False}, unknown="ignored")
        assert not cm.continuous_enabled
        assert cm.config.conversation.max_history == 12

    def test_corrupt_file_uses_defaults(self, tmp_path):
        (tmp_path / "config.json").write_text("{broken")
        cm = ConfigManager(tmp_path)
        assert cm.config.providers.primary == "gemini"

    def test_api_keys_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "env-gemini")
        monkeypatch.setenv("OPENAI_API_KEY", "env-openai")
        (tmp_path / "config.json").write_text(
            json.dumps({"api_keys": {"openai": "file-openai"}})
        )
        cm = ConfigManager(tmp_path)
        assert cm.config.api_keys.gemini == "env-gemini"
        # A key in the file wins over the environment
        assert cm.config.api_keys.openai == "file-openai"

    def test_environment_keys_not_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env-secret-123456")
        cm = ConfigManager(tmp_path)
        cm.update_nested("conversation", continuous=False)

        saved = json.loads((tmp_path / "config.json").read_text())
        assert saved["api_keys"]["openai"] == ""
        assert saved["conversation"]["continuous"] is False
        assert cm.config.api_keys.openai == "sk-env-secret-123456"

    def test_key_set_through_settings_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env-secret-123456")
        cm = ConfigManager(tmp_path)
        cm.update_nested("api_keys", openai="sk-user-key")

        saved = json.loads((tmp_path / "config.json").read_text())
        assert saved["api_keys"]["openai"] == "sk-user-key"

    def test_reset(self, tmp_path):
        cm = ConfigManager(tmp_path)
        cm.update_nested("limits", daily_limit=50)
        cm.reset()
        assert cm.config == AppConfig(device=cm.config.device)
        assert cm.config.limits.daily_limit == 200
        assert not (tmp_path / "config.json").exists()
