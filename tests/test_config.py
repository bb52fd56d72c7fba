"""Tests for cogsworth.config: environment-driven settings."""

from pathlib import Path

import pytest

from cogsworth.config import Settings, load_settings
from cogsworth.models import EMOTION_KEYWORDS


@pytest.fixture
def no_env_file(tmp_path: Path) -> Path:
    return tmp_path / "missing.env"


class TestLoadSettings:
    def test_defaults(self, no_env_file: Path) -> None:
        settings = load_settings(no_env_file)
        assert settings.api_url == ""
        assert settings.timeout == 300.0
        assert settings.max_attempts == 3
        assert settings.retry_delay == 1.0
        assert settings.port == 3001
        assert settings.history_limit == 10
        assert settings.emotion_keywords == EMOTION_KEYWORDS
        assert settings.directive_template is None
        assert settings.echo is False

    def test_reads_environment(self, monkeypatch, no_env_file: Path) -> None:
        monkeypatch.setenv("LLM_API_URL", "https://api.example.com/v1")
        monkeypatch.setenv("LLM_API_KEY", "k")
        monkeypatch.setenv("LLM_MODEL_NAME", "gears-7b")
        monkeypatch.setenv("LLM_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("BACKEND_PORT", "8080")
        monkeypatch.setenv("COGSWORTH_ECHO", "1")

        settings = load_settings(no_env_file)
        assert settings.api_url == "https://api.example.com/v1"
        assert settings.model == "gears-7b"
        assert settings.max_attempts == 5
        assert settings.port == 8080
        assert settings.echo is True

    def test_env_file_loaded(self, monkeypatch, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("LLM_API_URL=http://from-file/v1\n")
        # load_dotenv writes into os.environ; register it for cleanup
        monkeypatch.setenv("LLM_API_URL", "")
        monkeypatch.delenv("LLM_API_URL")
        assert load_settings(env_file).api_url == "http://from-file/v1"

    def test_extra_emotions(self, monkeypatch, no_env_file: Path) -> None:
        monkeypatch.setenv("COGSWORTH_EXTRA_EMOTIONS", " Sleepy, happy ,,curious")
        keywords = load_settings(no_env_file).emotion_keywords
        assert keywords[:len(EMOTION_KEYWORDS)] == EMOTION_KEYWORDS
        assert keywords[len(EMOTION_KEYWORDS):] == ("sleepy", "curious")

    def test_directive_template_from_file(self, monkeypatch, tmp_path: Path) -> None:
        template = tmp_path / "directive.hbs"
        template.write_text("You are {{personality}}.", encoding="utf-8")
        monkeypatch.setenv("COGSWORTH_DIRECTIVE_TEMPLATE", str(template))
        settings = load_settings(tmp_path / "missing.env")
        assert settings.directive_template == "You are {{personality}}."


class TestPublicSettings:
    def test_excludes_secrets(self) -> None:
        data = Settings(api_key="secret", directive_template="x").public()
        assert "api_key" not in data
        assert "directive_template" not in data
        assert data["api_key_set"] is True

    def test_key_not_set(self) -> None:
        assert Settings().public()["api_key_set"] is False
