import pytest

from cogsworth.config import Settings

ENV_VARS = (
    "LLM_API_URL",
    "LLM_API_KEY",
    "LLM_MODEL_NAME",
    "LLM_TIMEOUT",
    "LLM_MAX_ATTEMPTS",
    "LLM_RETRY_DELAY",
    "HOST",
    "BACKEND_PORT",
    "COGSWORTH_HISTORY_LIMIT",
    "COGSWORTH_EXTRA_EMOTIONS",
    "COGSWORTH_DIRECTIVE_TEMPLATE",
    "COGSWORTH_ECHO",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep a developer's shell environment out of every test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_url="http://llm.test/v1",
        api_key="test-key",
        model="test-model",
        retry_delay=0.0,
    )
