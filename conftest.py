"""
Test conftest — isolate endpoint and API key environment variables so that
Settings-based tests are not affected by real keys in the developer's or
CI environment.
"""
import pytest

_ENV_VARS = [
    "OLLAMA_BASE_URL",
    "DEEPSEEK_API_KEY",
    "OPENAI_API_KEY",
    "PINCER_CONFIG",
]


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    """Remove endpoint/key env vars for every test so Settings() behaves
    as if nothing is configured unless the test explicitly provides it.
    Also disables .env file loading so local developer .env files don't
    leak real credentials into tests, and drops the settings singleton."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    # Disable .env file loading by patching Settings.model_config
    import pincer.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)

    settings_module.reset_settings()
    yield
    settings_module.reset_settings()
