import pytest
from pydantic import ValidationError

from sr_screening.app.config import Settings
from sr_screening.core.types import LogLevel


def test_defaults(monkeypatch):
    for var in ("OPENAI_API_KEY", "GOOGLE_API_KEY", "OPENROUTER_API_KEY", "ENVIRONMENT"):
        monkeypatch.delenv(var, raising=False)
    settings = Settings(_env_file=None)  # pyright: ignore [reportCallIssue]

    assert settings.OPENAI_API_KEY is None
    assert str(settings.OPENROUTER_BASE_URL) == "https://openrouter.ai/api/v1"
    assert settings.primary_conservative_model == "openai:gpt-4o"
    assert settings.tertiary_model == "google:gemini-1.5-flash"
    assert settings.max_retries == 3
    assert settings.retry_base_delay == 1.0
    assert settings.pacing_interval == 1.0
    assert settings.fail_fast_on_rate_limit is True
    assert settings.log_level is LogLevel.DEBUG
    assert settings.env == "prototype"


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    monkeypatch.setenv("SRA_PACING_INTERVAL", "2.5")
    monkeypatch.setenv("SRA_SECONDARY_CONSERVATIVE_MODEL", "openrouter:meta-llama/llama-3-70b")
    monkeypatch.setenv("ENVIRONMENT", "test")

    settings = Settings(_env_file=None)  # pyright: ignore [reportCallIssue]

    assert settings.OPENAI_API_KEY is not None
    assert settings.OPENAI_API_KEY.get_secret_value() == "sk-from-env"
    assert settings.pacing_interval == 2.5
    assert settings.secondary_conservative_model == "openrouter:meta-llama/llama-3-70b"
    assert settings.env == "test"


def test_api_key_not_leaked_in_repr(settings):
    assert "sk-test-openai" not in repr(settings)


@pytest.mark.parametrize(
    "overrides",
    [{"max_retries": 0}, {"retry_base_delay": -1}, {"environment": "production"}],
)
def test_invalid_values_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)  # pyright: ignore [reportCallIssue]
