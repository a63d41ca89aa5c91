import pytest
from pydantic import ValidationError as PydanticValidationError

from panelflow.config import MAX_NODE_WORKERS, Settings, get_settings, reset_settings_cache


def test_defaults(monkeypatch):
    monkeypatch.delenv("MAX_CONCURRENT_EXECUTIONS", raising=False)
    monkeypatch.delenv("ROLE_SERVICE_URL", raising=False)

    settings = Settings.from_env()

    assert settings.max_concurrent_executions == 10
    assert settings.debate_max_rounds == 3
    assert settings.role_service_url is None
    assert settings.test_mode is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT_EXECUTIONS", "4")
    monkeypatch.setenv("DEBATE_EARLY_STOP_THRESHOLD", "0.9")
    monkeypatch.setenv("SMTP_USE_TLS", "false")

    settings = Settings.from_env()

    assert settings.max_concurrent_executions == 4
    assert settings.debate_early_stop_threshold == 0.9
    assert settings.smtp_use_tls is False


def test_dotenv_file_is_read(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DEBATE_MAX_ROUNDS", raising=False)
    (tmp_path / ".env").write_text("DEBATE_MAX_ROUNDS=5\n")

    assert Settings.from_env().debate_max_rounds == 5


def test_node_workers_are_clamped():
    assert Settings(node_workers=500).node_workers == MAX_NODE_WORKERS
    assert Settings(node_workers=0).node_workers == 1


@pytest.mark.parametrize(
    "field, value",
    [("max_concurrent_executions", 0), ("debate_max_rounds", 0), ("debate_early_stop_threshold", 1.5)],
)
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(PydanticValidationError):
        Settings(**{field: value})


def test_settings_are_cached_until_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("NODE_WORKERS", "3")
    reset_settings_cache()

    assert get_settings() is not first
    assert get_settings().node_workers == 3
