"""Tests for startup configuration."""

import pytest

from piiwatch.core.errors import InvalidConfigError, MissingConfigError
from piiwatch.core.models import Cadence
from piiwatch.core.settings import load_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for name in ("PIIWATCH_STAGE", "PIIWATCH_WEBHOOK_URL", "PIIWATCH_CLASSIFICATION_CADENCE", "PIIWATCH_INITIAL_RUN"):
        monkeypatch.delenv(name, raising=False)
    # keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)


class TestRequiredValues:
    """A missing required value is a fatal startup error."""

    def test_missing_stage(self):
        with pytest.raises(MissingConfigError) as exc_info:
            load_settings(webhook_url="https://hooks.example.com/x")
        assert exc_info.value.key == "stage"

    def test_missing_webhook_url(self):
        with pytest.raises(MissingConfigError) as exc_info:
            load_settings(stage="dev")
        assert exc_info.value.key == "webhook_url"

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("PIIWATCH_STAGE", "prod")
        monkeypatch.setenv("PIIWATCH_WEBHOOK_URL", "https://hooks.example.com/x")
        monkeypatch.setenv("PIIWATCH_CLASSIFICATION_CADENCE", "weekly")
        monkeypatch.setenv("PIIWATCH_INITIAL_RUN", "true")
        settings = load_settings()
        assert settings.stage == "prod"
        assert settings.classification_cadence == Cadence.WEEKLY
        assert settings.initial_run is True


class TestValidation:
    def test_invalid_cadence(self):
        with pytest.raises(InvalidConfigError) as exc_info:
            load_settings(stage="dev", webhook_url="https://x.example.com", classification_cadence="fortnightly")
        assert exc_info.value.key == "classification_cadence"

    def test_webhook_must_be_http(self):
        with pytest.raises(InvalidConfigError):
            load_settings(stage="dev", webhook_url="ftp://x.example.com")

    def test_stage_must_be_slug(self):
        with pytest.raises(InvalidConfigError):
            load_settings(stage="Dev Stage", webhook_url="https://x.example.com")

    def test_invalid_overlap_policy(self):
        with pytest.raises(InvalidConfigError):
            load_settings(stage="dev", webhook_url="https://x.example.com", overlap_policy="queue")

    def test_object_prefix_must_be_a_key_segment(self):
        with pytest.raises(InvalidConfigError) as exc_info:
            load_settings(stage="dev", webhook_url="https://x.example.com", object_prefix="fn/logs")
        assert exc_info.value.key == "object_prefix"


class TestDefaults:
    def test_defaults_and_stage_scoped_names(self):
        settings = load_settings(stage="dev", webhook_url="https://x.example.com")
        assert settings.classification_cadence == Cadence.DAILY
        assert settings.initial_run is False
        assert settings.bucket_name == "piiwatch-logs-dev"
        assert settings.job_name == "Function-Logs-PII-dev"
        assert settings.webhook_username == "fake-teams-user"
        assert settings.webhook_max_attempts == 5
        assert settings.hot_days == 7
        assert settings.encryption_key_ref.startswith("secret:")

    def test_log_level_normalised(self):
        settings = load_settings(stage="dev", webhook_url="https://x.example.com", log_level="debug")
        assert settings.log_level == "DEBUG"
        assert settings.json_logs is None
