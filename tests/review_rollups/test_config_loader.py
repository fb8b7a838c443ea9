import pytest
from pydantic import ValidationError

from src.functions.review_rollups.core.contracts.config import PipelineConfig
from src.functions.review_rollups.core.orchestration.config_loader import (
    build_openai_settings,
    build_pipeline_config,
    build_supabase_settings,
    build_trigger_settings,
)
from src.shared.utils.config_validator import ConfigurationError

_ENV_VARS = (
    "MAX_SUBJECTS_PER_RUN",
    "MAX_JOBS_PER_RUN",
    "MAX_NEW_REVIEWS_FOR_SUMMARY",
    "PIPELINE_PARALLEL",
    "PIPELINE_DRY_RUN",
    "SUPABASE_URL",
    "SUPABASE_KEY",
    "SUPABASE_SERVICE_ROLE_KEY",
    "OPENAI_API_KEY",
    "OPENAI_API_KEY_SUMMARY",
    "OPENAI_API_KEY_EMBEDDINGS",
    "BATCH_TOKEN",
    "BATCH_RUNNER_NAME",
    "K_REVISION",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_documented_limits():
    config = build_pipeline_config()

    assert config.max_subjects_per_run == 5
    assert config.max_jobs_per_run == 50
    assert config.max_new_reviews_for_summary == 30
    assert config.max_body_chars_for_summary == 1200
    assert config.max_embed_chars == 8000
    assert config.embedding_batch_size == 16
    assert config.lock_stale_minutes == 15
    assert config.dry_run is False


def test_overrides_win_over_environment(monkeypatch):
    monkeypatch.setenv("MAX_SUBJECTS_PER_RUN", "9")
    monkeypatch.setenv("MAX_JOBS_PER_RUN", "20")

    config = build_pipeline_config({"max_subjects": "2", "dry_run": "true", "process_jobs": False})

    assert config.max_subjects_per_run == 2
    assert config.max_jobs_per_run == 20
    assert config.dry_run is True
    assert config.process_jobs is False
    assert config.process_subjects is True


def test_bad_override_raises_value_error():
    with pytest.raises(ValueError):
        build_pipeline_config({"max_subjects": "lots"})
    with pytest.raises(ValueError):
        build_pipeline_config({"parallel": "sometimes"})


def test_bad_environment_raises_configuration_error(monkeypatch):
    monkeypatch.setenv("MAX_NEW_REVIEWS_FOR_SUMMARY", "0")

    with pytest.raises(ConfigurationError):
        build_pipeline_config()


def test_supabase_settings_require_url_and_key(monkeypatch):
    with pytest.raises(ConfigurationError):
        build_supabase_settings()

    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "anon-key-1234567890")
    assert build_supabase_settings().key == "anon-key-1234567890"

    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-role-1234567890")
    assert build_supabase_settings().key == "service-role-1234567890"


def test_dedicated_openai_keys_override_shared_key(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-shared")
    monkeypatch.setenv("OPENAI_API_KEY_EMBEDDINGS", "sk-embed")

    settings = build_openai_settings()

    assert settings.summary_api_key == "sk-shared"
    assert settings.embedding_api_key == "sk-embed"


def test_trigger_settings_fall_back_to_revision_name(monkeypatch):
    monkeypatch.setenv("K_REVISION", "review-rollups-00012")

    settings = build_trigger_settings()

    assert settings.batch_token is None
    assert settings.default_runner == "review-rollups-00012"


def test_worker_count_must_be_positive():
    with pytest.raises(ValidationError):
        PipelineConfig(max_workers=0)
    with pytest.raises(ValueError):
        build_pipeline_config({"max_workers": 0})
