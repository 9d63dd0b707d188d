"""Tests for environment-driven settings."""

from job_engine.core.config import DEFAULT_CORS_ORIGINS, Settings


def test_heroku_database_url_is_rewritten():
    settings = Settings(_env_file=None, database_url="postgres://u:p@db:5432/jobs")
    assert settings.database_url == "postgresql+psycopg://u:p@db:5432/jobs"


def test_cors_origins_from_environment(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", "https://app.example.com/, https://admin.example.com,")
    assert Settings(_env_file=None).cors_origins == ["https://app.example.com", "https://admin.example.com"]

    monkeypatch.setenv("CORS_ORIGINS", " ")
    assert Settings(_env_file=None).cors_origins == DEFAULT_CORS_ORIGINS


def test_celery_urls_fall_back_to_redis_url(monkeypatch):
    monkeypatch.delenv("CELERY_BROKER_URL", raising=False)
    monkeypatch.delenv("CELERY_RESULT_URL", raising=False)
    settings = Settings(_env_file=None, redis_url="redis://cache:6379/1")
    assert settings.broker_url == "redis://cache:6379/1"
    assert settings.result_backend_url == "redis://cache:6379/1"

    explicit = Settings(_env_file=None, celery_broker_url="redis://broker:6379/0")
    assert explicit.broker_url == "redis://broker:6379/0"


def test_engine_tuning_from_environment(monkeypatch):
    monkeypatch.setenv("DISPATCH_MODE", "embedded")
    monkeypatch.setenv("WORKER_CONCURRENCY", "8")
    monkeypatch.setenv("DEDUP_WINDOW_SECONDS", "0")

    settings = Settings(_env_file=None)

    assert settings.dispatch_mode == "embedded"
    assert settings.worker_concurrency == 8
    assert settings.dedup_window_seconds == 0
    assert settings.max_unit_attempts == 3
