# thesis_batch/config.py
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


class BaseConfig:
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://redis:6379/0")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://redis:6379/0")

    # --- DB ---
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", "postgresql+psycopg2://app_user:app_pass@db:5432/app_db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False

    # --- External batch endpoint (OpenAI-compatible) ---
    BATCH_API_KEY = os.environ.get("GROQ_API_KEY", "")
    BATCH_API_BASE_URL = os.environ.get("BATCH_API_BASE_URL", "https://api.groq.com/openai/v1")
    BATCH_MODEL = os.environ.get("BATCH_MODEL", "meta-llama/llama-4-maverick-17b-128e-instruct")
    BATCH_ENDPOINT = "/v1/chat/completions"
    BATCH_COMPLETION_WINDOW = "24h"
    BATCH_WINDOW_HOURS = 24
    BATCH_REQUEST_TIMEOUT = 60

    # --- Submission limits ---
    MAX_CHUNKS_PER_JOB = 50
    MAX_AVG_CHARS_PER_CHUNK = 25_000
    MAX_TOTAL_CHARS_PER_JOB = 500_000
    DAILY_JOB_LIMIT = _int_env("DAILY_JOB_LIMIT", 5)
    BULK_DAILY_JOB_LIMIT = _int_env("BULK_DAILY_JOB_LIMIT", 20)

    # --- Reconciliation ---
    RESULT_INPUT_SNAPSHOT_CHARS = 50_000
    RECONCILE_POLL_SECONDS = _int_env("RECONCILE_POLL_SECONDS", 300)

    # Advisory only
    BULK_BASELINE_MINUTES_PER_JOB = 5
    BULK_SAFETY_MULTIPLIER = 1.5


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    ENV = "development"


class ProductionConfig(BaseConfig):
    DEBUG = False
    ENV = "production"


class TestingConfig(BaseConfig):
    TESTING = True
    ENV = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    BATCH_API_KEY = "test-key"
