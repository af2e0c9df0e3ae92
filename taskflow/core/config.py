import os
from dataclasses import dataclass
from urllib.parse import quote_plus

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    host = os.getenv("DB_HOST", "127.0.0.1")
    port = os.getenv("DB_PORT", "5432")
    user = os.getenv("DB_USERNAME", "postgres")
    password = os.getenv("DB_PASSWORD", "postgres")
    database = os.getenv("DB_DATABASE", "taskflow")
    return f"postgresql://{user}:{quote_plus(password)}@{host}:{port}/{database}"


def _redis_url() -> str:
    redis_host = os.getenv("REDIS_HOST", "redis")
    redis_port = os.getenv("REDIS_PORT", "6379")
    return os.getenv("REDIS_URL", f"redis://{redis_host}:{redis_port}")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./taskflow.db"
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "task-processing"
    log_level: str = "INFO"

    # Overdue detection
    overdue_task_ttl_hours: float = 0.0
    overdue_scan_interval_seconds: float = 3600.0
    overdue_scan_batch_size: int = 500

    # Job processing
    worker_id: str = ""
    worker_concurrency: int = 5
    worker_poll_interval: float = 1.0
    job_attempts: int = 3
    job_backoff_seconds: float = 2.0
    job_claim_timeout_seconds: float = 30.0

    batch_max_size: int = 500

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (and a local .env file)."""
        return cls(
            database_url=_database_url(),
            redis_url=_redis_url(),
            queue_name=os.getenv("TASK_QUEUE_NAME", cls.queue_name),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            overdue_task_ttl_hours=_env_float("OVERDUE_TASK_TTL_HOURS", cls.overdue_task_ttl_hours),
            overdue_scan_interval_seconds=_env_float(
                "OVERDUE_SCAN_INTERVAL_SECONDS", cls.overdue_scan_interval_seconds
            ),
            overdue_scan_batch_size=_env_int("OVERDUE_SCAN_BATCH_SIZE", cls.overdue_scan_batch_size),
            worker_id=os.getenv("WORKER_ID", cls.worker_id),
            worker_concurrency=_env_int("WORKER_CONCURRENCY", cls.worker_concurrency),
            worker_poll_interval=_env_float("WORKER_POLL_INTERVAL", cls.worker_poll_interval),
            job_attempts=_env_int("JOB_ATTEMPTS", cls.job_attempts),
            job_backoff_seconds=_env_float("JOB_BACKOFF_SECONDS", cls.job_backoff_seconds),
            job_claim_timeout_seconds=_env_float(
                "JOB_CLAIM_TIMEOUT_SECONDS", cls.job_claim_timeout_seconds
            ),
            batch_max_size=_env_int("BATCH_MAX_SIZE", cls.batch_max_size),
        )
