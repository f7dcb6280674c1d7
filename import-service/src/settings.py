# import-service/src/settings.py
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

HERE = os.path.dirname(os.path.abspath(__file__))
DEFAULT_REFERENCE_DIR = os.path.normpath(os.path.join(HERE, "..", "reference"))

# NPPES monthly dissemination, uncompressed CSV mirror
DEFAULT_REGISTRY_URL = "https://download.cms.gov/nppes/npidata_pfile.csv"


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    data_dir: str = "/data"
    pg_host: str = "postgres"
    pg_port: int = 5432
    pg_db: str = "import_data"
    pg_user: str = "user"
    pg_password: str = "pass"
    job_store: str = "postgres"
    object_store_url: Optional[str] = None
    registry_url: str = DEFAULT_REGISTRY_URL
    registry_estimated_bytes: int = 9 * 1024 ** 3
    stream_batch_size: int = 100
    object_batch_size: int = 500
    batch_pause_seconds: float = 0.05
    long_pause_seconds: float = 1.0
    long_pause_every_rows: int = 100_000
    progress_interval_seconds: float = 3.0
    max_recorded_errors: int = 100
    max_line_chars: int = 256 * 1024
    fetch_retries: int = 3
    fetch_backoff_seconds: float = 1.0
    exclusive_kinds: FrozenSet[str] = field(default_factory=lambda: frozenset({"registry_import"}))
    notify_webhook_url: Optional[str] = None
    reference_data_dir: str = DEFAULT_REFERENCE_DIR
    log_level: str = "INFO"


def load_settings() -> Settings:
    exclusive = os.getenv("EXCLUSIVE_KINDS", "registry_import")
    return Settings(
        data_dir=os.getenv("DATA_DIR", "/data"),
        pg_host=os.getenv("POSTGRES_HOST", "postgres"),
        pg_port=_int("POSTGRES_PORT", 5432),
        pg_db=os.getenv("POSTGRES_DB", "import_data"),
        pg_user=os.getenv("POSTGRES_USER", "user"),
        pg_password=os.getenv("POSTGRES_PASSWORD", "pass"),
        job_store=os.getenv("JOB_STORE", "postgres").strip().lower(),
        object_store_url=os.getenv("OBJECT_STORE_URL") or None,
        registry_url=os.getenv("REGISTRY_URL", DEFAULT_REGISTRY_URL),
        registry_estimated_bytes=_int("REGISTRY_ESTIMATED_BYTES", 9 * 1024 ** 3),
        stream_batch_size=_int("STREAM_BATCH_SIZE", 100),
        object_batch_size=_int("OBJECT_BATCH_SIZE", 500),
        batch_pause_seconds=_float("BATCH_PAUSE_SECONDS", 0.05),
        long_pause_seconds=_float("LONG_PAUSE_SECONDS", 1.0),
        long_pause_every_rows=_int("LONG_PAUSE_EVERY_ROWS", 100_000),
        progress_interval_seconds=_float("PROGRESS_INTERVAL_SECONDS", 3.0),
        max_recorded_errors=_int("MAX_RECORDED_ERRORS", 100),
        max_line_chars=_int("MAX_LINE_CHARS", 256 * 1024),
        fetch_retries=_int("FETCH_RETRIES", 3),
        fetch_backoff_seconds=_float("FETCH_BACKOFF_SECONDS", 1.0),
        exclusive_kinds=frozenset(k.strip() for k in exclusive.split(",") if k.strip()),
        notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL") or None,
        reference_data_dir=os.getenv("REFERENCE_DATA_DIR", DEFAULT_REFERENCE_DIR),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
