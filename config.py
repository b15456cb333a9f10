import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        log_level: str,
        max_manifest_bytes: int,
        api_url: str,
        client_timeout_secs: float,
        client_max_retries: int,
    ) -> None:
        self.database_url = database_url
        self.log_level = log_level
        self.max_manifest_bytes = max_manifest_bytes
        self.api_url = api_url
        self.client_timeout_secs = client_timeout_secs
        self.client_max_retries = client_max_retries


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    max_manifest_bytes = int(
        os.getenv("LEDGER_MAX_MANIFEST_BYTES", str(10 * 1024 * 1024))
    )
    api_url = os.getenv("LEDGER_API_URL", "http://localhost:8000/api")
    client_timeout_secs = float(os.getenv("LEDGER_CLIENT_TIMEOUT_SECS", "10"))
    client_max_retries = int(os.getenv("LEDGER_CLIENT_MAX_RETRIES", "3"))
    return Settings(
        database_url=database_url,
        log_level=log_level,
        max_manifest_bytes=max_manifest_bytes,
        api_url=api_url,
        client_timeout_secs=client_timeout_secs,
        client_max_retries=client_max_retries,
    )
