"""Configuration helpers for the catalog application.

Values come from the process environment, optionally primed from a ``.env``
file next to the application. Centralising the lookups here lets tests and
installers build a config without touching application internals.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping
import logging
import os

from dotenv import load_dotenv

STORE_BACKENDS = ("json", "sql", "mongo")


@dataclass(frozen=True)
class CatalogConfig:
    """Strongly typed configuration for the catalog service."""

    base_dir: Path
    secret_key: str
    admin_username: str
    admin_password: str
    store_backend: str
    data_dir: Path
    database_url: str
    mongo_uri: str
    mongo_db: str
    mongo_timeout_ms: int
    upload_dir: Path
    store_backups: int
    max_upload_mb: int
    force_tls: bool
    trust_proxy_headers: bool
    allowed_origins: tuple[str, ...]
    session_max_hours: int
    log_level: str
    api_host: str
    api_port: int

    @property
    def max_content_length(self) -> int:
        return self.max_upload_mb * 1024 * 1024


def env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_origins(raw: str | Iterable[str]) -> tuple[str, ...]:
    if isinstance(raw, str):
        items = [piece.strip() for piece in raw.split(",")]
    else:
        items = [piece.strip() for piece in raw]
    return tuple(filter(None, items)) or (
        "https://localhost",
        "https://127.0.0.1",
        "http://localhost",
        "http://127.0.0.1",
    )


def _resolve(base_dir: Path, raw: str) -> Path:
    path = Path(raw).expanduser()
    return path if path.is_absolute() else base_dir / path


def load_catalog_config(base_dir: Path, env: Mapping[str, str] | None = None) -> CatalogConfig:
    """Load catalog configuration from the given base directory and env mapping."""

    base_dir = Path(base_dir)
    if env is None:
        load_dotenv(base_dir / ".env")
    env_map = dict(os.environ if env is None else env)

    store_backend = env_map.get("STORE_BACKEND", "json").strip().lower()
    if store_backend not in STORE_BACKENDS:
        raise ValueError(
            f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, got {store_backend!r}"
        )

    data_dir = _resolve(base_dir, env_map.get("DATA_DIR", "data"))
    upload_dir = _resolve(base_dir, env_map.get("UPLOAD_DIR", "uploads"))
    database_url = env_map.get("DATABASE_URL", "").strip() or f"sqlite:///{data_dir / 'harvest.db'}"

    log_level = env_map.get("LOG_LEVEL", "INFO").strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        log_level = "INFO"

    return CatalogConfig(
        base_dir=base_dir,
        secret_key=env_map.get("SECRET_KEY", "dev-change-me"),
        admin_username=env_map.get("ADMIN_USERNAME", "admin").strip() or "admin",
        admin_password=env_map.get("ADMIN_PASSWORD", "admin123"),
        store_backend=store_backend,
        data_dir=data_dir,
        database_url=database_url,
        mongo_uri=env_map.get("MONGO_URI", "mongodb://localhost:27017"),
        mongo_db=env_map.get("MONGO_DB", "harvest"),
        mongo_timeout_ms=int(env_map.get("MONGO_TIMEOUT_MS", "5000")),
        upload_dir=upload_dir,
        store_backups=int(env_map.get("STORE_BACKUPS", "3")),
        max_upload_mb=int(env_map.get("MAX_UPLOAD_MB", "16")),
        force_tls=env_bool(env_map.get("FORCE_TLS"), False),
        trust_proxy_headers=env_bool(env_map.get("TRUST_PROXY_HEADERS"), True),
        allowed_origins=_coerce_origins(
            env_map.get(
                "ALLOWED_ORIGINS",
                "https://localhost,https://127.0.0.1,http://localhost,http://127.0.0.1",
            )
        ),
        session_max_hours=int(env_map.get("SESSION_MAX_HOURS", "24")),
        log_level=log_level,
        api_host=env_map.get("API_HOST", "0.0.0.0"),
        api_port=int(env_map.get("API_PORT", "3000")),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
