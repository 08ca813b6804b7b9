from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv


# Ensure .env is loaded for local development
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # Client population source: "memory" (seeded in-process) or "mysql"
    CLIENT_SOURCE: str
    CLIENT_VIEW: str

    # Database (client facts for segment evaluation)
    DB_HOST: str | None
    DB_USER: str | None
    DB_PASSWORD: str | None
    DB_NAME: str | None
    DB_PORT: int
    DB_CHARSET: str

    # Segments
    SEGMENT_STORE_PATH: str | None
    SEED_SYSTEM_SEGMENTS: bool

    # CORS
    CORS_ORIGINS: List[str]

    # Logging
    LOG_LEVEL: str
    LOG_DIR: str | None

    def __init__(self) -> None:
        self.CLIENT_SOURCE = os.environ.get("CLIENT_SOURCE", "memory").strip().lower()
        # View (or table) exposing one row per client, columns named after the segment field ids
        self.CLIENT_VIEW = os.environ.get("CLIENT_VIEW", "client_segment_facts")

        self.DB_HOST = os.environ.get("DB_HOST")
        self.DB_USER = os.environ.get("DB_USER")
        self.DB_PASSWORD = os.environ.get("DB_PASSWORD")
        self.DB_NAME = os.environ.get("DB_NAME")
        self.DB_PORT = int(os.environ.get("DB_PORT", "3306"))
        self.DB_CHARSET = os.environ.get("DB_CHARSET", "utf8mb4")

        # JSON snapshot of the segment registry; unset keeps segments in memory only
        self.SEGMENT_STORE_PATH = os.environ.get("SEGMENT_STORE_PATH") or None
        self.SEED_SYSTEM_SEGMENTS = _env_bool("SEED_SYSTEM_SEGMENTS", True)

        self.CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

        # Logging configuration
        # Options: DEBUG, INFO, WARNING, ERROR, CRITICAL
        self.LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
        # Directory for the rotating log file; console only when unset
        self.LOG_DIR = os.environ.get("LOG_DIR") or None

    @property
    def repo_root(self) -> Path:
        # This file: backend/practice_crm/core/config.py -> repo root is parents[3]
        return Path(__file__).resolve().parents[3]

    @property
    def segment_store_path(self) -> Path | None:
        if not self.SEGMENT_STORE_PATH:
            return None
        path = Path(self.SEGMENT_STORE_PATH)
        if not path.is_absolute():
            path = self.repo_root / path
        return path


def get_settings() -> Settings:
    return Settings()
