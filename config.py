"""
config.py — Environment-based configuration using Pydantic Settings.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ── Upstream search (RAG) ────────────────────────────────────────────
    rag_base_url: str = "https://hybrid-search.dev.knowde.dev/api/conversation"
    knowde_auth_token: Optional[str] = None
    knowde_company_uuid: Optional[str] = None
    rag_cache_ttl_seconds: int = 600
    rag_timeout_seconds: float = 30.0
    rag_default_email: str = "system@palmerholland.com"

    # ── Disambiguation ───────────────────────────────────────────────────
    disambiguation_seed: Optional[int] = None
    disambiguation_enrich_categories: bool = False

    # ── Replacement discovery ────────────────────────────────────────────
    replacement_top_n: int = 5
    similar_products_limit: int = 20

    # ── CORS ─────────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # ── Logging ──────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "text"  # json | text
    log_file: Optional[str] = None

    # ── Server ───────────────────────────────────────────────────────────
    app_env: str = "development"
    host: str = "0.0.0.0"
    port: int = 5000

    # ── Computed Properties ──────────────────────────────────────────────

    @property
    def rag_configured(self) -> bool:
        return bool(self.knowde_auth_token and self.knowde_company_uuid)

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"log_level must be one of {valid}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        valid = {"json", "text"}
        if v.lower() not in valid:
            raise ValueError(f"log_format must be one of {valid}")
        return v.lower()

    @field_validator("replacement_top_n", "similar_products_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()


# ============================================================
# Logging
# ============================================================

class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Install the root handler according to settings.log_format/log_level."""
    settings = settings or get_settings()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))

    formatter: logging.Formatter
    if settings.log_format == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_LOG_FORMAT)
    for h in handlers:
        h.setFormatter(formatter)

    logging.basicConfig(level=settings.log_level, handlers=handlers, force=True)
