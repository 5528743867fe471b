"""Default configuration, overridable through environment variables."""
from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///barbershop.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    AUTH_TOKEN_MAX_AGE = _env_int("AUTH_TOKEN_MAX_AGE", 86400)
    AUTH_COOKIE_NAME = os.environ.get("AUTH_COOKIE_NAME", "barber_token")

    # Seconds between heartbeat events on an idle queue stream.
    QUEUE_HEARTBEAT_SECONDS = _env_int("QUEUE_HEARTBEAT_SECONDS", 30)
    # Undelivered events a stream may hold before it is dropped.
    QUEUE_CHANNEL_BUFFER = _env_int("QUEUE_CHANNEL_BUFFER", 32)

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")
