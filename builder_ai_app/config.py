# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# builder_ai_app/config.py
from __future__ import annotations

from functools import lru_cache
from typing import List

from dotenv import load_dotenv, find_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv(find_dotenv())


def split_csv(value: str | None) -> List[str]:
    return [s.strip() for s in (value or "").split(",") if s.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    # API
    PORT: int = 8011
    # comma-separated
    CORS_ORIGINS: str = "*"

    # Broker (Redis pub/sub)
    REDIS_URL: str = "redis://localhost:6379/0"
    BROKER_CLIENT_ID: str = "builder-ai-app"
    BROKER_TOPIC_PREFIX: str = "socket.events"
    BROKER_RESTART_DEBOUNCE_S: float = 0.5
    # comma-separated
    BROKER_BIND_TOPICS: str = "socket.events.outbound"

    # LLM
    LLM_PROVIDER: str = "openai"
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4.1-2025-04-14"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-sonnet-4-5-20250929"

    # Chunked tool-call driver
    DRIVER_MAX_TOKENS: int = 4000
    DRIVER_CHUNK_SIZE: int = 3000
    DRIVER_CHUNK_MAX_TOKENS: int = 2048
    DRIVER_CHUNKING_ENABLED: bool = True
    DRIVER_REQUIRE_ACK: bool = True
    DRIVER_EVENT_PREFIX: str = "ai"
    DRIVER_CALL_TIMEOUT_S: float = 300.0

    @property
    def cors_origins(self) -> List[str]:
        return split_csv(self.CORS_ORIGINS) or ["*"]

    @property
    def bind_topics(self) -> List[str]:
        return split_csv(self.BROKER_BIND_TOPICS)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
