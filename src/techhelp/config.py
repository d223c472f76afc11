"""Configuration loading from environment variables with validation."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Anchor relative paths to the project root (two levels up from this file)
_PROJECT_DIR = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TECHHELP_",
        case_sensitive=False,
    )

    # Anthropic (loaded separately, no prefix)
    anthropic_api_key: str = ""

    # Model tiers
    model: str = "claude-sonnet-4-20250514"
    model_lite: str = "claude-3-5-haiku-20241022"
    model_writer: str = "claude-opus-4-20250514"
    max_tokens: int = 4096
    writer_max_tokens: int = 8192
    temperature: float = 0.7
    web_search_max_uses: int = 5

    # Upstream pacing (seconds unless noted)
    rate_limit_backoff_seconds: float = 30
    long_running_poll_seconds: float = 10
    deep_research_timeout_minutes: float = 10
    stage_delay_seconds: float = 3
    item_delay_seconds: float = 5
    category_delay_seconds: float = 5
    audit_batch_delay_seconds: float = 2
    dedup_batch_delay_seconds: float = 2

    # Pipeline thresholds
    duplicate_similarity_threshold: int = 80
    needs_review_below: int = 7
    default_score: int = 7

    # Nightly builder
    dedup_batch_size: int = 50
    ai_dedup_min_topics: int = 10
    batch1_per_category: int = 30
    batch2_per_category: int = 50
    queue_lease_minutes: int = 15
    max_new_categories: int = 5
    run_timezone: str = "Asia/Kolkata"
    nightly_schedule_utc: list[str] = ["06:30", "12:30", "18:30"]

    # Audit
    audit_batch_size: int = 5

    # Storage
    db_path: Path = _PROJECT_DIR / "data" / "techhelp.db"

    # Logging
    log_level: str = "INFO"

    # HTTP surface
    admin_token: str = ""
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    ask_rate_limit_requests: int = 10
    ask_rate_limit_window_seconds: int = 60

    site_name: str = "DigitalHelp"


def get_settings() -> Settings:
    """Load settings from environment and .env file."""
    # Load .env from the project root regardless of cwd
    load_dotenv(_PROJECT_DIR / ".env")
    api_key = os.getenv("ANTHROPIC_API_KEY", "")
    return Settings(anthropic_api_key=api_key)
