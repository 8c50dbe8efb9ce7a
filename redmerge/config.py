"""Application settings and logging setup."""

import logging
import sys
from functools import lru_cache
from typing import Optional

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration loaded from REDMERGE_* environment variables (or a .env file)."""

    model_config = SettingsConfigDict(
        env_prefix="REDMERGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Track changes / comments
    default_author: str = "redmerge"
    default_author_email: str = ""

    # Content checks
    reduction_threshold: float = 0.5
    reduction_min_length: int = 50

    # Word diff (0 = no deadline, deterministic output)
    diff_timeout: float = 0.0

    # Merge / split
    conflict_strategy: str = "error"
    split_lookahead: int = 10


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """
    Routes stdlib logging and structlog to stderr.

    stdout is reserved for command output (CLI JSON, MCP JSON-RPC), so nothing
    here may ever write to it.
    """
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    use_json = settings.log_json if json_logs is None else json_logs
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(stream=sys.stderr, level=numeric_level, force=True)

    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
