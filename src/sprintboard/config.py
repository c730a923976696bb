"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".sprintboard" / "sb.db")
    db_timeout: float = 5.0
    user_id: str | None = None
    base_url: str = "http://localhost:8787"
    slack_bot_token: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("SB_DB_PATH"):
            config.db_path = Path(db)

        if timeout := os.environ.get("SB_DB_TIMEOUT"):
            config.db_timeout = float(timeout)

        config.user_id = os.environ.get("SB_USER")

        if base_url := os.environ.get("SB_BASE_URL"):
            config.base_url = base_url.rstrip("/")

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        return config


def get_config() -> Config:
    return Config.from_env()
