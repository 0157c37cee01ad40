import json
import os
from typing import Optional

from aws_lambda_powertools import Logger
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

import entities
from entities.guild import GroupConfig


def get_logger(service: Optional[str] = None, level: Optional[str] = None) -> Logger:
    kwargs = {
        "json_default": entities.json_default,
        "level": level or os.environ.get("LOG_LEVEL", "INFO"),
    }
    if service:
        kwargs["service"] = service
    return Logger(**kwargs)


logger = get_logger(service="config")


def parse_group_config(_dict: dict) -> GroupConfig:
    """Parse a single guild entry from the GROUP_CONFIGS JSON.

    Accepts both the snake_case field names and the camelCase names used by the
    dashboard (guildId, representorsRoleId, logChannelId).
    """
    return GroupConfig.model_validate(
        {
            "guild_id": _dict.get("guild_id", _dict.get("guildId")),
            "role_id": _dict.get("role_id", _dict.get("representorsRoleId")),
            "log_channel_id": _dict.get("log_channel_id", _dict.get("logChannelId")),
        }
    )


class Config(BaseSettings):
    model_config = SettingsConfigDict(frozen=True)

    discord_token: str

    log_level: str = "INFO"

    heartbeat_base_url: str = "http://localhost:3000/api"
    heartbeat_interval_seconds: float = 30
    heartbeat_debounce_seconds: float = 5
    heartbeat_timeout_seconds: float = 10

    reconcile_interval_seconds: float = 5

    roster_page_size: int = 1000
    roster_page_delay_seconds: float = 0.1

    login_max_attempts: int = 3
    login_retry_delay_seconds: float = 2
    login_retry_backoff_multiplier: float = 1
    ready_timeout_seconds: float = 30

    verify_token: bool = True
    token_cache_seconds: float = 300

    group_config_table_name: str = ""
    group_configs: tuple[GroupConfig, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def parse_group_configs(cls, values: dict) -> dict:  # noqa: ANN101
        if "heartbeat_base_url" in values:
            values = values | {"heartbeat_base_url": str(values["heartbeat_base_url"]).rstrip("/")}

        raw = values.get("group_configs")
        if raw is None:
            return values
        if isinstance(raw, str):
            raw = json.loads(raw) if raw.strip() else []
        group_configs = [item if isinstance(item, GroupConfig) else parse_group_config(item) for item in raw]

        guild_ids = [group_config.guild_id for group_config in group_configs]
        if len(guild_ids) != len(set(guild_ids)):
            logger.warning("Duplicate guild ids in group_configs, the last entry wins")
            group_configs = list({group_config.guild_id: group_config for group_config in group_configs}.values())

        return values | {"group_configs": tuple(group_configs)}


_config: Optional[Config] = None


def get_config() -> Config:
    global _config  # noqa: PLW0603
    if _config is None:
        _config = Config()  # type: ignore # noqa: PGH003
    return _config
