"""Group config providers: where the per-guild sync settings live.

The sync engine only depends on the ``GroupConfigProvider`` protocol. Two
backends are provided: a static one seeded from the ``GROUP_CONFIGS`` environment
variable and one backed by a DynamoDB table keyed by ``guild_id``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Iterable, Optional, Protocol

import boto3

from config import Config, get_logger
from entities.guild import GroupConfig, ManagedGuild
from errors import NotReady

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.service_resource import Table

    from connection import ConnectionManager

logger = get_logger(service="group_config")

TAGS_FEATURE = "GUILD_TAGS"


class GroupConfigProvider(Protocol):
    async def list_group_configs(self) -> list[GroupConfig]:
        ...

    async def get_group_config(self, guild_id: str) -> Optional[GroupConfig]:
        ...

    async def upsert_group_config(self, group_config: GroupConfig) -> GroupConfig:
        ...


class StaticGroupConfigProvider:
    """In-memory provider. Upserts live only as long as the process."""

    def __init__(self, group_configs: Iterable[GroupConfig] = ()) -> None:
        self._configs: dict[str, GroupConfig] = {}
        for group_config in group_configs:
            self._configs[group_config.guild_id] = group_config

    async def list_group_configs(self) -> list[GroupConfig]:
        return list(self._configs.values())

    async def get_group_config(self, guild_id: str) -> Optional[GroupConfig]:
        return self._configs.get(guild_id)

    async def upsert_group_config(self, group_config: GroupConfig) -> GroupConfig:
        self._configs[group_config.guild_id] = group_config
        return group_config


def _item_to_group_config(item: dict) -> GroupConfig:
    return GroupConfig.model_validate(
        {
            "guild_id": item["guild_id"],
            "role_id": item["role_id"],
            "log_channel_id": item.get("log_channel_id"),
        }
    )


class DynamoDBGroupConfigProvider:
    """Provider backed by a DynamoDB table with ``guild_id`` as the partition key.

    boto3 is blocking, so every call is pushed to a worker thread to keep the
    event loop free for the gateway.
    """

    def __init__(self, table_name: str, table: Optional[Table] = None) -> None:
        self.table_name = table_name
        self._table = table

    @property
    def table(self) -> Table:
        if self._table is None:
            self._table = boto3.resource("dynamodb").Table(self.table_name)
        return self._table

    def _scan(self) -> list[GroupConfig]:
        group_configs: list[GroupConfig] = []
        kwargs: dict = {}
        while True:
            response = self.table.scan(**kwargs)
            for item in response.get("Items", []):
                try:
                    group_configs.append(_item_to_group_config(item))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping invalid group config item: {e}", extra={"item": item})
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        logger.debug("Loaded group configs from dynamodb", extra={"table": self.table_name, "count": len(group_configs)})
        return group_configs

    def _get(self, guild_id: str) -> Optional[GroupConfig]:
        response = self.table.get_item(Key={"guild_id": guild_id})
        item = response.get("Item")
        return _item_to_group_config(item) if item else None

    def _put(self, group_config: GroupConfig) -> GroupConfig:
        item = {"guild_id": group_config.guild_id, "role_id": group_config.role_id}
        if group_config.log_channel_id:
            item["log_channel_id"] = group_config.log_channel_id
        result = self.table.put_item(Item=item)
        logger.debug("Group config written to dynamodb", extra={"result": result, "table": self.table_name})
        return group_config

    async def list_group_configs(self) -> list[GroupConfig]:
        return await asyncio.to_thread(self._scan)

    async def get_group_config(self, guild_id: str) -> Optional[GroupConfig]:
        return await asyncio.to_thread(self._get, guild_id)

    async def upsert_group_config(self, group_config: GroupConfig) -> GroupConfig:
        return await asyncio.to_thread(self._put, group_config)


def build_group_config_provider(cfg: Config) -> GroupConfigProvider:
    if cfg.group_config_table_name:
        logger.info(f"Using dynamodb table {cfg.group_config_table_name} for group configs")
        return DynamoDBGroupConfigProvider(cfg.group_config_table_name)
    if not cfg.group_configs:
        logger.warning("No group_config_table_name and no group_configs configured, nothing will be synced")
    return StaticGroupConfigProvider(cfg.group_configs)


async def list_managed_guilds(connection: ConnectionManager, provider: GroupConfigProvider) -> list[ManagedGuild]:
    """List the guilds the bot is in, with their sync config where one exists.

    Raises:
        NotReady: If the gateway connection is not ready. Callers get a distinct
            condition instead of an empty list that would look like "no guilds".
    """
    if not connection.is_ready():
        raise NotReady("Bot is not ready")

    configs = {group_config.guild_id: group_config for group_config in await provider.list_group_configs()}
    return [
        ManagedGuild(
            guild_id=str(guild.id),
            name=guild.name,
            has_bot=True,
            has_tags_feature=TAGS_FEATURE in guild.features,
            config=configs.get(str(guild.id)),
        )
        for guild in connection.get_guilds()
    ]
