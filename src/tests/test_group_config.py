from unittest.mock import MagicMock

import pytest

import config
from entities.guild import GroupConfig
from errors import NotReady
from group_config import (
    DynamoDBGroupConfigProvider,
    StaticGroupConfigProvider,
    build_group_config_provider,
    list_managed_guilds,
)

from .conftest import GUILD_ID, LOG_CHANNEL_ID, ROLE_ID
from .utils import FakeGuild

OTHER_GUILD_ID = "305381135562309632"


@pytest.mark.asyncio
async def test_static_provider_upsert_replaces_by_guild_id(group_config: GroupConfig):
    provider = StaticGroupConfigProvider([group_config])
    updated = GroupConfig(guild_id=GUILD_ID, role_id="42")

    assert await provider.upsert_group_config(updated) == updated

    assert await provider.list_group_configs() == [updated]
    assert await provider.get_group_config(GUILD_ID) == updated
    assert await provider.get_group_config(OTHER_GUILD_ID) is None


@pytest.mark.asyncio
async def test_dynamodb_provider_scans_every_page():
    table = MagicMock()
    table.scan.side_effect = [
        {
            "Items": [
                {"guild_id": GUILD_ID, "role_id": ROLE_ID, "log_channel_id": LOG_CHANNEL_ID},
                {"guild_id": "1"},
            ],
            "LastEvaluatedKey": {"guild_id": GUILD_ID},
        },
        {"Items": [{"guild_id": OTHER_GUILD_ID, "role_id": "42"}, {"guild_id": "abc", "role_id": "1"}]},
    ]
    provider = DynamoDBGroupConfigProvider("guild-configs", table=table)

    group_configs = await provider.list_group_configs()

    assert group_configs == [
        GroupConfig(guild_id=GUILD_ID, role_id=ROLE_ID, log_channel_id=LOG_CHANNEL_ID),
        GroupConfig(guild_id=OTHER_GUILD_ID, role_id="42"),
    ]
    assert table.scan.call_args_list[0].kwargs == {}
    assert table.scan.call_args_list[1].kwargs == {"ExclusiveStartKey": {"guild_id": GUILD_ID}}


@pytest.mark.asyncio
async def test_dynamodb_provider_get_and_upsert():
    table = MagicMock()
    table.get_item.side_effect = [{"Item": {"guild_id": GUILD_ID, "role_id": ROLE_ID}}, {}]
    provider = DynamoDBGroupConfigProvider("guild-configs", table=table)

    assert await provider.get_group_config(GUILD_ID) == GroupConfig(guild_id=GUILD_ID, role_id=ROLE_ID)
    assert await provider.get_group_config(OTHER_GUILD_ID) is None
    table.get_item.assert_called_with(Key={"guild_id": OTHER_GUILD_ID})

    await provider.upsert_group_config(GroupConfig(guild_id=GUILD_ID, role_id=ROLE_ID))
    table.put_item.assert_called_once_with(Item={"guild_id": GUILD_ID, "role_id": ROLE_ID})


def test_build_provider_from_config():
    assert isinstance(
        build_group_config_provider(config.Config(discord_token="x", group_config_table_name="guild-configs")),
        DynamoDBGroupConfigProvider,
    )
    assert isinstance(build_group_config_provider(config.Config(discord_token="x")), StaticGroupConfigProvider)


@pytest.mark.asyncio
async def test_list_managed_guilds(group_config: GroupConfig):
    connection = MagicMock(is_ready=MagicMock(return_value=True))
    connection.get_guilds.return_value = [
        FakeGuild(id=int(GUILD_ID), name="Tagged", features=["GUILD_TAGS", "COMMUNITY"]),
        FakeGuild(id=int(OTHER_GUILD_ID), name="Plain"),
    ]

    managed = await list_managed_guilds(connection, StaticGroupConfigProvider([group_config]))

    assert [(g.guild_id, g.name, g.has_tags_feature, g.config) for g in managed] == [
        (GUILD_ID, "Tagged", True, group_config),
        (OTHER_GUILD_ID, "Plain", False, None),
    ]
    assert all(g.has_bot for g in managed)


@pytest.mark.asyncio
async def test_list_managed_guilds_while_not_ready_is_an_error(group_config: GroupConfig):
    connection = MagicMock(is_ready=MagicMock(return_value=False))

    with pytest.raises(NotReady):
        await list_managed_guilds(connection, StaticGroupConfigProvider([group_config]))

    connection.get_guilds.assert_not_called()
