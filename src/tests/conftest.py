import json
import os

import boto3
import pytest

from entities.guild import GroupConfig

GUILD_ID = "205381135562309632"
ROLE_ID = "1371885877344604210"
LOG_CHANNEL_ID = "1371885877344604999"


def pytest_sessionstart(session):  # noqa: ANN201, ARG001, ANN001
    mock_env = {
        "discord_token": "x",
        "log_level": "DEBUG",
        "heartbeat_base_url": "http://monitor.local/api/",
        "verify_token": "false",
        "group_configs": json.dumps(
            [
                {
                    "guildId": GUILD_ID,
                    "representorsRoleId": ROLE_ID,
                    "logChannelId": LOG_CHANNEL_ID,
                }
            ]
        ),
    }
    os.environ |= mock_env

    boto3.setup_default_session(region_name="us-east-1")


@pytest.fixture
def group_config() -> GroupConfig:
    return GroupConfig(guild_id=GUILD_ID, role_id=ROLE_ID, log_channel_id=LOG_CHANNEL_ID)


@pytest.fixture
def group_config_without_log_channel() -> GroupConfig:
    return GroupConfig(guild_id=GUILD_ID, role_id=ROLE_ID)
