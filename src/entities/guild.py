"""Guild, member and role-change records shared by the sync components."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from pydantic import ConfigDict, field_validator

from .model import BaseModel

if TYPE_CHECKING:
    import discord


def _snowflake(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            raise ValueError(f"Expected a Discord snowflake id, got {value!r}")
    return value


class GroupConfig(BaseModel):
    """One managed guild: which role tracks the guild tag, and where to log changes."""

    guild_id: str
    role_id: str
    log_channel_id: Optional[str] = None

    @field_validator("guild_id", "role_id", mode="before")
    @classmethod
    def validate_snowflake(cls, value: Any) -> Any:  # noqa: ANN101, ANN401
        return _snowflake(value)

    @field_validator("log_channel_id", mode="before")
    @classmethod
    def validate_optional_snowflake(cls, value: Any) -> Any:  # noqa: ANN101, ANN401
        if value is None or value == "":
            return None
        return _snowflake(value)


class MemberRecord(BaseModel):
    member_id: str
    display_name: str
    role_ids: frozenset[str]

    @classmethod
    def from_member(cls, member: discord.Member) -> MemberRecord:  # noqa: ANN102
        return cls(
            member_id=str(member.id),
            display_name=member.display_name,
            role_ids=frozenset(str(role.id) for role in member.roles),
        )


class AttributeRecord(BaseModel):
    member_id: str
    observed_guild_id: Optional[str] = None


class RoleChangeKind(Enum):
    ADD = "add"
    REMOVE = "remove"


class RoleChange(BaseModel):
    kind: RoleChangeKind
    member_id: str
    display_name: str


class ManagedGuild(BaseModel):
    guild_id: str
    name: str
    has_bot: bool
    has_tags_feature: bool
    config: Optional[GroupConfig] = None


# Raw payloads of GET /guilds/{guild.id}/members. Only the fields the sync reads are
# declared, everything else Discord sends is ignored.


class PrimaryGuild(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    identity_guild_id: Optional[str] = None
    identity_enabled: Optional[bool] = None
    tag: Optional[str] = None


class RawUser(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    username: Optional[str] = None
    primary_guild: Optional[PrimaryGuild] = None


class RawMember(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    user: RawUser
    nick: Optional[str] = None

    def to_attribute_record(self) -> AttributeRecord:
        primary_guild = self.user.primary_guild
        return AttributeRecord(
            member_id=self.user.id,
            observed_guild_id=primary_guild.identity_guild_id if primary_guild else None,
        )
