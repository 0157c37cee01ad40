"""Fakes of the Discord side used across the tests."""

import asyncio
from dataclasses import dataclass, field
from typing import Optional
from unittest.mock import MagicMock

from entities.guild import AttributeRecord, GroupConfig, MemberRecord, RoleChangeKind
from roster_client import AttributeMap


def member(member_id: str, name: Optional[str] = None, role_ids: frozenset[str] = frozenset()) -> MemberRecord:
    return MemberRecord(member_id=member_id, display_name=name or f"member-{member_id}", role_ids=role_ids)


def attribute_map(tags: dict[str, Optional[str]], complete: bool = True) -> AttributeMap:
    records = {member_id: AttributeRecord(member_id=member_id, observed_guild_id=tag) for member_id, tag in tags.items()}
    return AttributeMap(records, complete=complete, pages_fetched=1)


def member_page(start: int, size: int, tag: Optional[str] = None) -> list[dict]:
    """A raw GET /guilds/{id}/members page with consecutive user ids."""
    page = []
    for user_id in range(start, start + size):
        user: dict = {"id": str(user_id), "username": f"user{user_id}"}
        if tag is not None:
            user["primary_guild"] = {"identity_guild_id": tag, "identity_enabled": True, "tag": "TAG"}
        page.append({"user": user, "roles": [], "nick": None})
    return page


@dataclass
class FakeRole:
    id: int
    name: str = "Representors"


@dataclass
class FakeGuild:
    id: int
    name: str = "Guild"
    features: list[str] = field(default_factory=list)
    members: list[MemberRecord] = field(default_factory=list)
    roles: dict[int, FakeRole] = field(default_factory=dict)
    channels: dict[int, object] = field(default_factory=dict)
    chunk_error: Optional[Exception] = None
    chunk_calls: int = 0

    def get_role(self, role_id: int) -> Optional[FakeRole]:
        return self.roles.get(role_id)

    def get_channel(self, channel_id: int) -> Optional[object]:
        return self.channels.get(channel_id)

    async def chunk(self, *, cache: bool = True) -> list[MemberRecord]:  # noqa: ARG002
        self.chunk_calls += 1
        if self.chunk_error is not None:
            raise self.chunk_error
        return list(self.members)


def make_guild(group_config: GroupConfig, members: list[MemberRecord], with_channel: bool = True) -> FakeGuild:
    guild = FakeGuild(id=int(group_config.guild_id), members=members)
    guild.roles[int(group_config.role_id)] = FakeRole(id=int(group_config.role_id))
    if with_channel and group_config.log_channel_id:
        guild.channels[int(group_config.log_channel_id)] = MagicMock(id=int(group_config.log_channel_id))
    return guild


class FakeConnection:
    """Stand-in for ConnectionManager as seen by the reconciliation engine.

    Role mutations are applied to the fake guild's member records, the way the
    gateway would reflect them in the member cache.
    """

    def __init__(self, guilds: list[FakeGuild], ready: bool = True) -> None:
        self.guilds = {str(guild.id): guild for guild in guilds}
        self.ready = ready
        self.failing_members: set[str] = set()
        self.mutations: list[tuple[str, str, str, str]] = []

    def is_ready(self) -> bool:
        return self.ready

    def get_guild(self, guild_id: str) -> Optional[FakeGuild]:
        return self.guilds.get(guild_id)

    async def refresh_roster(self, guild: FakeGuild) -> list[MemberRecord]:
        return await guild.chunk(cache=True)

    async def _mutate(self, kind: RoleChangeKind, guild_id: str, member_id: str, role_id: str) -> None:
        await asyncio.sleep(0)
        if member_id in self.failing_members:
            raise RuntimeError(f"Missing Permissions for {member_id}")
        self.mutations.append((kind.value, guild_id, member_id, role_id))
        guild = self.guilds[guild_id]
        for index, record in enumerate(guild.members):
            if record.member_id == member_id:
                role_ids = record.role_ids | {role_id} if kind is RoleChangeKind.ADD else record.role_ids - {role_id}
                guild.members[index] = record.model_copy(update={"role_ids": frozenset(role_ids)})

    async def add_role(self, guild_id: str, member_id: str, role_id: str, reason: Optional[str] = None) -> None:  # noqa: ARG002
        await self._mutate(RoleChangeKind.ADD, guild_id, member_id, role_id)

    async def remove_role(self, guild_id: str, member_id: str, role_id: str, reason: Optional[str] = None) -> None:  # noqa: ARG002
        await self._mutate(RoleChangeKind.REMOVE, guild_id, member_id, role_id)


class FakeRosterClient:
    def __init__(self, maps: dict[str, AttributeMap]) -> None:
        self.maps = maps
        self.calls: list[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def fetch_group_attribute_map(self, guild_id: str) -> AttributeMap:
        self.calls.append(guild_id)
        if self.gate is not None:
            await self.gate.wait()
        return self.maps.get(guild_id, attribute_map({}))


class FakeDiscordClient:
    """Enough of discord.Client for ConnectionManager."""

    def __init__(self, login_failures: int = 0, ready_on_connect: bool = True, connect_error: Optional[Exception] = None) -> None:
        self.login_failures = login_failures
        self.ready_on_connect = ready_on_connect
        self.connect_error = connect_error
        self.login_calls = 0
        self.connect_calls = 0
        self.close_calls = 0
        self.clear_calls = 0
        self.handlers: dict = {}
        self.guilds: list = []
        self.latency = 0.042
        self.shard_count = None
        self.http = MagicMock()
        self._ready = False
        self._closed = False
        self._stop = asyncio.Event()

    def event(self, coro):  # noqa: ANN001, ANN201
        self.handlers[coro.__name__] = coro
        return coro

    async def login(self, token: str) -> None:  # noqa: ARG002
        self.login_calls += 1
        await asyncio.sleep(0)
        if self.login_calls <= self.login_failures:
            raise RuntimeError(f"login failed ({self.login_calls})")

    async def connect(self, *, reconnect: bool = True) -> None:  # noqa: ARG002
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        if self.ready_on_connect:
            self._ready = True
            await self.handlers["on_ready"]()
        await self._stop.wait()

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True
        self._ready = False
        self._stop.set()

    def clear(self) -> None:
        self.clear_calls += 1
        self._closed = False
        self._ready = False
        self._stop = asyncio.Event()

    def is_ready(self) -> bool:
        return self._ready

    def is_closed(self) -> bool:
        return self._closed

    def get_guild(self, guild_id: int):  # noqa: ANN201
        for guild in self.guilds:
            if guild.id == guild_id:
                return guild
        return None
