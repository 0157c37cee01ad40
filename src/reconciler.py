"""Reconciliation of guild tag roles.

On every timer tick the engine walks the configured guilds one after another,
refreshes each guild's member cache, fetches every member's primary guild tag,
and adds or removes the tracked role where the two disagree. A summary of the
applied changes goes to the guild's log channel.

Failures are contained at the smallest unit: a member's failed role change does
not stop the guild, a failed guild does not stop the pass, and only a failure to
list the configs ends a pass early.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from config import Config, get_logger
from entities.guild import RoleChange, RoleChangeKind
from errors import ConfigLookupError
from role_state import compute_role_changes
from roster_client import RosterClient

if TYPE_CHECKING:
    from audit import AuditEmitter
    from connection import ConnectionManager
    from entities.guild import GroupConfig
    from group_config import GroupConfigProvider

logger = get_logger(service="reconciler")

ROLE_CHANGE_REASON = "Primary guild tag sync"


@dataclass
class ReconciliationResult:
    """Statistics of one reconciliation pass."""

    start_time: datetime
    end_time: datetime | None = None
    success: bool = False

    guilds_processed: int = 0
    guilds_skipped: int = 0
    members_evaluated: int = 0
    members_skipped: int = 0
    roles_added: int = 0
    roles_removed: int = 0
    errors: list[str] = field(default_factory=list)

    def log_start(self) -> None:
        logger.debug(
            "Reconciliation pass started",
            extra={"operation": "reconcile_start", "start_time": self.start_time.isoformat()},
        )

    def log_completion(self) -> None:
        duration_ms = None
        if self.end_time:
            duration_ms = int((self.end_time - self.start_time).total_seconds() * 1000)

        # Quiet passes log at debug.
        log = logger.info if self.roles_added or self.roles_removed or self.errors else logger.debug
        log(
            "Reconciliation pass completed",
            extra={
                "operation": "reconcile_complete",
                "duration_ms": duration_ms,
                "success": self.success,
                "guilds_processed": self.guilds_processed,
                "guilds_skipped": self.guilds_skipped,
                "members_evaluated": self.members_evaluated,
                "members_skipped": self.members_skipped,
                "roles_added": self.roles_added,
                "roles_removed": self.roles_removed,
                "error_count": len(self.errors),
            },
        )


class ReconciliationEngine:
    def __init__(
        self,
        connection: ConnectionManager,
        provider: GroupConfigProvider,
        roster_client: RosterClient,
        audit_emitter: AuditEmitter,
    ) -> None:
        self._connection = connection
        self._provider = provider
        self._roster_client = roster_client
        self._audit_emitter = audit_emitter
        self._in_flight = False
        self.passes_started = 0
        self.skipped_ticks = 0
        self.last_result: Optional[ReconciliationResult] = None

    @classmethod
    def from_config(  # noqa: ANN206
        cls,
        cfg: Config,
        connection: ConnectionManager,
        provider: GroupConfigProvider,
        audit_emitter: AuditEmitter,
    ):
        roster_client = RosterClient(
            fetch_page=connection.fetch_member_page,
            page_size=cfg.roster_page_size,
            page_delay=cfg.roster_page_delay_seconds,
        )
        return cls(connection, provider, roster_client, audit_emitter)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def tick(self) -> Optional[ReconciliationResult]:
        """Timer callback. Runs one pass unless one is already running.

        A tick that finds a pass in flight is dropped, not queued.
        """
        if self._in_flight:
            self.skipped_ticks += 1
            logger.debug("Reconciliation pass still running, skipping tick")
            return None
        if not self._connection.is_ready():
            self.skipped_ticks += 1
            logger.debug("Connection is not ready, skipping tick")
            return None

        self._in_flight = True
        try:
            return await self.run_pass()
        finally:
            self._in_flight = False

    async def run_pass(self) -> ReconciliationResult:
        self.passes_started += 1
        result = ReconciliationResult(start_time=datetime.now(timezone.utc))
        result.log_start()

        try:
            group_configs = await self._list_group_configs()
        except ConfigLookupError as e:
            logger.exception(f"Error in main processing: {e}")
            result.errors.append(str(e))
            return self._finalize(result)

        for group_config in group_configs:
            if not self._connection.is_ready():
                logger.warning("Connection lost during reconciliation pass, stopping early")
                result.errors.append("Connection lost during pass")
                break
            try:
                await self._process_guild(group_config, result)
            except Exception as e:
                logger.exception(f"Error processing guild {group_config.guild_id}: {e}", extra={"guild_id": group_config.guild_id})
                result.errors.append(f"Guild {group_config.guild_id}: {e}")

        return self._finalize(result)

    def _finalize(self, result: ReconciliationResult) -> ReconciliationResult:
        result.success = not result.errors
        result.end_time = datetime.now(timezone.utc)
        result.log_completion()
        self.last_result = result
        return result

    async def _list_group_configs(self) -> list[GroupConfig]:
        try:
            return await self._provider.list_group_configs()
        except Exception as e:
            raise ConfigLookupError(f"Failed to list group configs: {e}") from e

    async def _process_guild(self, group_config: GroupConfig, result: ReconciliationResult) -> None:
        guild_id = group_config.guild_id

        guild = self._connection.get_guild(guild_id)
        if guild is None:
            logger.debug(f"Guild {guild_id} not found in cache, skipping", extra={"guild_id": guild_id})
            result.guilds_skipped += 1
            return

        role = guild.get_role(int(group_config.role_id))
        if role is None:
            logger.debug(f"Role {group_config.role_id} not found in guild {guild_id}, skipping", extra={"guild_id": guild_id})
            result.guilds_skipped += 1
            return

        log_channel = None
        if group_config.log_channel_id:
            log_channel = guild.get_channel(int(group_config.log_channel_id))
            if log_channel is None:
                logger.debug(
                    f"Log channel {group_config.log_channel_id} not found in guild {guild_id}, skipping",
                    extra={"guild_id": guild_id},
                )
                result.guilds_skipped += 1
                return

        members = await self._connection.refresh_roster(guild)
        attribute_map = await self._roster_client.fetch_group_attribute_map(guild_id)
        diff = compute_role_changes(members, attribute_map, group_config)
        result.guilds_processed += 1
        result.members_evaluated += diff.evaluated
        result.members_skipped += len(diff.skipped_member_ids)

        applied: list[RoleChange] = []
        for change in diff.changes:
            if await self._apply_change(group_config, change, result):
                applied.append(change)

        if applied and log_channel is not None:
            await self._audit_emitter.emit(log_channel, applied, role_name=role.name)

    async def _apply_change(self, group_config: GroupConfig, change: RoleChange, result: ReconciliationResult) -> bool:
        try:
            if change.kind is RoleChangeKind.ADD:
                await self._connection.add_role(group_config.guild_id, change.member_id, group_config.role_id, reason=ROLE_CHANGE_REASON)
                result.roles_added += 1
            else:
                await self._connection.remove_role(group_config.guild_id, change.member_id, group_config.role_id, reason=ROLE_CHANGE_REASON)
                result.roles_removed += 1
        except Exception as e:
            logger.exception(
                f"Error processing member {change.member_id}: {e}",
                extra={"guild_id": group_config.guild_id, "member_id": change.member_id, "kind": change.kind.value},
            )
            result.errors.append(f"Failed to {change.kind.value} role for {change.display_name} in {group_config.guild_id}: {e}")
            return False

        logger.info(
            f"{'Added' if change.kind is RoleChangeKind.ADD else 'Removed'} role {group_config.role_id} "
            f"{'to' if change.kind is RoleChangeKind.ADD else 'from'} {change.display_name}",
            extra={"guild_id": group_config.guild_id, "member_id": change.member_id, "kind": change.kind.value},
        )
        return True
