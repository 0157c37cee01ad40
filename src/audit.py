"""Role change summaries posted to a guild's log channel.

One embed per guild per pass, with an "Added" and a "Removed" field listing
member display names. Delivery is best effort: at most once, never retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Sequence

import discord

from config import get_logger
from entities.guild import RoleChange, RoleChangeKind
from errors import AuditDeliveryError

if TYPE_CHECKING:
    from discord.abc import Messageable

logger = get_logger(service="audit")

EMBED_COLOUR = 0x2F3136
EMBED_TITLE = "Role Updates"
EMBED_DESCRIPTION = "The following role changes were made:"
FIELD_VALUE_LIMIT = 1024

# Missing Access / Missing Permissions on the log channel: dropped without logging.
SILENCED_ERROR_CODES = frozenset({50001, 50013})


@dataclass
class AuditDeliveryResult:
    """Result of an emit call."""

    sent: bool
    message: str
    error: str | None = None


def format_member_list(changes: Sequence[RoleChange], limit: int = FIELD_VALUE_LIMIT) -> str:
    """Render ``• name`` lines, cut to fit an embed field value."""
    lines = [f"• {change.display_name}" for change in changes]
    text = "\n".join(lines)
    if len(text) <= limit:
        return text

    kept: list[str] = []
    for index, line in enumerate(lines):
        tail = f"... and {len(lines) - index - 1} more"
        if len("\n".join([*kept, line, tail])) > limit:
            break
        kept.append(line)
    return "\n".join([*kept, f"... and {len(lines) - len(kept)} more"])


def build_audit_embed(
    changes: Sequence[RoleChange],
    role_name: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> discord.Embed:
    label = f"{role_name} Role" if role_name else "Role"
    embed = discord.Embed(
        title=EMBED_TITLE,
        description=EMBED_DESCRIPTION,
        colour=EMBED_COLOUR,
        timestamp=timestamp or datetime.now(timezone.utc),
    )

    added = [change for change in changes if change.kind is RoleChangeKind.ADD]
    removed = [change for change in changes if change.kind is RoleChangeKind.REMOVE]
    if added:
        embed.add_field(name=f"✅ Added {label}", value=format_member_list(added), inline=False)
    if removed:
        embed.add_field(name=f"❌ Removed {label}", value=format_member_list(removed), inline=False)
    return embed


class AuditEmitter:
    async def _deliver(self, channel: Messageable, embed: discord.Embed) -> None:
        try:
            await channel.send(embed=embed)
        except Exception as e:
            raise AuditDeliveryError(str(e)) from e

    async def emit(
        self,
        channel: Messageable,
        changes: Sequence[RoleChange],
        role_name: Optional[str] = None,
    ) -> AuditDeliveryResult:
        """Post one summary embed for ``changes`` to ``channel``.

        Args:
            channel: The guild's configured log channel.
            changes: Role changes applied during this pass.
            role_name: Name of the tracked role, used in field titles.

        Returns:
            AuditDeliveryResult. Never raises for delivery failures.
        """
        if not changes:
            return AuditDeliveryResult(sent=False, message="No changes to report")

        embed = build_audit_embed(changes, role_name)
        try:
            await self._deliver(channel, embed)
        except AuditDeliveryError as e:
            cause = e.__cause__
            if isinstance(cause, discord.Forbidden) and cause.code in SILENCED_ERROR_CODES:
                return AuditDeliveryResult(sent=False, message="Missing permission to post in log channel")
            logger.exception(f"Error sending role change log: {e}", extra={"channel_id": getattr(channel, "id", None)})
            return AuditDeliveryResult(sent=False, message="Failed to send role change log", error=str(e))

        logger.info(
            f"Sent role change log with {len(changes)} change(s)",
            extra={"channel_id": getattr(channel, "id", None), "changes": len(changes)},
        )
        return AuditDeliveryResult(sent=True, message="Role change log sent")
