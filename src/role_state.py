"""Desired vs. actual role state for one guild.

A member should hold the tracked role exactly when their primary guild tag
points at the guild. The diff here is pure: it never talks to Discord, so
re-running it after the changes were applied yields no changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from config import get_logger
from entities.guild import RoleChange, RoleChangeKind

if TYPE_CHECKING:
    from entities.guild import AttributeRecord, GroupConfig, MemberRecord
    from roster_client import AttributeMap

logger = get_logger(service="role_state")


def should_have_role(record: Optional[AttributeRecord], guild_id: str) -> bool:
    return record is not None and record.observed_guild_id == guild_id


def decide_change(member: MemberRecord, should_have: bool, role_id: str) -> Optional[RoleChange]:
    has_role = role_id in member.role_ids
    if should_have and not has_role:
        return RoleChange(kind=RoleChangeKind.ADD, member_id=member.member_id, display_name=member.display_name)
    if not should_have and has_role:
        return RoleChange(kind=RoleChangeKind.REMOVE, member_id=member.member_id, display_name=member.display_name)
    return None


@dataclass
class RoleDiff:
    """Changes needed for one guild, plus the members that could not be judged."""

    changes: list[RoleChange] = field(default_factory=list)
    evaluated: int = 0
    skipped_member_ids: list[str] = field(default_factory=list)

    @property
    def additions(self) -> list[RoleChange]:
        return [change for change in self.changes if change.kind is RoleChangeKind.ADD]

    @property
    def removals(self) -> list[RoleChange]:
        return [change for change in self.changes if change.kind is RoleChangeKind.REMOVE]


def compute_role_changes(
    members: Iterable[MemberRecord],
    attribute_map: AttributeMap,
    group_config: GroupConfig,
) -> RoleDiff:
    """Compute the role changes that bring ``members`` in line with their tags.

    When ``attribute_map`` is incomplete (pagination stopped on an error), members
    missing from it are skipped rather than treated as "not tagged". Otherwise a
    single failed page would strip the role from everyone on the later pages.

    Args:
        members: Cached members of the guild with their current role ids.
        attribute_map: Tag data fetched from the members endpoint.
        group_config: The guild and tracked role.

    Returns:
        RoleDiff with one change per member whose role state is wrong.
    """
    diff = RoleDiff()
    for member in members:
        record = attribute_map.get(member.member_id)
        if record is None and not attribute_map.complete:
            diff.skipped_member_ids.append(member.member_id)
            continue

        diff.evaluated += 1
        change = decide_change(member, should_have_role(record, group_config.guild_id), group_config.role_id)
        if change is not None:
            diff.changes.append(change)

    if diff.skipped_member_ids:
        logger.warning(
            f"Attribute fetch for guild {group_config.guild_id} was truncated, "
            f"skipped {len(diff.skipped_member_ids)} member(s) without tag data",
            extra={"guild_id": group_config.guild_id, "skipped": len(diff.skipped_member_ids)},
        )
    logger.debug(
        f"Guild {group_config.guild_id}: evaluated={diff.evaluated}, "
        f"to_add={len(diff.additions)}, to_remove={len(diff.removals)}"
    )
    return diff
