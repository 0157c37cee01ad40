"""Paginated fetch of guild members' tag data.

Uses the bulk ``GET /guilds/{guild.id}/members`` endpoint, which (unlike the
gateway member cache) carries each user's ``primary_guild``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Awaitable, Callable, Iterator, Optional

from pydantic import TypeAdapter

from config import get_logger
from entities.guild import AttributeRecord, RawMember
from errors import FetchError

logger = get_logger(service="roster_client")

DEFAULT_PAGE_SIZE = 1000
DEFAULT_PAGE_DELAY = 0.1
# Snowflakes are always > 0, so "after 0" starts at the first member.
START_CURSOR = "0"

FetchPage = Callable[[str, int, str], Awaitable[list]]

_page_adapter = TypeAdapter(list[RawMember])


class AttributeMap(Mapping[str, AttributeRecord]):
    """Read-only member id -> AttributeRecord mapping from one fetch.

    ``complete`` is False when pagination stopped on an error, in which case a
    missing member says nothing about their tag.
    """

    def __init__(self, records: dict[str, AttributeRecord], complete: bool, pages_fetched: int) -> None:
        self._records = records
        self.complete = complete
        self.pages_fetched = pages_fetched

    def __getitem__(self, member_id: str) -> AttributeRecord:
        return self._records[member_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"AttributeMap(records={len(self._records)}, complete={self.complete}, pages_fetched={self.pages_fetched})"


def parse_page(payload: object) -> list[RawMember]:
    return _page_adapter.validate_python(payload)


class RosterClient:
    def __init__(
        self,
        fetch_page: FetchPage,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_delay: float = DEFAULT_PAGE_DELAY,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._fetch_page = fetch_page
        self.page_size = page_size
        self.page_delay = page_delay
        self._sleep = sleep or asyncio.sleep

    async def _fetch(self, guild_id: str, after: str) -> list[RawMember]:
        try:
            return parse_page(await self._fetch_page(guild_id, self.page_size, after))
        except Exception as e:
            raise FetchError(guild_id, after, e) from e

    async def fetch_group_attribute_map(self, guild_id: str) -> AttributeMap:
        """Fetch every member's tag data for ``guild_id``.

        Pagination ends on a short or empty page. A failing page ends it too: the
        members gathered so far are returned with ``complete=False`` and the page is
        not retried, the next reconciliation pass starts over anyway.

        Args:
            guild_id: The guild to page through.

        Returns:
            AttributeMap keyed by member id.
        """
        records: dict[str, AttributeRecord] = {}
        after = START_CURSOR
        pages = 0
        complete = True

        while True:
            try:
                page = await self._fetch(guild_id, after)
            except FetchError as e:
                logger.exception(
                    f"Error during member pagination for guild {guild_id}, continuing with {len(records)} member(s): {e}",
                    extra={"guild_id": guild_id, "after": after, "pages_fetched": pages},
                )
                complete = False
                break

            pages += 1
            for member in page:
                records[member.user.id] = member.to_attribute_record()
            if page:
                after = page[-1].user.id

            # Fixed pacing between pages, independent of rate limit headers.
            await self._sleep(self.page_delay)

            if len(page) < self.page_size:
                break

        logger.debug(
            f"Fetched tag data for {len(records)} member(s) of guild {guild_id} in {pages} page(s)",
            extra={"guild_id": guild_id, "complete": complete},
        )
        return AttributeMap(records, complete=complete, pages_fetched=pages)
