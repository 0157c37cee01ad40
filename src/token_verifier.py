"""Bot token pre-flight check with a short-lived result cache."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from config import get_logger

logger = get_logger(service="token_verifier")

DISCORD_API_BASE_URL = "https://discord.com/api/v10"
TOKEN_CACHE_SECONDS = 5 * 60


@dataclass
class _CachedVerification:
    is_valid: bool
    timestamp: float


class TokenVerifier:
    """Checks a bot token against ``GET /users/@me``.

    Rate limiting and network errors never block startup: the cached result is
    used when there is one, otherwise the token is assumed valid and the login
    itself gets to fail.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        cache_seconds: float = TOKEN_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http = http_client or httpx.AsyncClient(base_url=DISCORD_API_BASE_URL, timeout=15)
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._cache: Optional[_CachedVerification] = None

    def _remember(self, is_valid: bool) -> bool:
        self._cache = _CachedVerification(is_valid=is_valid, timestamp=self._clock())
        return is_valid

    def _cached_or_assume_valid(self) -> bool:
        return self._cache.is_valid if self._cache else True

    async def verify(self, token: str) -> bool:
        if self._cache and self._clock() - self._cache.timestamp < self.cache_seconds:
            logger.debug("Using cached token verification result")
            return self._cache.is_valid

        try:
            response = await self._http.get("/users/@me", headers={"Authorization": f"Bot {token}"})
        except httpx.HTTPError as e:
            logger.exception(f"Error verifying token: {e}")
            return self._cached_or_assume_valid()

        if response.status_code == httpx.codes.OK:
            logger.info(f"Token verification successful, bot username: {response.json().get('username')}")
            return self._remember(True)
        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            logger.warning("Rate limited during token verification, using cached result if available")
            return self._cached_or_assume_valid()

        logger.error(f"Token verification failed: {response.status_code} {response.reason_phrase}")
        return self._remember(False)

    async def aclose(self) -> None:
        await self._http.aclose()
