"""Lifecycle of the bot's gateway connection.

``ConnectionManager`` owns one ``discord.Client``. It logs in (with retries),
runs the gateway in a background task, waits for READY with a timeout, warms the
member cache of every configured guild and starts the recurring timers once.
Everything else talks to Discord through it and checks ``is_ready()`` first.
"""

from __future__ import annotations

import asyncio
import math
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import discord

from config import Config, get_logger
from entities.guild import MemberRecord
from errors import GatewayConnectionError, InvalidToken, LoginError, MutationError, NotReady, ReadyTimeout

if TYPE_CHECKING:
    from group_config import GroupConfigProvider
    from timers import RecurringTimer
    from token_verifier import TokenVerifier

logger = get_logger(service="connection")

LivenessHook = Callable[[], Awaitable[Any]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    FAILED = "failed"


def default_intents() -> discord.Intents:
    intents = discord.Intents.none()
    intents.guilds = True
    intents.members = True
    return intents


class ConnectionManager:
    def __init__(  # noqa: PLR0913
        self,
        client: discord.Client,
        token: str,
        provider: Optional[GroupConfigProvider] = None,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        backoff_multiplier: float = 1.0,
        ready_timeout: float = 30.0,
        token_verifier: Optional[TokenVerifier] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self._token = token
        self._provider = provider
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.backoff_multiplier = backoff_multiplier
        self.ready_timeout = ready_timeout
        self._token_verifier = token_verifier
        self._sleep = sleep or asyncio.sleep
        self._clock = clock

        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[BaseException] = None
        self.login_attempts = 0
        self._ready_event = asyncio.Event()
        self._attempt: Optional[asyncio.Task] = None
        self._gateway_task: Optional[asyncio.Task] = None
        self._timers: list[RecurringTimer] = []
        self._timers_started = False
        self._liveness_hooks: list[LivenessHook] = []
        self._ready_since: Optional[float] = None

        self._register_event_handlers()

    @classmethod
    def from_config(  # noqa: ANN206
        cls,
        cfg: Config,
        client: discord.Client,
        provider: Optional[GroupConfigProvider] = None,
        token_verifier: Optional[TokenVerifier] = None,
    ):
        return cls(
            client=client,
            token=cfg.discord_token,
            provider=provider,
            max_attempts=cfg.login_max_attempts,
            retry_delay=cfg.login_retry_delay_seconds,
            backoff_multiplier=cfg.login_retry_backoff_multiplier,
            ready_timeout=cfg.ready_timeout_seconds,
            token_verifier=token_verifier,
        )

    # -----------------Wiring-----------------#

    def schedule(self, timer: RecurringTimer) -> None:
        """Register a timer to be started once the connection first becomes ready."""
        self._timers.append(timer)
        if self._timers_started:
            timer.start()

    def add_liveness_hook(self, hook: LivenessHook) -> None:
        self._liveness_hooks.append(hook)

    def _register_event_handlers(self) -> None:
        for handler in (
            self.on_ready,
            self.on_resumed,
            self.on_connect,
            self.on_disconnect,
            self.on_shard_ready,
            self.on_shard_connect,
            self.on_shard_disconnect,
            self.on_shard_resumed,
            self.on_error,
        ):
            self.client.event(handler)

    # -----------------Gateway events-----------------#

    async def on_ready(self) -> None:
        logger.info("Bot is ready", extra={"guilds": len(self.client.guilds)})
        self._ready_event.set()

    async def on_resumed(self) -> None:
        logger.info("Gateway session resumed")

    async def on_connect(self) -> None:
        logger.debug("Connected to the gateway")

    async def on_disconnect(self) -> None:
        logger.info("Disconnected from the gateway, discord.py will reconnect")

    async def on_shard_ready(self, shard_id: int) -> None:
        logger.info(f"Shard {shard_id} is ready")
        await self._fire_liveness_hooks()

    async def on_shard_connect(self, shard_id: int) -> None:
        logger.debug(f"Shard {shard_id} connected")

    async def on_shard_disconnect(self, shard_id: int) -> None:
        logger.info(f"Shard {shard_id} disconnected")

    async def on_shard_resumed(self, shard_id: int) -> None:
        logger.info(f"Shard {shard_id} resumed")
        await self._fire_liveness_hooks()

    async def on_error(self, event_method: str, /, *args: Any, **kwargs: Any) -> None:  # noqa: ANN401
        logger.exception(f"Bot encountered an error in {event_method}")

    async def _fire_liveness_hooks(self) -> None:
        for hook in self._liveness_hooks:
            try:
                await hook()
            except Exception as e:
                logger.exception(f"Liveness hook failed: {e}")

    # -----------------Lifecycle-----------------#

    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY and self.client.is_ready() and not self.client.is_closed()

    async def start(self) -> None:
        """Bring the connection to READY.

        Safe to call any number of times from any number of tasks: returns at once
        when already ready, and concurrent callers share one start attempt. A failed
        attempt leaves the manager in FAILED, from which ``start()`` may be called
        again.

        Raises:
            InvalidToken: The token pre-flight rejected the token.
            LoginError: Every login attempt failed.
            ReadyTimeout: Logged in, but READY did not arrive in time.
            GatewayConnectionError: The gateway closed before READY.
        """
        if self.is_ready():
            return
        if self._attempt is None or self._attempt.done():
            self._attempt = asyncio.get_running_loop().create_task(self._start_sequence(), name="connection-start")
            self._attempt.add_done_callback(self._clear_attempt)
        else:
            logger.info("Start already in progress, waiting for it")
        await asyncio.shield(self._attempt)

    def _clear_attempt(self, task: asyncio.Task) -> None:
        if not task.cancelled():
            # Mark the outcome as retrieved even if every caller went away.
            task.exception()
        if self._attempt is task:
            self._attempt = None

    async def _start_sequence(self) -> None:
        self.state = ConnectionState.CONNECTING
        self.last_error = None
        try:
            await self._verify_token()
            await self._login_with_retries()
            self.state = ConnectionState.AUTHENTICATED
            await self._connect_and_wait_ready()
        except Exception as e:
            self.state = ConnectionState.FAILED
            self.last_error = e
            logger.exception(f"Failed to start bot: {e}")
            await self._reset_client()
            raise

        self.state = ConnectionState.READY
        self._ready_since = self._clock()
        logger.info(f"Connection ready, {len(self.client.guilds)} guild(s) in cache")

        await self._warm_rosters()
        self._start_timers()

    async def _verify_token(self) -> None:
        if self._token_verifier is None:
            return
        if not await self._token_verifier.verify(self._token):
            raise InvalidToken("Discord rejected the bot token")

    async def _login_with_retries(self) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            self.login_attempts += 1
            try:
                logger.info(f"Attempting to login (attempt {attempt}/{self.max_attempts})")
                await self.client.login(self._token)
                logger.info("Login successful")
                return
            except Exception as e:
                last_error = e
                logger.warning(f"Login attempt {attempt} failed: {e}")
                if attempt < self.max_attempts:
                    delay = self.retry_delay * self.backoff_multiplier ** (attempt - 1)
                    logger.info(f"Retrying login in {delay}s")
                    await self._sleep(delay)
        raise LoginError(self.max_attempts, last_error) from last_error

    async def _connect_and_wait_ready(self) -> None:
        self._ready_event.clear()
        gateway_task = asyncio.get_running_loop().create_task(self.client.connect(reconnect=True), name="gateway")
        gateway_task.add_done_callback(self._on_gateway_done)
        self._gateway_task = gateway_task

        ready_waiter = asyncio.get_running_loop().create_task(self._ready_event.wait())
        try:
            done, _ = await asyncio.wait(
                {ready_waiter, gateway_task},
                timeout=self.ready_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not ready_waiter.done():
                ready_waiter.cancel()

        if ready_waiter in done:
            return
        if gateway_task in done:
            error = None if gateway_task.cancelled() else gateway_task.exception()
            raise GatewayConnectionError(f"Gateway closed before ready: {error}") from error
        raise ReadyTimeout(self.ready_timeout)

    def _on_gateway_done(self, task: asyncio.Task) -> None:
        if task is not self._gateway_task:
            return
        error = None if task.cancelled() else task.exception()
        if self.state is ConnectionState.READY:
            logger.error(f"Gateway connection closed: {error}")
            self.state = ConnectionState.DISCONNECTED
            self._ready_since = None

    async def _reset_client(self) -> None:
        gateway_task, self._gateway_task = self._gateway_task, None
        if gateway_task is not None and not gateway_task.done():
            gateway_task.cancel()
            await asyncio.gather(gateway_task, return_exceptions=True)
        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Error closing client after failed start: {e}")
        # clear() makes a closed client usable for the next start()
        self.client.clear()

    async def _warm_rosters(self) -> None:
        if self._provider is None:
            return
        try:
            group_configs = await self._provider.list_group_configs()
        except Exception as e:
            logger.exception(f"Error loading group configs for the initial member fetch: {e}")
            return

        for group_config in group_configs:
            guild = self.get_guild(group_config.guild_id)
            if guild is None:
                logger.info(f"Guild {group_config.guild_id} is not in the cache, skipping initial member fetch")
                continue
            try:
                await guild.chunk(cache=True)
            except Exception as e:
                logger.exception(f"Error during initial member fetch for guild {group_config.guild_id}: {e}")

    def _start_timers(self) -> None:
        if self._timers_started:
            return
        self._timers_started = True
        for timer in self._timers:
            timer.start()

    async def close(self) -> None:
        for timer in self._timers:
            await timer.stop()
        self._timers_started = False
        gateway_task, self._gateway_task = self._gateway_task, None
        await self.client.close()
        if gateway_task is not None:
            await asyncio.gather(gateway_task, return_exceptions=True)
        self.state = ConnectionState.DISCONNECTED
        self._ready_since = None
        logger.info("Connection closed")

    async def wait_closed(self) -> None:
        if self._gateway_task is not None:
            await asyncio.gather(self._gateway_task, return_exceptions=True)

    # -----------------Cache and REST access-----------------#

    def _require_ready(self) -> None:
        if not self.is_ready():
            raise NotReady(f"Connection is {self.state.value}")

    def get_guild(self, guild_id: str) -> Optional[discord.Guild]:
        return self.client.get_guild(int(guild_id))

    def get_guilds(self) -> list[discord.Guild]:
        self._require_ready()
        return list(self.client.guilds)

    async def refresh_roster(self, guild: discord.Guild) -> list[MemberRecord]:
        """Re-request the full member list of ``guild`` over the gateway."""
        self._require_ready()
        members = await guild.chunk(cache=True)
        return [MemberRecord.from_member(member) for member in members]

    async def fetch_member_page(self, guild_id: str, limit: int, after: str) -> list:
        self._require_ready()
        return await self.client.http.get_members(int(guild_id), limit, int(after))

    async def add_role(self, guild_id: str, member_id: str, role_id: str, reason: Optional[str] = None) -> None:
        self._require_ready()
        try:
            await self.client.http.add_role(int(guild_id), int(member_id), int(role_id), reason=reason)
        except discord.HTTPException as e:
            raise MutationError(f"Failed to add role {role_id} to member {member_id} in guild {guild_id}: {e}") from e

    async def remove_role(self, guild_id: str, member_id: str, role_id: str, reason: Optional[str] = None) -> None:
        self._require_ready()
        try:
            await self.client.http.remove_role(int(guild_id), int(member_id), int(role_id), reason=reason)
        except discord.HTTPException as e:
            raise MutationError(f"Failed to remove role {role_id} from member {member_id} in guild {guild_id}: {e}") from e

    def status_info(self) -> dict[str, Any]:
        ready = self.is_ready()
        guilds = list(self.client.guilds) if ready else []
        latency = self.client.latency
        return {
            "status": "ok" if ready else "not_ready",
            "state": self.state.value,
            "guilds": len(guilds),
            "cached_members": sum(len(guild.members) for guild in guilds),
            "latency_ms": round(latency * 1000) if latency is not None and math.isfinite(latency) else None,
            "shard_count": self.client.shard_count or 1,
            "uptime_seconds": round(self._clock() - self._ready_since) if ready and self._ready_since is not None else 0,
        }
