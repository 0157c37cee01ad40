import asyncio
import signal
from dataclasses import dataclass

import discord

import config
from audit import AuditEmitter
from connection import ConnectionManager, default_intents
from group_config import GroupConfigProvider, build_group_config_provider
from heartbeat import HeartbeatReporter
from reconciler import ReconciliationEngine
from timers import RecurringTimer
from token_verifier import TokenVerifier

logger = config.get_logger(service="main")


@dataclass
class Service:
    connection: ConnectionManager
    provider: GroupConfigProvider
    engine: ReconciliationEngine
    heartbeat: HeartbeatReporter
    token_verifier: TokenVerifier | None

    async def close(self) -> None:
        await self.connection.close()
        await self.heartbeat.aclose()
        if self.token_verifier is not None:
            await self.token_verifier.aclose()


def build_service(cfg: config.Config, client: discord.Client | None = None) -> Service:
    """Wire the connection, engine and heartbeat together. Nothing is started here."""
    client = client or discord.Client(intents=default_intents())
    provider = build_group_config_provider(cfg)
    token_verifier = TokenVerifier(cache_seconds=cfg.token_cache_seconds) if cfg.verify_token else None

    connection = ConnectionManager.from_config(cfg, client, provider=provider, token_verifier=token_verifier)
    engine = ReconciliationEngine.from_config(cfg, connection, provider, AuditEmitter())
    heartbeat = HeartbeatReporter.from_config(cfg, connection)

    connection.schedule(RecurringTimer("reconcile", cfg.reconcile_interval_seconds, engine.tick))
    connection.schedule(RecurringTimer("heartbeat", cfg.heartbeat_interval_seconds, heartbeat.beat))
    connection.add_liveness_hook(heartbeat.beat)

    return Service(
        connection=connection,
        provider=provider,
        engine=engine,
        heartbeat=heartbeat,
        token_verifier=token_verifier,
    )


async def run(cfg: config.Config) -> None:
    service = build_service(cfg)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops
            pass

    try:
        await service.connection.start()
        closed = asyncio.create_task(service.connection.wait_closed())
        stopping = asyncio.create_task(stop.wait())
        await asyncio.wait({closed, stopping}, return_when=asyncio.FIRST_COMPLETED)
        for task in (closed, stopping):
            task.cancel()
    finally:
        logger.info("Shutting down")
        await service.close()


def main() -> None:
    cfg = config.get_config()
    asyncio.run(run(cfg))


if __name__ == "__main__":
    main()
