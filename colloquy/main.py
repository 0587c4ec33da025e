"""Colloquy entry point.

Initializes all components and runs the scheduler until interrupted:
  Settings -> Database -> HistoryStore -> PromptCache -> ModelClient
  -> capability providers -> SessionEngine -> scheduled jobs
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from colloquy.config import Settings
from colloquy.handlers.scheduler import AggregatorJob, CollectorJob
from colloquy.session.compaction import ConversationCompactor
from colloquy.session.engine import SessionEngine
from colloquy.session.prompt_cache import PromptCache
from colloquy.session.prompts import system_prompt_resolver
from colloquy.session.tools import (
    CapabilityProvider,
    CompositeProvider,
    McpCapabilityProvider,
    ToolDispatcher,
    register_builtin_tools,
)
from colloquy.session.transport import ModelClient
from colloquy.storage.database import Database
from colloquy.storage.history import HistoryStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components, consumed by shutdown_components().
    """
    database = Database(settings)
    await database.connect()

    store = HistoryStore(database)
    cache = PromptCache(
        store, system_prompt_resolver(settings), max_entries=settings.prompt_cache_max_entries
    )

    model_client = ModelClient(settings)
    await model_client.start()

    dispatcher = ToolDispatcher()
    register_builtin_tools(dispatcher)
    providers: list[CapabilityProvider] = [dispatcher]

    mcp_provider = None
    if settings.mcp_servers:
        mcp_provider = McpCapabilityProvider(settings.mcp_servers)
        await mcp_provider.start()
        providers.append(mcp_provider)

    engine = SessionEngine(
        store,
        cache,
        ConversationCompactor(settings),
        model_client.complete,
        settings,
        tools=CompositeProvider(providers),
    )

    collector = CollectorJob(engine, settings)
    aggregator = AggregatorJob(engine, settings)
    await collector.start()
    await aggregator.start()

    return {
        "database": database,
        "store": store,
        "cache": cache,
        "model_client": model_client,
        "dispatcher": dispatcher,
        "mcp_provider": mcp_provider,
        "engine": engine,
        "collector": collector,
        "aggregator": aggregator,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Colloquy...")

    for name in ("aggregator", "collector"):
        job = components.get(name)
        if job:
            await job.stop()

    mcp_provider = components.get("mcp_provider")
    if mcp_provider:
        await mcp_provider.close()

    model_client = components.get("model_client")
    if model_client:
        await model_client.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Colloquy shutdown complete.")


async def serve(settings: Settings) -> None:
    """Run until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    components = await create_components(settings)
    logger.info(
        "Colloquy started (model=%s, compaction_period=%d, scheduler=%s)",
        settings.model,
        settings.compaction_period,
        "on" if settings.scheduled_task_enabled else "off",
    )
    try:
        await stop.wait()
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point -- parse settings, configure logging, run."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
