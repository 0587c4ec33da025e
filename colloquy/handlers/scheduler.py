"""Scheduled jobs -- autonomous turns on fixed-delay timers.

Each job runs one asyncio task that:
1. Sleeps for its interval
2. Runs one cycle through the SessionEngine
3. Logs any failure and goes back to sleep

A cycle is awaited before the next sleep starts, so a job never overlaps
itself. Jobs are independent: one failing never stops another.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from colloquy.config import Settings
from colloquy.session.engine import SessionEngine

logger = logging.getLogger(__name__)

_SCHEDULED_TEMPERATURE = 0.7


class PeriodicJob(ABC):
    """Base class for a background job that runs run_cycle() every interval."""

    name = "periodic-job"

    def __init__(self, engine: SessionEngine, settings: Settings) -> None:
        self._engine = engine
        self._settings = settings
        self._task: asyncio.Task | None = None
        self._running = False
        self.cycles = 0
        self.failures = 0

    @property
    @abstractmethod
    def interval_seconds(self) -> float:
        ...

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the job loop, unless scheduled tasks are disabled."""
        if not self._settings.scheduled_task_enabled:
            logger.info("Scheduled tasks are disabled. %s not started.", self.name)
            return
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("%s started (interval=%.0fs)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        """Stop the job, interrupting its sleep or in-flight cycle."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("%s stopped", self.name)

    @abstractmethod
    async def run_cycle(self) -> None:
        ...

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        """Periodic loop: sleep -> run one cycle -> repeat."""
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                self.cycles += 1
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception:
                self.failures += 1
                logger.exception("%s cycle %d failed", self.name, self.cycles)


class CollectorJob(PeriodicJob):
    """Asks the collector agent to fetch weather alerts and store them."""

    name = "weather-collector"

    @property
    def interval_seconds(self) -> float:
        return self._settings.collector_interval_seconds

    def collection_request(self) -> str:
        location = self._settings.forecast_location
        state_code = "CA" if location.lower() == "california" else location
        return (
            f"Get weather forecast alerts for {location} (state code: {state_code}). "
            f"Use the get_alerts tool with state code '{state_code}' to retrieve alerts, "
            f"then store them with the store_forecast tool."
        )

    async def run_cycle(self) -> None:
        agent_id = self._settings.forecast_agent_id
        chat_id = self._settings.collector_chat_id
        logger.info("Collecting forecast for %s", self._settings.forecast_location)

        await self._engine.ensure_chat(agent_id, chat_id)
        outcome = await self._engine.run_turn(
            agent_id, chat_id, self.collection_request(), temperature=_SCHEDULED_TEMPERATURE
        )
        logger.info("Forecast collected: %s", outcome.text[:200])


class AggregatorJob(PeriodicJob):
    """Summarizes stored forecasts and relays the summary downstream.

    Three turns per cycle: fetch everything stored, synthesize it, then
    post the synthesis as a user turn in the recipient's fixed chat.
    """

    name = "weather-summarizer"

    @property
    def interval_seconds(self) -> float:
        return self._settings.aggregator_interval_seconds

    async def run_cycle(self) -> None:
        agent_id = self._settings.summary_agent_id
        chat_id = self._settings.summarizer_chat_id
        await self._engine.ensure_chat(agent_id, chat_id)

        logger.info("Requesting all stored forecasts")
        stored = await self._engine.run_turn(
            agent_id,
            chat_id,
            "Use the get_all_forecasts tool to retrieve all stored weather forecasts "
            "and return the data.",
            temperature=_SCHEDULED_TEMPERATURE,
        )

        logger.info("Summarizing weather forecast data")
        synthesis = await self._engine.run_turn(
            agent_id,
            chat_id,
            "Analyze and summarize the following weather forecast data.\n"
            "Provide a concise summary highlighting key trends, alerts, and "
            "important information.\n\n"
            f"Forecast Data:\n{stored.text}",
            temperature=_SCHEDULED_TEMPERATURE,
        )

        recipient_agent = self._settings.oliver_agent_id
        recipient_chat = self._settings.oliver_chat_id
        await self._engine.ensure_chat(recipient_agent, recipient_chat)
        await self._engine.run_turn(
            recipient_agent,
            recipient_chat,
            f"Weather Summary Report:\n\n{synthesis.text}",
            temperature=_SCHEDULED_TEMPERATURE,
        )
        logger.info("Weather summary sent to %s/%s", recipient_agent, recipient_chat)
