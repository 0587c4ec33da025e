"""Tests for component wiring in the service entry point."""

from colloquy.main import create_components, shutdown_components
from colloquy.session.engine import SessionEngine

from tests.conftest import ScriptedModel, answer, make_settings


class TestComponents:
    async def test_create_and_shutdown(self, settings):
        components = await create_components(settings)
        try:
            assert isinstance(components["engine"], SessionEngine)
            assert components["mcp_provider"] is None
            assert not components["collector"].running
            assert not components["aggregator"].running

            specs = await components["engine"]._tools.list_tools()
            assert "get_current_time" in [s.name for s in specs]
        finally:
            await shutdown_components(components)

    async def test_wired_engine_runs_turn(self, settings):
        components = await create_components(settings)
        try:
            engine = components["engine"]
            engine._complete = ScriptedModel(answer("wired"))
            await engine.start_chat("alice", "c1")
            outcome = await engine.run_turn("alice", "c1", "hello")
            assert outcome.text == "wired"
            assert components["cache"].contains("alice", "c1")
        finally:
            await shutdown_components(components)

    async def test_cache_bound_from_settings(self, tmp_path):
        settings = make_settings(tmp_path, prompt_cache_max_entries=8)
        components = await create_components(settings)
        try:
            assert components["cache"].max_entries == 8
        finally:
            await shutdown_components(components)
