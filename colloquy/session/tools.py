"""Capability providers -- external tools the model may call mid-turn.

The engine only sees the CapabilityProvider contract (list_tools /
invoke). Where a tool actually runs is the provider's business:

- ToolDispatcher: async handlers registered in-process
- McpCapabilityProvider: tools served by stdio MCP servers
- CompositeProvider: several providers behind one name space

Tool results live only inside a turn; they are never persisted.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Callable
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSpec:
    """Name, description and JSON schema of one tool."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class CapabilityProvider(Protocol):
    async def list_tools(self) -> list[ToolSpec]: ...

    async def invoke(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Run a tool and return (result_text, is_error)."""
        ...


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers in-process tool handlers and dispatches calls to them.

    Each handler is an async callable that accepts **kwargs and returns
    an MCP-format response: {"content": [{"type": "text", "text": "..."}]}.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._specs: dict[str, ToolSpec] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._specs[name] = ToolSpec(
            name=name,
            description=schema.get("description", ""),
            input_schema={k: v for k, v in schema.items() if k != "description"},
        )

    async def list_tools(self) -> list[ToolSpec]:
        return list(self._specs.values())

    async def invoke(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown tool: {name}", True
        try:
            result = await handler(**args)
            return result["content"][0]["text"], False
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return f"Tool error: {e}", True


_CURRENT_TIME_SCHEMA = {
    "description": "Current UTC date and time in ISO 8601 format.",
    "type": "object",
    "properties": {},
}


def register_builtin_tools(dispatcher: ToolDispatcher) -> None:
    """Register the tools every agent gets regardless of MCP servers."""

    async def _current_time() -> dict[str, Any]:
        now = datetime.now(UTC).isoformat(timespec="seconds")
        return {"content": [{"type": "text", "text": now}]}

    dispatcher.register("get_current_time", _current_time, _CURRENT_TIME_SCHEMA)


# ---------------------------------------------------------------------------
# MCP servers over stdio
# ---------------------------------------------------------------------------


class McpCapabilityProvider:
    """Tools served by one or more MCP servers spawned as subprocesses.

    start() and close() must run in the same task: the stdio transports
    are entered on an AsyncExitStack owned by this provider.
    """

    def __init__(self, commands: list[str]) -> None:
        self._commands = commands
        self._stack: AsyncExitStack | None = None
        self._sessions: list[ClientSession] = []
        self._routes: dict[str, ClientSession] = {}
        self._specs: list[ToolSpec] = []

    async def start(self) -> None:
        self._stack = AsyncExitStack()
        for command in self._commands:
            argv = shlex.split(command)
            if not argv:
                continue
            params = StdioServerParameters(command=argv[0], args=argv[1:])
            read, write = await self._stack.enter_async_context(stdio_client(params))
            session = await self._stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            self._sessions.append(session)

            listing = await session.list_tools()
            for tool in listing.tools:
                if tool.name in self._routes:
                    logger.warning("Duplicate MCP tool %s from %s ignored", tool.name, argv[0])
                    continue
                self._routes[tool.name] = session
                self._specs.append(
                    ToolSpec(
                        name=tool.name,
                        description=tool.description or "",
                        input_schema=tool.inputSchema or {"type": "object", "properties": {}},
                    )
                )
            logger.info("MCP server %s connected (%d tools)", argv[0], len(listing.tools))

    async def close(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
        self._sessions.clear()
        self._routes.clear()
        self._specs.clear()

    async def list_tools(self) -> list[ToolSpec]:
        return list(self._specs)

    async def invoke(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        session = self._routes.get(name)
        if session is None:
            return f"Unknown tool: {name}", True
        try:
            result = await session.call_tool(name, args)
        except Exception as e:
            logger.exception("MCP tool call failed for %s", name)
            return f"Tool error: {e}", True
        text = "\n".join(
            block.text for block in result.content if getattr(block, "type", "") == "text"
        )
        return text, bool(result.isError)


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------


class CompositeProvider:
    """Merges providers; the first provider listing a name owns it."""

    def __init__(self, providers: list[CapabilityProvider]) -> None:
        self._providers = providers

    async def list_tools(self) -> list[ToolSpec]:
        seen: set[str] = set()
        specs: list[ToolSpec] = []
        for provider in self._providers:
            for spec in await provider.list_tools():
                if spec.name not in seen:
                    seen.add(spec.name)
                    specs.append(spec)
        return specs

    async def invoke(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        for provider in self._providers:
            if any(spec.name == name for spec in await provider.list_tools()):
                return await provider.invoke(name, args)
        return f"Unknown tool: {name}", True
