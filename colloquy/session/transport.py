"""Model transport -- direct httpx calls to an OpenAI-compatible chat API.

ModelClient.complete() is the one completion collaborator the engine and
the compactor depend on. Everything vendor-specific (auth header, payload
shape, usage block, tool-call format) stays in this module.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from colloquy.config import Settings
from colloquy.errors import TransportError
from colloquy.session.models import Completion, TokenUsage, ToolCall

logger = logging.getLogger(__name__)

_RETRY_STATUSES = frozenset({429, 500, 502, 503, 529})
_MAX_RETRY_AFTER = 30.0


class ModelClient:
    """Async chat-completions client with one retry on transient failures."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {"content-type": "application/json"}
        if settings.openai_api_key:
            headers["authorization"] = f"Bearer {settings.openai_api_key}"
        else:
            logger.warning("OPENAI_API_KEY is not set -- model calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (base_url: %s)", settings.api_base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _build_payload(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float,
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": self._settings.max_tokens,
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        """Call the chat completions endpoint with retry for 429/5xx.

        Returns the parsed Completion. Raises TransportError on persistent
        errors.
        """
        if not self._http:
            raise TransportError("httpx client not initialized -- call start() first")

        payload = self._build_payload(model, messages, temperature, tools)

        last_error: TransportError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/chat/completions", json=payload)

                if response.status_code == 200:
                    return self._parse_completion(response.json(), model)

                try:
                    error_data = response.json()
                    error_type = error_data.get("error", {}).get("type", "unknown")
                    error_msg = error_data.get("error", {}).get("message", "unknown error")
                except (ValueError, AttributeError):
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = _parse_retry_after(response.headers.get("retry-after"))
                    logger.warning(
                        "Model API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = TransportError(
                    f"Model API error ({response.status_code}): {error_type} - {error_msg}"
                )
                break

            except httpx.TimeoutException as e:
                last_error = TransportError(f"Model request timed out: {e}")
                if attempt == 0:
                    logger.warning("Model API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = TransportError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or TransportError("Model call failed with unknown error")

    @staticmethod
    def _parse_completion(data: dict[str, Any], model: str) -> Completion:
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise TransportError(f"Malformed completion payload: {e}") from e

        tool_calls = []
        for call in message.get("tool_calls") or []:
            function = call.get("function", {})
            raw_args = function.get("arguments") or "{}"
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError:
                arguments = {}
            tool_calls.append(
                ToolCall(id=call.get("id", ""), name=function.get("name", ""), arguments=arguments)
            )

        return Completion(
            text=message.get("content") or "",
            usage=TokenUsage.from_api(data.get("usage")),
            model=data.get("model", model),
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or "stop",
        )


def _parse_retry_after(value: str | None) -> float:
    try:
        delay = float(value) if value else 1.0
    except ValueError:
        delay = 1.0
    return max(0.0, min(delay, _MAX_RETRY_AFTER))
