"""Session engine -- executes turns against the prompt cache and history.

One turn, under the per-chat lock and the caller's deadline:

1. Get the prompt from the cache (rebuilt from the store on a miss)
2. Derive the protocol state from the durable history
3. Append the user message to a working copy of the prompt
4. Run the completion, with a tool loop when capabilities are configured
5. Classify the response and validate the protocol transition
6. Compact instead of appending when the prompt hits the period
7. Persist user + assistant messages (and the compaction) in one write,
   invalidating the cache entry as part of the write
8. Put the new prompt into the cache

Nothing is persisted and the cache is untouched when steps 1-6 fail. A
required_questions response is followed at once by a synthetic turn with
empty user content so question 1 always follows the list. If that
follow-up fails, the next turn on the chat runs it before anything else.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from colloquy.config import Settings
from colloquy.errors import ChatNotFound, DeadlineExceeded, ProtocolViolation, TransportError
from colloquy.session.compaction import Completer, ConversationCompactor
from colloquy.session.models import Prompt, PromptMessage, TokenUsage
from colloquy.session.prompt_cache import PromptCache
from colloquy.session.protocol import (
    AgentResponse,
    ComparisonAnswer,
    ModelRunResult,
    Phase,
    ProtocolState,
    RequiredQuestions,
    RunTokenUsage,
    advance,
    classify,
    derive_state,
    display_text,
    to_json,
)
from colloquy.session.tools import CapabilityProvider
from colloquy.storage.history import HistoryStore
from colloquy.storage.schemas import ChatDetail, MessageDetail, MessageInput

logger = logging.getLogger(__name__)

JUDGE_SYSTEM_PROMPT = """\
You compare two AI model answers to the same request. Assess correctness,
completeness, clarity and usefulness, and take the reported latency and
token usage into account. Finish with which answer is better and why.
Reply in plain Markdown."""


@dataclass
class TurnOutcome:
    """Result of one turn: one response, or two after required_questions."""

    agent_id: str
    chat_id: str
    responses: list[AgentResponse] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    compacted: bool = False

    @property
    def final(self) -> AgentResponse:
        return self.responses[-1]

    @property
    def text(self) -> str:
        return display_text(self.final)


@dataclass
class _Applied:
    prompt: Prompt
    compacted: bool


def _pending_list(history: list[MessageDetail]) -> RequiredQuestions:
    """The latest required_questions message in a chat's history."""
    for message in reversed(history):
        if message.role == "assistant":
            response = classify(message.content)
            if isinstance(response, RequiredQuestions):
                return response
    raise ProtocolViolation("no required_questions message in history")


class SessionEngine:
    """Runs turns for any (agent_id, chat_id) key.

    Turns on the same key are serialized through the cache's lock table;
    turns on different keys run in parallel.
    """

    def __init__(
        self,
        store: HistoryStore,
        cache: PromptCache,
        compactor: ConversationCompactor,
        complete: Completer,
        settings: Settings,
        tools: CapabilityProvider | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._compactor = compactor
        self._complete = complete
        self._settings = settings
        self._tools = tools

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_chat(self, agent_id: str, chat_id: str | None = None) -> ChatDetail:
        """Create a chat (and its agent on first reference)."""
        return await self._store.create_chat(agent_id, chat_id)

    async def ensure_chat(self, agent_id: str, chat_id: str) -> ChatDetail:
        """Get or create a chat with a fixed id."""
        return await self._store.ensure_chat(agent_id, chat_id)

    async def list_chats(self, agent_id: str) -> list[ChatDetail]:
        return await self._store.list_chats(agent_id)

    async def history(self, agent_id: str, chat_id: str) -> list[MessageDetail]:
        """Full durable history of a chat, compacted or not."""
        if await self._store.get_chat(agent_id, chat_id) is None:
            raise ChatNotFound(agent_id, chat_id)
        return await self._store.list_messages(chat_id)

    async def protocol_state(self, agent_id: str, chat_id: str) -> ProtocolState:
        return derive_state(await self.history(agent_id, chat_id))

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        agent_id: str,
        chat_id: str,
        content: str,
        temperature: float | None = None,
        timeout: float | None = None,
    ) -> TurnOutcome:
        """Execute one protocol turn. See module docstring for the steps.

        Raises ChatNotFound, ProtocolViolation, CompactionFailed,
        TransportError or DeadlineExceeded. Unparseable model output is not
        an error: it comes back as an Unclassified response.
        """
        temperature = self._settings.clamp_temperature(temperature)
        return await self._guarded(
            agent_id, chat_id, timeout,
            partial(self._protocol_turn, agent_id, chat_id, content, temperature),
        )

    async def compare(
        self,
        agent_id: str,
        chat_id: str,
        content: str,
        temperature: float | None = None,
        timeout: float | None = None,
    ) -> TurnOutcome:
        """Answer with two models side by side plus a judge's analysis.

        Both models see the same prompt and run concurrently; a failure
        on one side is reported in its result rather than raised. The
        comparison is persisted as the assistant message of the turn and
        does not move the question protocol.
        """
        temperature = self._settings.clamp_temperature(temperature)
        return await self._guarded(
            agent_id, chat_id, timeout,
            partial(self._comparison_turn, agent_id, chat_id, content, temperature),
        )

    async def _guarded(
        self,
        agent_id: str,
        chat_id: str,
        timeout: float | None,
        work: Callable[[], Awaitable[TurnOutcome]],
    ) -> TurnOutcome:
        """Hold the chat lock under a deadline; invalidate on abort."""
        deadline = timeout if timeout is not None else self._settings.turn_timeout
        scope = asyncio.timeout(deadline)
        try:
            async with scope:
                async with self._cache.lock(agent_id, chat_id):
                    return await work()
        except TimeoutError as e:
            self._cache.invalidate(agent_id, chat_id)
            if not scope.expired():
                # Raised by a collaborator, not by our deadline.
                logger.warning("Turn on %s/%s failed with timeout: %s", agent_id, chat_id, e)
                raise TransportError(f"Collaborator timed out: {e}") from e
            logger.warning("Turn on %s/%s exceeded %.1fs deadline", agent_id, chat_id, deadline)
            raise DeadlineExceeded(f"Turn exceeded {deadline:.1f}s deadline") from e
        except asyncio.CancelledError:
            self._cache.invalidate(agent_id, chat_id)
            raise

    async def _protocol_turn(
        self, agent_id: str, chat_id: str, content: str, temperature: float
    ) -> TurnOutcome:
        prompt = await self._cache.get(agent_id, chat_id)
        history = await self._store.list_messages(chat_id)
        state = derive_state(history)
        outcome = TurnOutcome(agent_id=agent_id, chat_id=chat_id)

        if state.phase is Phase.REQUIRED_QUESTIONS_ISSUED:
            # The list is stored but its follow-up never landed.
            logger.warning(
                "Resuming first question in %s/%s; new request content dropped",
                agent_id, chat_id,
            )
            outcome.responses.append(_pending_list(history))
            await self._exchange(outcome, prompt, state, "", temperature)
        else:
            prompt, state = await self._exchange(outcome, prompt, state, content, temperature)
            if isinstance(outcome.final, RequiredQuestions):
                logger.debug("Issuing synthetic turn for first question in %s/%s", agent_id, chat_id)
                await self._exchange(outcome, prompt, state, "", temperature)

        logger.info(
            "Turn on %s/%s -> %s (%d tokens%s)",
            agent_id, chat_id,
            ", ".join(type(r).__name__ for r in outcome.responses),
            outcome.usage.total_tokens,
            ", compacted" if outcome.compacted else "",
        )
        return outcome

    async def _exchange(
        self,
        outcome: TurnOutcome,
        prompt: Prompt,
        state: ProtocolState,
        content: str,
        temperature: float,
    ) -> tuple[Prompt, ProtocolState]:
        working = prompt.append(PromptMessage(role="user", content=content))
        raw, usage = await self._complete_with_tools(working, temperature)
        response = classify(raw)
        state = advance(state, response)

        applied = await self._apply(outcome.agent_id, outcome.chat_id, working, raw)
        outcome.responses.append(response)
        outcome.usage = outcome.usage + usage
        outcome.compacted = outcome.compacted or applied.compacted
        return applied.prompt, state

    async def _comparison_turn(
        self, agent_id: str, chat_id: str, content: str, temperature: float
    ) -> TurnOutcome:
        prompt = await self._cache.get(agent_id, chat_id)
        working = prompt.append(PromptMessage(role="user", content=content))
        messages = working.to_payload()

        primary, secondary = await asyncio.gather(
            self._timed_run(self._settings.model, messages, temperature),
            self._timed_run(self._settings.comparison_model, messages, temperature),
        )
        if not primary.is_success and not secondary.is_success:
            raise TransportError(
                f"Both comparison runs failed: {primary.error_message}; {secondary.error_message}"
            )

        judge_request = [
            {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
            {"role": "user", "content": self._judge_brief(content, primary, secondary)},
        ]
        judged = await self._complete(
            model=self._settings.judge_model,
            messages=judge_request,
            temperature=temperature,
        )
        response = ComparisonAnswer(
            primary=primary, secondary=secondary, comparison_analysis=judged.text
        )

        applied = await self._apply(agent_id, chat_id, working, to_json(response))
        usage = judged.usage
        for run in (primary, secondary):
            usage = usage + TokenUsage(
                input_tokens=run.token_usage.input_tokens,
                output_tokens=run.token_usage.output_tokens,
                total_tokens=run.token_usage.total_tokens,
            )
        return TurnOutcome(
            agent_id=agent_id,
            chat_id=chat_id,
            responses=[response],
            usage=usage,
            compacted=applied.compacted,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _apply(self, agent_id: str, chat_id: str, working: Prompt, raw: str) -> _Applied:
        """Compact or append, persist both sides, then refresh the cache.

        working ends with the new user message. The compaction decision
        counts it plus the one new response.
        """
        user = working.messages[-1]
        assistant = PromptMessage(role="assistant", content=raw)
        next_prompt = working.append(assistant)

        summary: str | None = None
        if self._compactor.should_compact(working, new_response_count=1):
            next_prompt = await self._compactor.compact(next_prompt, self._complete)
            summary = next_prompt.summary

        try:
            await self._store.append_messages(
                agent_id,
                chat_id,
                [
                    MessageInput(role=user.role, content=user.content),
                    MessageInput(role=assistant.role, content=assistant.content),
                ],
                compaction_summary=summary,
            )
        finally:
            self._cache.invalidate(agent_id, chat_id)

        self._cache.put(agent_id, chat_id, next_prompt)
        return _Applied(prompt=next_prompt, compacted=summary is not None)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _complete_with_tools(
        self, prompt: Prompt, temperature: float
    ) -> tuple[str, TokenUsage]:
        """Run the completion, dispatching tool calls until a text reply.

        Tool calls and their results stay local to this call; only the
        final text becomes part of the chat.
        """
        model = self._settings.model
        messages: list[dict[str, Any]] = prompt.to_payload()
        specs = await self._tools.list_tools() if self._tools else []
        tools = [spec.to_openai() for spec in specs] or None
        usage = TokenUsage()

        for _ in range(self._settings.max_tool_rounds):
            completion = await self._complete(
                model=model, messages=messages, temperature=temperature, tools=tools
            )
            usage = usage + completion.usage
            if not completion.tool_calls or self._tools is None:
                return completion.text, usage

            messages.append({
                "role": "assistant",
                "content": completion.text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in completion.tool_calls
                ],
            })
            for call in completion.tool_calls:
                result_text, is_error = await self._tools.invoke(call.name, call.arguments)
                if is_error:
                    logger.warning("Tool %s returned an error: %s", call.name, result_text[:200])
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": result_text,
                })

        # Max rounds reached -- one final call without tools for a text reply
        logger.warning("Tool loop reached max_tool_rounds=%d", self._settings.max_tool_rounds)
        completion = await self._complete(model=model, messages=messages, temperature=temperature)
        return completion.text, usage + completion.usage

    async def _timed_run(
        self, model: str, messages: list[dict[str, Any]], temperature: float
    ) -> ModelRunResult:
        start = time.monotonic()
        try:
            completion = await self._complete(model=model, messages=messages, temperature=temperature)
        except Exception as e:
            logger.warning("Comparison run on %s failed: %s", model, e)
            return ModelRunResult(
                model_name=model,
                response="",
                execution_time_ms=int((time.monotonic() - start) * 1000),
                is_success=False,
                error_message=str(e),
            )
        return ModelRunResult(
            model_name=completion.model or model,
            response=completion.text,
            execution_time_ms=int((time.monotonic() - start) * 1000),
            token_usage=RunTokenUsage(
                input_tokens=completion.usage.input_tokens,
                output_tokens=completion.usage.output_tokens,
                total_tokens=completion.usage.total_tokens,
            ),
            is_success=True,
        )

    @staticmethod
    def _judge_brief(content: str, primary: ModelRunResult, secondary: ModelRunResult) -> str:
        def section(label: str, run: ModelRunResult) -> str:
            body = run.response if run.is_success else f"(failed: {run.error_message})"
            return (
                f"## {label}: {run.model_name}\n"
                f"Latency: {run.execution_time_ms} ms, "
                f"tokens: {run.token_usage.input_tokens} in / "
                f"{run.token_usage.output_tokens} out\n\n{body}"
            )

        return "\n\n".join([
            f"## Request\n{content}",
            section("Answer A", primary),
            section("Answer B", secondary),
        ])
