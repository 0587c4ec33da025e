"""Clarify-then-answer protocol: response variants, classification, state.

The model answers every turn with a JSON object discriminated by "type":

  required_questions -> the full list of clarifying questions (N of them)
  question           -> one question, questionId running 1..N
  answer             -> the final answer once all N questions are answered
  comparison_answer  -> two models' answers plus a judge's analysis

Model output is untrusted. classify() never raises: anything that does
not decode cleanly becomes Unclassified and is passed through verbatim.
The protocol state is not stored; derive_state() folds it from the
assistant messages of the durable history.
"""

from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from colloquy.errors import ProtocolViolation
from colloquy.storage.schemas import MessageDetail

logger = logging.getLogger(__name__)

_TYPE_PATTERN = re.compile(r'"type"\s*:\s*"(\w+)"')
_FENCE_PATTERN = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)


# ------------------------------------------------------------------
# Response variants
# ------------------------------------------------------------------


class _Wire(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class QuestionItem(_Wire):
    id: int
    question: str
    category: str


class RequiredQuestions(_Wire):
    type: Literal["required_questions"] = "required_questions"
    questions: list[QuestionItem]
    total_questions: int = Field(alias="totalQuestions")
    current_question_index: int = Field(0, alias="currentQuestionIndex")


class Question(_Wire):
    type: Literal["question"] = "question"
    question_id: int = Field(alias="questionId")
    question: str
    category: str
    remaining_questions: int = Field(alias="remainingQuestions")


class Answer(_Wire):
    type: Literal["answer"] = "answer"
    answer: str


class RunTokenUsage(_Wire):
    input_tokens: int = Field(0, alias="inputTokens")
    output_tokens: int = Field(0, alias="outputTokens")
    total_tokens: int = Field(0, alias="totalTokens")


class ModelRunResult(_Wire):
    """One model's answer with latency and token metrics."""

    model_name: str = Field(alias="modelName")
    response: str
    execution_time_ms: int = Field(alias="executionTimeMs")
    token_usage: RunTokenUsage = Field(default_factory=RunTokenUsage, alias="tokenUsage")
    is_success: bool = Field(alias="isSuccess")
    error_message: str | None = Field(None, alias="errorMessage")


class ComparisonAnswer(_Wire):
    type: Literal["comparison_answer"] = "comparison_answer"
    primary: ModelRunResult = Field(alias="primaryResponse")
    secondary: ModelRunResult = Field(alias="secondaryResponse")
    comparison_analysis: str = Field(alias="comparisonAnalysis")


@dataclass(frozen=True)
class Unclassified:
    """Model output without a usable type discriminator."""

    raw: str


AgentResponse = Union[RequiredQuestions, Question, Answer, ComparisonAnswer, Unclassified]

_VARIANTS: dict[str, type[_Wire]] = {
    "required_questions": RequiredQuestions,
    "question": Question,
    "answer": Answer,
    "comparison_answer": ComparisonAnswer,
}


def to_json(response: _Wire) -> str:
    """Serialize a variant the way the model emits it."""
    return response.model_dump_json(by_alias=True)


def display_text(response: AgentResponse) -> str:
    """The text a caller shows for a response."""
    match response:
        case Answer(answer=text):
            return text
        case Question(question=text):
            return text
        case RequiredQuestions(questions=questions):
            return "\n".join(f"{q.id}. {q.question}" for q in questions)
        case ComparisonAnswer(comparison_analysis=text):
            return text
        case Unclassified(raw=raw):
            return raw
    raise TypeError(f"Unknown response variant: {type(response).__name__}")


# ------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------


def classify(raw: str) -> AgentResponse:
    """Two-phase parse: sniff the type tag, then strictly decode that variant.

    The sniff may find a tag that the strict decode then rejects (wrong
    fields, trailing prose, broken JSON); that is Unclassified, not an
    error.
    """
    text = raw.strip()
    fenced = _FENCE_PATTERN.match(text)
    if fenced:
        text = fenced.group(1).strip()

    match = _TYPE_PATTERN.search(text)
    if not match:
        return Unclassified(raw=raw)
    variant = _VARIANTS.get(match.group(1))
    if variant is None:
        return Unclassified(raw=raw)

    for candidate in _json_candidates(text):
        try:
            return variant.model_validate_json(candidate)
        except ValidationError:
            continue
    logger.debug("Response tagged %r failed strict decode", match.group(1))
    return Unclassified(raw=raw)


def _json_candidates(text: str) -> list[str]:
    """The text itself, then the outermost {...} span if prose surrounds it."""
    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end and (start > 0 or end < len(text) - 1):
        span = text[start:end + 1]
        try:
            json.loads(span)
        except json.JSONDecodeError:
            return candidates
        candidates.append(span)
    return candidates


# ------------------------------------------------------------------
# State machine
# ------------------------------------------------------------------


class Phase(str, enum.Enum):
    IDLE = "idle"
    REQUIRED_QUESTIONS_ISSUED = "required_questions_issued"
    ASKING_QUESTION = "asking_question"
    ANSWERED_FINAL = "answered_final"


@dataclass(frozen=True)
class ProtocolState:
    """Where a chat is in the clarify-then-answer cycle.

    total is N from the latest required_questions; current is the id of
    the last question asked (0 before the first).
    """

    phase: Phase = Phase.IDLE
    total: int = 0
    current: int = 0

    @property
    def accepts_new_request(self) -> bool:
        return self.phase in (Phase.IDLE, Phase.ANSWERED_FINAL)


IDLE = ProtocolState()


def advance(state: ProtocolState, response: AgentResponse) -> ProtocolState:
    """Apply one classified response. Raises ProtocolViolation."""
    match response:
        case RequiredQuestions(total_questions=total):
            if not state.accepts_new_request:
                raise ProtocolViolation(
                    f"required_questions issued while question {state.current} "
                    f"of {state.total} is pending"
                )
            if total < 1:
                raise ProtocolViolation(f"required_questions with totalQuestions={total}")
            return ProtocolState(Phase.REQUIRED_QUESTIONS_ISSUED, total=total, current=0)

        case Question(question_id=question_id):
            if state.accepts_new_request:
                raise ProtocolViolation(
                    f"question {question_id} issued before any required_questions"
                )
            if question_id <= state.current:
                raise ProtocolViolation(
                    f"questionId {question_id} does not advance past {state.current}"
                )
            if question_id > state.total:
                raise ProtocolViolation(
                    f"questionId {question_id} exceeds totalQuestions {state.total}"
                )
            if question_id != state.current + 1:
                raise ProtocolViolation(
                    f"questionId {question_id} skips from {state.current}"
                )
            return ProtocolState(Phase.ASKING_QUESTION, total=state.total, current=question_id)

        case Answer():
            if state.phase is Phase.REQUIRED_QUESTIONS_ISSUED or (
                state.phase is Phase.ASKING_QUESTION and state.current < state.total
            ):
                raise ProtocolViolation(
                    f"answer given after {state.current} of {state.total} questions"
                )
            return ProtocolState(Phase.ANSWERED_FINAL, total=state.total, current=state.current)

        case ComparisonAnswer() | Unclassified():
            return state

    raise TypeError(f"Unknown response variant: {type(response).__name__}")


def derive_state(history: list[MessageDetail]) -> ProtocolState:
    """Fold the assistant messages of a chat's history into its state.

    Persisted history only ever holds validated transitions, so a
    violation here means the log was written by something else; it is
    logged and the offending message skipped.
    """
    state = IDLE
    for message in history:
        if message.role != "assistant":
            continue
        try:
            state = advance(state, classify(message.content))
        except ProtocolViolation as e:
            logger.warning(
                "Skipping out-of-protocol message %d in chat %s: %s",
                message.id, message.chat_id, e,
            )
    return state
