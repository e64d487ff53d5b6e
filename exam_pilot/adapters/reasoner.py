"""Language-model reasoning used when lookups cannot answer a question."""

from __future__ import annotations

import logging
from typing import Any

from exam_pilot.adapters.ollama_client import OllamaClient
from exam_pilot.adapters.screen_interpreter import match_option
from exam_pilot.core.contracts import ReasoningOutcome
from exam_pilot.core.models import Question

logger = logging.getLogger(__name__)

_REASONING_PROMPT = """
You are answering an exam question ({question_type}).

QUESTION: {question}
{options_block}
{context_block}
Reason step by step, then pick the best answer. Respond with JSON only:
{{
    "reasoning": "step-by-step reasoning",
    "answer": "selected option text, or the text to enter",
    "answer_identifier": "A",
    "confidence": 0.95,
    "key_concepts": ["concept"],
    "uncertainty_factors": ["factor"]
}}

Be honest about your confidence.
"""


class ReasonerError(ValueError):
    """Raised when the model's answer cannot be used."""


class OllamaReasoner:
    def __init__(self, client: OllamaClient) -> None:
        self._client = client

    def choose_answer(self, question: Question, context: str) -> ReasoningOutcome:
        payload = self._client.generate_json(build_reasoning_prompt(question, context), temperature=0.2)
        outcome = parse_reasoning(payload, question)
        logger.info(
            "Reasoned answer %r with confidence %.2f", outcome.answer[:80], outcome.confidence
        )
        return outcome


def build_reasoning_prompt(question: Question, context: str) -> str:
    options_block = ""
    if question.options:
        listed = "\n".join(f"{option.identifier}. {option.text}" for option in question.options)
        options_block = f"OPTIONS:\n{listed}\n"
    context_block = f"CONTEXT:\n{context}\n" if context.strip() else ""
    return _REASONING_PROMPT.format(
        question_type=question.question_type.value,
        question=question.text,
        options_block=options_block,
        context_block=context_block,
    )


def parse_reasoning(payload: dict[str, Any], question: Question) -> ReasoningOutcome:
    confidence = payload.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ReasonerError(f"Reasoning reply has no numeric confidence: {confidence!r}")
    if not 0.0 <= float(confidence) <= 1.0:
        raise ReasonerError(f"Reasoning confidence out of range: {confidence}")

    answer = str(payload.get("answer") or "").strip()
    identifier = str(payload.get("answer_identifier") or "").strip()
    if question.options:
        # Prefer the option's own text so the click target can be matched locally.
        option = match_option(question.options, answer) or match_option(question.options, identifier)
        if option is not None:
            answer = option.text
    if not answer:
        raise ReasonerError("Reasoning reply did not contain an answer.")

    return ReasoningOutcome(
        answer=answer,
        confidence=float(confidence),
        rationale=str(payload.get("reasoning") or ""),
        key_concepts=_str_tuple(payload.get("key_concepts")),
        uncertainty_factors=_str_tuple(payload.get("uncertainty_factors")),
    )


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value)
