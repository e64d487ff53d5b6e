"""Vision-model adapter that reads questions off the screen and finds answer targets."""

from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any

from exam_pilot.adapters.ollama_client import OllamaClient
from exam_pilot.constants.pipeline_constants import LOCATE_CONFIDENCE_FLOOR
from exam_pilot.core.models import (
    ActionKind,
    AnswerLocation,
    Option,
    Point,
    Question,
    QuestionDraft,
    QuestionType,
    ScreenAnalysis,
    Screenshot,
)

logger = logging.getLogger(__name__)

_DESCRIBE_SCREEN_PROMPT = """
You are analysing a screenshot of an exam interface. Identify:

1. QUESTION: the exact question text (empty string if no question is visible)
2. QUESTION_TYPE: multiple_choice, single_choice, true_false, fill_blank, short_answer, essay or unknown
3. OPTIONS: every answer option with its on-screen centre
4. UI_ELEMENTS: next/submit buttons and the answer input box, if visible
5. CURRENT_STATE: a short description of the screen

Respond with JSON only:
{
    "question": "exact question text",
    "question_type": "multiple_choice",
    "options": [
        {"text": "option text", "position": {"x": 0, "y": 0}, "identifier": "A"}
    ],
    "ui_elements": {
        "next_button": {"x": 0, "y": 0, "visible": true},
        "submit_button": {"x": 0, "y": 0, "visible": false},
        "answer_input": {"x": 0, "y": 0, "visible": false}
    },
    "current_state": "description of the screen",
    "confidence": 0.95
}

Lower the confidence whenever any element is unclear.
"""

_LOCATE_ANSWER_PROMPT = """
Given this screen analysis and the selected answer, return where to act.

SCREEN_ANALYSIS: {analysis}
SELECTED_ANSWER: {answer}

Respond with JSON only:
{{
    "coordinates": {{"x": 0, "y": 0}},
    "matched_option": "option text that was matched",
    "confidence": 0.95,
    "click_type": "option_select",
    "drop_coordinates": {{"x": 0, "y": 0}}
}}

click_type is one of option_select, text_input or drag_drop; drop_coordinates is
only needed for drag_drop. If nothing matches, set confidence to 0.
"""

_LETTER_PREFIX = re.compile(r"^([a-z0-9])\s*[).:]\s*(.*)$")


class ScreenInterpretationError(ValueError):
    """Raised when the model describes the screen in an unusable shape."""


class OllamaScreenInterpreter:
    """Turns frames into :class:`ScreenAnalysis` values using a vision model."""

    def __init__(self, client: OllamaClient, locate_confidence_floor: float = LOCATE_CONFIDENCE_FLOOR) -> None:
        self._client = client
        self._locate_floor = locate_confidence_floor

    def interpret_screen(self, screenshot: Screenshot) -> ScreenAnalysis:
        image_b64 = base64.b64encode(screenshot.image).decode("ascii")
        payload = self._client.generate_json(
            _DESCRIBE_SCREEN_PROMPT,
            model=self._client.cfg.vision_model,
            images=[image_b64],
        )
        analysis = parse_screen_analysis(payload)
        logger.info(
            "Screen analysed: question=%s type=%s options=%d confidence=%.2f",
            analysis.has_question,
            analysis.question.question_type.value if analysis.question else "-",
            len(analysis.question.options) if analysis.question else 0,
            analysis.confidence,
        )
        return analysis

    def locate_answer(self, question: Question, analysis: ScreenAnalysis, answer_text: str) -> AnswerLocation | None:
        local = locate_locally(question, analysis, answer_text)
        if local is not None:
            return local

        prompt = _LOCATE_ANSWER_PROMPT.format(analysis=json.dumps(analysis.raw), answer=answer_text)
        payload = self._client.generate_json(prompt)
        return parse_location(payload, self._locate_floor)


def locate_locally(question: Question, analysis: ScreenAnalysis, answer_text: str) -> AnswerLocation | None:
    """Resolve an answer target from the analysis alone, without another model call."""
    if question.question_type.expects_text_entry:
        target = analysis.ui_elements.get("answer_input")
        if target is None:
            return None
        return AnswerLocation(x=target.x, y=target.y, action=ActionKind.TYPE)

    option = match_option(question.options, answer_text)
    if option is None or option.position is None:
        return None
    return AnswerLocation(x=option.position.x, y=option.position.y, action=ActionKind.CLICK)


def match_option(options: list[Option], answer_text: str) -> Option | None:
    """Find the option an answer refers to by text, identifier or "B) text" form."""
    wanted = _normalize(answer_text)
    if not wanted:
        return None
    for option in options:
        if _normalize(option.text) == wanted:
            return option

    bare = wanted.rstrip(").:").strip()
    for option in options:
        if option.identifier and option.identifier.lower() == bare:
            return option

    prefixed = _LETTER_PREFIX.match(wanted)
    if prefixed:
        identifier, remainder = prefixed.groups()
        for option in options:
            if option.identifier.lower() == identifier and (
                not remainder or _normalize(option.text) == remainder
            ):
                return option
    return None


def parse_screen_analysis(payload: dict[str, Any]) -> ScreenAnalysis:
    confidence = _require_score(payload, "confidence")
    question_text = str(payload.get("question") or "").strip()
    ui_elements = _parse_ui_elements(payload.get("ui_elements"))
    screen_state = str(payload.get("current_state") or "")
    if not question_text:
        return ScreenAnalysis(
            question=None,
            confidence=confidence,
            ui_elements=ui_elements,
            screen_state=screen_state,
            raw=dict(payload),
        )

    draft = QuestionDraft(
        text=question_text,
        question_type=QuestionType.from_label(_optional_str(payload.get("question_type"))),
        options=_parse_options(payload.get("options")),
    )
    return ScreenAnalysis(
        question=draft,
        confidence=confidence,
        ui_elements=ui_elements,
        screen_state=screen_state,
        raw=dict(payload),
    )


def parse_location(payload: dict[str, Any], confidence_floor: float = LOCATE_CONFIDENCE_FLOOR) -> AnswerLocation | None:
    try:
        confidence = _require_score(payload, "confidence")
    except ScreenInterpretationError:
        return None
    if confidence < confidence_floor:
        logger.info("Answer target confidence %.2f below %.2f", confidence, confidence_floor)
        return None
    point = _parse_point(payload.get("coordinates"))
    if point is None:
        return None

    click_type = str(payload.get("click_type") or "option_select").lower()
    if click_type == "drag_drop":
        drop_to = _parse_point(payload.get("drop_coordinates"))
        if drop_to is None:
            return None
        return AnswerLocation(x=point.x, y=point.y, action=ActionKind.DRAG, drop_to=drop_to)
    if click_type == "text_input":
        return AnswerLocation(x=point.x, y=point.y, action=ActionKind.TYPE)
    return AnswerLocation(x=point.x, y=point.y, action=ActionKind.CLICK)


def _parse_options(raw: Any) -> tuple[Option, ...]:
    if not isinstance(raw, list):
        return ()
    options: list[Option] = []
    for index, item in enumerate(raw):
        default_identifier = chr(65 + index) if index < 26 else str(index + 1)
        if isinstance(item, str):
            if item.strip():
                options.append(Option(text=item.strip(), identifier=default_identifier))
            continue
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        identifier = str(item.get("identifier") or default_identifier).strip()
        options.append(Option(text=text, identifier=identifier, position=_parse_point(item.get("position"))))
    return tuple(options)


def _parse_ui_elements(raw: Any) -> dict[str, Point]:
    if not isinstance(raw, dict):
        return {}
    elements: dict[str, Point] = {}
    for name, value in raw.items():
        if isinstance(value, dict) and value.get("visible", True) is False:
            continue
        point = _parse_point(value)
        if point is not None:
            elements[str(name)] = point
    return elements


def _parse_point(raw: Any) -> Point | None:
    if not isinstance(raw, dict):
        return None
    try:
        return Point(x=int(round(float(raw["x"]))), y=int(round(float(raw["y"]))))
    except (KeyError, TypeError, ValueError):
        return None


def _require_score(payload: dict[str, Any], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ScreenInterpretationError(f"Missing or non-numeric {key}: {value!r}")
    score = float(value)
    if not 0.0 <= score <= 1.0:
        raise ScreenInterpretationError(f"{key} out of range: {score}")
    return score


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())
