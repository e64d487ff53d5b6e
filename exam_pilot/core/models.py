"""Domain models for the exam pilot."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    SINGLE_CHOICE = "single_choice"
    TRUE_FALSE = "true_false"
    FILL_BLANK = "fill_blank"
    SHORT_ANSWER = "short_answer"
    ESSAY = "essay"
    UNKNOWN = "unknown"

    @classmethod
    def from_label(cls, label: str | None) -> QuestionType:
        """Map the loose labels a vision model produces onto a known type."""
        if not label:
            return cls.UNKNOWN
        normalized = label.strip().lower().replace("-", "_").replace(" ", "_")
        normalized = _TYPE_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN

    @property
    def expects_text_entry(self) -> bool:
        return self in (QuestionType.FILL_BLANK, QuestionType.SHORT_ANSWER, QuestionType.ESSAY)


_TYPE_ALIASES = {
    "multiple": "multiple_choice",
    "multiplechoice": "multiple_choice",
    "single": "single_choice",
    "truefalse": "true_false",
    "true_or_false": "true_false",
    "fill_in_blank": "fill_blank",
    "fill_in_the_blank": "fill_blank",
    "fill_blanks": "fill_blank",
    "text_input": "short_answer",
    "free_text": "short_answer",
}


class QuestionStatus(str, Enum):
    DETECTED = "detected"
    RESOLVING = "resolving"
    ANSWERED = "answered"
    UNCERTAIN = "uncertain"
    EXECUTED = "executed"
    ABANDONED = "abandoned"

    @property
    def is_settled(self) -> bool:
        """True once automatic processing of the question is over."""
        return self in (QuestionStatus.UNCERTAIN, QuestionStatus.EXECUTED, QuestionStatus.ABANDONED)


_ALLOWED_TRANSITIONS: dict[QuestionStatus, frozenset[QuestionStatus]] = {
    QuestionStatus.DETECTED: frozenset({QuestionStatus.RESOLVING}),
    QuestionStatus.RESOLVING: frozenset({QuestionStatus.ANSWERED, QuestionStatus.UNCERTAIN}),
    QuestionStatus.ANSWERED: frozenset({QuestionStatus.EXECUTED, QuestionStatus.ABANDONED}),
    QuestionStatus.UNCERTAIN: frozenset(),
    QuestionStatus.EXECUTED: frozenset(),
    QuestionStatus.ABANDONED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a question is pushed into a state its lifecycle forbids."""


class AnswerSource(str, Enum):
    KNOWLEDGE = "knowledge"
    WEB = "web"
    REASONING = "reasoning"


class ActionKind(str, Enum):
    CLICK = "click"
    TYPE = "type"
    DRAG = "drag"


@dataclass(frozen=True, slots=True)
class Point:
    x: int
    y: int


@dataclass(frozen=True, slots=True)
class Option:
    """One answer option as it appears on screen."""

    text: str
    identifier: str
    position: Point | None = None


@dataclass(frozen=True, slots=True)
class Screenshot:
    """Raw frame delivered by the remote session."""

    image: bytes
    captured_at: datetime = field(default_factory=utc_now)
    image_format: str = "jpeg"


@dataclass(frozen=True, slots=True)
class QuestionDraft:
    """Question content extracted from a frame, before it enters the lifecycle."""

    text: str
    question_type: QuestionType
    options: tuple[Option, ...] = ()


@dataclass(frozen=True, slots=True)
class ScreenAnalysis:
    """Structured description of one frame.

    ``question`` is ``None`` when the screen holds nothing answerable. ``raw``
    keeps the model payload so coordinate lookup can reuse the exact analysis
    that produced a question.
    """

    question: QuestionDraft | None
    confidence: float
    ui_elements: dict[str, Point] = field(default_factory=dict)
    screen_state: str = ""
    raw: dict[str, object] = field(default_factory=dict)

    @property
    def has_question(self) -> bool:
        return self.question is not None


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    """Answer produced by one resolution stage. Never mutated after creation."""

    answer: str
    confidence: float
    source: AnswerSource
    rationale: str | None = None
    context: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AnswerLocation:
    """Where and how to enter an answer on screen."""

    x: int
    y: int
    action: ActionKind = ActionKind.CLICK
    drop_to: Point | None = None


@dataclass(slots=True)
class Question:
    """A detected question and its resolution lifecycle."""

    text: str
    question_type: QuestionType
    options: list[Option]
    detection_confidence: float
    id: str = field(default_factory=lambda: uuid4().hex)
    sequence: int = 0
    status: QuestionStatus = QuestionStatus.DETECTED
    detected_at: datetime = field(default_factory=utc_now)
    settled_at: datetime | None = None
    result: ResolutionResult | None = None
    location: AnswerLocation | None = None
    outcome_reason: str | None = None

    @classmethod
    def from_draft(cls, draft: QuestionDraft, confidence: float, sequence: int = 0) -> Question:
        return cls(
            text=draft.text,
            question_type=draft.question_type,
            options=list(draft.options),
            detection_confidence=confidence,
            sequence=sequence,
        )

    def advance(self, status: QuestionStatus, reason: str | None = None) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Question {self.id} cannot move from {self.status.value} to {status.value}."
            )
        self.status = status
        if reason is not None:
            self.outcome_reason = reason
        if status.is_settled:
            self.settled_at = utc_now()

    def abandon(self, reason: str) -> None:
        """Force the question into ``abandoned`` from any unsettled state."""
        if self.status.is_settled and self.status is not QuestionStatus.UNCERTAIN:
            raise InvalidTransitionError(f"Question {self.id} is already {self.status.value}.")
        self.status = QuestionStatus.ABANDONED
        self.outcome_reason = reason
        self.settled_at = utc_now()


def question_fingerprint(text: str, options: list[Option] | tuple[Option, ...]) -> str:
    """Identity of a question as seen on screen, used to spot repeated frames."""
    parts = [" ".join(text.lower().split())]
    parts.extend(" ".join(option.text.lower().split()) for option in options)
    return "\x1f".join(parts)


@dataclass(slots=True)
class SessionState:
    """State of one exam-taking run."""

    session_id: str
    exam_type: str
    active: bool = False
    manual_override: bool = False
    history: list[Question] = field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @classmethod
    def idle(cls, exam_type: str, manual_override: bool = False) -> SessionState:
        """Placeholder state held by a controller before any session has started."""
        return cls(session_id="", exam_type=exam_type, manual_override=manual_override)

    def snapshot(self) -> SessionState:
        return replace(self, history=list(self.history))


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    session_id: str
    device_id: str
    connection_url: str | None = None


@dataclass(frozen=True, slots=True)
class ConnectionState:
    connected: bool
    device_id: str | None = None
    session_id: str | None = None
    last_screenshot_at: datetime | None = None
