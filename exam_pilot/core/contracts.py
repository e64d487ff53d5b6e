"""Interfaces of the collaborators the pipeline depends on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Protocol

from exam_pilot.core.models import (
    AnswerLocation,
    ConnectionInfo,
    ConnectionState,
    Point,
    Question,
    QuestionType,
    ScreenAnalysis,
    Screenshot,
)


class RemoteSessionError(RuntimeError):
    """Raised when the remote-control backend rejects a request."""


class NotConnectedError(RemoteSessionError):
    """Raised by input injection while no session is connected."""


@dataclass(frozen=True, slots=True)
class KnowledgeHit:
    """One match returned by a knowledge search backend."""

    content: str
    score: float
    metadata: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class WebResult:
    title: str
    url: str
    content: str
    provider: str
    relevance: float
    confidence: float
    extracted_answer: str


@dataclass(frozen=True, slots=True)
class ReasoningOutcome:
    answer: str
    confidence: float
    rationale: str = ""
    key_concepts: tuple[str, ...] = ()
    uncertainty_factors: tuple[str, ...] = ()


class KnowledgeBackend(Protocol):
    def search(self, text: str, exam_type: str | None, limit: int) -> list[KnowledgeHit]: ...


class WebSearch(Protocol):
    def is_configured(self) -> bool: ...

    def search(
        self, question_text: str, question_type: QuestionType, confidence_cap: float
    ) -> list[WebResult]: ...


class ScreenInterpreter(Protocol):
    def interpret_screen(self, screenshot: Screenshot) -> ScreenAnalysis: ...

    def locate_answer(
        self, question: Question, analysis: ScreenAnalysis, answer_text: str
    ) -> AnswerLocation | None: ...


class Reasoner(Protocol):
    def choose_answer(self, question: Question, context: str) -> ReasoningOutcome: ...


ScreenshotListener = Callable[[Screenshot], None]
ConnectionListener = Callable[[bool], None]


class RemoteSession(Protocol):
    def connect(
        self,
        server_url: str,
        device_id: str,
        access_key: str,
        organization_id: str | None = None,
    ) -> ConnectionInfo: ...

    def disconnect(self) -> None: ...

    def connection_state(self) -> ConnectionState: ...

    def add_screenshot_listener(self, listener: ScreenshotListener) -> None: ...

    def add_connection_listener(self, listener: ConnectionListener) -> None: ...

    def click(self, x: int, y: int) -> None: ...

    def type_text(self, text: str) -> None: ...

    def drag_drop(self, start: Point, end: Point) -> None: ...
