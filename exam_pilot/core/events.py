"""Observer interface used by the controller and engine to report progress."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
import logging
from threading import Lock

from exam_pilot.constants.pipeline_constants import RECENT_EVENT_LIMIT
from exam_pilot.core.models import AnswerLocation, Question, ResolutionResult, Screenshot, utc_now

logger = logging.getLogger(__name__)


class SessionObserver:
    """Receives pipeline notifications. Every hook defaults to a no-op.

    Hooks run synchronously on the thread that produced the event, so
    implementations must return quickly.
    """

    def on_screenshot(self, screenshot: Screenshot) -> None:
        pass

    def on_question_detected(self, question: Question) -> None:
        pass

    def on_resolved(self, question: Question, result: ResolutionResult) -> None:
        pass

    def on_executed(self, question: Question, location: AnswerLocation) -> None:
        pass

    def on_uncertain(self, question: Question, reason: str) -> None:
        pass

    def on_session_event(self, kind: str, payload: dict[str, object]) -> None:
        pass


class ObserverHub(SessionObserver):
    """Fans notifications out to registered observers, isolating their failures."""

    def __init__(self, observers: list[SessionObserver] | None = None) -> None:
        self._lock = Lock()
        self._observers: list[SessionObserver] = list(observers or [])

    def add(self, observer: SessionObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def remove(self, observer: SessionObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def on_screenshot(self, screenshot: Screenshot) -> None:
        self._dispatch("on_screenshot", screenshot)

    def on_question_detected(self, question: Question) -> None:
        self._dispatch("on_question_detected", question)

    def on_resolved(self, question: Question, result: ResolutionResult) -> None:
        self._dispatch("on_resolved", question, result)

    def on_executed(self, question: Question, location: AnswerLocation) -> None:
        self._dispatch("on_executed", question, location)

    def on_uncertain(self, question: Question, reason: str) -> None:
        self._dispatch("on_uncertain", question, reason)

    def on_session_event(self, kind: str, payload: dict[str, object]) -> None:
        self._dispatch("on_session_event", kind, payload)

    def _dispatch(self, hook: str, *args: object) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                getattr(observer, hook)(*args)
            except Exception:
                logger.exception("Observer %r failed in %s", observer, hook)


@dataclass(frozen=True, slots=True)
class SessionEvent:
    sequence: int
    kind: str
    payload: dict[str, object]
    timestamp: datetime = field(default_factory=utc_now)


class RecentEventLog(SessionObserver):
    """Bounded in-memory feed of pipeline events for the operator API.

    Frames are logged as metadata only; the most recent frame itself is kept
    separately so a dashboard can poll it.
    """

    def __init__(self, limit: int = RECENT_EVENT_LIMIT) -> None:
        self._lock = Lock()
        self._events: deque[SessionEvent] = deque(maxlen=limit)
        self._sequence = 0
        self._latest_screenshot: Screenshot | None = None

    def events_after(self, sequence: int = 0) -> list[SessionEvent]:
        with self._lock:
            return [event for event in self._events if event.sequence > sequence]

    def latest_screenshot(self) -> Screenshot | None:
        with self._lock:
            return self._latest_screenshot

    def on_screenshot(self, screenshot: Screenshot) -> None:
        with self._lock:
            self._latest_screenshot = screenshot
        self._append(
            "screenshot",
            {"captured_at": screenshot.captured_at.isoformat(), "bytes": len(screenshot.image)},
        )

    def on_question_detected(self, question: Question) -> None:
        self._append("question_detected", _question_payload(question))

    def on_resolved(self, question: Question, result: ResolutionResult) -> None:
        payload = _question_payload(question)
        payload.update(
            answer=result.answer,
            confidence=result.confidence,
            source=result.source.value,
            rationale=result.rationale,
        )
        self._append("answer_resolved", payload)

    def on_executed(self, question: Question, location: AnswerLocation) -> None:
        payload = _question_payload(question)
        payload.update(action=location.action.value, x=location.x, y=location.y)
        self._append("action_executed", payload)

    def on_uncertain(self, question: Question, reason: str) -> None:
        payload = _question_payload(question)
        payload["reason"] = reason
        if question.result is not None:
            payload.update(answer=question.result.answer, confidence=question.result.confidence)
        self._append("uncertainty", payload)

    def on_session_event(self, kind: str, payload: dict[str, object]) -> None:
        self._append(kind, dict(payload))

    def _append(self, kind: str, payload: dict[str, object]) -> None:
        with self._lock:
            self._sequence += 1
            self._events.append(SessionEvent(sequence=self._sequence, kind=kind, payload=payload))


def _question_payload(question: Question) -> dict[str, object]:
    return {
        "question_id": question.id,
        "sequence": question.sequence,
        "text": question.text,
        "question_type": question.question_type.value,
        "status": question.status.value,
    }
