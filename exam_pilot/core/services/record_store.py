"""Storage boundary for session and question records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Protocol

from exam_pilot.core.models import Question, SessionState


@dataclass(frozen=True, slots=True)
class QuestionRecord:
    """Snapshot of a question once automatic processing has settled."""

    question_id: str
    sequence: int
    text: str
    question_type: str
    options: tuple[str, ...]
    status: str
    detection_confidence: float
    detected_at: datetime
    settled_at: datetime | None
    answer: str | None
    confidence: float | None
    source: str | None
    rationale: str | None
    outcome_reason: str | None
    action: str | None
    x: int | None
    y: int | None

    @classmethod
    def from_question(cls, question: Question) -> QuestionRecord:
        result = question.result
        location = question.location
        return cls(
            question_id=question.id,
            sequence=question.sequence,
            text=question.text,
            question_type=question.question_type.value,
            options=tuple(option.text for option in question.options),
            status=question.status.value,
            detection_confidence=question.detection_confidence,
            detected_at=question.detected_at,
            settled_at=question.settled_at,
            answer=result.answer if result else None,
            confidence=result.confidence if result else None,
            source=result.source.value if result else None,
            rationale=result.rationale if result else None,
            outcome_reason=question.outcome_reason,
            action=location.action.value if location else None,
            x=location.x if location else None,
            y=location.y if location else None,
        )


@dataclass(frozen=True, slots=True)
class SessionRecord:
    session_id: str
    exam_type: str
    active: bool
    started_at: datetime | None
    ended_at: datetime | None
    question_count: int

    @classmethod
    def from_state(cls, state: SessionState) -> SessionRecord:
        return cls(
            session_id=state.session_id,
            exam_type=state.exam_type,
            active=state.active,
            started_at=state.started_at,
            ended_at=state.ended_at,
            question_count=len(state.history),
        )


class RecordStore(Protocol):
    def save_session(self, record: SessionRecord) -> None: ...

    def save_question(self, session_id: str, record: QuestionRecord) -> None: ...

    def get_session(self, session_id: str) -> SessionRecord | None: ...

    def list_questions(self, session_id: str) -> list[QuestionRecord]: ...

    def list_sessions(self) -> list[SessionRecord]: ...


class InMemoryRecordStore:
    """Keeps records for the lifetime of the process."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._sessions: dict[str, SessionRecord] = {}
        self._questions: dict[str, list[QuestionRecord]] = {}

    def save_session(self, record: SessionRecord) -> None:
        with self._lock:
            self._sessions[record.session_id] = record
            self._questions.setdefault(record.session_id, [])

    def save_question(self, session_id: str, record: QuestionRecord) -> None:
        with self._lock:
            records = self._questions.setdefault(session_id, [])
            # A re-saved question replaces its earlier snapshot.
            records[:] = [r for r in records if r.question_id != record.question_id]
            records.append(record)
            records.sort(key=lambda r: r.sequence)

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            return self._sessions.get(session_id)

    def list_questions(self, session_id: str) -> list[QuestionRecord]:
        with self._lock:
            return list(self._questions.get(session_id, []))

    def list_sessions(self) -> list[SessionRecord]:
        with self._lock:
            return sorted(
                self._sessions.values(),
                key=lambda r: r.started_at.timestamp() if r.started_at else 0.0,
            )
