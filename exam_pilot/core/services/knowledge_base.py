"""Knowledge base search used as the first answer-resolution stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from uuid import uuid4

from exam_pilot.constants.pipeline_constants import KNOWLEDGE_MIN_RESULT_SCORE
from exam_pilot.core.contracts import KnowledgeBackend, KnowledgeHit
from exam_pilot.core.models import utc_now

INSERTION_ORDER_KEY = "insertion_order"


@dataclass(frozen=True, slots=True)
class KnowledgeEntry:
    entry_id: str
    content: str
    exam_type: str
    insertion_order: int
    metadata: dict[str, object] = field(default_factory=dict)
    added_at: datetime = field(default_factory=utc_now)


class InMemoryKnowledgeBase:
    """Word-overlap search over entries partitioned by exam type."""

    def __init__(self, min_score: float = KNOWLEDGE_MIN_RESULT_SCORE) -> None:
        self._lock = Lock()
        self._entries: list[KnowledgeEntry] = []
        self._insertions = 0
        self._min_score = min_score

    def add(self, content: str, exam_type: str, metadata: dict[str, object] | None = None) -> KnowledgeEntry:
        cleaned = content.strip()
        if not cleaned:
            raise ValueError("Knowledge content must not be empty.")
        exam_type = exam_type.strip()
        if not exam_type:
            raise ValueError("Exam type must not be empty.")
        with self._lock:
            self._insertions += 1
            entry = KnowledgeEntry(
                entry_id=uuid4().hex,
                content=cleaned,
                exam_type=exam_type,
                insertion_order=self._insertions,
                metadata=dict(metadata or {}),
            )
            self._entries.append(entry)
            return entry

    def search(self, text: str, exam_type: str | None, limit: int) -> list[KnowledgeHit]:
        """Return up to ``limit`` hits, best score first, newest entry first on ties."""
        query_words = _words(text)
        with self._lock:
            entries = [e for e in self._entries if not exam_type or e.exam_type == exam_type]
        scored = [(jaccard_similarity(query_words, _words(e.content)), e) for e in entries]
        scored = [(score, e) for score, e in scored if score > self._min_score]
        scored.sort(key=lambda pair: (-pair[0], -pair[1].insertion_order))
        return [
            KnowledgeHit(
                content=entry.content,
                score=score,
                metadata={
                    **entry.metadata,
                    "exam_type": entry.exam_type,
                    "entry_id": entry.entry_id,
                    INSERTION_ORDER_KEY: entry.insertion_order,
                },
            )
            for score, entry in scored[:limit]
        ]

    def count(self, exam_type: str | None = None) -> int:
        with self._lock:
            return sum(1 for e in self._entries if exam_type is None or e.exam_type == exam_type)

    def exam_types(self) -> dict[str, int]:
        with self._lock:
            counts: dict[str, int] = {}
            for entry in self._entries:
                counts[entry.exam_type] = counts.get(entry.exam_type, 0) + 1
            return counts


def _words(text: str) -> set[str]:
    return set(text.lower().split())


def jaccard_similarity(left: set[str], right: set[str]) -> float:
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


@dataclass(frozen=True, slots=True)
class KnowledgeCandidate:
    content: str
    score: float
    metadata: dict[str, object]


class KnowledgeLookup:
    """Ranks backend hits for a question.

    Highest score wins; equal scores go to the most recently inserted entry
    when the backend reports insertion order, otherwise backend order is kept.
    """

    def __init__(self, backend: KnowledgeBackend) -> None:
        self._backend = backend

    def lookup(self, question_text: str, exam_type: str | None, limit: int) -> list[KnowledgeCandidate]:
        hits = self._backend.search(question_text, exam_type, limit)
        candidates: list[tuple[int, KnowledgeCandidate]] = []
        for position, hit in enumerate(hits):
            score = float(hit.score)
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"Knowledge backend returned an out-of-range score: {hit.score!r}")
            if not hit.content or not hit.content.strip():
                continue
            candidates.append(
                (position, KnowledgeCandidate(content=hit.content.strip(), score=score, metadata=dict(hit.metadata)))
            )
        candidates.sort(key=lambda pair: (-pair[1].score, -_insertion_order(pair[1]), pair[0]))
        return [candidate for _, candidate in candidates]


def _insertion_order(candidate: KnowledgeCandidate) -> int:
    value = candidate.metadata.get(INSERTION_ORDER_KEY, 0)
    return value if isinstance(value, int) else 0
