"""Optional web search used when the knowledge base has no confident match."""

from __future__ import annotations

import logging
import re
from typing import Any

import requests

from exam_pilot.constants.network_constants import (
    FIRECRAWL_SEARCH_URL,
    TAVILY_SEARCH_URL,
    WEB_SEARCH_RESULT_LIMIT,
)
from exam_pilot.core.contracts import WebResult
from exam_pilot.core.models import QuestionType

logger = logging.getLogger(__name__)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_MAX_ANSWER_CHARS = 200

_QUERY_SUFFIXES = {
    QuestionType.MULTIPLE_CHOICE: "multiple choice answer",
    QuestionType.SINGLE_CHOICE: "multiple choice answer",
    QuestionType.TRUE_FALSE: "true false answer",
    QuestionType.FILL_BLANK: "fill in the blank answer",
}


class WebSearchError(RuntimeError):
    """Raised when every configured provider failed."""


class WebFallbackSearch:
    """Queries Firecrawl first, then Tavily, and scores hits against the question."""

    def __init__(
        self,
        firecrawl_api_key: str | None = None,
        tavily_api_key: str | None = None,
        session: requests.Session | None = None,
        timeout_s: float = 30.0,
        limit: int = WEB_SEARCH_RESULT_LIMIT,
    ) -> None:
        self._firecrawl_key = (firecrawl_api_key or "").strip()
        self._tavily_key = (tavily_api_key or "").strip()
        self._session = session or requests.Session()
        self._timeout = timeout_s
        self._limit = limit

    def is_configured(self) -> bool:
        return bool(self._firecrawl_key or self._tavily_key)

    def search(self, question_text: str, question_type: QuestionType, confidence_cap: float) -> list[WebResult]:
        query = build_query(question_text, question_type)
        raw_hits: list[dict[str, str]] = []
        failures: list[str] = []

        if self._firecrawl_key:
            try:
                raw_hits = self._search_firecrawl(query)
            except (requests.RequestException, ValueError, KeyError) as exc:
                logger.warning("Firecrawl search failed: %s", exc)
                failures.append(f"firecrawl: {exc}")

        if not raw_hits and self._tavily_key:
            try:
                raw_hits = self._search_tavily(query)
            except (requests.RequestException, ValueError, KeyError) as exc:
                logger.warning("Tavily search failed: %s", exc)
                failures.append(f"tavily: {exc}")

        if not raw_hits and failures:
            raise WebSearchError("; ".join(failures))

        results = [
            score_hit(hit, question_text, confidence_cap)
            for hit in raw_hits
            if hit.get("content", "").strip()
        ]
        results.sort(key=lambda result: result.relevance, reverse=True)
        logger.info(
            "Web search returned %d results (top relevance %.2f)",
            len(results),
            results[0].relevance if results else 0.0,
        )
        return results

    def _search_firecrawl(self, query: str) -> list[dict[str, str]]:
        response = self._session.post(
            FIRECRAWL_SEARCH_URL,
            json={"query": query, "limit": self._limit, "scrapeOptions": {"formats": ["markdown"]}},
            headers={"Authorization": f"Bearer {self._firecrawl_key}"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        data: Any = response.json().get("data") or []
        return [
            {
                "title": str(item.get("title") or ""),
                "url": str(item.get("url") or ""),
                "content": str(item.get("markdown") or item.get("description") or ""),
                "provider": "firecrawl",
            }
            for item in data
            if isinstance(item, dict)
        ]

    def _search_tavily(self, query: str) -> list[dict[str, str]]:
        response = self._session.post(
            TAVILY_SEARCH_URL,
            json={"query": query, "max_results": self._limit, "include_raw_content": False},
            headers={"Authorization": f"Bearer {self._tavily_key}"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        data: Any = response.json().get("results") or []
        return [
            {
                "title": str(item.get("title") or ""),
                "url": str(item.get("url") or ""),
                "content": str(item.get("content") or ""),
                "provider": "tavily",
            }
            for item in data
            if isinstance(item, dict)
        ]


def build_query(question_text: str, question_type: QuestionType) -> str:
    suffix = _QUERY_SUFFIXES.get(question_type)
    if suffix is None:
        return question_text.strip()
    return f'"{question_text.strip()}" {suffix}'


def relevance_score(content: str, question_text: str) -> float:
    """Share of the question's words that also appear in the content.

    Words of three characters or fewer are ignored for matching but still
    count towards the total, so short filler-heavy questions score lower.
    """
    question_words = question_text.lower().split()
    if not question_words:
        return 0.0
    content_words = set(content.lower().split())
    matches = sum(1 for word in question_words if len(word) > 3 and word in content_words)
    return min(matches / len(question_words), 1.0)


def extract_answer(content: str, question_text: str) -> str:
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(content) if s.strip()]
    keywords = [word for word in question_text.lower().split() if len(word) > 3]
    for sentence in sentences:
        lowered = sentence.lower()
        if any(word in lowered for word in keywords):
            return sentence[:_MAX_ANSWER_CHARS]
    return ". ".join(sentences[:2])[:_MAX_ANSWER_CHARS]


def score_hit(hit: dict[str, str], question_text: str, confidence_cap: float) -> WebResult:
    content = hit.get("content", "")
    relevance = relevance_score(content, question_text)
    return WebResult(
        title=hit.get("title", ""),
        url=hit.get("url", ""),
        content=content,
        provider=hit.get("provider", ""),
        relevance=relevance,
        confidence=min(relevance, confidence_cap),
        extracted_answer=extract_answer(content, question_text),
    )
