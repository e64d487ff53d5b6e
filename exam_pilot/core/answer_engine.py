"""Answer resolution: knowledge lookup, web fallback and reasoning, then execution."""

from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
import logging
from threading import Lock
import time
from typing import Callable, TypeVar

from exam_pilot.core.config import PipelineConfig
from exam_pilot.core.contracts import Reasoner, RemoteSession, RemoteSessionError, ScreenInterpreter, WebSearch
from exam_pilot.core.events import SessionObserver
from exam_pilot.core.models import (
    ActionKind,
    AnswerLocation,
    AnswerSource,
    Point,
    Question,
    QuestionStatus,
    ResolutionResult,
    ScreenAnalysis,
)
from exam_pilot.core.services.knowledge_base import KnowledgeLookup

logger = logging.getLogger(__name__)

T = TypeVar("T")

ExecutionGate = Callable[[], "str | None"]


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """What one stage produced: maybe a result, plus snippets for later stages."""

    result: ResolutionResult | None = None
    context: tuple[str, ...] = ()


class ResolutionStage:
    """One step of the fallback chain.

    A stage's result ends the chain when its confidence reaches the similarity
    threshold. The final stage always ends it.
    """

    name = "stage"
    final = False

    def is_enabled(self, cfg: PipelineConfig) -> bool:
        return True

    def timeout(self, cfg: PipelineConfig) -> float:
        raise NotImplementedError

    def run(
        self, question: Question, exam_type: str, cfg: PipelineConfig, context: tuple[str, ...]
    ) -> StageOutcome:
        raise NotImplementedError


class KnowledgeStage(ResolutionStage):
    name = "knowledge"

    def __init__(self, lookup: KnowledgeLookup) -> None:
        self._lookup = lookup

    def timeout(self, cfg: PipelineConfig) -> float:
        return cfg.lookup_timeout_s

    def run(
        self, question: Question, exam_type: str, cfg: PipelineConfig, context: tuple[str, ...]
    ) -> StageOutcome:
        candidates = self._lookup.lookup(question.text, exam_type, cfg.knowledge_max_results)
        if not candidates:
            return StageOutcome()
        snippets = tuple(candidate.content for candidate in candidates)
        best = candidates[0]
        result = ResolutionResult(
            answer=best.content,
            confidence=best.score,
            source=AnswerSource.KNOWLEDGE,
            context=snippets,
        )
        return StageOutcome(result=result, context=snippets)


class WebStage(ResolutionStage):
    name = "web"

    def __init__(self, search: WebSearch | None) -> None:
        self._search = search

    def is_enabled(self, cfg: PipelineConfig) -> bool:
        return cfg.web_search_enabled and self._search is not None and self._search.is_configured()

    def timeout(self, cfg: PipelineConfig) -> float:
        return cfg.web_search_timeout_s

    def run(
        self, question: Question, exam_type: str, cfg: PipelineConfig, context: tuple[str, ...]
    ) -> StageOutcome:
        if self._search is None:
            return StageOutcome()
        hits = [
            hit
            for hit in self._search.search(question.text, question.question_type, cfg.web_confidence_cap)
            if hit.extracted_answer.strip()
        ]
        if not hits:
            return StageOutcome()
        snippets = tuple(hit.extracted_answer for hit in hits)
        best = hits[0]
        result = ResolutionResult(
            answer=best.extracted_answer,
            confidence=best.confidence,
            source=AnswerSource.WEB,
            rationale=f"{best.provider}: {best.url}" if best.url else best.provider,
            context=snippets,
        )
        return StageOutcome(result=result, context=snippets)


class ReasoningStage(ResolutionStage):
    name = "reasoning"
    final = True

    def __init__(self, reasoner: Reasoner) -> None:
        self._reasoner = reasoner

    def timeout(self, cfg: PipelineConfig) -> float:
        return cfg.reasoning_timeout_s

    def run(
        self, question: Question, exam_type: str, cfg: PipelineConfig, context: tuple[str, ...]
    ) -> StageOutcome:
        outcome = self._reasoner.choose_answer(question, "\n\n".join(context))
        result = ResolutionResult(
            answer=outcome.answer,
            confidence=outcome.confidence,
            source=AnswerSource.REASONING,
            rationale=outcome.rationale or None,
            context=context,
        )
        return StageOutcome(result=result)


class AnswerResolutionEngine:
    """Drives one question from ``detected`` to a settled state.

    Only one question may be resolving at a time. A second concurrent call is
    refused and its question abandoned rather than resolved in parallel.
    """

    def __init__(
        self,
        knowledge: KnowledgeLookup,
        reasoner: Reasoner,
        interpreter: ScreenInterpreter,
        remote: RemoteSession,
        web_search: WebSearch | None = None,
        observers: SessionObserver | None = None,
        executor: Executor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._interpreter = interpreter
        self._remote = remote
        self._observers = observers or SessionObserver()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="resolution")
        self._sleep = sleep
        self._in_flight = Lock()
        self.stages: list[ResolutionStage] = [
            KnowledgeStage(knowledge),
            WebStage(web_search),
            ReasoningStage(reasoner),
        ]

    def resolve(
        self,
        question: Question,
        analysis: ScreenAnalysis,
        cfg: PipelineConfig,
        exam_type: str,
        execution_gate: ExecutionGate | None = None,
    ) -> QuestionStatus:
        """Resolve ``question`` and, if allowed, enter the answer on screen.

        ``execution_gate`` is consulted right before any side effect; a
        non-empty reason it returns skips execution and abandons the question.
        Never raises: every failure ends in ``uncertain`` or ``abandoned``.
        """
        if not self._in_flight.acquire(blocking=False):
            logger.error("Refusing to resolve question %s while another is in flight", question.id)
            self._abandon(question, "another question was already being resolved")
            return question.status

        try:
            question.advance(QuestionStatus.RESOLVING)
            logger.info("Resolving question %s: %r", question.id, question.text[:80])
            result = self._run_chain(question, exam_type, cfg)
            if result is None:
                self._mark_uncertain(question, "no resolution stage produced an answer")
                return question.status

            question.result = result
            if result.confidence < cfg.execution_confidence_threshold:
                self._mark_uncertain(
                    question,
                    f"confidence {result.confidence:.2f} below execution threshold "
                    f"{cfg.execution_confidence_threshold:.2f}",
                )
                return question.status

            question.advance(QuestionStatus.ANSWERED)
            logger.info(
                "Question %s answered from %s with confidence %.2f",
                question.id,
                result.source.value,
                result.confidence,
            )
            self._observers.on_resolved(question, result)
            self._execute(question, analysis, result, cfg, execution_gate)
        except Exception:
            logger.exception("Unexpected error while resolving question %s", question.id)
            if not question.status.is_settled:
                self._abandon(question, "internal error during resolution")
        finally:
            self._in_flight.release()
        return question.status

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # --- Internals ---

    def _run_chain(self, question: Question, exam_type: str, cfg: PipelineConfig) -> ResolutionResult | None:
        context: tuple[str, ...] = ()
        for stage in self.stages:
            if not stage.is_enabled(cfg):
                continue
            outcome = self._call(
                stage.name,
                lambda stage=stage, context=context: stage.run(question, exam_type, cfg, context),
                stage.timeout(cfg),
            )
            if outcome is None:
                continue
            context = context + tuple(s for s in outcome.context if s not in context)
            result = outcome.result
            if result is None:
                logger.info("Stage %s found nothing for question %s", stage.name, question.id)
                continue
            if stage.final or result.confidence >= cfg.similarity_threshold:
                return result
            logger.info(
                "Stage %s score %.2f below similarity threshold %.2f",
                stage.name,
                result.confidence,
                cfg.similarity_threshold,
            )
        return None

    def _execute(
        self,
        question: Question,
        analysis: ScreenAnalysis,
        result: ResolutionResult,
        cfg: PipelineConfig,
        execution_gate: ExecutionGate | None,
    ) -> None:
        blocked = execution_gate() if execution_gate else None
        if blocked:
            self._abandon(question, blocked)
            return

        location = self._call(
            "locate",
            lambda: self._interpreter.locate_answer(question, analysis, result.answer),
            cfg.locate_timeout_s,
        )
        if location is None:
            self._abandon(question, "answer could not be located on screen")
            return
        question.location = location

        # Override may have been switched on while the target was being located.
        blocked = execution_gate() if execution_gate else None
        if blocked:
            self._abandon(question, blocked)
            return

        try:
            self._perform(location, result.answer)
        except RemoteSessionError as exc:
            self._abandon(question, f"remote action rejected: {exc}")
            return

        question.advance(QuestionStatus.EXECUTED)
        logger.info(
            "Executed %s at (%d, %d) for question %s",
            location.action.value,
            location.x,
            location.y,
            question.id,
        )
        self._observers.on_executed(question, location)
        if cfg.post_action_delay_s > 0:
            self._sleep(cfg.post_action_delay_s)

    def _perform(self, location: AnswerLocation, answer: str) -> None:
        if location.action is ActionKind.DRAG:
            if location.drop_to is None:
                raise RemoteSessionError("Drag action has no drop target.")
            self._remote.drag_drop(Point(location.x, location.y), location.drop_to)
        elif location.action is ActionKind.TYPE:
            self._remote.click(location.x, location.y)
            self._remote.type_text(answer)
        else:
            self._remote.click(location.x, location.y)

    def _call(self, label: str, fn: Callable[[], T], timeout: float) -> T | None:
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning("%s call timed out after %.1fs", label, timeout)
        except Exception as exc:
            logger.warning("%s call failed: %s", label, exc)
        return None

    def _mark_uncertain(self, question: Question, reason: str) -> None:
        question.advance(QuestionStatus.UNCERTAIN, reason)
        logger.warning("Question %s is uncertain: %s", question.id, reason)
        self._observers.on_uncertain(question, reason)

    def _abandon(self, question: Question, reason: str) -> None:
        question.abandon(reason)
        logger.warning("Question %s abandoned: %s", question.id, reason)
        self._observers.on_uncertain(question, reason)
