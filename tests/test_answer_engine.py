from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Event, Thread

import pytest

from exam_pilot.core.answer_engine import AnswerResolutionEngine, WebStage
from exam_pilot.core.contracts import ReasoningOutcome, RemoteSessionError
from exam_pilot.core.models import (
    ActionKind,
    AnswerLocation,
    AnswerSource,
    Point,
    QuestionStatus,
    QuestionType,
)
from exam_pilot.core.services.knowledge_base import KnowledgeLookup
from tests.fakes import (
    WAIT,
    FakeInterpreter,
    FakeKnowledgeBackend,
    FakeReasoner,
    FakeRemote,
    FakeWebSearch,
    RecordingObserver,
    fast_config,
    hit,
    make_analysis,
    make_question,
    web_result,
)


class Rig:
    def __init__(self, hits=None, reasoning=None, web_results=None, web_configured=True) -> None:
        self.knowledge = FakeKnowledgeBackend(hits)
        self.reasoner = FakeReasoner(reasoning)
        self.interpreter = FakeInterpreter()
        self.remote = FakeRemote()
        self.web = FakeWebSearch(web_results, configured=web_configured)
        self.observer = RecordingObserver()
        self.sleeps: list[float] = []
        self.executor = ThreadPoolExecutor(max_workers=4)
        self.engine = AnswerResolutionEngine(
            knowledge=KnowledgeLookup(self.knowledge),
            reasoner=self.reasoner,
            interpreter=self.interpreter,
            remote=self.remote,
            web_search=self.web,
            observers=self.observer,
            executor=self.executor,
            sleep=self.sleeps.append,
        )

    def resolve(self, question=None, cfg=None, gate=None, analysis=None):
        analysis = analysis or make_analysis()
        question = question or make_question(analysis)
        status = self.engine.resolve(question, analysis, cfg or fast_config(), "geography", gate)
        return question, status


def test_knowledge_hit_above_threshold_executes_without_reasoning():
    rig = Rig(hits=[hit("Paris", 0.92)])

    question, status = rig.resolve()

    assert status is QuestionStatus.EXECUTED
    assert question.result is not None
    assert question.result.source is AnswerSource.KNOWLEDGE
    assert question.result.confidence == 0.92
    assert rig.reasoner.calls == []
    assert rig.web.calls == []
    assert rig.remote.calls == [("click", 100, 200)]
    assert rig.knowledge.calls == [(question.text, "geography", 5)]
    assert [event[0] for event in rig.observer.events] == ["resolved", "executed"]
    assert rig.observer.events[0][2] == "answered"
    assert rig.observer.events[1][2] == "executed"


def test_low_reasoning_confidence_is_uncertain_and_never_acts():
    rig = Rig(hits=[], reasoning=ReasoningOutcome(answer="B", confidence=0.55))

    question, status = rig.resolve(cfg=fast_config(execution_confidence_threshold=0.8))

    assert status is QuestionStatus.UNCERTAIN
    assert question.result is not None
    assert question.result.answer == "B"
    assert question.result.source is AnswerSource.REASONING
    assert rig.remote.calls == []
    assert rig.interpreter.locate_calls == []
    assert rig.observer.kinds() == ["uncertain"]
    assert "below execution threshold" in question.outcome_reason


@pytest.mark.parametrize(
    ("confidence", "expected"),
    [(0.79, QuestionStatus.UNCERTAIN), (0.8, QuestionStatus.EXECUTED), (0.97, QuestionStatus.EXECUTED)],
)
def test_execution_gate_uses_final_stage_confidence(confidence, expected):
    rig = Rig(reasoning=ReasoningOutcome(answer="Paris", confidence=confidence))

    question, status = rig.resolve()

    assert status is expected
    if expected is QuestionStatus.EXECUTED:
        assert question.result.confidence >= 0.8
        assert rig.remote.calls
    else:
        assert rig.remote.calls == []


def test_knowledge_below_similarity_threshold_falls_through_with_context():
    rig = Rig(hits=[hit("Paris is the capital", 0.4)])

    question, status = rig.resolve()

    assert status is QuestionStatus.EXECUTED
    assert question.result.source is AnswerSource.REASONING
    assert rig.reasoner.calls == [(question.id, "Paris is the capital")]


def test_web_stage_runs_only_when_enabled_and_configured():
    rig = Rig(hits=[], web_results=[web_result("Paris", 0.8)])

    question, _ = rig.resolve(cfg=fast_config(web_search_enabled=False))
    assert rig.web.calls == []
    assert question.result.source is AnswerSource.REASONING

    question, status = rig.resolve(cfg=fast_config(web_search_enabled=True, web_confidence_cap=0.8))
    assert len(rig.web.calls) == 1
    assert rig.web.calls[0][1] is QuestionType.MULTIPLE_CHOICE
    assert rig.web.calls[0][2] == 0.8
    assert question.result.source is AnswerSource.WEB
    assert status is QuestionStatus.EXECUTED
    assert len(rig.reasoner.calls) == 1

    unconfigured = Rig(hits=[], web_configured=False)
    unconfigured.resolve(cfg=fast_config(web_search_enabled=True))
    assert unconfigured.web.calls == []


def test_web_stage_without_search_yields_nothing():
    stage = WebStage(None)
    cfg = fast_config(web_search_enabled=True)

    assert not stage.is_enabled(cfg)
    outcome = stage.run(make_question(), "geography", cfg, ("earlier snippet",))
    assert outcome.result is None
    assert outcome.context == ()


def test_weak_web_result_feeds_reasoning_context():
    rig = Rig(hits=[hit("Capital facts", 0.2)], web_results=[web_result("Paris is in France", 0.3)])

    question, _ = rig.resolve(cfg=fast_config(web_search_enabled=True))

    assert question.result.source is AnswerSource.REASONING
    context = rig.reasoner.calls[0][1]
    assert "Capital facts" in context
    assert "Paris is in France" in context


def test_failing_stages_are_skipped_and_total_failure_is_uncertain():
    rig = Rig(reasoning=RuntimeError("model offline"))
    rig.knowledge.hits = [hit("bad", 1.7)]

    question, status = rig.resolve()

    assert status is QuestionStatus.UNCERTAIN
    assert question.result is None
    assert len(rig.reasoner.calls) == 1
    assert rig.remote.calls == []


def test_stage_timeout_counts_as_no_result():
    rig = Rig(hits=[hit("Paris", 0.95)])
    rig.knowledge.hold = Event()

    question, status = rig.resolve(cfg=fast_config(lookup_timeout_s=0.05))
    rig.knowledge.hold.set()

    assert question.result.source is AnswerSource.REASONING
    assert status is QuestionStatus.EXECUTED


def test_missing_answer_location_abandons_and_keeps_answer():
    rig = Rig(hits=[hit("Paris", 0.92)])
    rig.interpreter.location = None

    question, status = rig.resolve()

    assert status is QuestionStatus.ABANDONED
    assert question.result.answer == "Paris"
    assert question.outcome_reason == "answer could not be located on screen"
    assert rig.remote.calls == []
    assert rig.observer.kinds() == ["resolved", "uncertain"]


def test_rejected_remote_action_abandons():
    rig = Rig(hits=[hit("Paris", 0.92)])
    rig.remote.fail_with = RemoteSessionError("input rejected")

    question, status = rig.resolve()

    assert status is QuestionStatus.ABANDONED
    assert "input rejected" in question.outcome_reason


def test_execution_gate_blocks_side_effects():
    rig = Rig(hits=[hit("Paris", 0.92)])

    question, status = rig.resolve(gate=lambda: "manual override enabled")

    assert status is QuestionStatus.ABANDONED
    assert question.outcome_reason == "manual override enabled"
    assert rig.interpreter.locate_calls == []
    assert rig.remote.calls == []


def test_gate_is_checked_again_after_locating():
    rig = Rig(hits=[hit("Paris", 0.92)])
    blocked: list[str] = []
    rig.interpreter.locate_hook = lambda: blocked.append("manual override enabled")

    question, status = rig.resolve(gate=lambda: blocked[0] if blocked else None)

    assert status is QuestionStatus.ABANDONED
    assert len(rig.interpreter.locate_calls) == 1
    assert rig.remote.calls == []


def test_text_entry_focuses_then_types():
    analysis = make_analysis(text="Name the capital of France", options=(), question_type=QuestionType.SHORT_ANSWER)
    rig = Rig(hits=[hit("Paris", 0.9)])
    rig.interpreter.location = AnswerLocation(x=300, y=400, action=ActionKind.TYPE)

    _, status = rig.resolve(analysis=analysis)

    assert status is QuestionStatus.EXECUTED
    assert rig.remote.calls == [("click", 300, 400), ("type", "Paris")]


def test_drag_action_uses_drop_target():
    rig = Rig(hits=[hit("Paris", 0.9)])
    rig.interpreter.location = AnswerLocation(x=10, y=20, action=ActionKind.DRAG, drop_to=Point(30, 40))

    rig.resolve()

    assert rig.remote.calls == [("drag", Point(10, 20), Point(30, 40))]


def test_post_action_delay_follows_execution():
    rig = Rig(hits=[hit("Paris", 0.9)])

    rig.resolve(cfg=fast_config(post_action_delay_s=1.5))

    assert rig.sleeps == [1.5]


def test_second_concurrent_resolution_is_refused():
    rig = Rig()
    rig.reasoner.hold = Event()
    first = make_question(sequence=1)
    outcome: dict[str, QuestionStatus] = {}

    worker = Thread(target=lambda: outcome.setdefault("first", rig.resolve(question=first)[1]))
    worker.start()
    assert rig.reasoner.entered.wait(WAIT)
    assert rig.engine.busy

    second, status = rig.resolve(question=make_question(sequence=2))
    rig.reasoner.hold.set()
    worker.join(WAIT)

    assert status is QuestionStatus.ABANDONED
    assert second.outcome_reason == "another question was already being resolved"
    assert outcome["first"] is QuestionStatus.EXECUTED
    assert len(rig.reasoner.calls) == 1
