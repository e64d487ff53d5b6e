"""Hand-written collaborators for driving the pipeline in tests."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Event, Lock

import requests

from exam_pilot.core.answer_engine import AnswerResolutionEngine
from exam_pilot.core.config import ConfigStore, PipelineConfig
from exam_pilot.core.contracts import (
    KnowledgeHit,
    NotConnectedError,
    ReasoningOutcome,
    WebResult,
)
from exam_pilot.core.events import ObserverHub, RecentEventLog, SessionObserver
from exam_pilot.core.models import (
    AnswerLocation,
    ConnectionInfo,
    ConnectionState,
    Option,
    Point,
    Question,
    QuestionDraft,
    QuestionType,
    ResolutionResult,
    ScreenAnalysis,
    Screenshot,
)
from exam_pilot.core.services.knowledge_base import KnowledgeLookup
from exam_pilot.core.services.record_store import InMemoryRecordStore
from exam_pilot.core.session_controller import SessionController

WAIT = 5.0


def make_analysis(
    text: str = "What is the capital of France?",
    options: tuple[str, ...] = ("Paris", "London", "Berlin"),
    confidence: float = 0.9,
    question_type: QuestionType = QuestionType.MULTIPLE_CHOICE,
) -> ScreenAnalysis:
    parsed = tuple(
        Option(text=option, identifier=chr(65 + index), position=Point(100, 200 + 50 * index))
        for index, option in enumerate(options)
    )
    return ScreenAnalysis(
        question=QuestionDraft(text=text, question_type=question_type, options=parsed),
        confidence=confidence,
        ui_elements={"answer_input": Point(300, 400)},
    )


def make_question(analysis: ScreenAnalysis | None = None, sequence: int = 1) -> Question:
    analysis = analysis or make_analysis()
    assert analysis.question is not None
    return Question.from_draft(analysis.question, analysis.confidence, sequence)


def frame(tag: str) -> Screenshot:
    return Screenshot(image=tag.encode())


def fast_config(**overrides: object) -> PipelineConfig:
    values: dict[str, object] = {
        "post_action_delay_s": 0.0,
        "interpretation_timeout_s": WAIT,
        "lookup_timeout_s": WAIT,
        "web_search_timeout_s": WAIT,
        "reasoning_timeout_s": WAIT,
        "locate_timeout_s": WAIT,
    }
    values.update(overrides)
    return PipelineConfig(**values)


class FakeRemote:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.device_id = "device-1"
        self.calls: list[tuple[object, ...]] = []
        self.fail_with: Exception | None = None
        self.reject_connect: Exception | None = None
        self.screenshot_listeners: list = []
        self.connection_listeners: list = []

    def connect(self, server_url, device_id, access_key, organization_id=None) -> ConnectionInfo:
        if self.reject_connect is not None:
            raise self.reject_connect
        self.device_id = device_id
        self.set_connected(True)
        return ConnectionInfo(session_id="viewer_test", device_id=device_id, connection_url=server_url)

    def disconnect(self) -> None:
        self.set_connected(False)

    def connection_state(self) -> ConnectionState:
        return ConnectionState(connected=self.connected, device_id=self.device_id)

    def add_screenshot_listener(self, listener) -> None:
        self.screenshot_listeners.append(listener)

    def add_connection_listener(self, listener) -> None:
        self.connection_listeners.append(listener)

    def click(self, x: int, y: int) -> None:
        self._check()
        self.calls.append(("click", x, y))

    def type_text(self, text: str) -> None:
        self._check()
        self.calls.append(("type", text))

    def drag_drop(self, start: Point, end: Point) -> None:
        self._check()
        self.calls.append(("drag", start, end))

    # Test helpers

    def push(self, screenshot: Screenshot) -> None:
        for listener in list(self.screenshot_listeners):
            listener(screenshot)

    def set_connected(self, connected: bool) -> None:
        changed = self.connected != connected
        self.connected = connected
        if changed:
            for listener in list(self.connection_listeners):
                listener(connected)

    def _check(self) -> None:
        if not self.connected:
            raise NotConnectedError("not connected")
        if self.fail_with is not None:
            raise self.fail_with


class FakeInterpreter:
    """Returns canned analyses; ``hold`` pauses interpretation until set."""

    def __init__(self, analysis: ScreenAnalysis | None = None) -> None:
        self.analysis = analysis or make_analysis()
        self.by_image: dict[bytes, ScreenAnalysis | Exception] = {}
        self.location: AnswerLocation | None = AnswerLocation(x=100, y=200)
        self.interpret_calls: list[bytes] = []
        self.locate_calls: list[tuple[str, str]] = []
        self.hold: Event | None = None
        self.entered = Event()
        self.locate_hook = None

    def interpret_screen(self, screenshot: Screenshot) -> ScreenAnalysis:
        self.interpret_calls.append(screenshot.image)
        self.entered.set()
        if self.hold is not None:
            self.hold.wait(WAIT)
        outcome = self.by_image.get(screenshot.image, self.analysis)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def locate_answer(self, question: Question, analysis: ScreenAnalysis, answer_text: str) -> AnswerLocation | None:
        self.locate_calls.append((question.id, answer_text))
        if self.locate_hook is not None:
            self.locate_hook()
        return self.location


class FakeKnowledgeBackend:
    def __init__(self, hits: list[KnowledgeHit] | None = None) -> None:
        self.hits = hits or []
        self.calls: list[tuple[str, str | None, int]] = []
        self._lock = Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.hold: Event | None = None

    def search(self, text: str, exam_type: str | None, limit: int) -> list[KnowledgeHit]:
        with self._lock:
            self.calls.append((text, exam_type, limit))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.hold is not None:
                self.hold.wait(WAIT)
            return list(self.hits)
        finally:
            with self._lock:
                self.in_flight -= 1


class FakeReasoner:
    def __init__(self, outcome: ReasoningOutcome | Exception | None = None) -> None:
        self.outcome = outcome or ReasoningOutcome(answer="Paris", confidence=0.95, rationale="known fact")
        self.calls: list[tuple[str, str]] = []
        self.hold: Event | None = None
        self.entered = Event()

    def choose_answer(self, question: Question, context: str) -> ReasoningOutcome:
        self.calls.append((question.id, context))
        self.entered.set()
        if self.hold is not None:
            self.hold.wait(WAIT)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeWebSearch:
    def __init__(self, results: list[WebResult] | None = None, configured: bool = True) -> None:
        self.results = results or []
        self.configured = configured
        self.calls: list[tuple[str, QuestionType, float]] = []

    def is_configured(self) -> bool:
        return self.configured

    def search(self, question_text: str, question_type: QuestionType, confidence_cap: float) -> list[WebResult]:
        self.calls.append((question_text, question_type, confidence_cap))
        return list(self.results)


class RecordingObserver(SessionObserver):
    """Collects every notification as a tuple, with the question status at that moment."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.events: list[tuple[object, ...]] = []

    def on_screenshot(self, screenshot: Screenshot) -> None:
        self._add(("screenshot", screenshot.image))

    def on_question_detected(self, question: Question) -> None:
        self._add(("detected", question.id, question.status.value))

    def on_resolved(self, question: Question, result: ResolutionResult) -> None:
        self._add(("resolved", question.id, question.status.value, result.source.value))

    def on_executed(self, question: Question, location: AnswerLocation) -> None:
        self._add(("executed", question.id, question.status.value))

    def on_uncertain(self, question: Question, reason: str) -> None:
        self._add(("uncertain", question.id, question.status.value, reason))

    def on_session_event(self, kind: str, payload: dict[str, object]) -> None:
        self._add(("session", kind, dict(payload)))

    def kinds(self) -> list[object]:
        with self._lock:
            return [event[0] for event in self.events]

    def session_kinds(self) -> list[object]:
        with self._lock:
            return [event[1] for event in self.events if event[0] == "session"]

    def _add(self, event: tuple[object, ...]) -> None:
        with self._lock:
            self.events.append(event)


def hit(content: str, score: float, order: int | None = None) -> KnowledgeHit:
    metadata: dict[str, object] = {} if order is None else {"insertion_order": order}
    return KnowledgeHit(content=content, score=score, metadata=metadata)


def web_result(answer: str, confidence: float) -> WebResult:
    return WebResult(
        title="Result",
        url="https://example.org/answer",
        content=answer,
        provider="firecrawl",
        relevance=confidence,
        confidence=confidence,
        extracted_answer=answer,
    )


@dataclass
class Pipeline:
    controller: SessionController
    engine: AnswerResolutionEngine
    remote: FakeRemote
    interpreter: FakeInterpreter
    knowledge: FakeKnowledgeBackend
    reasoner: FakeReasoner
    web: FakeWebSearch
    observer: RecordingObserver
    event_log: RecentEventLog
    records: InMemoryRecordStore
    config: ConfigStore
    executor: ThreadPoolExecutor

    def close(self) -> None:
        self.controller.shutdown(timeout=WAIT)
        self.executor.shutdown(wait=False, cancel_futures=True)


def make_pipeline(
    connected: bool = True,
    config: PipelineConfig | None = None,
    hits: list[KnowledgeHit] | None = None,
    reasoning: ReasoningOutcome | Exception | None = None,
) -> Pipeline:
    remote = FakeRemote(connected=connected)
    interpreter = FakeInterpreter()
    knowledge = FakeKnowledgeBackend(hits)
    reasoner = FakeReasoner(reasoning)
    web = FakeWebSearch()
    observer = RecordingObserver()
    event_log = RecentEventLog()
    hub = ObserverHub([observer, event_log])
    records = InMemoryRecordStore()
    store = ConfigStore(config or fast_config())
    executor = ThreadPoolExecutor(max_workers=4)
    engine = AnswerResolutionEngine(
        knowledge=KnowledgeLookup(knowledge),
        reasoner=reasoner,
        interpreter=interpreter,
        remote=remote,
        web_search=web,
        observers=hub,
        executor=executor,
        sleep=lambda _: None,
    )
    controller = SessionController(
        remote=remote,
        interpreter=interpreter,
        engine=engine,
        config_store=store,
        observers=hub,
        record_store=records,
        executor=executor,
        default_exam_type="geography",
    )
    return Pipeline(
        controller=controller,
        engine=engine,
        remote=remote,
        interpreter=interpreter,
        knowledge=knowledge,
        reasoner=reasoner,
        web=web,
        observer=observer,
        event_log=event_log,
        records=records,
        config=store,
        executor=executor,
    )


class StubResponse:
    def __init__(
        self,
        status_code: int = 200,
        json_data: object = None,
        text: str = "",
        content: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.content = content
        self.headers = headers or {}

    def json(self) -> object:
        if self._json is None:
            raise ValueError("Response body is not JSON.")
        return self._json

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class StubHttpSession:
    """Answers requests from a route table; a route's last response repeats."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[StubResponse | Exception]] = {}
        self.requests: list[tuple[str, str, dict[str, object]]] = []
        self._lock = Lock()

    def add(self, method: str, url: str, *responses: StubResponse | Exception) -> None:
        self.routes.setdefault((method, url), []).extend(responses)

    def get(self, url: str, **kwargs: object) -> StubResponse:
        return self._handle("GET", url, kwargs)

    def post(self, url: str, **kwargs: object) -> StubResponse:
        return self._handle("POST", url, kwargs)

    def sent(self, method: str, url: str) -> list[dict[str, object]]:
        with self._lock:
            return [kwargs for m, u, kwargs in self.requests if m == method and u == url]

    def _handle(self, method: str, url: str, kwargs: dict[str, object]) -> StubResponse:
        with self._lock:
            self.requests.append((method, url, kwargs))
            queue = self.routes.get((method, url))
            if not queue:
                raise requests.ConnectionError(f"No route for {method} {url}")
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

