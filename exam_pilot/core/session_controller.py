"""Session lifecycle, screenshot loop and manual-override arbitration."""

from __future__ import annotations

from bisect import insort
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
import logging
from threading import Lock, Thread
from uuid import uuid4

from exam_pilot.constants.pipeline_constants import DEFAULT_EXAM_TYPE
from exam_pilot.core.answer_engine import AnswerResolutionEngine
from exam_pilot.core.config import ConfigStore, PipelineConfig
from exam_pilot.core.contracts import RemoteSession, ScreenInterpreter
from exam_pilot.core.events import ObserverHub
from exam_pilot.core.models import (
    ConnectionInfo,
    Question,
    QuestionStatus,
    ScreenAnalysis,
    Screenshot,
    SessionState,
    question_fingerprint,
    utc_now,
)
from exam_pilot.core.services.frame_slot import LatestFrameSlot
from exam_pilot.core.services.record_store import (
    InMemoryRecordStore,
    QuestionRecord,
    RecordStore,
    SessionRecord,
)

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Raised when a session operation is not possible in the current state."""


@dataclass(frozen=True, slots=True)
class ControllerStatus:
    connected: bool
    device_id: str | None
    session_id: str | None
    active: bool
    manual_override: bool
    exam_type: str
    questions_handled: int
    frame_pending: bool
    dropped_frames: int
    current_question_id: str | None
    current_question_status: str | None


class SessionController:
    """Runs the screenshot -> interpret -> resolve loop for one device.

    Frames are handed to a single worker thread through a one-entry slot, so
    at most one frame is being processed and at most one waits behind it.
    Screenshot reception never blocks on model or network calls.
    """

    def __init__(
        self,
        remote: RemoteSession,
        interpreter: ScreenInterpreter,
        engine: AnswerResolutionEngine,
        config_store: ConfigStore | None = None,
        observers: ObserverHub | None = None,
        record_store: RecordStore | None = None,
        executor: Executor | None = None,
        default_exam_type: str = DEFAULT_EXAM_TYPE,
    ) -> None:
        self._remote = remote
        self._interpreter = interpreter
        self._engine = engine
        self._config = config_store or ConfigStore()
        self._observers = observers or ObserverHub()
        self._records = record_store or InMemoryRecordStore()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="interpret")

        self._lock = Lock()
        self._state = SessionState.idle(default_exam_type)
        self._connected = remote.connection_state().connected
        self._slot: LatestFrameSlot | None = None
        self._worker: Thread | None = None
        self._current: Question | None = None
        self._last_fingerprint: str | None = None
        self._sequence = 0

        remote.add_screenshot_listener(self.handle_incoming_screenshot)
        remote.add_connection_listener(self._on_connection_changed)

    @property
    def observers(self) -> ObserverHub:
        return self._observers

    @property
    def records(self) -> RecordStore:
        return self._records

    def config(self) -> PipelineConfig:
        return self._config.snapshot()

    # --- Connection ---

    def connect(
        self,
        server_url: str,
        device_id: str,
        access_key: str,
        organization_id: str | None = None,
    ) -> ConnectionInfo:
        info = self._remote.connect(server_url, device_id, access_key, organization_id)
        with self._lock:
            self._connected = True
        self._observers.on_session_event(
            "connected", {"device_id": info.device_id, "remote_session_id": info.session_id}
        )
        return info

    def disconnect(self) -> None:
        self.stop_session()
        self._remote.disconnect()
        with self._lock:
            self._connected = False

    # --- Session lifecycle ---

    def start_session(self, exam_type: str | None = None) -> str:
        if exam_type is not None and not exam_type.strip():
            raise ValueError("Exam type must not be empty.")
        with self._lock:
            self._ensure_can_start()
            previous = self._worker

        # The previous session's worker may still be finishing its last cycle.
        if previous is not None and previous.is_alive():
            previous.join()

        with self._lock:
            self._ensure_can_start()
            state = SessionState(
                session_id=uuid4().hex,
                exam_type=(exam_type or self._state.exam_type).strip(),
                active=True,
                manual_override=self._state.manual_override,
                started_at=utc_now(),
            )
            slot = LatestFrameSlot()
            worker = Thread(
                target=self._run_worker,
                args=(slot, state),
                name=f"ExamSession-{state.session_id[:8]}",
                daemon=True,
            )
            self._state = state
            self._slot = slot
            self._worker = worker
            self._current = None
            self._last_fingerprint = None
            self._sequence = 0
            worker.start()

        self._records.save_session(SessionRecord.from_state(state))
        logger.info("Session %s started for exam type %r", state.session_id, state.exam_type)
        self._observers.on_session_event(
            "session_started", {"session_id": state.session_id, "exam_type": state.exam_type}
        )
        return state.session_id

    def stop_session(self) -> SessionState:
        with self._lock:
            state = self._state
            if not state.active:
                return state.snapshot()
            state.active = False
            state.ended_at = utc_now()
            if self._slot is not None:
                self._slot.close()
            snapshot = state.snapshot()
            self._records.save_session(SessionRecord.from_state(snapshot))

        logger.info("Session %s stopped after %d questions", snapshot.session_id, len(snapshot.history))
        self._observers.on_session_event(
            "session_stopped",
            {"session_id": snapshot.session_id, "questions": len(snapshot.history)},
        )
        return snapshot

    def set_manual_override(self, enabled: bool, reason: str | None = None) -> None:
        with self._lock:
            changed = self._state.manual_override != enabled
            self._state.manual_override = enabled
            if not enabled:
                # Lets the operator hand the question on screen back to automation.
                self._last_fingerprint = None
        if not changed:
            return
        if reason:
            logger.warning("Manual override %s: %s", "enabled" if enabled else "cleared", reason)
        else:
            logger.info("Manual override %s", "enabled" if enabled else "cleared")
        self._observers.on_session_event("override_changed", {"enabled": enabled, "reason": reason})

    def set_exam_type(self, exam_type: str) -> None:
        exam_type = exam_type.strip()
        if not exam_type:
            raise ValueError("Exam type must not be empty.")
        with self._lock:
            self._state.exam_type = exam_type
        logger.info("Exam type set to %r", exam_type)
        self._observers.on_session_event("exam_type_changed", {"exam_type": exam_type})

    def update_config(self, **changes: object) -> PipelineConfig:
        cfg = self._config.update(**changes)
        logger.info("Configuration updated: %s", ", ".join(sorted(changes)))
        self._observers.on_session_event("config_updated", {key: getattr(cfg, key) for key in changes})
        return cfg

    # --- Frames ---

    def handle_incoming_screenshot(self, screenshot: Screenshot) -> None:
        """Forward a frame to observers and queue it for processing."""
        self._observers.on_screenshot(screenshot)
        with self._lock:
            slot = self._slot if self._state.active and self._connected else None
        if slot is None:
            return
        if slot.offer(screenshot):
            logger.debug("Replaced a pending frame with a newer one")

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        with self._lock:
            slot = self._slot
        if slot is None:
            return True
        return slot.wait_until_idle(timeout)

    # --- Manual actions ---

    def manual_click(self, x: int, y: int) -> None:
        self._remote.click(x, y)
        self._observers.on_session_event("manual_action", {"action": "click", "x": x, "y": y})

    def manual_type(self, text: str) -> None:
        self._remote.type_text(text)
        self._observers.on_session_event("manual_action", {"action": "type", "length": len(text)})

    # --- Queries ---

    def status(self) -> ControllerStatus:
        connection = self._remote.connection_state()
        with self._lock:
            state = self._state
            slot = self._slot
            current = self._current
            return ControllerStatus(
                connected=self._connected,
                device_id=connection.device_id,
                session_id=state.session_id or None,
                active=state.active,
                manual_override=state.manual_override,
                exam_type=state.exam_type,
                questions_handled=len(state.history),
                frame_pending=slot.has_pending if slot is not None else False,
                dropped_frames=slot.dropped_count if slot is not None else 0,
                current_question_id=current.id if current is not None else None,
                current_question_status=current.status.value if current is not None else None,
            )

    def history(self) -> list[Question]:
        with self._lock:
            return list(self._state.history)

    def session_state(self) -> SessionState:
        with self._lock:
            return self._state.snapshot()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        self.stop_session()
        worker = self._worker
        if worker is not None and worker.is_alive():
            worker.join(timeout)
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._engine.shutdown()

    # --- Internals ---

    def _ensure_can_start(self) -> None:
        if self._state.active:
            raise SessionError(f"Session {self._state.session_id} is already active.")
        if not self._connected:
            raise SessionError("Connect to a remote device before starting a session.")

    def _run_worker(self, slot: LatestFrameSlot, state: SessionState) -> None:
        while True:
            frame = slot.take()
            if frame is None:
                break
            try:
                self._process_frame(frame, state)
            except Exception:
                logger.exception("Unexpected error while processing a frame")
            finally:
                slot.done()
        logger.debug("Worker for session %s finished", state.session_id)

    def _process_frame(self, frame: Screenshot, state: SessionState) -> None:
        cfg = self._config.snapshot()
        with self._lock:
            if not state.active or not self._connected:
                return
            exam_type = state.exam_type

        analysis = self._interpret(frame, cfg)
        if analysis is None or analysis.question is None:
            return
        draft = analysis.question
        if analysis.confidence < cfg.detection_floor:
            logger.debug(
                "Ignoring detection with confidence %.2f below floor %.2f",
                analysis.confidence,
                cfg.detection_floor,
            )
            return

        fingerprint = question_fingerprint(draft.text, draft.options)
        with self._lock:
            if not state.active or not self._connected:
                return
            if fingerprint == self._last_fingerprint:
                logger.debug("Question still on screen, not entering it again")
                return
            observe_only = state.manual_override
            if not observe_only:
                self._last_fingerprint = fingerprint
                self._sequence += 1
                question = Question.from_draft(draft, analysis.confidence, self._sequence)
                self._current = question

        if observe_only:
            self._observers.on_session_event(
                "question_observed",
                {
                    "text": draft.text,
                    "question_type": draft.question_type.value,
                    "options": [option.text for option in draft.options],
                    "confidence": analysis.confidence,
                },
            )
            return

        logger.info("Detected question %s (#%d): %r", question.id, question.sequence, question.text[:80])
        self._observers.on_question_detected(question)
        self._resolve(question, analysis, cfg, exam_type, state)

    def _resolve(
        self,
        question: Question,
        analysis: ScreenAnalysis,
        cfg: PipelineConfig,
        exam_type: str,
        state: SessionState,
    ) -> None:
        try:
            status = self._engine.resolve(
                question,
                analysis,
                cfg,
                exam_type,
                execution_gate=lambda: self._execution_blocked(state),
            )
        finally:
            with self._lock:
                self._current = None
                insort(state.history, question, key=lambda q: q.sequence)
                still_active = state.active
                self._records.save_question(state.session_id, QuestionRecord.from_question(question))
                # The stored question count follows the history.
                self._records.save_session(SessionRecord.from_state(state))

        if status in (QuestionStatus.UNCERTAIN, QuestionStatus.ABANDONED) and still_active:
            self.set_manual_override(True, reason=question.outcome_reason or status.value)

    def _interpret(self, frame: Screenshot, cfg: PipelineConfig) -> ScreenAnalysis | None:
        future = self._executor.submit(self._interpreter.interpret_screen, frame)
        try:
            return future.result(timeout=cfg.interpretation_timeout_s)
        except FutureTimeoutError:
            logger.warning("Screen interpretation timed out after %.1fs", cfg.interpretation_timeout_s)
        except Exception as exc:
            logger.warning("Screen interpretation failed: %s", exc)
        return None

    def _execution_blocked(self, state: SessionState) -> str | None:
        with self._lock:
            if not state.active:
                return "session stopped"
            if state.manual_override:
                return "manual override enabled"
            if not self._connected:
                return "remote session disconnected"
            return None

    def _on_connection_changed(self, connected: bool) -> None:
        with self._lock:
            was_connected = self._connected
            self._connected = connected
            slot = self._slot if self._state.active else None
        if connected == was_connected:
            return
        if connected:
            logger.info("Remote session connected, processing resumes with the next frame")
            self._observers.on_session_event("connection_changed", {"connected": True})
            return
        if slot is not None:
            # Frames captured before the drop are stale once the link returns.
            slot.clear()
        logger.warning("Remote session disconnected, frame processing paused")
        self._observers.on_session_event("connection_changed", {"connected": False})
