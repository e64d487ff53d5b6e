"""FastAPI server that exposes operator endpoints."""

from __future__ import annotations

from dataclasses import asdict
from threading import Thread
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Response
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field
import uvicorn

from exam_pilot.adapters.ollama_client import OllamaClient
from exam_pilot.constants.about import APP_ABOUT_TEXT, APP_LICENSE, APP_NAME, APP_VERSION
from exam_pilot.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from exam_pilot.core.contracts import RemoteSessionError
from exam_pilot.core.events import RecentEventLog
from exam_pilot.core.services.knowledge_base import InMemoryKnowledgeBase
from exam_pilot.core.services.record_store import RecordStore
from exam_pilot.core.services.report_renderer import SessionReportRenderer
from exam_pilot.core.session_controller import SessionController, SessionError


class ConnectPayload(BaseModel):
    """Payload schema for connecting to a remote device."""

    server_url: str
    device_id: str
    access_key: str
    organization_id: str | None = None


class StartSessionPayload(BaseModel):
    exam_type: str | None = None


class OverridePayload(BaseModel):
    enabled: bool


class ExamTypePayload(BaseModel):
    exam_type: str


class ClickPayload(BaseModel):
    x: int = Field(ge=0)
    y: int = Field(ge=0)


class TypePayload(BaseModel):
    text: str = Field(min_length=1)


class KnowledgePayload(BaseModel):
    """Payload schema for adding a knowledge base entry."""

    content: str
    exam_type: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConfigPayload(BaseModel):
    """Partial configuration update; omitted fields keep their current value."""

    execution_confidence_threshold: float | None = None
    similarity_threshold: float | None = None
    detection_floor: float | None = None
    web_confidence_cap: float | None = None
    knowledge_max_results: int | None = None
    interpretation_timeout_s: float | None = None
    lookup_timeout_s: float | None = None
    web_search_timeout_s: float | None = None
    reasoning_timeout_s: float | None = None
    locate_timeout_s: float | None = None
    polling_interval_s: float | None = None
    post_action_delay_s: float | None = None
    web_search_enabled: bool | None = None


def _get_controller_dependency(controller: SessionController):
    def dependency() -> SessionController:
        return controller

    return dependency


def _serialize(value: Any) -> Any:
    """Turn dataclass records into JSON-friendly dicts."""
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    data = asdict(value)
    for key, item in data.items():
        if hasattr(item, "isoformat"):
            data[key] = item.isoformat()
    return data


def create_api_app(
    controller: SessionController,
    knowledge_base: InMemoryKnowledgeBase,
    record_store: RecordStore,
    event_log: RecentEventLog,
    model_client: OllamaClient | None = None,
    report_renderer: SessionReportRenderer | None = None,
) -> FastAPI:
    """Create a FastAPI application wired to the provided controller."""
    app = FastAPI(
        title=f"{APP_NAME} API",
        version=APP_VERSION,
        description=APP_ABOUT_TEXT,
        license_info={"name": APP_LICENSE},
    )
    controller_dep = _get_controller_dependency(controller)
    renderer = report_renderer or SessionReportRenderer()

    @app.post("/connect", status_code=201)
    def connect(
        payload: ConnectPayload,
        ctrl: SessionController = Depends(controller_dep),
    ) -> dict[str, object]:
        try:
            info = ctrl.connect(payload.server_url, payload.device_id, payload.access_key, payload.organization_id)
        except RemoteSessionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {
            "session_id": info.session_id,
            "device_id": info.device_id,
            "connection_url": info.connection_url,
        }

    @app.post("/disconnect")
    def disconnect(ctrl: SessionController = Depends(controller_dep)) -> dict[str, object]:
        ctrl.disconnect()
        return {"connected": False}

    @app.post("/sessions", status_code=201)
    def start_session(
        payload: StartSessionPayload,
        ctrl: SessionController = Depends(controller_dep),
    ) -> dict[str, object]:
        try:
            session_id = ctrl.start_session(payload.exam_type)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except SessionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"session_id": session_id}

    @app.post("/sessions/stop")
    def stop_session(ctrl: SessionController = Depends(controller_dep)) -> dict[str, object]:
        state = ctrl.stop_session()
        return {
            "session_id": state.session_id or None,
            "active": state.active,
            "questions": len(state.history),
            "ended_at": state.ended_at.isoformat() if state.ended_at else None,
        }

    @app.put("/override")
    def set_override(
        payload: OverridePayload,
        ctrl: SessionController = Depends(controller_dep),
    ) -> dict[str, object]:
        ctrl.set_manual_override(payload.enabled)
        return {"manual_override": payload.enabled}

    @app.put("/exam-type")
    def set_exam_type(
        payload: ExamTypePayload,
        ctrl: SessionController = Depends(controller_dep),
    ) -> dict[str, object]:
        try:
            ctrl.set_exam_type(payload.exam_type)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"exam_type": payload.exam_type.strip()}

    @app.get("/status")
    def get_status(ctrl: SessionController = Depends(controller_dep)) -> dict[str, object]:
        return asdict(ctrl.status())

    @app.get("/config")
    def get_config(ctrl: SessionController = Depends(controller_dep)) -> dict[str, object]:
        return ctrl.config().to_dict()

    @app.patch("/config")
    def update_config(
        payload: ConfigPayload,
        ctrl: SessionController = Depends(controller_dep),
    ) -> dict[str, object]:
        changes = payload.model_dump(exclude_none=True)
        try:
            cfg = ctrl.update_config(**changes)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return cfg.to_dict()

    @app.get("/events")
    def get_events(after: int = 0) -> dict[str, object]:
        events = event_log.events_after(after)
        return {
            "events": [
                {
                    "sequence": event.sequence,
                    "kind": event.kind,
                    "payload": event.payload,
                    "timestamp": event.timestamp.isoformat(),
                }
                for event in events
            ],
            "last_sequence": events[-1].sequence if events else after,
        }

    @app.get("/screenshot/latest")
    def get_latest_screenshot() -> Response:
        screenshot = event_log.latest_screenshot()
        if screenshot is None:
            raise HTTPException(status_code=404, detail="No screenshot received yet.")
        return Response(
            content=screenshot.image,
            media_type=f"image/{screenshot.image_format}",
            headers={"X-Captured-At": screenshot.captured_at.isoformat()},
        )

    @app.post("/actions/click")
    def manual_click(
        payload: ClickPayload,
        ctrl: SessionController = Depends(controller_dep),
    ) -> dict[str, object]:
        try:
            ctrl.manual_click(payload.x, payload.y)
        except RemoteSessionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"action": "click", "x": payload.x, "y": payload.y}

    @app.post("/actions/type")
    def manual_type(
        payload: TypePayload,
        ctrl: SessionController = Depends(controller_dep),
    ) -> dict[str, object]:
        try:
            ctrl.manual_type(payload.text)
        except RemoteSessionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"action": "type", "length": len(payload.text)}

    @app.post("/knowledge", status_code=201)
    def add_knowledge(payload: KnowledgePayload) -> dict[str, object]:
        try:
            entry = knowledge_base.add(payload.content, payload.exam_type, payload.metadata)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"entry_id": entry.entry_id, "exam_type": entry.exam_type}

    @app.get("/knowledge/stats")
    def knowledge_stats() -> dict[str, object]:
        return {"total": knowledge_base.count(), "exam_types": knowledge_base.exam_types()}

    @app.get("/sessions")
    def list_sessions() -> dict[str, object]:
        return {"sessions": _serialize(record_store.list_sessions())}

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str) -> dict[str, object]:
        record = record_store.get_session(session_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Unknown session {session_id}.")
        return {
            "session": _serialize(record),
            "questions": _serialize(record_store.list_questions(session_id)),
        }

    @app.get("/sessions/{session_id}/report", response_class=HTMLResponse)
    def get_session_report(session_id: str) -> str:
        record = record_store.get_session(session_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Unknown session {session_id}.")
        return renderer.render_html(record, record_store.list_questions(session_id))

    @app.get("/health/model")
    def model_health() -> dict[str, object]:
        if model_client is None:
            raise HTTPException(status_code=503, detail="No model backend configured.")
        return model_client.check_health()

    return app


def start_api_server(
    app: FastAPI,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
) -> Thread:
    """Start the FastAPI server in a background daemon thread."""
    config = uvicorn.Config(app=app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)

    def run_server() -> None:
        server.run()

    thread = Thread(target=run_server, name="ExamPilotApiServer", daemon=True)
    thread.start()
    return thread
