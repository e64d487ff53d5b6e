"""Application entry point for Exam Pilot."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import os

from exam_pilot.adapters import (
    OllamaClient,
    OllamaConfig,
    OllamaReasoner,
    OllamaScreenInterpreter,
    RemoteConnectError,
    RemotelyRemoteSession,
    WebFallbackSearch,
)
from exam_pilot.constants.network_constants import (
    DEFAULT_HOST,
    DEFAULT_OLLAMA_URL,
    DEFAULT_PORT,
    DEFAULT_REASONING_MODEL,
    DEFAULT_VISION_MODEL,
)
from exam_pilot.constants.pipeline_constants import DEFAULT_EXAM_TYPE
from exam_pilot.core.answer_engine import AnswerResolutionEngine
from exam_pilot.core.config import ConfigStore, PipelineConfig
from exam_pilot.core.events import ObserverHub, RecentEventLog
from exam_pilot.core.services.knowledge_base import InMemoryKnowledgeBase, KnowledgeLookup
from exam_pilot.core.services.record_store import InMemoryRecordStore
from exam_pilot.core.session_controller import SessionController
from exam_pilot.server.api_server import create_api_app, start_api_server
from exam_pilot.utils.logging_config import configure_logging


def main() -> None:
    """Initialize logging, wire the pipeline, and serve the operator API."""
    logger = configure_logging()
    logger.info("Starting Exam Pilot...")

    config_store = ConfigStore(PipelineConfig.from_env())
    observers = ObserverHub()
    event_log = RecentEventLog()
    observers.add(event_log)
    executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="pipeline")

    ollama = OllamaClient(
        OllamaConfig(
            base_url=os.environ.get("OLLAMA_URL", DEFAULT_OLLAMA_URL),
            vision_model=os.environ.get("VISION_MODEL", DEFAULT_VISION_MODEL),
            reasoning_model=os.environ.get("REASONING_MODEL", DEFAULT_REASONING_MODEL),
        )
    )
    interpreter = OllamaScreenInterpreter(ollama)
    knowledge_base = InMemoryKnowledgeBase()
    web_search = WebFallbackSearch(
        firecrawl_api_key=os.environ.get("FIRECRAWL_API_KEY"),
        tavily_api_key=os.environ.get("TAVILY_API_KEY"),
        timeout_s=config_store.snapshot().web_search_timeout_s,
    )
    remote = RemotelyRemoteSession(interval_provider=lambda: config_store.snapshot().polling_interval_s)
    record_store = InMemoryRecordStore()

    engine = AnswerResolutionEngine(
        knowledge=KnowledgeLookup(knowledge_base),
        reasoner=OllamaReasoner(ollama),
        interpreter=interpreter,
        remote=remote,
        web_search=web_search,
        observers=observers,
        executor=executor,
    )
    controller = SessionController(
        remote=remote,
        interpreter=interpreter,
        engine=engine,
        config_store=config_store,
        observers=observers,
        record_store=record_store,
        executor=executor,
        default_exam_type=os.environ.get("EXAM_TYPE", DEFAULT_EXAM_TYPE),
    )

    server_url = os.environ.get("REMOTELY_SERVER_URL")
    device_id = os.environ.get("REMOTELY_DEVICE_ID")
    access_key = os.environ.get("REMOTELY_ACCESS_KEY")
    if server_url and device_id and access_key:
        try:
            controller.connect(server_url, device_id, access_key, os.environ.get("REMOTELY_ORGANIZATION_ID"))
        except RemoteConnectError as exc:
            logger.error("Automatic connection failed: %s", exc)

    app = create_api_app(
        controller,
        knowledge_base=knowledge_base,
        record_store=record_store,
        event_log=event_log,
        model_client=ollama,
    )
    host = os.environ.get("EXAM_PILOT_HOST", DEFAULT_HOST)
    port = int(os.environ.get("EXAM_PILOT_PORT", DEFAULT_PORT))
    logger.info("Operator API available at http://%s:%d/docs", host, port)
    server_thread = start_api_server(app, host=host, port=port)
    try:
        server_thread.join()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        controller.shutdown()
        remote.disconnect()
        executor.shutdown(wait=False, cancel_futures=True)


if __name__ == "__main__":
    main()
