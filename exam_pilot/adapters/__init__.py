"""Adapters that connect the pipeline to model, search and remote-control backends."""

from .ollama_client import ModelClientError, OllamaClient, OllamaConfig
from .reasoner import OllamaReasoner, ReasonerError
from .remote_session import RemoteConnectError, RemotelyRemoteSession
from .screen_interpreter import OllamaScreenInterpreter, ScreenInterpretationError
from .web_search import WebFallbackSearch, WebSearchError

__all__ = [
    "ModelClientError",
    "OllamaClient",
    "OllamaConfig",
    "OllamaReasoner",
    "OllamaScreenInterpreter",
    "ReasonerError",
    "RemoteConnectError",
    "RemotelyRemoteSession",
    "ScreenInterpretationError",
    "WebFallbackSearch",
    "WebSearchError",
]
