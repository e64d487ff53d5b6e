"""HTTP client for an Ollama model server."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any

import requests

from exam_pilot.constants.network_constants import (
    DEFAULT_OLLAMA_URL,
    DEFAULT_REASONING_MODEL,
    DEFAULT_VISION_MODEL,
    MODEL_REQUEST_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


class ModelClientError(RuntimeError):
    """Raised when the model server cannot be reached or replies with garbage."""


@dataclass(frozen=True, slots=True)
class OllamaConfig:
    base_url: str = DEFAULT_OLLAMA_URL
    vision_model: str = DEFAULT_VISION_MODEL
    reasoning_model: str = DEFAULT_REASONING_MODEL
    temperature: float = 0.1
    timeout_s: float = MODEL_REQUEST_TIMEOUT_SECONDS


class OllamaClient:
    """Thin wrapper around ``/api/generate`` with helpers for JSON replies."""

    def __init__(self, cfg: OllamaConfig | None = None, session: requests.Session | None = None) -> None:
        self.cfg = cfg or OllamaConfig()
        self._session = session or requests.Session()

    def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        images: list[str] | None = None,
        temperature: float | None = None,
    ) -> str:
        model_name = model or self.cfg.reasoning_model
        payload: dict[str, Any] = {
            "model": model_name,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.cfg.temperature if temperature is None else temperature,
                "top_p": 0.9,
                "top_k": 40,
            },
        }
        if images:
            payload["images"] = images
        url = f"{self.cfg.base_url.rstrip('/')}/api/generate"
        try:
            response = self._session.post(url, json=payload, timeout=self.cfg.timeout_s)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise ModelClientError(f"Model request to {model_name} failed: {exc}") from exc
        except ValueError as exc:
            raise ModelClientError(f"Model {model_name} returned a non-JSON HTTP body.") from exc

        text = str(data.get("response") or "").strip()
        if not text:
            raise ModelClientError(f"Empty response from model {model_name}.")
        logger.debug("Generation completed with model %s (%d chars)", model_name, len(text))
        return text

    def generate_json(
        self,
        prompt: str,
        *,
        model: str | None = None,
        images: list[str] | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Ask for JSON and parse it, tolerating fenced or chatty replies."""
        raw = self.generate(prompt, model=model, images=images, temperature=temperature)
        json_text = extract_json_text(raw)
        try:
            parsed = json.loads(json_text)
        except json.JSONDecodeError as exc:
            raise ModelClientError(f"Model returned invalid JSON: {raw[:300]!r}") from exc
        if not isinstance(parsed, dict):
            raise ModelClientError(f"Model returned JSON {type(parsed).__name__}, expected an object.")
        return parsed

    def check_health(self) -> dict[str, Any]:
        url = f"{self.cfg.base_url.rstrip('/')}/api/tags"
        try:
            response = self._session.get(url, timeout=self.cfg.timeout_s)
            response.raise_for_status()
            available = [str(model.get("name", "")) for model in response.json().get("models", [])]
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Model server health check failed: %s", exc)
            return {"connected": False, "healthy": False, "error": str(exc)}

        required = [self.cfg.vision_model, self.cfg.reasoning_model]
        missing = [
            name for name in required
            if not any(candidate.startswith(name.split(":")[0]) for candidate in available)
        ]
        return {
            "connected": True,
            "healthy": not missing,
            "available_models": available,
            "required_models": required,
            "missing_models": missing,
        }


def extract_json_text(raw: str) -> str:
    """Pull the JSON object out of a model reply.

    Handles bare JSON, ```json fenced blocks and JSON surrounded by prose
    (first ``{`` to last ``}``). Anything else is returned as-is so that
    ``json.loads`` fails with a clear error.
    """
    text = raw.strip()

    if text.startswith("```"):
        text = text.strip("`").strip()
        if text.lower().startswith("json"):
            text = text.split("\n", 1)[-1].strip()

    if text.startswith("{") and text.endswith("}"):
        return text

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return text[first : last + 1]
    return text
