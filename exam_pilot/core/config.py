"""Runtime configuration for the resolution pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import os
from threading import Lock
from typing import Mapping

from exam_pilot.constants import pipeline_constants as defaults

_ENV_PREFIX = "EXAM_PILOT_"


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Thresholds and timings read by the controller and the engine.

    Instances are immutable; a resolution cycle keeps the instance it started
    with even if the operator changes settings halfway through.
    """

    execution_confidence_threshold: float = defaults.EXECUTION_CONFIDENCE_THRESHOLD
    similarity_threshold: float = defaults.SIMILARITY_THRESHOLD
    detection_floor: float = defaults.DETECTION_FLOOR
    web_confidence_cap: float = defaults.WEB_CONFIDENCE_CAP
    knowledge_max_results: int = defaults.KNOWLEDGE_MAX_RESULTS
    interpretation_timeout_s: float = defaults.INTERPRETATION_TIMEOUT_SECONDS
    lookup_timeout_s: float = defaults.LOOKUP_TIMEOUT_SECONDS
    web_search_timeout_s: float = defaults.WEB_SEARCH_TIMEOUT_SECONDS
    reasoning_timeout_s: float = defaults.REASONING_TIMEOUT_SECONDS
    locate_timeout_s: float = defaults.LOCATE_TIMEOUT_SECONDS
    polling_interval_s: float = defaults.POLLING_INTERVAL_SECONDS
    post_action_delay_s: float = defaults.POST_ACTION_DELAY_SECONDS
    web_search_enabled: bool = False

    def __post_init__(self) -> None:
        for name in (
            "execution_confidence_threshold",
            "similarity_threshold",
            "detection_floor",
            "web_confidence_cap",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}.")
        for name in (
            "interpretation_timeout_s",
            "lookup_timeout_s",
            "web_search_timeout_s",
            "reasoning_timeout_s",
            "locate_timeout_s",
            "polling_interval_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive number of seconds.")
        if self.post_action_delay_s < 0:
            raise ValueError("post_action_delay_s must not be negative.")
        if self.knowledge_max_results < 1:
            raise ValueError("knowledge_max_results must be at least 1.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PipelineConfig:
        """Build a config from ``EXAM_PILOT_*`` variables layered over the defaults."""
        environ = os.environ if environ is None else environ
        overrides: dict[str, object] = {}
        for item in fields(cls):
            raw = environ.get(_ENV_PREFIX + item.name.upper())
            if raw is None or not raw.strip():
                continue
            overrides[item.name] = _coerce(item.name, raw.strip(), type(getattr(_DEFAULTS, item.name)))
        return cls(**overrides)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


_DEFAULTS = PipelineConfig()


def _coerce(name: str, raw: str, target: type) -> object:
    if target is bool:
        lowered = raw.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{name} expects a boolean, got {raw!r}.")
    try:
        return target(raw)
    except ValueError as exc:
        raise ValueError(f"{name} expects {target.__name__}, got {raw!r}.") from exc


def _coerce_value(name: str, value: object, target: type) -> object:
    if isinstance(value, str):
        return _coerce(name, value.strip(), target)
    if target is bool and isinstance(value, bool):
        return value
    if target is not bool and not isinstance(value, bool):
        if target is float and isinstance(value, (int, float)):
            return float(value)
        if target is int and isinstance(value, int):
            return value
    raise ValueError(f"{name} expects {target.__name__}, got {value!r}.")


class ConfigStore:
    """Holds the current :class:`PipelineConfig` and swaps it atomically."""

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self._lock = Lock()
        self._config = config or PipelineConfig()

    def snapshot(self) -> PipelineConfig:
        with self._lock:
            return self._config

    def update(self, **changes: object) -> PipelineConfig:
        unknown = set(changes) - {item.name for item in fields(PipelineConfig)}
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        changes = {
            name: _coerce_value(name, value, type(getattr(_DEFAULTS, name))) for name, value in changes.items()
        }
        with self._lock:
            # replace() re-runs validation, so a rejected update leaves the old value in place.
            self._config = replace(self._config, **changes)
            return self._config
