"""Default thresholds and timings for the answer-resolution pipeline."""

DEFAULT_EXAM_TYPE: str = "general"

EXECUTION_CONFIDENCE_THRESHOLD: float = 0.8
SIMILARITY_THRESHOLD: float = 0.7
DETECTION_FLOOR: float = 0.5
WEB_CONFIDENCE_CAP: float = 0.8
KNOWLEDGE_MAX_RESULTS: int = 5

INTERPRETATION_TIMEOUT_SECONDS: float = 30.0
LOOKUP_TIMEOUT_SECONDS: float = 10.0
WEB_SEARCH_TIMEOUT_SECONDS: float = 30.0
REASONING_TIMEOUT_SECONDS: float = 60.0
LOCATE_TIMEOUT_SECONDS: float = 30.0

POLLING_INTERVAL_SECONDS: float = 2.0
POST_ACTION_DELAY_SECONDS: float = 1.0

# Matches below this score are noise and never leave the knowledge base.
KNOWLEDGE_MIN_RESULT_SCORE: float = 0.1
# A model-proposed click target below this confidence is treated as "not found".
LOCATE_CONFIDENCE_FLOOR: float = 0.5

RECENT_EVENT_LIMIT: int = 500
