"""Network configuration constants for Exam Pilot."""

DEFAULT_HOST: str = "0.0.0.0"
DEFAULT_PORT: int = 8000

DEFAULT_OLLAMA_URL: str = "http://localhost:11434"
DEFAULT_VISION_MODEL: str = "llava:13b"
DEFAULT_REASONING_MODEL: str = "llama3.1:8b"
MODEL_REQUEST_TIMEOUT_SECONDS: float = 60.0

REMOTE_REQUEST_TIMEOUT_SECONDS: float = 10.0
MAX_RECONNECT_ATTEMPTS: int = 5
RECONNECT_DELAY_SECONDS: float = 5.0

FIRECRAWL_SEARCH_URL: str = "https://api.firecrawl.dev/v1/search"
TAVILY_SEARCH_URL: str = "https://api.tavily.com/search"
WEB_SEARCH_RESULT_LIMIT: int = 5
