"""Documented defaults for workspace-rag policy parameters.

Every value here is the default of a configuration field in
``workspace_rag.config.models``; change behaviour through configuration,
not by editing these.
"""

# =============================================================================
# Provider (Ollama server)
# =============================================================================

DEFAULT_BASE_URL: str = "http://localhost:11434"
DEFAULT_CHAT_MODEL: str = "llama3.1"
DEFAULT_EMBEDDING_MODEL: str = "nomic-embed-text"

# Generation can be slow on local hardware (seconds)
PROVIDER_TIMEOUT: float = 300.0
PROVIDER_CONNECT_TIMEOUT: float = 10.0

DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0

DEFAULT_TEMPERATURE: float = 0.7
DEFAULT_TOP_P: float = 0.85
DEFAULT_TOP_K: int = 50

# =============================================================================
# Indexing
# =============================================================================

# Editors emit bursts of save events; coalesce within this window (seconds)
DEBOUNCE_SECONDS: float = 0.5

INDEX_WORKERS: int = 4
MAX_QUEUE_SIZE: int = 1000

INDEX_MAX_RETRIES: int = 3
INDEX_RETRY_BASE_DELAY: float = 1.0
INDEX_RETRY_MAX_DELAY: float = 30.0

EMBED_BATCH_SIZE: int = 10
MAX_CONCURRENT_EMBEDDINGS: int = 2

CHUNK_SIZE: int = 1000  # characters
CHUNK_OVERLAP: int = 100  # characters

MAX_FILE_SIZE_KB: int = 200
MAX_TRACKED_FILES: int = 5000

# Log indexing progress every N documents
PROGRESS_LOG_INTERVAL: int = 100

INDEX_DIR_NAME: str = ".workspace_rag"

# =============================================================================
# Retrieval
# =============================================================================

DEFAULT_K: int = 4
OVERFETCH: int = 3
MIN_SCORE: float = 0.3
RECENCY_WINDOW_HOURS: float = 24.0
RECENCY_BOOST: float = 0.05
DEDUPE_THRESHOLD: float = 0.9
MIN_CHUNK_CHARS: int = 30
FOLLOWUP_MAX_WORDS: int = 6

# =============================================================================
# Conversation
# =============================================================================

MAX_HISTORY_MESSAGES: int = 25
PROMPT_CHAR_BUDGET: int = 24000
COMPLETION_RETRIES: int = 2
STREAM_IDLE_TIMEOUT: float = 120.0
PROVIDER_COOLDOWN_SECONDS: float = 30.0

# Rough characters-per-token ratio used for usage estimates
CHARS_PER_TOKEN: int = 4

# =============================================================================
# Agents
# =============================================================================

WEB_MAX_RESULTS: int = 2
AGENT_TIMEOUT: float = 20.0
TOOL_MAX_OUTPUT_CHARS: int = 4000
MAX_TOOL_CALL_TEXT: int = 50000
