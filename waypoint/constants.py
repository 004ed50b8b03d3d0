"""Engine-wide defaults."""

DEFAULT_NODE_TIMEOUT = 30.0
MAX_NODE_TIMEOUT = 300.0
DEFAULT_RETRY_DELAY = 1.0
MAX_NODE_RETRIES = 5

DEFAULT_MAX_EXECUTION_TIME = 300.0
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_NODES = 50

MAX_CHECKPOINT_BYTES = 50 * 1024 * 1024

DEFAULT_KEEPALIVE_INTERVAL = 30.0
DEFAULT_EVENT_BACKLOG = 1000
DEFAULT_EVENT_BACKLOG_TTL = 3600.0
EVENT_VALUE_LIMIT = 1024

DEFAULT_AGENT_TEMPERATURE = 0.7
DEFAULT_AGENT_MAX_ITERATIONS = 10
DEFAULT_PLATFORM_MODEL = "openai:gpt-4o-mini"

HUMAN_RESPONSE_PREFIX = "human_response_"
