STATE_DIR_NAME = ".task_positions"
CONFIG_FILE = "config.yaml"
POSITIONS_FILE = "positions.yaml"
POSITIONS_LOCK_FILE = "positions.lock"
ARTIFACTS_DIR = "artifacts"
EVENTS_FILE = "position_events.jsonl"

LOCK_TIMEOUT = 30  # seconds
STORE_VERSION = 1

DEFAULT_MAX_KEY_DEPTH = 12
DEFAULT_MIN_ITEMS_FOR_REBALANCE = 2
DEFAULT_LOG_LEVEL = "INFO"
