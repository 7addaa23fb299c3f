from pathlib import Path

STATE_DIR = Path.home() / ".config" / "grove"

CONTROL_DIR_NAME = ".grove"
WORKTREES_DIR_NAME = "worktrees"
ARCHIVES_DIR_NAME = "archives"
PROFILES_DIR_NAME = "profiles"
INDEX_FILE_NAME = "worktrees.json"
PROFILES_FILE_NAME = "gitignore-profiles.json"
PROJECT_CONFIG_NAME = ".grove.toml"

MINIMUM_GIT_VERSION = (2, 17, 0)
MAX_SLUG_LENGTH = 50

RETENTION_DAYS = 30
POLL_INTERVAL_S = 10.0
SWEEP_INTERVAL_S = 24 * 60 * 60
STATUS_TIMEOUT_S = 10
MUTATE_TIMEOUT_S = 120
PERSISTENT_FAILURE_THRESHOLD = 3

RESERVED_REF_NAMES = {"HEAD", "@"}
