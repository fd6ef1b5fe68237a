"""Centralized constants for homestack to eliminate duplicate strings."""

# Stack directory layout
COMPOSE_FILE_NAME = "docker-compose.yml"
ENV_FILE_NAME = ".env"

# Web UI port bounds
MIN_WEB_UI_PORT = 1024
MAX_WEB_UI_PORT = 65535

# Stack names double as compose project names
MAX_STACK_NAME_LENGTH = 63

# Progress bands, as percent of the whole operation
PROGRESS_STARTED = 1
PROGRESS_RENDER = 8
PROGRESS_PULL_START = 15
PROGRESS_PULL_SPAN = 65
PROGRESS_COMPOSE_UP = 85
PROGRESS_FINALIZE = 95
PROGRESS_COMPLETE = 100

PROGRESS_COMPOSE_DOWN = 35
PROGRESS_REMOVE_DATA = 70
PROGRESS_REMOVE_RECORD = 90
PROGRESS_NOOP = 90

PROGRESS_COMPOSE_ACTION = 40
PROGRESS_STATUS_REFRESH = 85

PROGRESS_INSPECT_IMAGES = 45
PROGRESS_UPDATES_RESOLVED = 90

# Step labels
STEP_QUEUED = "queued"
STEP_START = "start"
STEP_RENDER = "render"
STEP_PULL_IMAGES = "pull-images"
STEP_COMPOSE_UP = "compose-up"
STEP_HEALTH_CHECK = "health-check"
STEP_COMPOSE_DOWN = "compose-down"
STEP_CLEANUP = "cleanup"
STEP_NOOP = "noop"
STEP_COMPOSE_ACTION = "compose-action"
STEP_STATUS_REFRESH = "status-refresh"
STEP_INSPECT_IMAGES = "inspect-images"
STEP_UPDATES_RESOLVED = "updates-resolved"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

# Pull status that counts as a finished layer even without a percent
DOWNLOAD_COMPLETE_STATUS = "download complete"
