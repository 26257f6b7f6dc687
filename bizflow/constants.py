"""Default values shared across bizflow."""

DEFAULT_STEP_TIMEOUT = 30.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_BASE = 1.5
DEFAULT_RETRY_JITTER = 0.5
DEFAULT_PERSISTENCE_RETRY_ATTEMPTS = 3
