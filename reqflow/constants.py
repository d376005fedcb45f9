"""Engine-wide constants."""

LOGGER_NAME = "reqflow"

STORE_PREFIX = "store."

# Bound on nested placeholder expansion before it is treated as a cycle
MAX_RESOLUTION_DEPTH = 10

DEFAULT_TIMEOUT_MS = 30_000

# Full randomization when jitter is enabled without an explicit ratio
DEFAULT_JITTER_RATIO = 1.0

WILDCARD = "*"
LENGTH_KEY = "length"

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")
AUTH_TYPES = ("basic", "bearer")
