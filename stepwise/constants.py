"""Shared defaults for stepwise workflows."""

DEFAULT_STEP_TIMEOUT = 30.0
DEFAULT_MAXIMUM_ATTEMPTS = 3
DEFAULT_INITIAL_INTERVAL = 1.0
DEFAULT_BACKOFF_COEFFICIENT = 2.0
DEFAULT_MAXIMUM_INTERVAL = 30.0

DEFAULT_SECONDS_PER_PICK = 90.0
DEFAULT_CHECKPOINT_EVERY = 50

DEFAULT_RESOLUTION_RETRY_DELAY = 3600.0
DEFAULT_EQ_TOLERANCE = 1e-4

SIGNALS_TOPIC = "signals"
EVENTS_TOPIC = "workflow.events"
