"""Shared defaults for the run executor and poller."""

DEFAULT_MAX_STEPS = 1000
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_BATCH_SIZE = 100
DEFAULT_MESSAGE_TOPIC = "journeyflow.messages"

# Wake-up timers fire this much after the persisted wake time so the
# preflight check never sees a wake time that is still in the future.
TIMER_GRACE_SECONDS = 0.01

# Consecutive failed sweeps back off to at most this multiple of the interval.
POLL_BACKOFF_FACTOR = 8
