"""Shared constants for devflow."""

DEFAULT_REJECT_REASON = "No reason provided"

DEFAULT_QUESTION_TIMEOUT_HOURS = 24.0

DEFAULT_STEP_TIMEOUT_SECONDS = 300.0
DEFAULT_STEP_RETRIES = 3

SIGNAL_TOPIC_PREFIX = "run:"
