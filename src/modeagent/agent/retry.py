"""Bound on consecutive unusable model responses."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_MAX_RETRIES = 3

CORRECTIVE_PROMPT_TEXT = (
    "ERROR: Your response was not valid JSON. Please respond ONLY with valid JSON"
    " in the format specified in the system prompt. No additional text."
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Tolerate up to ``max_retries`` consecutive failures before aborting."""

    max_retries: int = DEFAULT_MAX_RETRIES

    def should_retry(self, count: int) -> bool:
        return count < self.max_retries
