"""Backoff utilities for retry policies."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ExponentialBackoff:
    """Exponential retransmission schedule.

    The timeout for retry ``n`` (0-based) is ``base_delay * multiplier**n``.
    The default schedule is the UDP tracker one: 15s, 30s, 60s, ...
    """

    base_delay: float = 15.0
    multiplier: float = 2.0
    max_retries: int = 8

    def next_delay(self, retries: int) -> float:
        """Calculate the timeout for the given retry count (0-based)."""
        return self.base_delay * (self.multiplier ** max(0, retries))
