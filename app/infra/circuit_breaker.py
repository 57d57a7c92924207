# app/infra/circuit_breaker.py
"""
Circuit breaker for outbound notification channels.

States:
- CLOSED: Normal operation
- OPEN: Too many consecutive failures, reject calls until cooldown passes
- HALF_OPEN: Cooldown passed, let the next call through as a probe
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from app.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    One instance is shared per channel kind.  The clock is injectable so
    tests can move time without sleeping.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        config: BreakerConfig | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or BreakerConfig()
        self.name = name
        self._clock = clock

        self.failure_count = 0
        self.opened_at = 0.0
        self.state = self.CLOSED

    def is_available(self) -> bool:
        """Check if circuit breaker allows a call"""
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            if self._clock() - self.opened_at >= self.config.cooldown_seconds:
                logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
                self.state = self.HALF_OPEN
                return True
            return False

        # HALF_OPEN: probe allowed
        return True

    @property
    def is_open(self) -> bool:
        return not self.is_available()

    def record_success(self) -> None:
        if self.state != self.CLOSED:
            logger.info(f"Circuit breaker '{self.name}' closing (recovered)")
        self.state = self.CLOSED
        self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1

        if self.state == self.HALF_OPEN:
            logger.error(f"Circuit breaker '{self.name}' re-opening (probe failed)")
            self._open()
            return

        if self.failure_count >= self.config.failure_threshold and self.state != self.OPEN:
            logger.error(
                f"Circuit breaker '{self.name}' opening "
                f"(failures: {self.failure_count}/{self.config.failure_threshold})"
            )
            self._open()

    def _open(self) -> None:
        self.state = self.OPEN
        self.opened_at = self._clock()

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self.state,
            "failures": self.failure_count,
        }
