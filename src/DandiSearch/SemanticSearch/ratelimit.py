"""Rate limiting for embedding provider calls.

Parses human-readable rate strings (``"10/second"``, ``"600/minute"``) into
:class:`RateSpec` objects and wraps a pyrate-limiter ``Limiter`` that blocks
callers until a slot frees up. Every worker in the embedding pool shares one
limiter so the configured rate is global to the generator.

Example:
    >>> parse_rate_string("5/second")
    RateSpec(limit=5, interval_ms=1000)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from pyrate_limiter import Duration, Limiter, Rate

__all__ = ("ProviderRateLimiter", "RateSpec", "parse_rate_string")

logger = logging.getLogger(__name__)

DURATION_MS = {
    "second": Duration.SECOND.value,
    "minute": Duration.MINUTE.value,
    "hour": Duration.HOUR.value,
    "day": Duration.DAY.value,
}

DURATION_ALIASES = {
    "s": "second",
    "sec": "second",
    "m": "minute",
    "min": "minute",
    "h": "hour",
    "hr": "hour",
}

_RATE_PATTERN = re.compile(r"^\s*(\d+)\s*/\s*(\w+)\s*$")

# Upper bound on how long a single acquire may block, in milliseconds
_MAX_DELAY_MS = Duration.MINUTE.value


@dataclass(frozen=True)
class RateSpec:
    """Normalised rate specification (``limit`` events per ``interval_ms``)."""

    limit: int
    interval_ms: int

    @property
    def rps(self) -> float:
        """Requests per second."""
        return (self.limit * 1000) / self.interval_ms

    def __str__(self) -> str:
        for name, interval in DURATION_MS.items():
            if interval == self.interval_ms:
                return f"{self.limit}/{name}"
        return f"{self.limit}/{self.interval_ms}ms"


def parse_rate_string(spec: str) -> RateSpec:
    """Parse ``"{limit}/{duration}"`` into a :class:`RateSpec`.

    Raises:
        ValueError: If the format, duration, or limit is invalid.
    """

    match = _RATE_PATTERN.match(spec)
    if not match:
        raise ValueError(
            f"Invalid rate spec: {spec!r}. Expected format: '5/second', '300/minute', etc."
        )
    limit_str, duration_str = match.groups()
    limit = int(limit_str)
    duration_str = DURATION_ALIASES.get(duration_str.lower(), duration_str.lower())
    if duration_str not in DURATION_MS:
        raise ValueError(
            f"Unknown duration: {duration_str!r}. Supported: {list(DURATION_MS.keys())}"
        )
    if limit <= 0:
        raise ValueError(f"Limit must be positive, got: {limit}")
    return RateSpec(limit=limit, interval_ms=DURATION_MS[duration_str])


class ProviderRateLimiter:
    """Blocking limiter shared by every embedding worker.

    Attributes:
        spec: Parsed rate applied to provider calls.
        name: Bucket key used with pyrate-limiter.

    Examples:
        >>> limiter = ProviderRateLimiter.from_string("100/second", name="hashing")
        >>> limiter.acquire()
        True
    """

    def __init__(self, spec: RateSpec, *, name: str = "embedding") -> None:
        self.spec = spec
        self.name = name
        self._limiter = Limiter(
            [Rate(spec.limit, spec.interval_ms)],
            raise_when_fail=False,
            max_delay=_MAX_DELAY_MS,
            retry_until_max_delay=True,
        )

    @classmethod
    def from_string(cls, spec: str, *, name: str = "embedding") -> ProviderRateLimiter:
        """Build a limiter from a rate string such as ``"10/second"``."""

        return cls(parse_rate_string(spec), name=name)

    def acquire(self, weight: int = 1) -> bool:
        """Block until ``weight`` slots are available.

        Returns:
            ``True`` once acquired; ``False`` if the wait would exceed the
            limiter's maximum delay.
        """
        if weight <= 0:
            raise ValueError(f"Weight must be positive, got: {weight}")
        acquired = bool(self._limiter.try_acquire(self.name, weight))
        if not acquired:
            logger.warning(
                "embedding-rate-limit-exhausted",
                extra={"event": {"limiter": self.name, "rate": str(self.spec), "weight": weight}},
            )
        return acquired
