from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


def exponential_delay_ms(base_ms: int, exponent: int) -> int:
    if base_ms < 0:
        raise ValueError("base_ms must be >= 0")
    if exponent < 0:
        raise ValueError("exponent must be >= 0")
    return base_ms * (2**exponent)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget plus exponential backoff.

    ``attempt`` is 1-based: the delay scheduled after the first failed attempt
    is ``base_ms``, after the second ``2 * base_ms`` and so on.
    """

    max_attempts: int
    base_ms: int

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_ms < 0:
            raise ValueError("base_ms must be >= 0")

    def has_attempts_left(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def delay_ms(self, attempt: int) -> int:
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        return exponential_delay_ms(self.base_ms, attempt - 1)

    def delay(self, attempt: int) -> timedelta:
        return timedelta(milliseconds=self.delay_ms(attempt))
