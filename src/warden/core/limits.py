"""Resource accounting and rate limiting for plugin executions.

A :class:`ResourceMonitor` tracks what one plugin execution scope consumes
(VM instructions, memory, concurrent workers, output bytes) against a
:class:`ResourceLimits` configuration, and throttles file and network
operations through two :class:`RateLimiter` token buckets.

Exhaustion is reported as booleans, not exceptions: the host checks the
return value inline and aborts the current plugin call. The first breach
latches ``exceeded`` with a fixed reason that stays until :meth:`ResourceMonitor.reset`.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

__all__ = [
    "REASON_FILE_RATE",
    "REASON_GOROUTINES",
    "REASON_INSTRUCTIONS",
    "REASON_MEMORY",
    "REASON_NETWORK_RATE",
    "REASON_OUTPUT",
    "TRUST_TIERS",
    "RateLimiter",
    "ResourceLimits",
    "ResourceMonitor",
    "ResourceUsage",
    "limits_for_tier",
]

REASON_INSTRUCTIONS = "instruction limit exceeded"
REASON_MEMORY = "memory limit exceeded"
REASON_GOROUTINES = "goroutine limit exceeded"
REASON_OUTPUT = "output size limit exceeded"
REASON_FILE_RATE = "file operation rate limit exceeded"
REASON_NETWORK_RATE = "network request rate limit exceeded"

_MB = 1024 * 1024
_KB = 1024


@dataclass(frozen=True)
class ResourceLimits:
    """Resource ceilings for a plugin. Zero disables a limit.

    Attributes
    ----------
    memory_limit : int
        Memory ceiling in bytes
    execution_timeout : float
        Wall-clock seconds allowed per call
    instruction_limit : int
        VM instructions allowed per execution scope
    file_ops_per_second : int
        File operation rate
    network_reqs_per_second : int
        Network request rate
    max_goroutines : int
        Concurrent background workers the plugin may hold
    max_output_size : int
        Cumulative output bytes
    """

    memory_limit: int = 10 * _MB
    execution_timeout: float = 5.0
    instruction_limit: int = 10_000_000
    file_ops_per_second: int = 100
    network_reqs_per_second: int = 10
    max_goroutines: int = 10
    max_output_size: int = 1 * _MB

    @classmethod
    def default(cls) -> ResourceLimits:
        """Limits for ordinary plugins."""
        return cls()

    @classmethod
    def strict(cls) -> ResourceLimits:
        """Tighter limits for untrusted plugins."""
        return cls(
            memory_limit=5 * _MB,
            execution_timeout=2.0,
            instruction_limit=1_000_000,
            file_ops_per_second=10,
            network_reqs_per_second=1,
            max_goroutines=2,
            max_output_size=256 * _KB,
        )

    @classmethod
    def relaxed(cls) -> ResourceLimits:
        """Looser limits for trusted plugins."""
        return cls(
            memory_limit=50 * _MB,
            execution_timeout=30.0,
            instruction_limit=100_000_000,
            file_ops_per_second=1000,
            network_reqs_per_second=100,
            max_goroutines=50,
            max_output_size=10 * _MB,
        )

    @classmethod
    def unlimited(cls) -> ResourceLimits:
        return cls(0, 0.0, 0, 0, 0, 0, 0)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


TRUST_TIERS: dict[str, Callable[[], ResourceLimits]] = {
    "strict": ResourceLimits.strict,
    "default": ResourceLimits.default,
    "relaxed": ResourceLimits.relaxed,
}


def limits_for_tier(tier: str) -> ResourceLimits:
    """Return the preset limits for a trust tier.

    Raises
    ------
    ValueError
        If ``tier`` is not one of ``strict``, ``default`` or ``relaxed``
    """
    try:
        return TRUST_TIERS[tier.lower()]()
    except KeyError:
        raise ValueError(f"Unknown trust tier '{tier}'. Expected one of: {', '.join(TRUST_TIERS)}") from None


class RateLimiter:
    """Token bucket allowing ``rate_per_second`` operations per second.

    The bucket holds at most ``rate_per_second`` tokens and starts full.
    Refill is proportional to elapsed time, fractional tokens are kept.
    A rate of zero (or below) disables limiting.

    Example:
        >>> limiter = RateLimiter(2)
        >>> limiter.allow(), limiter.allow(), limiter.allow()
        (True, True, False)
    """

    def __init__(self, rate_per_second: int, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._rate = max(int(rate_per_second), 0)
        self._capacity = float(self._rate)
        self._tokens = self._capacity
        self._last_refill = clock()

    @property
    def rate(self) -> int:
        return self._rate

    @property
    def tokens(self) -> float:
        """Tokens currently available (without refilling)."""
        with self._lock:
            return self._tokens

    def allow(self) -> bool:
        """Spend one token if available. Never blocks."""
        if self._rate == 0:
            return True

        with self._lock:
            now = self._clock()
            elapsed = now - self._last_refill
            if elapsed > 0:
                self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
            self._last_refill = now

            if self._tokens < 1.0:
                return False

            self._tokens -= 1.0
            return True

    def reset(self) -> None:
        """Restore full capacity immediately."""
        with self._lock:
            self._tokens = self._capacity
            self._last_refill = self._clock()


@dataclass(frozen=True)
class ResourceUsage:
    """Snapshot of a monitor's counters."""

    instruction_count: int
    memory_usage: int
    goroutine_count: int
    output_size: int
    exceeded: bool
    exceeded_reason: str


class ResourceMonitor:
    """Tracks resource usage of one plugin execution scope.

    Every accounting method returns ``True`` when the call pushed a counter
    over its limit. The first breach latches :attr:`is_exceeded`; later
    breaches keep counting but do not replace the reason.

    Safe to call from any thread.

    Example:
        >>> monitor = ResourceMonitor(ResourceLimits(instruction_limit=1000))
        >>> monitor.increment_instructions(1000)
        False
        >>> monitor.increment_instructions(1)
        True
        >>> monitor.exceeded_reason
        'instruction limit exceeded'
    """

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._limits = limits or ResourceLimits.default()

        self._instruction_count = 0
        self._memory_usage = 0
        self._goroutine_count = 0
        self._output_size = 0

        self._file_ops = RateLimiter(self._limits.file_ops_per_second, clock=clock)
        self._network_reqs = RateLimiter(self._limits.network_reqs_per_second, clock=clock)

        self._exceeded = False
        self._reason = ""

    def _latch(self, reason: str) -> None:
        # Caller holds the lock
        if not self._exceeded:
            self._exceeded = True
            self._reason = reason

    # Counters -------------------------------------------------------------

    def increment_instructions(self, count: int) -> bool:
        """Add ``count`` executed instructions. Called from the VM step hook."""
        with self._lock:
            self._instruction_count += count
            limit = self._limits.instruction_limit
            if limit > 0 and self._instruction_count > limit:
                self._latch(REASON_INSTRUCTIONS)
                return True
            return False

    def update_memory_usage(self, nbytes: int) -> bool:
        """Set (not add) the current memory estimate."""
        with self._lock:
            self._memory_usage = nbytes
            limit = self._limits.memory_limit
            if limit > 0 and nbytes > limit:
                self._latch(REASON_MEMORY)
                return True
            return False

    def increment_goroutines(self) -> bool:
        with self._lock:
            self._goroutine_count += 1
            limit = self._limits.max_goroutines
            if limit > 0 and self._goroutine_count > limit:
                self._latch(REASON_GOROUTINES)
                return True
            return False

    def decrement_goroutines(self) -> None:
        with self._lock:
            self._goroutine_count -= 1

    def add_output(self, nbytes: int) -> bool:
        with self._lock:
            self._output_size += nbytes
            limit = self._limits.max_output_size
            if limit > 0 and self._output_size > limit:
                self._latch(REASON_OUTPUT)
                return True
            return False

    # Rate limits ----------------------------------------------------------

    def try_file_op(self) -> bool:
        """Return ``True`` if a file operation may proceed right now."""
        with self._lock:
            limiter = self._file_ops
        if limiter.allow():
            return True
        with self._lock:
            self._latch(REASON_FILE_RATE)
        return False

    def try_network_request(self) -> bool:
        """Return ``True`` if a network request may proceed right now."""
        with self._lock:
            limiter = self._network_reqs
        if limiter.allow():
            return True
        with self._lock:
            self._latch(REASON_NETWORK_RATE)
        return False

    # Accessors ------------------------------------------------------------

    @property
    def instruction_count(self) -> int:
        with self._lock:
            return self._instruction_count

    @property
    def memory_usage(self) -> int:
        with self._lock:
            return self._memory_usage

    @property
    def goroutine_count(self) -> int:
        with self._lock:
            return self._goroutine_count

    @property
    def output_size(self) -> int:
        with self._lock:
            return self._output_size

    @property
    def is_exceeded(self) -> bool:
        with self._lock:
            return self._exceeded

    @property
    def exceeded_reason(self) -> str:
        with self._lock:
            return self._reason

    @property
    def execution_timeout(self) -> float:
        with self._lock:
            return self._limits.execution_timeout

    def get_usage(self) -> ResourceUsage:
        """Return a consistent snapshot of all counters."""
        with self._lock:
            return ResourceUsage(
                instruction_count=self._instruction_count,
                memory_usage=self._memory_usage,
                goroutine_count=self._goroutine_count,
                output_size=self._output_size,
                exceeded=self._exceeded,
                exceeded_reason=self._reason,
            )

    def limits(self) -> ResourceLimits:
        with self._lock:
            return self._limits

    def set_limits(self, limits: ResourceLimits) -> None:
        """Swap thresholds on a live monitor. Counters are kept, limiters start full."""
        with self._lock:
            self._limits = limits
            self._file_ops = RateLimiter(limits.file_ops_per_second, clock=self._clock)
            self._network_reqs = RateLimiter(limits.network_reqs_per_second, clock=self._clock)

    # Resets ---------------------------------------------------------------

    def reset_instruction_count(self) -> None:
        """Zero the instruction counter. The exceeded flag is left alone."""
        with self._lock:
            self._instruction_count = 0

    def reset_output_size(self) -> None:
        """Zero the output counter. The exceeded flag is left alone."""
        with self._lock:
            self._output_size = 0

    def reset(self, *, keep_rate_limiters: bool = False) -> None:
        """Clear every counter and the exceeded state.

        Parameters
        ----------
        keep_rate_limiters
            Preserve the token buckets' current state instead of refilling them
        """
        with self._lock:
            self._instruction_count = 0
            self._memory_usage = 0
            self._goroutine_count = 0
            self._output_size = 0
            self._exceeded = False
            self._reason = ""
            limiters = (self._file_ops, self._network_reqs)

        if not keep_rate_limiters:
            for limiter in limiters:
                limiter.reset()
