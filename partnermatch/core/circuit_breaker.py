"""
Circuit breakers for outbound calls to external services.

One breaker guards one dependency (Apollo, the AI gateway, Google APIs, the
email service). A breaker that sees `failure_threshold` consecutive failures
opens and rejects calls without attempting them until `reset_timeout_ms` has
passed since the last failure. The next call after that runs as a half-open
trial: `success_threshold` successful trials close the circuit, a single
failed trial opens it again.

Breakers never raise from `execute`; the outcome is encoded in a
`CircuitBreakerResult`. Retrying belongs inside the operation passed to
`execute` (see `partnermatch.core.retry`), since the breaker counts every
exception as a failure.

Usage:
    registry = CircuitBreakerRegistry()
    breaker = registry.get_or_create(APOLLO_CIRCUIT_CONFIG)
    result = await breaker.execute(lambda: fetch_organization(org_id))
    if result.was_short_circuited:
        ...  # "temporarily unavailable, retry in N seconds"
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock, RLock
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Protocol, TypeVar

from sqlmodel import Session, select

from partnermatch.core.config import settings
from partnermatch.core.errors import CircuitOpenError, CircuitOperationError, capture_message
from partnermatch.core.logging_config import get_logger
from partnermatch.core.typing import as_utc, utc_now
from partnermatch.models.circuit_breaker_state import CircuitBreakerState

logger = get_logger(__name__)

T = TypeVar("T")

# Registry-level hook - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)


class CircuitState(Enum):
    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Failing, reject requests
    HALF_OPEN = "HALF_OPEN"  # Testing if recovered


@dataclass(frozen=True)
class CircuitStats:
    """Point-in-time snapshot of a breaker's counters."""

    state: CircuitState
    failures: int
    successes: int
    last_failure_time: Optional[datetime]
    last_success_time: Optional[datetime]
    total_requests: int
    total_failures: int
    total_successes: int
    consecutive_failures: int
    consecutive_successes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
        }


StatsCallback = Callable[[CircuitStats], Any]


@dataclass(frozen=True)
class CircuitBreakerConfig:
    name: str
    failure_threshold: int = 5
    reset_timeout_ms: int = 30_000
    success_threshold: int = 2  # Successful trials needed to close from HALF_OPEN
    on_open: Optional[StatsCallback] = None
    on_close: Optional[StatsCallback] = None
    on_half_open: Optional[StatsCallback] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("name is required")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout_ms < 0:
            raise ValueError("reset_timeout_ms must be >= 0")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")


DEFAULT_CIRCUIT_CONFIG = CircuitBreakerConfig(name="default")

# Apollo: more tolerant, it backs most enrichment
APOLLO_CIRCUIT_CONFIG = CircuitBreakerConfig(
    name="apollo-api", failure_threshold=5, reset_timeout_ms=60_000, success_threshold=2
)

# AI gateway: quick recovery attempts
AI_GATEWAY_CIRCUIT_CONFIG = CircuitBreakerConfig(
    name="ai-gateway", failure_threshold=3, reset_timeout_ms=30_000, success_threshold=1
)

GOOGLE_API_CIRCUIT_CONFIG = CircuitBreakerConfig(
    name="google-api", failure_threshold=4, reset_timeout_ms=45_000, success_threshold=2
)

# Email: fail fast, recover fast
EMAIL_CIRCUIT_CONFIG = CircuitBreakerConfig(
    name="email-service", failure_threshold=3, reset_timeout_ms=20_000, success_threshold=1
)


@dataclass
class CircuitBreakerResult(Generic[T]):
    success: bool
    circuit_state: CircuitState
    was_short_circuited: bool = False
    data: Optional[T] = None
    error: Optional[str] = None
    retry_after_ms: Optional[int] = None  # Set when short-circuited

    def unwrap(self, circuit: str = "circuit") -> T:
        """Return the data, or raise CircuitOpenError / CircuitOperationError."""
        if self.success:
            return self.data  # type: ignore[return-value]
        if self.was_short_circuited:
            raise CircuitOpenError(circuit, self.retry_after_ms or 0, self.error)
        raise CircuitOperationError(circuit, self.error or "Operation failed")


class CircuitStateStore(Protocol):
    """External store that lets several processes share circuit state."""

    def load(self, name: str) -> Optional[Dict[str, Any]]: ...

    def save(self, name: str, state: str, failure_count: int, last_failure_at: Optional[datetime]) -> None: ...


class SQLModelCircuitStateStore:
    """Persists circuit state in the `circuitbreakerstate` table."""

    def __init__(self, engine):
        self.engine = engine

    def load(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            with Session(self.engine) as session:
                db_state = session.exec(
                    select(CircuitBreakerState).where(CircuitBreakerState.name == name)
                ).first()
                if db_state:
                    return {
                        "state": db_state.state,
                        "failure_count": db_state.failure_count,
                        "last_failure_at": as_utc(db_state.last_failure_at),
                    }
        except Exception as e:
            logger.warning("Failed to load circuit breaker state", circuit=name, error=str(e))
        return None

    def save(self, name: str, state: str, failure_count: int, last_failure_at: Optional[datetime]) -> None:
        try:
            with Session(self.engine) as session:
                db_state = session.exec(
                    select(CircuitBreakerState).where(CircuitBreakerState.name == name)
                ).first()
                if db_state:
                    db_state.state = state
                    db_state.failure_count = failure_count
                    db_state.last_failure_at = last_failure_at
                    db_state.updated_at = utc_now()
                else:
                    db_state = CircuitBreakerState(
                        name=name,
                        state=state,
                        failure_count=failure_count,
                        last_failure_at=last_failure_at,
                    )
                session.add(db_state)
                session.commit()
        except Exception as e:
            # Persistence failures must not break the breaker
            logger.warning("Failed to persist circuit breaker state", circuit=name, error=str(e))


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


@dataclass
class CircuitBreaker:
    config: CircuitBreakerConfig
    clock: Callable[[], datetime] = utc_now
    store: Optional[CircuitStateStore] = None
    on_state_change: Optional[StateChangeCallback] = None

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: int = field(default=0, init=False)
    _successes: int = field(default=0, init=False)
    _last_failure_time: Optional[datetime] = field(default=None, init=False)
    _last_success_time: Optional[datetime] = field(default=None, init=False)
    _total_requests: int = field(default=0, init=False)
    _total_failures: int = field(default=0, init=False)
    _total_successes: int = field(default=0, init=False)
    _consecutive_failures: int = field(default=0, init=False)
    _consecutive_successes: int = field(default=0, init=False)
    _lock: RLock = field(default_factory=RLock, init=False)

    def __post_init__(self):
        """Restore state from the store, if one is configured."""
        if self.store is None:
            return
        saved = self.store.load(self.name)
        if not saved:
            return
        try:
            self._state = CircuitState(str(saved.get("state", "CLOSED")).upper())
        except ValueError:
            self._state = CircuitState.CLOSED
        self._failures = saved.get("failure_count") or 0
        self._last_failure_time = saved.get("last_failure_at")
        logger.info("Circuit state restored", circuit=self.name, state=self._state.value, failures=self._failures)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> CircuitState:
        """Current state, without evaluating the reset timeout."""
        return self._state

    def get_stats(self) -> CircuitStats:
        with self._lock:
            return CircuitStats(
                state=self._state,
                failures=self._failures,
                successes=self._successes,
                last_failure_time=self._last_failure_time,
                last_success_time=self._last_success_time,
                total_requests=self._total_requests,
                total_failures=self._total_failures,
                total_successes=self._total_successes,
                consecutive_failures=self._consecutive_failures,
                consecutive_successes=self._consecutive_successes,
            )

    def _elapsed_ms(self) -> float:
        if self._last_failure_time is None:
            return math.inf
        return (self.clock() - self._last_failure_time).total_seconds() * 1000

    def reset_timeout_elapsed(self) -> bool:
        """True if the circuit is OPEN and due for a half-open trial. Does not change state."""
        if self._state is not CircuitState.OPEN:
            return False
        return self._elapsed_ms() >= self.config.reset_timeout_ms

    def time_until_retry_ms(self) -> int:
        """Milliseconds until an OPEN circuit admits a trial call (0 when not OPEN)."""
        if self._state is not CircuitState.OPEN or self._last_failure_time is None:
            return 0
        return max(0, math.ceil(self.config.reset_timeout_ms - self._elapsed_ms()))

    def _transition_to(self, new_state: CircuitState) -> bool:
        """
        Move to `new_state` and fire hooks.

        Must be called while holding self._lock.
        Returns True if the state changed (for persistence).
        """
        if self._state is new_state:
            return False

        old_state = self._state
        self._state = new_state

        if new_state is CircuitState.HALF_OPEN:
            self._successes = 0
        elif new_state is CircuitState.CLOSED:
            self._failures = 0
            self._successes = 0
            self._consecutive_failures = 0

        stats = self.get_stats()
        logger.info("Circuit state transition", circuit=self.name, old_state=old_state.value, new_state=new_state.value)

        if new_state is CircuitState.OPEN:
            capture_message(
                "Circuit breaker opened",
                level="warning",
                context={
                    "circuit": self.name,
                    "failures": self._failures,
                    "reset_timeout_ms": self.config.reset_timeout_ms,
                },
            )
            hook = self.config.on_open
        elif new_state is CircuitState.HALF_OPEN:
            hook = self.config.on_half_open
        else:
            hook = self.config.on_close

        self._notify(hook, stats, old_state)
        return True

    def _notify(self, hook: Optional[StatsCallback], stats: CircuitStats, old_state: CircuitState) -> None:
        if hook:
            try:
                hook(stats)
            except Exception as e:
                logger.error("Circuit breaker callback failed", circuit=self.name, error=str(e))
        if self.on_state_change:
            try:
                self.on_state_change(self.name, old_state.value, stats.state.value)
            except Exception as e:
                logger.error("Circuit breaker notification failed", circuit=self.name, error=str(e))

    def _persist(self) -> None:
        if self.store is not None:
            self.store.save(self.name, self._state.value, self._failures, self._last_failure_time)

    def _begin_trial_if_due(self) -> bool:
        """OPEN -> HALF_OPEN once the reset timeout has elapsed. Must hold self._lock."""
        if self.reset_timeout_elapsed():
            return self._transition_to(CircuitState.HALF_OPEN)
        return False

    def begin_trial_if_due(self) -> bool:
        """Start a half-open trial if the reset timeout has elapsed. Returns True on transition."""
        with self._lock:
            state_changed = self._begin_trial_if_due()
        if state_changed:
            self._persist()
        return state_changed

    def is_allowed(self) -> bool:
        """
        Check whether a call may go through now.

        An OPEN circuit whose reset timeout has elapsed is moved to HALF_OPEN
        as a side effect. Use `reset_timeout_elapsed()` for a read-only check.
        """
        self.begin_trial_if_due()
        return self._state is not CircuitState.OPEN

    def _record_success(self) -> None:
        state_changed = False
        with self._lock:
            self._total_successes += 1
            self._consecutive_successes += 1
            self._consecutive_failures = 0
            self._last_success_time = self.clock()

            if self._state is CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    state_changed = self._transition_to(CircuitState.CLOSED)
            elif self._state is CircuitState.CLOSED:
                self._failures = 0
        if state_changed:
            self._persist()

    def _record_failure(self, error: BaseException) -> None:
        state_changed = False
        with self._lock:
            self._failures += 1
            self._total_failures += 1
            self._consecutive_failures += 1
            self._consecutive_successes = 0
            self._last_failure_time = self.clock()

            logger.error(
                "Circuit failure recorded",
                circuit=self.name,
                error=_error_message(error),
                failures=self._failures,
                failure_threshold=self.config.failure_threshold,
            )

            if self._state is CircuitState.HALF_OPEN:
                # Any failed trial reopens the circuit
                state_changed = self._transition_to(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
                state_changed = self._transition_to(CircuitState.OPEN)
        if state_changed:
            self._persist()

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> CircuitBreakerResult[T]:
        """
        Run `operation` if the circuit allows it.

        Never raises for a failing operation: exceptions are recorded and
        returned as a failed result. Short-circuited calls are flagged with
        `was_short_circuited` and carry the remaining wait time.
        """
        with self._lock:
            self._total_requests += 1
            state_changed = self._begin_trial_if_due()
            short_circuited = self._state is CircuitState.OPEN
            retry_after_ms = self.time_until_retry_ms()
        if state_changed:
            self._persist()

        if short_circuited:
            logger.warning("Request short-circuited", circuit=self.name, retry_after_ms=retry_after_ms)
            return CircuitBreakerResult(
                success=False,
                circuit_state=CircuitState.OPEN,
                was_short_circuited=True,
                error=f"Circuit breaker OPEN for {self.name}. Retry in {math.ceil(retry_after_ms / 1000)}s",
                retry_after_ms=retry_after_ms,
            )

        try:
            data = await operation()
        except Exception as e:
            self._record_failure(e)
            return CircuitBreakerResult(
                success=False,
                circuit_state=self._state,
                error=_error_message(e),
            )

        self._record_success()
        return CircuitBreakerResult(success=True, circuit_state=self._state, data=data)

    def reset(self) -> None:
        """Force CLOSED and zero the failure/success counters (lifetime totals are kept)."""
        with self._lock:
            logger.info("Circuit manual reset", circuit=self.name, previous_state=self._state.value)
            self._failures = 0
            self._successes = 0
            self._consecutive_failures = 0
            self._consecutive_successes = 0
            self._transition_to(CircuitState.CLOSED)
        self._persist()

    def force_open(self) -> None:
        """Trip the circuit manually, e.g. to shut off a degraded dependency."""
        with self._lock:
            logger.warning("Circuit forced open", circuit=self.name)
            self._last_failure_time = self.clock()
            self._transition_to(CircuitState.OPEN)
        self._persist()


class CircuitBreakerRegistry:
    """
    Owns one breaker per dependency name.

    Call sites receive a registry (or use the module default) instead of
    sharing a hidden global map, so tests can hand in a fresh one and a
    store-backed registry can share state between processes.
    """

    def __init__(
        self,
        store: Optional[CircuitStateStore] = None,
        clock: Callable[[], datetime] = utc_now,
        on_state_change: Optional[StateChangeCallback] = None,
    ):
        self.store = store
        self.clock = clock
        self.on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get_or_create(self, config: CircuitBreakerConfig) -> CircuitBreaker:
        """Return the breaker named `config.name`; `config` only applies on first creation."""
        with self._lock:
            breaker = self._breakers.get(config.name)
            if breaker is None:
                breaker = CircuitBreaker(
                    config=config,
                    clock=self.clock,
                    store=self.store,
                    on_state_change=self.on_state_change,
                )
                self._breakers[config.name] = breaker
            return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_all_stats(self) -> Dict[str, CircuitStats]:
        return {name: cb.get_stats() for name, cb in list(self._breakers.items())}

    def get_all_states(self) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in list(self._breakers.items())}

    def reset_all(self) -> None:
        for breaker in list(self._breakers.values()):
            breaker.reset()

    def clear(self) -> None:
        """Drop all breakers (test setup)."""
        with self._lock:
            self._breakers.clear()

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)


def _default_store() -> Optional[CircuitStateStore]:
    if not settings.CIRCUIT_STATE_PERSIST:
        return None
    from partnermatch.db import engine

    return SQLModelCircuitStateStore(engine)


default_registry = CircuitBreakerRegistry(store=_default_store())


def _registry_or_default(registry: Optional[CircuitBreakerRegistry]) -> CircuitBreakerRegistry:
    # An empty registry is falsy (__len__), so test for None explicitly
    return default_registry if registry is None else registry


def get_circuit_breaker(
    config: CircuitBreakerConfig, registry: Optional[CircuitBreakerRegistry] = None
) -> CircuitBreaker:
    return _registry_or_default(registry).get_or_create(config)


def get_all_circuit_stats(registry: Optional[CircuitBreakerRegistry] = None) -> Dict[str, CircuitStats]:
    return _registry_or_default(registry).get_all_stats()


def reset_all_circuits(registry: Optional[CircuitBreakerRegistry] = None) -> None:
    _registry_or_default(registry).reset_all()


async def with_apollo_circuit(
    operation: Callable[[], Awaitable[T]], registry: Optional[CircuitBreakerRegistry] = None
) -> CircuitBreakerResult[T]:
    return await get_circuit_breaker(APOLLO_CIRCUIT_CONFIG, registry).execute(operation)


async def with_ai_circuit(
    operation: Callable[[], Awaitable[T]], registry: Optional[CircuitBreakerRegistry] = None
) -> CircuitBreakerResult[T]:
    return await get_circuit_breaker(AI_GATEWAY_CIRCUIT_CONFIG, registry).execute(operation)


async def with_google_circuit(
    operation: Callable[[], Awaitable[T]], registry: Optional[CircuitBreakerRegistry] = None
) -> CircuitBreakerResult[T]:
    return await get_circuit_breaker(GOOGLE_API_CIRCUIT_CONFIG, registry).execute(operation)


async def with_email_circuit(
    operation: Callable[[], Awaitable[T]], registry: Optional[CircuitBreakerRegistry] = None
) -> CircuitBreakerResult[T]:
    return await get_circuit_breaker(EMAIL_CIRCUIT_CONFIG, registry).execute(operation)
