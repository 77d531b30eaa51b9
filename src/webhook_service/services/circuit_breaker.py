"""Per-destination circuit breaker for outbound webhook deliveries.

One circuit is kept per destination (scheme, host and port of the webhook
URL), so every registration pointing at the same receiver shares its health.

Transitions::

    closed    --threshold failures within window-->  open
    open      --cool-down elapsed, next call------>  half-open (single trial)
    half-open --trial succeeds-------------------->  closed (counters reset)
    half-open --trial fails----------------------->  open (cool-down * multiplier, capped)
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from urllib.parse import urlsplit

import structlog

from webhook_service.core.exceptions import CircuitOpenError
from webhook_service.domain.models import CircuitBreakerStats, CircuitState, utcnow
from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

_DEFAULT_PORTS = {"http": 80, "https": 443}


def destination_key(url: str) -> str:
    """Normalise *url* to ``scheme://host:port``."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port or _DEFAULT_PORTS.get(scheme)
    return f"{scheme}://{host}:{port}" if port else f"{scheme}://{host}"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 30.0
    cooldown_multiplier: float = 2.0
    max_cooldown_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            window_seconds=settings.circuit_breaker_window_seconds,
            cooldown_seconds=settings.circuit_breaker_cooldown_seconds,
            cooldown_multiplier=settings.circuit_breaker_cooldown_multiplier,
            max_cooldown_seconds=settings.circuit_breaker_max_cooldown_seconds,
        )


@dataclass
class _Circuit:
    key: str
    cooldown_seconds: float
    state: CircuitState = CircuitState.CLOSED
    failures: deque[datetime] = field(default_factory=deque)
    open_count: int = 0
    next_retry_at: datetime | None = None
    trial_in_flight: bool = False
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    total_blocked: int = 0


class CircuitBreakerRegistry:
    """Holds one circuit per destination key.

    All methods are synchronous and never await, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self, config: CircuitBreakerConfig | None = None, clock: Clock = utcnow):
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _circuit(self, key: str) -> _Circuit:
        circuit = self._circuits.get(key)
        if circuit is None:
            circuit = _Circuit(key=key, cooldown_seconds=self._config.cooldown_seconds)
            self._circuits[key] = circuit
        return circuit

    def _transition(self, circuit: _Circuit, state: CircuitState) -> None:
        previous = circuit.state
        circuit.state = state
        logger.info(
            "Circuit breaker state changed",
            destination=circuit.key,
            from_state=previous.value,
            to_state=state.value,
            failure_count=len(circuit.failures),
            cooldown_seconds=circuit.cooldown_seconds,
        )

    def _reject(self, circuit: _Circuit, now: datetime) -> CircuitOpenError:
        circuit.total_blocked += 1
        return CircuitOpenError(circuit.key, circuit.next_retry_at or now)

    def before_call(self, key: str) -> None:
        """Permit a call to *key* or raise :class:`CircuitOpenError`."""
        now = self._clock()
        circuit = self._circuit(key)
        if circuit.state is CircuitState.OPEN:
            if circuit.next_retry_at is not None and now < circuit.next_retry_at:
                raise self._reject(circuit, now)
            self._transition(circuit, CircuitState.HALF_OPEN)
            circuit.trial_in_flight = True
            return
        if circuit.state is CircuitState.HALF_OPEN:
            if circuit.trial_in_flight:
                raise self._reject(circuit, now)
            circuit.trial_in_flight = True

    def record_success(self, key: str) -> None:
        now = self._clock()
        circuit = self._circuit(key)
        circuit.last_success_at = now
        circuit.failures.clear()
        circuit.trial_in_flight = False
        if circuit.state is not CircuitState.CLOSED:
            circuit.open_count = 0
            circuit.cooldown_seconds = self._config.cooldown_seconds
            circuit.next_retry_at = None
            self._transition(circuit, CircuitState.CLOSED)

    def record_failure(self, key: str) -> None:
        now = self._clock()
        circuit = self._circuit(key)
        circuit.last_failure_at = now
        if circuit.state is CircuitState.HALF_OPEN:
            circuit.trial_in_flight = False
            self._open(circuit, now)
            return
        if circuit.state is CircuitState.OPEN:
            # late result of a call admitted before the circuit opened
            return
        circuit.failures.append(now)
        horizon = now - timedelta(seconds=self._config.window_seconds)
        while circuit.failures and circuit.failures[0] < horizon:
            circuit.failures.popleft()
        if len(circuit.failures) >= self._config.failure_threshold:
            self._open(circuit, now)

    def _open(self, circuit: _Circuit, now: datetime) -> None:
        if circuit.open_count:
            circuit.cooldown_seconds = min(
                circuit.cooldown_seconds * self._config.cooldown_multiplier,
                self._config.max_cooldown_seconds,
            )
        else:
            circuit.cooldown_seconds = min(
                self._config.cooldown_seconds, self._config.max_cooldown_seconds
            )
        circuit.open_count += 1
        circuit.next_retry_at = now + timedelta(seconds=circuit.cooldown_seconds)
        self._transition(circuit, CircuitState.OPEN)

    def get_stats(self, key: str) -> CircuitBreakerStats:
        circuit = self._circuits.get(key) or _Circuit(
            key=key, cooldown_seconds=self._config.cooldown_seconds
        )
        return CircuitBreakerStats(
            key=circuit.key,
            state=circuit.state,
            failure_count=len(circuit.failures),
            open_count=circuit.open_count,
            cooldown_seconds=circuit.cooldown_seconds,
            next_retry_at=circuit.next_retry_at,
            last_failure_at=circuit.last_failure_at,
            last_success_at=circuit.last_success_at,
            total_blocked=circuit.total_blocked,
        )

    def get_all_stats(self) -> dict[str, CircuitBreakerStats]:
        return {key: self.get_stats(key) for key in sorted(self._circuits)}

    def reset(self, key: str) -> None:
        if self._circuits.pop(key, None) is not None:
            logger.info("Circuit breaker reset", destination=key)
