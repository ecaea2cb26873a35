"""Error taxonomy and failure containment for StackMind.

Errors fall into a small set of kinds:
- NotFound: operation on a missing record/task (reported as success=False)
- DuplicateIdentifier: creation collision, fails closed
- CapabilityUnavailable: generation/embedding backend cannot run, always
  recoverable through fallback content or keyword search
- PersistenceFailure: durable write failed, never reported as success

The circuit breaker keeps a dead generation backend from costing a full
timeout on every enrichment step.
"""

import asyncio
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger


class StackMindError(Exception):
    """Base class for all StackMind errors."""

    code = "internal_error"


class NotFound(StackMindError):
    code = "not_found"


class DuplicateIdentifier(StackMindError):
    code = "duplicate_identifier"


class CapabilityUnavailable(StackMindError):
    code = "capability_unavailable"


class PersistenceFailure(StackMindError):
    code = "persistence_failure"


class InvalidTransition(StackMindError):
    code = "invalid_transition"


class InvalidRequest(StackMindError):
    code = "invalid_request"


class UnknownAction(InvalidRequest):
    code = "unknown_action"


class DimensionMismatch(ValueError):
    """Two vectors of different length were compared."""


def error_payload(error: BaseException) -> Dict[str, Any]:
    """Render an exception as an inspectable failure payload."""
    code = getattr(error, "code", "internal_error")
    return {"success": False, "error": str(error) or type(error).__name__, "code": code}


class ServiceState(Enum):
    """Service health states."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CIRCUIT_OPEN = "circuit_open"


@dataclass
class ErrorEvent:
    """Last failure seen by a breaker."""
    timestamp: datetime
    service: str
    error_type: str
    message: str
    traceback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "service": self.service,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class ServiceHealth:
    """Tracks health of a guarded service."""
    name: str
    state: ServiceState = ServiceState.HEALTHY
    error_count: int = 0
    success_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[ErrorEvent] = None
    circuit_opened_at: Optional[float] = None

    @property
    def error_rate(self) -> float:
        total = self.error_count + self.success_count
        if total == 0:
            return 0.0
        return self.error_count / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "error_count": self.error_count,
            "success_count": self.success_count,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


class CircuitBreaker:
    """Circuit breaker for an external capability."""

    def __init__(self,
                 name: str,
                 failure_threshold: int = 3,
                 recovery_timeout: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize circuit breaker.

        Args:
            name: Service name
            failure_threshold: Consecutive failures before opening circuit
            recovery_timeout: Seconds before a trial call is let through
            clock: Monotonic time source
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self.health = ServiceHealth(name=name)
        self.recovery_attempts = 0

    @property
    def is_open(self) -> bool:
        return self.health.state == ServiceState.CIRCUIT_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Call func with circuit breaker protection.

        Raises:
            CapabilityUnavailable: If the circuit is open
            Exception: Whatever func raised (after recording it)
        """
        if self.is_open:
            if self._should_attempt_recovery():
                logger.info(f"Circuit breaker {self.name}: attempting recovery")
                self.recovery_attempts += 1
            else:
                raise CapabilityUnavailable(f"{self.name} circuit is open")

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_failure(e)
            if self.health.consecutive_failures >= self.failure_threshold:
                self._open_circuit()
            raise

        self._record_success()
        return result

    def _record_success(self) -> None:
        self.health.success_count += 1
        self.health.consecutive_failures = 0

        if self.is_open:
            logger.info(f"Circuit breaker {self.name}: circuit closed after recovery")
            self.recovery_attempts = 0
        self.health.state = ServiceState.HEALTHY if self.health.error_rate < 0.2 else ServiceState.DEGRADED

    def _record_failure(self, error: Exception) -> None:
        self.health.error_count += 1
        self.health.consecutive_failures += 1
        self.health.last_error = ErrorEvent(
            timestamp=datetime.now(),
            service=self.name,
            error_type=type(error).__name__,
            message=str(error),
            traceback=traceback.format_exc(),
        )
        if not self.is_open and self.health.error_rate > 0.2:
            self.health.state = ServiceState.DEGRADED

    def _open_circuit(self) -> None:
        if not self.is_open:
            logger.warning(
                f"Circuit breaker {self.name}: opening circuit after "
                f"{self.health.consecutive_failures} failures"
            )
        self.health.state = ServiceState.CIRCUIT_OPEN
        self.health.circuit_opened_at = self._clock()

    def _should_attempt_recovery(self) -> bool:
        if self.health.circuit_opened_at is None:
            return True
        elapsed = self._clock() - self.health.circuit_opened_at
        # Exponential backoff between trial calls
        backoff = self.recovery_timeout * (2 ** min(self.recovery_attempts, 5))
        return elapsed >= backoff

    def reset(self) -> None:
        self.health = ServiceHealth(name=self.name)
        self.recovery_attempts = 0
