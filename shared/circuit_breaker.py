"""
Circuit Breaker Pattern Implementation.

This module provides circuit breaker protection for external service calls
(Google Calendar, Evolution API) so a provider outage fails fast instead of
stacking up slow requests.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is down, requests fail fast without calling the service
- HALF_OPEN: Testing if service recovered, one request allowed

Usage:
    from shared.circuit_breaker import messaging_breaker, call_with_breaker
    import pybreaker

    try:
        result = await call_with_breaker(messaging_breaker, client.send_text, ...)
    except pybreaker.CircuitBreakerError:
        ...
"""

import logging
import time
from typing import Any, Callable

import pybreaker

logger = logging.getLogger(__name__)


class CircuitBreakerLogger(pybreaker.CircuitBreakerListener):
    """Log circuit breaker state changes."""

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        old_name = old_state.name if old_state else "none"
        if new_state.name == pybreaker.STATE_OPEN:
            logger.warning(
                f"Circuit breaker '{cb.name}' OPENED - "
                f"service appears down, failing fast for {cb.reset_timeout}s"
            )
        elif new_state.name == pybreaker.STATE_HALF_OPEN:
            logger.info(f"Circuit breaker '{cb.name}' HALF-OPEN - testing if service recovered")
        elif new_state.name == pybreaker.STATE_CLOSED:
            logger.info(f"Circuit breaker '{cb.name}' CLOSED - resuming normal operation")
        else:
            logger.info(f"Circuit breaker '{cb.name}' state: {old_name} -> {new_state.name}")


# Singleton registry of circuit breakers
_breakers: dict[str, pybreaker.CircuitBreaker] = {}
_logger_instance = CircuitBreakerLogger()

# Consecutive failures and open timestamps tracked per breaker name for asyncio calls
_failures: dict[str, int] = {}
_opened_at: dict[str, float] = {}


def get_circuit_breaker(
    name: str,
    fail_max: int = 5,
    reset_timeout: int = 30,
    exclude: list[type] | None = None,
) -> pybreaker.CircuitBreaker:
    """
    Get or create a circuit breaker for a service.

    Args:
        name: Unique identifier for the circuit breaker
        fail_max: Number of consecutive failures before opening circuit
        reset_timeout: Seconds before attempting recovery (half-open)
        exclude: Exception types that should NOT count as failures

    Returns:
        CircuitBreaker instance (singleton per name)
    """
    if name not in _breakers:
        _breakers[name] = pybreaker.CircuitBreaker(
            name=name,
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            exclude=exclude or [],
            listeners=[_logger_instance],
        )
        _failures[name] = 0
        logger.info(
            f"Created circuit breaker '{name}' | "
            f"fail_max={fail_max} | reset_timeout={reset_timeout}s"
        )
    return _breakers[name]


# =============================================================================
# PRE-CONFIGURED CIRCUIT BREAKERS FOR EXTERNAL SERVICES
# =============================================================================

# Google Calendar API - sync is retried from the outbox, so recover quickly
calendar_breaker = get_circuit_breaker(
    name="google_calendar",
    fail_max=5,
    reset_timeout=15,
)

# Evolution API - notification sends and instance status polling
messaging_breaker = get_circuit_breaker(
    name="evolution_api",
    fail_max=5,
    reset_timeout=60,
)


async def call_with_breaker(
    breaker: pybreaker.CircuitBreaker,
    func: Callable,
    *args,
    **kwargs,
) -> Any:
    """
    Call async function with circuit breaker protection (native asyncio).

    pybreaker's call_async() requires Tornado, so consecutive failures are
    counted here and pybreaker is used for state and listeners:
    - OPEN fails fast until reset_timeout elapses, then moves to HALF_OPEN
    - A failure in HALF_OPEN reopens; a success closes
    - fail_max consecutive failures in CLOSED open the circuit

    Raises:
        pybreaker.CircuitBreakerError: If circuit is open
        Exception: Any exception raised by func
    """
    name = breaker.name

    if breaker.current_state == pybreaker.STATE_OPEN:
        opened_at = _opened_at.get(name, 0.0)
        if time.monotonic() - opened_at < breaker.reset_timeout:
            logger.warning(f"Circuit breaker '{name}' is OPEN, failing fast")
            raise pybreaker.CircuitBreakerError(f"Circuit breaker '{name}' is open")
        breaker.half_open()

    try:
        result = await func(*args, **kwargs)
    except Exception as e:
        if breaker.is_system_error(e):
            _failures[name] = _failures.get(name, 0) + 1
            logger.warning(
                f"Circuit breaker '{name}' recorded failure "
                f"({_failures[name]}/{breaker.fail_max}): {type(e).__name__}: {e}"
            )
            if (
                breaker.current_state == pybreaker.STATE_HALF_OPEN
                or _failures[name] >= breaker.fail_max
            ):
                breaker.open()
                _opened_at[name] = time.monotonic()
        raise

    _failures[name] = 0
    if breaker.current_state != pybreaker.STATE_CLOSED:
        breaker.close()
    return result


def get_breaker_status() -> dict[str, dict[str, Any]]:
    """
    Get status of all circuit breakers for monitoring/health checks.

    Returns:
        Dict of {name: {state, fail_counter, reset_timeout}}
    """
    return {
        name: {
            "state": breaker.current_state,
            "fail_counter": _failures.get(name, 0),
            "reset_timeout": breaker.reset_timeout,
        }
        for name, breaker in _breakers.items()
    }


def reset_breakers() -> None:
    """Close every breaker and clear counters."""
    for name, breaker in _breakers.items():
        _failures[name] = 0
        _opened_at.pop(name, None)
        if breaker.current_state != pybreaker.STATE_CLOSED:
            breaker.close()
