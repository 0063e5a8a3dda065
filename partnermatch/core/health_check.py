"""
Health of the external dependencies guarded by circuit breakers.

Usage:
    from partnermatch.core.health_check import check_circuit_health

    health = check_circuit_health()
    # {"status": "critical", "healthy": False, "open_circuits": ["apollo-api"], ...}
"""

from typing import Any, Dict, Literal, Optional

import structlog

from partnermatch.core.circuit_breaker import CircuitBreakerRegistry, CircuitState, default_registry

logger = structlog.get_logger(__name__)

__all__ = ["check_circuit_health", "ThresholdStatus"]

ThresholdStatus = Literal["ok", "warning", "critical"]


def check_circuit_health(registry: Optional[CircuitBreakerRegistry] = None) -> Dict[str, Any]:
    """
    Summarize circuit breaker states.

    Any OPEN circuit is critical, any HALF_OPEN circuit is a warning.
    """
    if registry is None:
        registry = default_registry
    try:
        stats = registry.get_all_stats()
    except Exception as e:
        logger.error("Circuit health check failed", error=str(e))
        return {
            "status": "warning",
            "healthy": False,
            "reason": f"Health check error: {str(e)}",
        }

    open_circuits = [name for name, s in stats.items() if s.state is CircuitState.OPEN]
    half_open_circuits = [name for name, s in stats.items() if s.state is CircuitState.HALF_OPEN]
    closed_circuits = [name for name, s in stats.items() if s.state is CircuitState.CLOSED]

    status: ThresholdStatus = "ok"
    if open_circuits:
        status = "critical"
    elif half_open_circuits:
        status = "warning"

    return {
        "status": status,
        "healthy": not open_circuits,
        "open_circuits": open_circuits,
        "half_open_circuits": half_open_circuits,
        "closed_circuits": closed_circuits,
        "total_circuits": len(stats),
        "stats": {name: s.to_dict() for name, s in stats.items()},
    }
