"""
Circuit breaker state persistence model.

Lets breakers in separate worker processes (or across restarts) share the
state of a dependency, so a freshly started worker does not hammer a service
that its peers already tripped on.
"""

from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

from partnermatch.core.typing import utc_now


class CircuitBreakerState(SQLModel, table=True):
    """Persisted circuit breaker state."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)  # Circuit name (e.g., "apollo-api", "ai-gateway")
    state: str = Field(default="CLOSED")  # "CLOSED", "OPEN", "HALF_OPEN"
    failure_count: int = Field(default=0)
    last_failure_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utc_now)
