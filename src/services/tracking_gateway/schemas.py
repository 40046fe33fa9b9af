# src/services/tracking_gateway/schemas.py
"""
Схемы входящих событий и HTTP-ответов шлюза трекинга.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# === ВХОДЯЩИЕ СОБЫТИЯ ===

class AuthenticateDriverPayload(BaseModel):
    """Событие authenticate_driver."""
    bus_id: int
    route_id: int
    vehicle_number: Optional[str] = None


class JoinRoutePayload(BaseModel):
    """Событие join_route."""
    route_id: int


class EndTripPayload(BaseModel):
    """Событие end_trip."""
    bus_id: int


# === HTTP ===

class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""
    service: str
    status: str = "healthy"  # healthy, degraded, unhealthy
    version: str | None = None
    uptime_seconds: float | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)


class StatsResponse(BaseModel):
    """Статистика соединений и блокировок."""
    active_connections: int
    total_topics: int
    total_connections_ever: int
    total_messages_sent: int
    locked_routes: int


class LockedRouteResponse(BaseModel):
    """Запись о заблокированном маршруте."""
    route_id: int
    bus_id: int
    vehicle_number: Optional[str] = None
    session_id: str
    locked_at: datetime
