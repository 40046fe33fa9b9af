# src/core/tracking/__init__.py
"""
Домен трекинга маршрутов: блокировки маршрутов и поездки автобусов.
"""

from src.core.tracking.exceptions import (
    InvalidPayload,
    LockConflict,
    StorageFailure,
    TrackingError,
    Unauthorized,
)
from src.core.tracking.models import (
    LiveLocation,
    LocationSample,
    LockResult,
    RouteLock,
    RoutePoint,
    TripEndResult,
    TripRecord,
)
from src.core.tracking.route_locks import RouteLockTable
from src.core.tracking.trip_tracker import TripSessionTracker

__all__ = [
    "InvalidPayload",
    "LockConflict",
    "StorageFailure",
    "TrackingError",
    "Unauthorized",
    "LiveLocation",
    "LocationSample",
    "LockResult",
    "RouteLock",
    "RoutePoint",
    "TripEndResult",
    "TripRecord",
    "RouteLockTable",
    "TripSessionTracker",
]
