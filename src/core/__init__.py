# src/core/__init__.py
"""
Доменный слой (Core Domain).
Блокировки маршрутов и поездки автобусов, без привязки к транспорту.
"""

from src.core.tracking import RouteLockTable, TripSessionTracker

__all__ = [
    "RouteLockTable",
    "TripSessionTracker",
]
