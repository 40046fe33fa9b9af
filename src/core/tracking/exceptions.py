# src/core/tracking/exceptions.py
"""
Исключения домена трекинга.
"""

from __future__ import annotations

from datetime import datetime


class TrackingError(Exception):
    """Базовое исключение трекинга."""


class LockConflict(TrackingError):
    """Маршрут уже заблокирован другой сессией."""

    def __init__(
        self,
        route_id: int,
        holder_bus_id: int,
        holder_vehicle_number: str | None = None,
        locked_at: datetime | None = None,
    ) -> None:
        self.route_id = route_id
        self.holder_bus_id = holder_bus_id
        self.holder_vehicle_number = holder_vehicle_number
        self.locked_at = locked_at
        super().__init__(f"Маршрут {route_id} уже отслеживается автобусом {holder_bus_id}")


class Unauthorized(TrackingError):
    """Сессия не владеет блокировкой маршрута."""


class StorageFailure(TrackingError):
    """Ошибка хранилища (Redis/PostgreSQL)."""


class InvalidPayload(TrackingError):
    """Некорректные данные входящего события."""
