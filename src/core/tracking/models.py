# src/core/tracking/models.py
"""
Модели данных трекинга маршрутов.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def utc_now() -> datetime:
    """Текущее время в UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


class RoutePoint(BaseModel):
    """Точка пройденного пути."""

    lat: float = Field(..., description="Широта")
    lng: float = Field(..., description="Долгота")
    timestamp: datetime = Field(..., description="Время приёма точки сервером")

    class Config:
        frozen = True

    def same_position(self, lat: float, lng: float) -> bool:
        """Совпадают ли координаты (строгое равенство, без допусков)."""
        return self.lat == lat and self.lng == lng


class RouteLock(BaseModel):
    """Эксклюзивное право сессии публиковать координаты маршрута."""

    route_id: int = Field(..., description="ID маршрута")
    session_id: str = Field(..., description="ID сессии-владельца")
    bus_id: int = Field(..., description="ID автобуса")
    vehicle_number: Optional[str] = Field(None, description="Бортовой номер")
    locked_at: datetime = Field(default_factory=utc_now, description="Время блокировки")

    class Config:
        frozen = True


class LockResult(BaseModel):
    """Результат попытки захвата маршрута."""

    granted: bool
    lock: Optional[RouteLock] = None
    holder_bus_id: Optional[int] = None
    holder_vehicle_number: Optional[str] = None
    locked_at: Optional[datetime] = None

    @classmethod
    def granted_to(cls, lock: RouteLock) -> LockResult:
        return cls(granted=True, lock=lock)

    @classmethod
    def denied_by(cls, holder: RouteLock) -> LockResult:
        return cls(
            granted=False,
            holder_bus_id=holder.bus_id,
            holder_vehicle_number=holder.vehicle_number,
            locked_at=holder.locked_at,
        )


class LocationSample(BaseModel):
    """Входящая GPS-точка от водителя (событие bus_location)."""

    bus_id: int = Field(..., description="ID автобуса")
    route_id: int = Field(..., description="ID маршрута")
    lat: float = Field(..., ge=-90, le=90, description="Широта")
    lng: float = Field(..., ge=-180, le=180, description="Долгота")
    speed: Optional[float] = Field(None, ge=0, description="Скорость")


class LiveLocation(BaseModel):
    """
    Последнее известное положение автобуса и путь текущей поездки.

    При trip_active=False путь пуст, а start_lat/start_lng/trip_start_time
    отсутствуют. При trip_active=True путь не пуст, и время первой точки
    совпадает с trip_start_time.
    """

    bus_id: int
    route_id: int
    lat: float
    lng: float
    speed: Optional[float] = None
    start_lat: Optional[float] = None
    start_lng: Optional[float] = None
    updated_at: datetime = Field(default_factory=utc_now)
    trip_active: bool = False
    trip_start_time: Optional[datetime] = None
    active_route_points: list[RoutePoint] = Field(default_factory=list)

    @property
    def last_point(self) -> RoutePoint | None:
        """Последняя точка пути или None."""
        return self.active_route_points[-1] if self.active_route_points else None

    def to_broadcast(self) -> dict[str, Any]:
        """Полезная нагрузка события location_update (весь накопленный путь)."""
        data = self.model_dump(
            mode="json",
            include={"bus_id", "lat", "lng", "speed", "start_lat", "start_lng"},
        )
        data["route_points"] = [p.model_dump(mode="json") for p in self.active_route_points]
        return data


class TripRecord(BaseModel):
    """Завершённая поездка для архива. Неизменяема."""

    bus_id: int
    route_id: int
    start_time: datetime
    end_time: datetime
    route_points: list[RoutePoint] = Field(..., min_length=1)
    total_points: int = Field(..., ge=1)

    class Config:
        frozen = True

    @model_validator(mode="after")
    def check_total_points(self) -> TripRecord:
        if self.total_points != len(self.route_points):
            raise ValueError(
                f"total_points={self.total_points} не совпадает с числом точек {len(self.route_points)}"
            )
        return self

    @classmethod
    def from_live(cls, location: LiveLocation, end_time: datetime) -> TripRecord:
        """Собирает запись архива из активной поездки."""
        points = list(location.active_route_points)
        return cls(
            bus_id=location.bus_id,
            route_id=location.route_id,
            start_time=location.trip_start_time or points[0].timestamp,
            end_time=end_time,
            route_points=points,
            total_points=len(points),
        )


class TripEndResult(BaseModel):
    """Итог завершения поездки."""

    bus_id: int
    route_id: Optional[int] = None
    record: Optional[TripRecord] = None
    archived: bool = False
    archive_error: Optional[str] = None

    @property
    def location_existed(self) -> bool:
        """Была ли у автобуса запись LiveLocation (и, значит, сброс)."""
        return self.route_id is not None
