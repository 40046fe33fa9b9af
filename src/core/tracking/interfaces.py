# src/core/tracking/interfaces.py
"""
Контракты внешних зависимостей ядра трекинга.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol

from src.core.tracking.models import LiveLocation, TripRecord


class LocationStore(Protocol):
    """Хранилище живых координат (одна запись на автобус)."""

    async def get_by_bus(self, bus_id: int) -> LiveLocation | None: ...

    async def get_by_route(self, route_id: int) -> LiveLocation | None: ...

    async def upsert_by_bus(
        self,
        bus_id: int,
        fields: Mapping[str, Any],
        unset: Iterable[str] = (),
    ) -> None:
        """Атомарно устанавливает поля (и удаляет unset), создаёт запись при отсутствии."""
        ...


class TripArchive(Protocol):
    """Архив завершённых поездок (append-only)."""

    async def append(self, record: TripRecord) -> None:
        """Сохраняет запись. При ошибке бросает StorageFailure."""
        ...


class BroadcastRouter(Protocol):
    """Рассылка событий подписчикам маршрута."""

    async def publish(self, route_id: int, event: str, payload: dict[str, Any]) -> int:
        """Отправляет событие всем подписчикам маршрута в порядке вызовов."""
        ...

    async def publish_to(self, session_id: str, event: str, payload: dict[str, Any]) -> bool:
        """Отправляет событие одному соединению."""
        ...

    async def subscribe(self, session_id: str, route_id: int) -> None: ...

    async def unsubscribe_all(self, session_id: str) -> None: ...
