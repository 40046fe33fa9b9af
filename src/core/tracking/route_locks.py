# src/core/tracking/route_locks.py
"""
Таблица блокировок маршрутов.

Не больше одной блокировки на маршрут. Все операции синхронные и не
уступают управление event loop, поэтому каждая из них атомарна
относительно остальных корутин процесса.
"""

from __future__ import annotations

from src.common.logger import get_logger
from src.core.tracking.models import LockResult, RouteLock

logger = get_logger("route_locks")


class RouteLockTable:
    """Реестр route_id → RouteLock в памяти процесса."""

    def __init__(self) -> None:
        self._locks: dict[int, RouteLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def acquire(
        self,
        route_id: int,
        session_id: str,
        bus_id: int,
        vehicle_number: str | None = None,
    ) -> LockResult:
        """
        Пытается захватить маршрут.

        Повторный захват той же сессией идемпотентен: возвращает
        существующую блокировку без обновления locked_at.
        """
        current = self._locks.get(route_id)
        if current is not None:
            if current.session_id == session_id:
                return LockResult.granted_to(current)
            logger.info(
                "Маршрут %s уже заблокирован сессией %s (автобус %s)",
                route_id, current.session_id, current.bus_id,
            )
            return LockResult.denied_by(current)

        lock = RouteLock(
            route_id=route_id,
            session_id=session_id,
            bus_id=bus_id,
            vehicle_number=vehicle_number,
        )
        self._locks[route_id] = lock
        logger.info(
            "Маршрут %s заблокирован автобусом %s (%s), сессия %s",
            route_id, bus_id, vehicle_number, session_id,
        )
        return LockResult.granted_to(lock)

    def release(self, route_id: int, session_id: str) -> bool:
        """Снимает блокировку, только если её держит session_id."""
        current = self._locks.get(route_id)
        if current is None or current.session_id != session_id:
            return False
        del self._locks[route_id]
        logger.info("Маршрут %s разблокирован (сессия %s)", route_id, session_id)
        return True

    def is_held_by(self, route_id: int, session_id: str) -> bool:
        current = self._locks.get(route_id)
        return current is not None and current.session_id == session_id

    def get(self, route_id: int) -> RouteLock | None:
        return self._locks.get(route_id)

    def list(self) -> list[RouteLock]:
        """Снимок всех текущих блокировок."""
        return list(self._locks.values())
