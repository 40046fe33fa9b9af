# src/core/tracking/repository.py
"""
Репозитории трекинга: живые координаты в Redis и архив поездок в PostgreSQL.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Iterable, Mapping

import asyncpg
from redis.exceptions import RedisError

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.core.tracking.exceptions import StorageFailure
from src.core.tracking.models import LiveLocation, TripRecord
from src.infra.database import DatabaseManager
from src.infra.redis_client import RedisClient


class LiveLocationRepository:
    """
    Живые координаты автобусов в Redis.

    Ключи (с namespace клиента):
    - live:bus:{bus_id}: hash, значения полей в JSON
    - live:route:{route_id}: bus_id последнего автобуса на маршруте
    """

    BUS_KEY = "live:bus:{bus_id}"
    ROUTE_KEY = "live:route:{route_id}"

    def __init__(self, redis: RedisClient) -> None:
        """
        Args:
            redis: Клиент Redis (Dependency Injection)
        """
        self._redis = redis

    async def get_by_bus(self, bus_id: int) -> LiveLocation | None:
        """
        Получает запись автобуса.

        Raises:
            StorageFailure: Redis недоступен или запись повреждена
        """
        try:
            raw = await self._redis.hgetall(self.BUS_KEY.format(bus_id=bus_id))
            if not raw:
                return None
            return LiveLocation.model_validate({k: json.loads(v) for k, v in raw.items()})
        except (RedisError, OSError) as e:
            raise StorageFailure(f"Ошибка чтения координат автобуса {bus_id}: {e}") from e
        except ValueError as e:
            raise StorageFailure(f"Повреждённая запись автобуса {bus_id}: {e}") from e

    async def get_by_route(self, route_id: int) -> LiveLocation | None:
        """Получает запись автобуса, который последним публиковал на маршруте."""
        try:
            bus_id = await self._redis.get(self.ROUTE_KEY.format(route_id=route_id))
        except (RedisError, OSError) as e:
            raise StorageFailure(f"Ошибка чтения индекса маршрута {route_id}: {e}") from e

        if bus_id is None:
            return None

        location = await self.get_by_bus(int(bus_id))
        # Автобус мог перейти на другой маршрут
        if location is None or location.route_id != route_id:
            return None
        return location

    async def upsert_by_bus(
        self,
        bus_id: int,
        fields: Mapping[str, Any],
        unset: Iterable[str] = (),
    ) -> None:
        """
        Атомарно (MULTI/EXEC) обновляет поля записи автобуса.

        Args:
            bus_id: ID автобуса
            fields: JSON-совместимые значения полей
            unset: Поля, которые нужно удалить
        """
        bus_key = self._redis.make_key(self.BUS_KEY.format(bus_id=bus_id))
        unset = [name for name in unset if name not in fields]

        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                if fields:
                    pipe.hset(bus_key, mapping={k: json.dumps(v) for k, v in fields.items()})
                if unset:
                    pipe.hdel(bus_key, *unset)
                if "route_id" in fields:
                    route_key = self._redis.make_key(self.ROUTE_KEY.format(route_id=fields["route_id"]))
                    pipe.set(route_key, str(bus_id))
                await pipe.execute()
        except (RedisError, OSError) as e:
            raise StorageFailure(f"Ошибка записи координат автобуса {bus_id}: {e}") from e


class TripHistoryRepository:
    """Архив завершённых поездок в PostgreSQL (таблица trip_history)."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    async def append(self, record: TripRecord) -> None:
        """
        Сохраняет поездку. Повтор для той же (bus_id, start_time) игнорируется.

        Raises:
            StorageFailure: ошибка PostgreSQL
        """
        points = json.dumps([p.model_dump(mode="json") for p in record.route_points])
        try:
            status = await self._db.execute(
                """
                INSERT INTO trip_history (
                    bus_id, route_id, start_time, end_time, route_points, total_points
                )
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                ON CONFLICT (bus_id, start_time) DO NOTHING
                """,
                record.bus_id,
                record.route_id,
                record.start_time,
                record.end_time,
                points,
                record.total_points,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            await log_error(f"Ошибка сохранения поездки автобуса {record.bus_id}: {e}")
            raise StorageFailure(f"Ошибка архивации поездки автобуса {record.bus_id}: {e}") from e

        if status == "INSERT 0 0":
            await log_info(
                f"Поездка автобуса {record.bus_id} от {record.start_time.isoformat()} уже в архиве",
                type_msg=TypeMsg.WARNING,
            )
