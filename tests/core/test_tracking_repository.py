# tests/core/test_tracking_repository.py
"""
Тесты для репозиториев трекинга (Redis и PostgreSQL замоканы).
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.core.tracking.exceptions import StorageFailure
from src.core.tracking.models import RoutePoint, TripRecord
from src.core.tracking.repository import LiveLocationRepository, TripHistoryRepository

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_pipe() -> MagicMock:
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1])
    return pipe


@pytest.fixture
def mock_redis(mock_pipe: MagicMock) -> MagicMock:
    """Мок RedisClient с пайплайном в виде async context manager."""
    redis = MagicMock()
    redis.make_key = MagicMock(side_effect=lambda key: f"bus:{key}")
    redis.hgetall = AsyncMock(return_value={})
    redis.get = AsyncMock(return_value=None)

    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=mock_pipe)
    cm.__aexit__ = AsyncMock(return_value=False)
    redis.pipeline = MagicMock(return_value=cm)
    return redis


@pytest.fixture
def repo(mock_redis: MagicMock) -> LiveLocationRepository:
    return LiveLocationRepository(mock_redis)


def encoded(**fields) -> dict[str, str]:
    return {k: json.dumps(v) for k, v in fields.items()}


class TestLiveLocationRepositoryRead:
    """Тесты чтения живых координат."""

    @pytest.mark.asyncio
    async def test_get_by_bus_missing(self, repo: LiveLocationRepository, mock_redis: MagicMock) -> None:
        assert await repo.get_by_bus(42) is None
        mock_redis.hgetall.assert_awaited_once_with("live:bus:42")

    @pytest.mark.asyncio
    async def test_get_by_bus_decodes_fields(self, repo: LiveLocationRepository, mock_redis: MagicMock) -> None:
        mock_redis.hgetall.return_value = encoded(
            bus_id=42,
            route_id=5,
            lat=1.5,
            lng=2.5,
            speed=None,
            trip_active=True,
            trip_start_time=T0.isoformat(),
            active_route_points=[{"lat": 1.5, "lng": 2.5, "timestamp": T0.isoformat()}],
        )

        location = await repo.get_by_bus(42)

        assert location.route_id == 5
        assert location.trip_active is True
        assert location.trip_start_time == T0
        assert location.active_route_points[0].lat == 1.5

    @pytest.mark.asyncio
    async def test_get_by_bus_corrupted_record(self, repo: LiveLocationRepository, mock_redis: MagicMock) -> None:
        mock_redis.hgetall.return_value = {"bus_id": "not-json{"}

        with pytest.raises(StorageFailure):
            await repo.get_by_bus(42)

    @pytest.mark.asyncio
    async def test_get_by_bus_redis_down(self, repo: LiveLocationRepository, mock_redis: MagicMock) -> None:
        mock_redis.hgetall.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(StorageFailure):
            await repo.get_by_bus(42)

    @pytest.mark.asyncio
    async def test_get_by_route_follows_index(self, repo: LiveLocationRepository, mock_redis: MagicMock) -> None:
        mock_redis.get.return_value = "42"
        mock_redis.hgetall.return_value = encoded(bus_id=42, route_id=5, lat=1.0, lng=2.0)

        location = await repo.get_by_route(5)

        mock_redis.get.assert_awaited_once_with("live:route:5")
        assert location.bus_id == 42

    @pytest.mark.asyncio
    async def test_get_by_route_bus_moved_to_other_route(
        self,
        repo: LiveLocationRepository,
        mock_redis: MagicMock,
    ) -> None:
        mock_redis.get.return_value = "42"
        mock_redis.hgetall.return_value = encoded(bus_id=42, route_id=7, lat=1.0, lng=2.0)

        assert await repo.get_by_route(5) is None

    @pytest.mark.asyncio
    async def test_get_by_route_without_index(self, repo: LiveLocationRepository, mock_redis: MagicMock) -> None:
        assert await repo.get_by_route(5) is None
        mock_redis.hgetall.assert_not_awaited()


class TestLiveLocationRepositoryWrite:
    """Тесты записи живых координат."""

    @pytest.mark.asyncio
    async def test_upsert_writes_fields_and_route_index(
        self,
        repo: LiveLocationRepository,
        mock_redis: MagicMock,
        mock_pipe: MagicMock,
    ) -> None:
        await repo.upsert_by_bus(42, {"bus_id": 42, "route_id": 5, "lat": 1.0})

        mock_redis.pipeline.assert_called_once_with(transaction=True)
        mock_pipe.hset.assert_called_once_with(
            "bus:live:bus:42",
            mapping={"bus_id": "42", "route_id": "5", "lat": "1.0"},
        )
        mock_pipe.set.assert_called_once_with("bus:live:route:5", "42")
        mock_pipe.hdel.assert_not_called()
        mock_pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_upsert_unset_fields(
        self,
        repo: LiveLocationRepository,
        mock_pipe: MagicMock,
    ) -> None:
        await repo.upsert_by_bus(
            42,
            {"trip_active": False, "active_route_points": []},
            unset=("start_lat", "start_lng", "trip_start_time"),
        )

        mock_pipe.hdel.assert_called_once_with("bus:live:bus:42", "start_lat", "start_lng", "trip_start_time")
        mock_pipe.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_unset_ignores_fields_being_written(
        self,
        repo: LiveLocationRepository,
        mock_pipe: MagicMock,
    ) -> None:
        await repo.upsert_by_bus(42, {"start_lat": 1.0}, unset=("start_lat",))

        mock_pipe.hdel.assert_not_called()

    @pytest.mark.asyncio
    async def test_upsert_redis_down(
        self,
        repo: LiveLocationRepository,
        mock_pipe: MagicMock,
    ) -> None:
        mock_pipe.execute.side_effect = RedisConnectionError("connection reset")

        with pytest.raises(StorageFailure):
            await repo.upsert_by_bus(42, {"lat": 1.0})


class TestTripHistoryRepository:
    """Тесты архива поездок."""

    @pytest.fixture
    def record(self) -> TripRecord:
        points = [
            RoutePoint(lat=1.0, lng=1.0, timestamp=T0),
            RoutePoint(lat=1.1, lng=1.0, timestamp=T0 + timedelta(seconds=10)),
        ]
        return TripRecord(
            bus_id=42,
            route_id=5,
            start_time=T0,
            end_time=T0 + timedelta(minutes=5),
            route_points=points,
            total_points=2,
        )

    @pytest.mark.asyncio
    async def test_append_inserts_row(self, mock_db: AsyncMock, record: TripRecord) -> None:
        await TripHistoryRepository(mock_db).append(record)

        mock_db.execute.assert_awaited_once()
        query, *args = mock_db.execute.call_args.args
        assert "INSERT INTO trip_history" in query
        assert "ON CONFLICT (bus_id, start_time) DO NOTHING" in query
        assert args[:4] == [42, 5, record.start_time, record.end_time]
        assert json.loads(args[4])[1]["lat"] == 1.1
        assert args[5] == 2

    @pytest.mark.asyncio
    async def test_duplicate_append_is_logged(self, mock_db: AsyncMock, record: TripRecord) -> None:
        mock_db.execute.return_value = "INSERT 0 0"

        with patch("src.core.tracking.repository.log_info", new_callable=AsyncMock) as mock_log:
            await TripHistoryRepository(mock_db).append(record)

        mock_log.assert_awaited_once()
        assert "уже в архиве" in mock_log.call_args.args[0]

    @pytest.mark.asyncio
    async def test_append_postgres_error(self, mock_db: AsyncMock, record: TripRecord) -> None:
        mock_db.execute.side_effect = asyncpg.PostgresError("relation does not exist")

        with patch("src.core.tracking.repository.log_error", new_callable=AsyncMock):
            with pytest.raises(StorageFailure):
                await TripHistoryRepository(mock_db).append(record)

    @pytest.mark.asyncio
    async def test_append_timeout_is_storage_failure(self, mock_db: AsyncMock, record: TripRecord) -> None:
        """Таймаут пула или command_timeout asyncpg считается ошибкой хранилища."""
        mock_db.execute.side_effect = asyncio.TimeoutError()

        with patch("src.core.tracking.repository.log_error", new_callable=AsyncMock):
            with pytest.raises(StorageFailure):
                await TripHistoryRepository(mock_db).append(record)
