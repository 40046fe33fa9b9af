# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterable, Mapping
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")

from src.core.tracking.exceptions import StorageFailure
from src.core.tracking.models import LiveLocation, TripRecord
from src.core.tracking.route_locks import RouteLockTable
from src.core.tracking.trip_tracker import TripSessionTracker
from src.services.tracking_gateway.gateway import GatewayContext


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "bus_tracker_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "LOG_LEVEL": "DEBUG",
        "ENVIRONMENT": "test",
        "COMPONENT_MODE": "gateway",
        "TRACKING_GATEWAY_HOST": "127.0.0.1",
        "TRACKING_GATEWAY_PORT": 3100,
        "LOG_TO_FILE": False,
        "LOG_FILE_PATH": "logs/test.log",
        "LOG_FORMAT": "colored",
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "bus_tracker_test",
        "DB_USER": "postgres",
        "DB_PASSWORD": "test_password",
        "DB_MIN_POOL_SIZE": 2,
        "DB_MAX_POOL_SIZE": 5,
        "DB_COMMAND_TIMEOUT": 30,
        "REDIS_HOST": "localhost",
        "REDIS_PORT": 6379,
        "REDIS_DB": 1,
        "REDIS_PASSWORD": "",
        "REDIS_NAMESPACE": "bus_test",
        "REDIS_MAX_CONNECTIONS": 10,
        "RABBITMQ_HOST": "localhost",
        "RABBITMQ_PORT": 5672,
        "RABBITMQ_USER": "guest",
        "RABBITMQ_PASSWORD": "guest",
        "RABBITMQ_VHOST": "/",
        "RABBITMQ_EXCHANGE": "bus.test",
        "RABBITMQ_PREFETCH_COUNT": 5,
        "ROUTE_TOPIC_PREFIX": "route_",
        "WS_PATH": "/ws/tracking",
        "ARCHIVE_RETRY_ATTEMPTS": 3,
        "ARCHIVE_RETRY_DELAY": 0.0,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


# =============================================================================
# IN-MEMORY РЕАЛИЗАЦИИ ВНЕШНИХ ЗАВИСИМОСТЕЙ
# =============================================================================

class FakeLocationStore:
    """
    Хранилище LiveLocation в памяти.
    Значения проходят через JSON, как в Redis.
    """

    def __init__(self) -> None:
        self.rows: dict[int, dict[str, Any]] = {}
        self.route_index: dict[int, int] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.upserts: list[tuple[int, dict[str, Any], tuple[str, ...]]] = []

    async def get_by_bus(self, bus_id: int) -> LiveLocation | None:
        if self.fail_reads:
            raise StorageFailure("redis недоступен")
        row = self.rows.get(bus_id)
        if row is None:
            return None
        return LiveLocation.model_validate(json.loads(json.dumps(row)))

    async def get_by_route(self, route_id: int) -> LiveLocation | None:
        bus_id = self.route_index.get(route_id)
        if bus_id is None:
            return None
        location = await self.get_by_bus(bus_id)
        if location is None or location.route_id != route_id:
            return None
        return location

    async def upsert_by_bus(
        self,
        bus_id: int,
        fields: Mapping[str, Any],
        unset: Iterable[str] = (),
    ) -> None:
        if self.fail_writes:
            raise StorageFailure("redis недоступен")
        unset = tuple(unset)
        self.upserts.append((bus_id, dict(fields), unset))
        row = self.rows.setdefault(bus_id, {})
        row.update(json.loads(json.dumps(dict(fields))))
        for name in unset:
            row.pop(name, None)
        if "route_id" in fields:
            self.route_index[fields["route_id"]] = bus_id


class FakeTripArchive:
    """Архив поездок в памяти. Может падать первые fail_times вызовов."""

    def __init__(self, fail_times: int = 0) -> None:
        self.records: list[TripRecord] = []
        self.fail_times = fail_times
        self.calls = 0

    async def append(self, record: TripRecord) -> None:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise StorageFailure("postgres недоступен")
        self.records.append(record)


class FakeRouter:
    """Роутер рассылки, записывающий все отправленные события."""

    def __init__(self) -> None:
        self.published: list[tuple[int, str, dict[str, Any]]] = []
        self.direct: list[tuple[str, str, dict[str, Any]]] = []
        self.subscriptions: dict[str, set[int]] = {}

    async def publish(self, route_id: int, event: str, payload: dict[str, Any]) -> int:
        self.published.append((route_id, event, payload))
        return sum(1 for routes in self.subscriptions.values() if route_id in routes)

    async def publish_to(self, session_id: str, event: str, payload: dict[str, Any]) -> bool:
        self.direct.append((session_id, event, payload))
        return True

    async def subscribe(self, session_id: str, route_id: int) -> None:
        self.subscriptions.setdefault(session_id, set()).add(route_id)

    async def unsubscribe_all(self, session_id: str) -> None:
        self.subscriptions.pop(session_id, None)

    def events_to(self, session_id: str) -> list[str]:
        return [event for sid, event, _ in self.direct if sid == session_id]

    def last_to(self, session_id: str) -> tuple[str, dict[str, Any]]:
        for sid, event, payload in reversed(self.direct):
            if sid == session_id:
                return event, payload
        raise AssertionError(f"Сессии {session_id} ничего не отправлялось")

    def route_events(self, route_id: int) -> list[str]:
        return [event for rid, event, _ in self.published if rid == route_id]


@pytest.fixture
def fake_store() -> FakeLocationStore:
    return FakeLocationStore()


@pytest.fixture
def fake_archive() -> FakeTripArchive:
    return FakeTripArchive()


@pytest.fixture
def fake_router() -> FakeRouter:
    return FakeRouter()


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=True)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФИКСТУРЫ ДОМЕНА
# =============================================================================

@pytest.fixture
def tracker(
    fake_store: FakeLocationStore,
    fake_archive: FakeTripArchive,
    mock_event_bus: AsyncMock,
) -> TripSessionTracker:
    return TripSessionTracker(store=fake_store, archive=fake_archive, event_bus=mock_event_bus)


@pytest.fixture
def gateway_context(
    tracker: TripSessionTracker,
    fake_store: FakeLocationStore,
    fake_router: FakeRouter,
    mock_event_bus: AsyncMock,
) -> GatewayContext:
    return GatewayContext(
        locks=RouteLockTable(),
        tracker=tracker,
        store=fake_store,
        router=fake_router,
        event_bus=mock_event_bus,
    )
