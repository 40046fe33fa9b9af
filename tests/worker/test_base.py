# tests/worker/test_base.py
"""
Unit тесты для базового класса воркера (src/worker/base.py).
"""

from __future__ import annotations

from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.infra.event_bus import DomainEvent, EventTypes
from src.worker.base import BaseWorker


class RecordingWorker(BaseWorker):
    """Воркер, запоминающий обработанные события."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.handled: List[DomainEvent] = []

    @property
    def name(self) -> str:
        return "recording"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.TRIP_ARCHIVED, EventTypes.ROUTE_LOCK_RELEASED]

    async def handle_event(self, event: DomainEvent) -> None:
        self.handled.append(event)


@pytest.fixture
def worker(mock_event_bus: AsyncMock, mock_db: AsyncMock) -> RecordingWorker:
    return RecordingWorker(event_bus=mock_event_bus, db=mock_db)


class TestLifecycle:
    """Тесты запуска и остановки."""

    def test_dependencies(self, worker: RecordingWorker, mock_event_bus: AsyncMock, mock_db: AsyncMock) -> None:
        assert worker.event_bus is mock_event_bus
        assert worker.db is mock_db
        assert worker.is_running is False

    @pytest.mark.asyncio
    async def test_start_subscribes_to_each_event(self, worker: RecordingWorker, mock_event_bus: AsyncMock) -> None:
        await worker.start()

        assert worker.is_running is True
        calls = mock_event_bus.subscribe.call_args_list
        assert [c.kwargs["event_type"] for c in calls] == ["trip.archived", "route.lock_released"]
        assert calls[0].kwargs["queue_name"] == "bus.worker.recording.trip.archived"
        assert calls[0].kwargs["handler"] == worker._on_event

    @pytest.mark.asyncio
    async def test_start_twice(self, worker: RecordingWorker, mock_event_bus: AsyncMock) -> None:
        await worker.start()
        await worker.start()

        assert mock_event_bus.subscribe.await_count == 2

    @pytest.mark.asyncio
    async def test_stop(self, worker: RecordingWorker) -> None:
        await worker.start()
        await worker.stop()
        await worker.stop()

        assert worker.is_running is False


class TestOnEvent:
    """Тесты обработки событий."""

    @pytest.mark.asyncio
    async def test_event_is_handled(self, worker: RecordingWorker) -> None:
        await worker.start()
        event = DomainEvent(event_type=EventTypes.TRIP_ARCHIVED, payload={"record": {}})

        await worker._on_event(event)

        assert worker.handled == [event]
        assert worker.processed == 1

    @pytest.mark.asyncio
    async def test_stopped_worker_ignores_events(self, worker: RecordingWorker) -> None:
        await worker._on_event(DomainEvent(event_type=EventTypes.TRIP_ARCHIVED))

        assert worker.handled == []

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self, worker: RecordingWorker) -> None:
        await worker.start()
        worker.handle_event = MagicMock(side_effect=RuntimeError("boom"))

        await worker._on_event(DomainEvent(event_type=EventTypes.TRIP_ARCHIVED))

        worker.handle_event.assert_called_once()
        assert worker.failed == 1
        assert worker.processed == 0
