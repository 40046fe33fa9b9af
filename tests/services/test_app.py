# tests/services/test_app.py
"""
Тесты HTTP и WebSocket API шлюза трекинга.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from src.core.tracking.route_locks import RouteLockTable
from src.services.tracking_gateway.app import create_app
from src.services.tracking_gateway.connection_manager import ConnectionManager
from src.services.tracking_gateway.gateway import GatewayContext

WS = "/ws/tracking"


def auth_message(bus_id: int, route_id: int, vehicle_number: str = "KA-42") -> dict:
    return {
        "event": "authenticate_driver",
        "data": {"bus_id": bus_id, "route_id": route_id, "vehicle_number": vehicle_number},
    }


def location_message(lat: float, lng: float, bus_id: int = 42, route_id: int = 5) -> dict:
    return {
        "event": "bus_location",
        "data": {"bus_id": bus_id, "route_id": route_id, "lat": lat, "lng": lng, "speed": 20.0},
    }


@pytest.fixture
def manager() -> ConnectionManager:
    return ConnectionManager(topic_prefix="route_")


@pytest.fixture
def app_context(tracker, fake_store, manager: ConnectionManager, mock_event_bus: AsyncMock) -> GatewayContext:
    return GatewayContext(
        locks=RouteLockTable(),
        tracker=tracker,
        store=fake_store,
        router=manager,
        event_bus=mock_event_bus,
    )


@pytest.fixture
def client(app_context: GatewayContext, manager: ConnectionManager):
    app = create_app(context=app_context, manager=manager, init_infra=False)
    with TestClient(app) as test_client:
        yield test_client


class TestHttp:
    """Тесты REST endpoints."""

    def test_health_without_infrastructure(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "tracking_gateway"
        assert body["status"] == "healthy"
        assert body["dependencies"] == {}

    def test_health_degraded_when_dependency_fails(
        self,
        app_context: GatewayContext,
        manager: ConnectionManager,
    ) -> None:
        app = create_app(context=app_context, manager=manager, init_infra=True)
        healthy = MagicMock(health_check=AsyncMock(return_value=True))
        broken = MagicMock(health_check=AsyncMock(return_value=False))

        with patch("src.services.tracking_gateway.app.get_db", return_value=healthy), \
             patch("src.services.tracking_gateway.app.get_redis", return_value=broken), \
             patch("src.services.tracking_gateway.app.get_event_bus", return_value=healthy):
            # Без with: lifespan и подключение к инфраструктуре не запускаются
            response = TestClient(app).get("/health")

        body = response.json()
        assert body["status"] == "degraded"
        assert body["dependencies"] == {"postgres": "healthy", "redis": "unhealthy", "rabbitmq": "healthy"}

    def test_locked_routes_empty(self, client: TestClient) -> None:
        assert client.get("/api/v1/locked-routes").json() == []

    def test_locked_routes_snapshot(self, client: TestClient, app_context: GatewayContext) -> None:
        app_context.locks.acquire(5, "s-a", 42, "KA-42")

        routes = client.get("/api/v1/locked-routes").json()

        assert len(routes) == 1
        assert routes[0]["route_id"] == 5
        assert routes[0]["bus_id"] == 42
        assert routes[0]["vehicle_number"] == "KA-42"

    def test_stats(self, client: TestClient, app_context: GatewayContext) -> None:
        app_context.locks.acquire(5, "s-a", 42)

        stats = client.get("/stats").json()

        assert stats["active_connections"] == 0
        assert stats["locked_routes"] == 1


class TestWebSocket:
    """Тесты WebSocket трекинга."""

    def test_driver_locks_route(self, client: TestClient) -> None:
        with client.websocket_connect(WS) as ws:
            ws.send_json(auth_message(42, 5))
            message = ws.receive_json()

            assert message["event"] == "route_lock_success"
            assert message["data"]["bus_id"] == 42

            routes = client.get("/api/v1/locked-routes").json()
            assert [r["route_id"] for r in routes] == [5]

    def test_second_driver_denied(self, client: TestClient) -> None:
        with client.websocket_connect(WS) as first, client.websocket_connect(WS) as second:
            first.send_json(auth_message(42, 5, "KA-42"))
            assert first.receive_json()["event"] == "route_lock_success"

            second.send_json(auth_message(17, 5, "KB-17"))
            message = second.receive_json()

            assert message["event"] == "route_locked"
            assert message["data"]["locked_by"] == 42

    def test_invalid_json(self, client: TestClient) -> None:
        with client.websocket_connect(WS) as ws:
            ws.send_text("not a json")
            message = ws.receive_json()

            assert message["event"] == "invalid_payload"
            assert message["data"]["success"] is False

    def test_location_without_auth(self, client: TestClient) -> None:
        with client.websocket_connect(WS) as ws:
            ws.send_json(location_message(1.0, 1.0))

            assert ws.receive_json()["event"] == "route_not_locked"

    def test_viewer_follows_trip_and_sees_disconnect(self, client: TestClient, fake_store) -> None:
        """Подписчик получает текущее положение и tracking_stopped при обрыве водителя."""
        with client.websocket_connect(WS) as viewer:
            with client.websocket_connect(WS) as driver:
                driver.send_json(auth_message(42, 5))
                assert driver.receive_json()["event"] == "route_lock_success"

                driver.send_json(location_message(28.61, 77.20))
                # Повторная аутентификация обрабатывается после точки
                driver.send_json(auth_message(42, 5))
                assert driver.receive_json()["event"] == "route_lock_success"

                viewer.send_json({"event": "join_route", "data": {"route_id": 5}})
                snapshot = viewer.receive_json()
                assert snapshot["event"] == "location_update"
                assert snapshot["data"]["lat"] == 28.61

                driver.send_json(location_message(28.62, 77.21))
                update = viewer.receive_json()
                assert update["event"] == "location_update"
                assert len(update["data"]["route_points"]) == 2

            stopped = viewer.receive_json()
            assert stopped["event"] == "tracking_stopped"
            assert stopped["data"]["route_id"] == 5

        assert client.get("/api/v1/locked-routes").json() == []
        assert fake_store.rows[42]["trip_active"] is True

    def test_end_trip_over_websocket(self, client: TestClient, fake_archive) -> None:
        with client.websocket_connect(WS) as viewer, client.websocket_connect(WS) as driver:
            driver.send_json(auth_message(42, 5))
            assert driver.receive_json()["event"] == "route_lock_success"

            driver.send_json(location_message(1.0, 1.0))
            driver.send_json(auth_message(42, 5))
            assert driver.receive_json()["event"] == "route_lock_success"

            viewer.send_json({"event": "join_route", "data": {"route_id": 5}})
            assert viewer.receive_json()["event"] == "location_update"

            driver.send_json({"event": "end_trip", "data": {"bus_id": 42}})
            ended = viewer.receive_json()

            assert ended == {"event": "trip_ended", "data": {"bus_id": 42}}
            assert len(fake_archive.records) == 1


class TestSessionShutdown:
    """Завершение WebSocket сессии с незаконченными событиями."""

    @pytest.mark.asyncio
    async def test_in_flight_events_finish_before_session_exits(
        self,
        app_context: GatewayContext,
        manager: ConnectionManager,
        fake_store,
    ) -> None:
        """Сессия закрывается только после того, как точка в работе дописана."""
        app = create_app(context=app_context, manager=manager, init_infra=False)
        endpoint = next(route.endpoint for route in app.routes if route.path == WS)

        entered = asyncio.Event()
        gate = asyncio.Event()
        original = fake_store.upsert_by_bus

        async def slow_upsert(bus_id, fields, unset=()):
            entered.set()
            await gate.wait()
            await original(bus_id, fields, unset)

        fake_store.upsert_by_bus = slow_upsert

        step = 0

        async def receive_text() -> str:
            nonlocal step
            step += 1
            if step == 1:
                return json.dumps(auth_message(42, 5))
            if step == 2:
                while app_context.locks.get(5) is None:
                    await asyncio.sleep(0)
                return json.dumps(location_message(1.0, 1.0))
            await entered.wait()
            raise WebSocketDisconnect()

        websocket = MagicMock()
        websocket.app.state.manager = manager
        websocket.app.state.context = app_context
        websocket.accept = AsyncMock()
        websocket.send_json = AsyncMock()
        websocket.receive_text = receive_text

        session = asyncio.create_task(endpoint(websocket))
        while app_context.locks.get(5) is not None:
            await asyncio.sleep(0)
        for _ in range(10):
            await asyncio.sleep(0)

        assert not session.done()

        gate.set()
        await session

        assert 42 in fake_store.rows
        assert manager.active_connections == 0
