# src/services/tracking_gateway/app.py
"""
FastAPI приложение шлюза трекинга автобусов.

WebSocket endpoints:
- /ws/tracking: водители (authenticate_driver, bus_location, end_trip)
  и подписчики (join_route)

REST endpoints:
- GET /health: проверка здоровья
- GET /stats: статистика соединений
- GET /api/v1/locked-routes: снимок заблокированных маршрутов
"""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect

from src.common.constants import OutboundEvent, TypeMsg
from src.common.logger import log_error, log_info, setup_logging
from src.config import settings
from src.core.tracking.repository import LiveLocationRepository, TripHistoryRepository
from src.core.tracking.route_locks import RouteLockTable
from src.core.tracking.trip_tracker import TripSessionTracker
from src.infra.database import close_db, get_db, init_db
from src.infra.event_bus import close_event_bus, get_event_bus, init_event_bus
from src.infra.redis_client import close_redis, get_redis, init_redis
from src.services.tracking_gateway.connection_manager import ConnectionManager
from src.services.tracking_gateway.gateway import GatewayContext, SessionGateway
from src.services.tracking_gateway.schemas import HealthStatus, LockedRouteResponse, StatsResponse

SERVICE_NAME = "tracking_gateway"


def build_context(manager: ConnectionManager) -> GatewayContext:
    """Собирает зависимости шлюза поверх инфраструктурных синглтонов."""
    event_bus = get_event_bus()
    store = LiveLocationRepository(get_redis())
    tracker = TripSessionTracker(
        store=store,
        archive=TripHistoryRepository(get_db()),
        event_bus=event_bus,
    )
    return GatewayContext(
        locks=RouteLockTable(),
        tracker=tracker,
        store=store,
        router=manager,
        event_bus=event_bus,
    )


# === LIFESPAN ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    init_infra = getattr(app.state, "init_infra", True)

    # Startup
    setup_logging()
    if init_infra:
        await init_db()
        await init_redis()
        await init_event_bus()

    app.state.started_at = time.monotonic()
    await log_info(f"{SERVICE_NAME} запущен", type_msg=TypeMsg.INFO)

    yield

    # Shutdown
    if init_infra:
        await close_event_bus()
        await close_redis()
        await close_db()
    await log_info(f"{SERVICE_NAME} остановлен", type_msg=TypeMsg.INFO)


def create_app(
    context: GatewayContext | None = None,
    manager: ConnectionManager | None = None,
    init_infra: bool = True,
) -> FastAPI:
    """
    Создаёт приложение.

    Args:
        context: Готовые зависимости (в тестах), иначе собираются из инфраструктуры
        manager: Менеджер соединений (должен совпадать с context.router)
        init_infra: Подключать ли PostgreSQL/Redis/RabbitMQ в lifespan
    """
    manager = manager or ConnectionManager(topic_prefix=settings.tracking.ROUTE_TOPIC_PREFIX)
    context = context or build_context(manager)

    app = FastAPI(
        title="Bus Tracking Gateway",
        description="WebSocket сервис live-трекинга автобусов по маршрутам.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.init_infra = init_infra
    app.state.manager = manager
    app.state.context = context
    app.state.started_at = time.monotonic()

    # === HEALTH CHECK ===

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check(request: Request) -> HealthStatus:
        """Проверка здоровья сервиса и зависимостей."""
        dependencies: dict[str, str] = {}
        if request.app.state.init_infra:
            checks = {
                "postgres": get_db().health_check(),
                "redis": get_redis().health_check(),
                "rabbitmq": get_event_bus().health_check(),
            }
            for name, check in checks.items():
                dependencies[name] = "healthy" if await check else "unhealthy"

        status = "healthy"
        if any(state != "healthy" for state in dependencies.values()):
            status = "degraded"

        return HealthStatus(
            service=SERVICE_NAME,
            status=status,
            version=settings.system.VERSION,
            uptime_seconds=round(time.monotonic() - request.app.state.started_at, 3),
            dependencies=dependencies,
        )

    # === STATS ===

    @app.get("/stats", response_model=StatsResponse, tags=["Stats"])
    async def get_stats(request: Request) -> StatsResponse:
        """Получить статистику соединений."""
        stats = request.app.state.manager.get_stats()
        return StatsResponse(**stats, locked_routes=len(request.app.state.context.locks))

    # === LOCKED ROUTES ===

    @app.get("/api/v1/locked-routes", response_model=list[LockedRouteResponse], tags=["Routes"])
    async def get_locked_routes(request: Request) -> list[LockedRouteResponse]:
        """Снимок текущих блокировок маршрутов."""
        return [
            LockedRouteResponse(
                route_id=lock.route_id,
                bus_id=lock.bus_id,
                vehicle_number=lock.vehicle_number,
                session_id=lock.session_id,
                locked_at=lock.locked_at,
            )
            for lock in request.app.state.context.locks.list()
        ]

    # === WEBSOCKET ===

    @app.websocket(settings.tracking.WS_PATH)
    async def websocket_tracking(websocket: WebSocket) -> None:
        """
        WebSocket трекинга.

        Входящие сообщения: {"event": "<имя>", "data": {...}}
        - authenticate_driver {bus_id, route_id, vehicle_number}
        - bus_location {bus_id, route_id, lat, lng, speed}
        - end_trip {bus_id}
        - join_route {route_id}

        Каждое событие обрабатывается отдельной задачей, чтобы обрыв
        соединения обнаруживался сразу, даже во время I/O хранилища.
        """
        session_id = str(uuid4())
        ws_manager: ConnectionManager = websocket.app.state.manager
        session = SessionGateway(session_id, websocket.app.state.context)
        tasks: set[asyncio.Task] = set()

        await ws_manager.connect(websocket, session_id)
        await log_info(f"Клиент подключён: {session_id}", type_msg=TypeMsg.DEBUG)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    name, data = _unpack(raw)
                except ValueError:
                    await ws_manager.publish_to(session_id, OutboundEvent.INVALID_PAYLOAD.value, {
                        "success": False,
                        "message": "Сообщение должно быть JSON-объектом",
                    })
                    continue
                task = asyncio.create_task(session.handle_event(name, data))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except WebSocketDisconnect:
            await log_info(f"Клиент отключён: {session_id}", type_msg=TypeMsg.DEBUG)
        except Exception as e:
            await log_error(f"Ошибка WebSocket сессии {session_id}: {e}")
        finally:
            await session.on_close()
            # Запись в хранилище дописывается, рассылку гасит перепроверка блокировки
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            await ws_manager.disconnect(session_id)

    return app


def _unpack(raw: str) -> tuple[str, Any]:
    """Разбирает конверт {"event": ..., "data": ...}. ValueError для не-JSON."""
    message = json.loads(raw)
    if not isinstance(message, dict):
        raise ValueError("not an object")
    return str(message.get("event", "")), message.get("data")


app = create_app()


# === STARTUP ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.deployment.TRACKING_GATEWAY_HOST,
        port=settings.deployment.TRACKING_GATEWAY_PORT,
    )
