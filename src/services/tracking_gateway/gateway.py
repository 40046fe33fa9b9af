# src/services/tracking_gateway/gateway.py
"""
Шлюз сессии трекинга.

Один SessionGateway на соединение. Состояния:
UNAUTHENTICATED -> LOCKED(route_id, bus_id) -> CLOSED.
Общее для процесса состояние (таблица блокировок, трекер, роутер)
хранится в GatewayContext.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ValidationError

from src.common.constants import (
    MSG_ALREADY_LOCKED,
    MSG_NOT_AUTHENTICATED,
    MSG_ROUTE_BUSY,
    MSG_ROUTE_LOCK_FAILED,
    MSG_ROUTE_LOCKED_OK,
    MSG_TRACKING_STOPPED,
    InboundEvent,
    OutboundEvent,
    SessionState,
    TypeMsg,
)
from src.common.logger import log_error, log_info, log_warning
from src.core.tracking.exceptions import InvalidPayload, LockConflict, StorageFailure, Unauthorized
from src.core.tracking.interfaces import BroadcastRouter, LocationStore
from src.core.tracking.keyed_lock import KeyedLock
from src.core.tracking.models import LiveLocation, LocationSample, RouteLock, TripEndResult
from src.core.tracking.route_locks import RouteLockTable
from src.core.tracking.trip_tracker import TripSessionTracker
from src.services.tracking_gateway.schemas import (
    AuthenticateDriverPayload,
    EndTripPayload,
    JoinRoutePayload,
)

if TYPE_CHECKING:
    from src.infra.event_bus import EventBus

M = TypeVar("M", bound=BaseModel)


@dataclass
class GatewayContext:
    """Общие зависимости всех сессий процесса."""
    locks: RouteLockTable
    tracker: TripSessionTracker
    store: LocationStore
    router: BroadcastRouter
    event_bus: EventBus | None = None
    # Порядок "запись точки -> рассылка" внутри маршрута
    route_order: KeyedLock[int] = field(default_factory=KeyedLock)


class SessionGateway:
    """Жизненный цикл одного соединения (водителя или подписчика)."""

    def __init__(self, session_id: str, context: GatewayContext) -> None:
        self.session_id = session_id
        self._ctx = context
        self.state = SessionState.UNAUTHENTICATED
        self.route_id: int | None = None
        self.bus_id: int | None = None
        self.vehicle_number: str | None = None

    # =========================================================================
    # ДИСПЕТЧЕРИЗАЦИЯ
    # =========================================================================

    async def handle_event(self, name: str, payload: Any) -> None:
        """
        Обрабатывает именованное событие транспорта.

        Неизвестные события логируются и игнорируются. Ошибки обработки
        не выходят за пределы сессии.
        """
        if self.state is SessionState.CLOSED:
            return

        try:
            event = InboundEvent(name)
        except ValueError:
            await log_warning(f"Неизвестное событие {name!r} от сессии {self.session_id}")
            return

        try:
            match event:
                case InboundEvent.AUTHENTICATE_DRIVER:
                    auth = self._parse(AuthenticateDriverPayload, payload)
                    await self.authenticate(auth.bus_id, auth.route_id, auth.vehicle_number)
                case InboundEvent.BUS_LOCATION:
                    await self.submit_location(self._parse(LocationSample, payload))
                case InboundEvent.END_TRIP:
                    await self.end_trip(self._parse(EndTripPayload, payload).bus_id)
                case InboundEvent.JOIN_ROUTE:
                    await self.join_route(self._parse(JoinRoutePayload, payload).route_id)
        except InvalidPayload as e:
            await log_warning(f"Сессия {self.session_id}, событие {name}: {e}")
            await self._reply(OutboundEvent.INVALID_PAYLOAD, {"success": False, "message": str(e)})
        except Exception as e:
            await log_error(
                f"Ошибка обработки события {name} сессии {self.session_id}: {e}",
                exc_info=True,
            )

    @staticmethod
    def _parse(model: type[M], payload: Any) -> M:
        if not isinstance(payload, dict):
            raise InvalidPayload("Ожидался JSON-объект в поле data")
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise InvalidPayload(f"Некорректные поля: {fields}") from e

    # =========================================================================
    # ОПЕРАЦИИ
    # =========================================================================

    async def authenticate(self, bus_id: int, route_id: int, vehicle_number: str | None = None) -> bool:
        """
        Захватывает маршрут для этой сессии.

        Returns:
            True если сессия владеет маршрутом
        """
        if self.state is SessionState.CLOSED:
            return False

        if self.state is SessionState.LOCKED:
            if route_id == self.route_id:
                await self._ack_lock()
                return True
            # Сессия держит не больше одного маршрута
            current = self._ctx.locks.get(self.route_id)
            await self._reply(OutboundEvent.ROUTE_LOCKED, {
                "success": False,
                "message": MSG_ALREADY_LOCKED.format(route_id=self.route_id),
                "locked_by": self.bus_id,
                "locked_at": current.locked_at.isoformat() if current else None,
            })
            return False

        try:
            self._acquire(route_id, bus_id, vehicle_number)
        except LockConflict as e:
            await self._reply(OutboundEvent.ROUTE_LOCKED, {
                "success": False,
                "message": MSG_ROUTE_BUSY.format(vehicle_number=e.holder_vehicle_number or "Unknown"),
                "locked_by": e.holder_bus_id,
                "locked_at": e.locked_at.isoformat() if e.locked_at else None,
            })
            return False
        except Exception as e:
            await log_error(f"Ошибка захвата маршрута {route_id} автобусом {bus_id}: {e}", exc_info=True)
            await self._reply(OutboundEvent.ROUTE_LOCKED, {"success": False, "message": MSG_ROUTE_LOCK_FAILED})
            return False

        self.state = SessionState.LOCKED
        self.route_id = route_id
        self.bus_id = bus_id
        self.vehicle_number = vehicle_number
        await self._ack_lock()
        return True

    def _acquire(self, route_id: int, bus_id: int, vehicle_number: str | None) -> RouteLock:
        result = self._ctx.locks.acquire(route_id, self.session_id, bus_id, vehicle_number)
        if not result.granted:
            raise LockConflict(
                route_id,
                holder_bus_id=result.holder_bus_id,
                holder_vehicle_number=result.holder_vehicle_number,
                locked_at=result.locked_at,
            )
        return result.lock

    async def _ack_lock(self) -> None:
        await self._reply(OutboundEvent.ROUTE_LOCK_SUCCESS, {
            "success": True,
            "message": MSG_ROUTE_LOCKED_OK,
            "route_id": self.route_id,
            "bus_id": self.bus_id,
        })

    async def submit_location(self, sample: LocationSample) -> LiveLocation | None:
        """
        Принимает GPS-точку и рассылает location_update подписчикам маршрута.

        Returns:
            Обновлённая LiveLocation или None, если точка отклонена
        """
        if self.state is SessionState.CLOSED:
            return None

        try:
            async with self._ctx.route_order.hold(sample.route_id):
                self._require_lock(sample.route_id, sample.bus_id)
                location = await self._ctx.tracker.record_sample(sample)
                # Маршрут мог быть освобождён (обрыв связи) пока шла запись
                if not self._ctx.locks.is_held_by(sample.route_id, self.session_id):
                    return location
                await self._ctx.router.publish(
                    sample.route_id,
                    OutboundEvent.LOCATION_UPDATE.value,
                    location.to_broadcast(),
                )
        except Unauthorized as e:
            await log_warning(
                "Точка без блокировки маршрута",
                extra={"route_id": sample.route_id, "bus_id": sample.bus_id, "session_id": self.session_id},
            )
            await self._reply(OutboundEvent.ROUTE_NOT_LOCKED, {"success": False, "message": str(e)})
            return None
        except StorageFailure as e:
            await log_error(f"Точка автобуса {sample.bus_id} отброшена: {e}")
            return None

        return location

    def _require_lock(self, route_id: int, bus_id: int) -> None:
        # Блокировка выдана на пару маршрут + автобус
        if bus_id != self.bus_id or not self._ctx.locks.is_held_by(route_id, self.session_id):
            raise Unauthorized(MSG_NOT_AUTHENTICATED)

    async def end_trip(self, bus_id: int) -> TripEndResult | None:
        """
        Завершает поездку: архив, сброс состояния, trip_ended, снятие блокировки.

        После успешного завершения сессия снова UNAUTHENTICATED.
        """
        if self.state is not SessionState.LOCKED or bus_id != self.bus_id:
            await self._reply(OutboundEvent.ROUTE_NOT_LOCKED, {
                "success": False,
                "message": MSG_NOT_AUTHENTICATED,
            })
            return None

        route_id = self.route_id
        await log_info(
            "Завершение поездки",
            type_msg=TypeMsg.INFO,
            extra={"route_id": route_id, "bus_id": bus_id, "session_id": self.session_id},
        )

        try:
            async with self._ctx.route_order.hold(route_id):
                result = await self._ctx.tracker.end_trip(bus_id)
                released = self._ctx.locks.release(route_id, self.session_id)
                if result.location_existed:
                    await self._ctx.router.publish(
                        result.route_id,
                        OutboundEvent.TRIP_ENDED.value,
                        {"bus_id": bus_id},
                    )
        except StorageFailure as e:
            await log_error(f"Не удалось завершить поездку автобуса {bus_id}: {e}")
            return None

        self.state = SessionState.UNAUTHENTICATED
        self.route_id = None
        self.bus_id = None
        self.vehicle_number = None

        if released:
            await self._publish_lock_released(route_id, bus_id, reason="trip_ended")
        return result

    async def join_route(self, route_id: int) -> None:
        """Подписывает соединение на маршрут и сразу отдаёт текущее положение."""
        if self.state is SessionState.CLOSED:
            return

        await self._ctx.router.subscribe(self.session_id, route_id)
        await log_info(f"Сессия {self.session_id} подписана на маршрут {route_id}", type_msg=TypeMsg.DEBUG)

        try:
            location = await self._ctx.store.get_by_route(route_id)
        except StorageFailure as e:
            await log_error(f"Не удалось получить положение на маршруте {route_id}: {e}")
            return

        if location is not None:
            await self._reply(OutboundEvent.LOCATION_UPDATE, location.to_broadcast())

    async def on_close(self) -> None:
        """
        Закрытие соединения. Идемпотентно.

        Блокировка снимается до первого await, поэтому другой водитель
        может захватить маршрут, даже пока I/O этой сессии не завершён.
        Поездка не завершается.
        """
        if self.state is SessionState.CLOSED:
            return

        route_id, bus_id = self.route_id, self.bus_id
        released = (
            self.state is SessionState.LOCKED
            and self._ctx.locks.release(route_id, self.session_id)
        )
        self.state = SessionState.CLOSED

        await self._ctx.router.unsubscribe_all(self.session_id)

        if released:
            await log_info(
                f"Маршрут освобождён: водитель {self.vehicle_number or 'Unknown'} отключился",
                type_msg=TypeMsg.INFO,
                extra={"route_id": route_id, "bus_id": bus_id, "session_id": self.session_id},
            )
            await self._ctx.router.publish(route_id, OutboundEvent.TRACKING_STOPPED.value, {
                "route_id": route_id,
                "message": MSG_TRACKING_STOPPED,
            })
            await self._publish_lock_released(route_id, bus_id, reason="disconnect")

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _reply(self, event: OutboundEvent, payload: dict[str, Any]) -> None:
        await self._ctx.router.publish_to(self.session_id, event.value, payload)

    async def _publish_lock_released(self, route_id: int, bus_id: int | None, reason: str) -> None:
        if self._ctx.event_bus is None:
            return

        from src.infra.event_bus import DomainEvent, EventTypes

        await self._ctx.event_bus.publish(DomainEvent(
            event_type=EventTypes.ROUTE_LOCK_RELEASED,
            payload={
                "route_id": route_id,
                "bus_id": bus_id,
                "session_id": self.session_id,
                "reason": reason,
            },
        ))
