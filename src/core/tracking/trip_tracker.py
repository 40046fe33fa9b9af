# src/core/tracking/trip_tracker.py
"""
Трекер поездок.

Для каждой точки выбирает одно из действий: начать поездку, дописать
точку или пропустить дубликат. При завершении поездки архивирует путь
и сбрасывает состояние автобуса.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from src.common.constants import TripAction, TypeMsg
from src.common.logger import log_error, log_info
from src.core.tracking.exceptions import StorageFailure
from src.core.tracking.interfaces import LocationStore, TripArchive
from src.core.tracking.keyed_lock import KeyedLock
from src.core.tracking.models import (
    LiveLocation,
    LocationSample,
    RoutePoint,
    TripEndResult,
    TripRecord,
    utc_now,
)

if TYPE_CHECKING:
    from src.infra.event_bus import EventBus

# Поля, которые обновляются каждой точкой
_POSITION_FIELDS = {"bus_id", "route_id", "lat", "lng", "speed", "updated_at"}
# Поля, которые очищаются при завершении поездки
_TRIP_START_FIELDS = ("start_lat", "start_lng", "trip_start_time")


class TripSessionTracker:
    """
    Машина состояний поездки для каждого автобуса.

    Все чтения-изменения-записи LiveLocation одного автобуса выполняются
    под его локом, поэтому параллельные точки не теряются.
    """

    def __init__(
        self,
        store: LocationStore,
        archive: TripArchive,
        event_bus: EventBus | None = None,
    ) -> None:
        """
        Args:
            store: Хранилище живых координат
            archive: Архив поездок
            event_bus: Шина событий для trip.archived / trip.archive_failed
        """
        self._store = store
        self._archive = archive
        self._event_bus = event_bus
        self._bus_locks: KeyedLock[int] = KeyedLock()

    @staticmethod
    def classify(current: LiveLocation | None, sample: LocationSample) -> TripAction:
        """Решение по точке относительно текущего состояния автобуса."""
        if current is None or not current.trip_active:
            return TripAction.START
        last = current.last_point
        if last is not None and last.same_position(sample.lat, sample.lng):
            return TripAction.SKIP_DUPLICATE
        return TripAction.APPEND

    async def record_sample(
        self,
        sample: LocationSample,
        arrival_time: datetime | None = None,
    ) -> LiveLocation:
        """
        Применяет точку к поездке автобуса и сохраняет результат.

        Returns:
            Актуальная LiveLocation (для рассылки подписчикам)

        Raises:
            StorageFailure: ошибка чтения или записи хранилища
        """
        now = arrival_time or utc_now()

        async with self._bus_locks.hold(sample.bus_id):
            current = await self._store.get_by_bus(sample.bus_id)
            action = self.classify(current, sample)
            point = RoutePoint(lat=sample.lat, lng=sample.lng, timestamp=now)

            position = {
                "bus_id": sample.bus_id,
                "route_id": sample.route_id,
                "lat": sample.lat,
                "lng": sample.lng,
                "speed": sample.speed,
                "updated_at": now,
            }
            changed = set(_POSITION_FIELDS)

            if action is TripAction.START:
                updated = LiveLocation(
                    **position,
                    start_lat=sample.lat,
                    start_lng=sample.lng,
                    trip_active=True,
                    trip_start_time=now,
                    active_route_points=[point],
                )
                changed |= {
                    "start_lat", "start_lng", "trip_active",
                    "trip_start_time", "active_route_points",
                }
            elif action is TripAction.APPEND:
                updated = current.model_copy(update={
                    **position,
                    "active_route_points": [*current.active_route_points, point],
                })
                changed.add("active_route_points")
            else:
                updated = current.model_copy(update=position)

            await self._store.upsert_by_bus(
                sample.bus_id,
                updated.model_dump(mode="json", include=changed),
            )

        await log_info(
            f"Автобус {sample.bus_id}: {action.value}, точек в пути: {len(updated.active_route_points)}",
            type_msg=TypeMsg.DEBUG,
        )
        return updated

    async def end_trip(self, bus_id: int) -> TripEndResult:
        """
        Завершает поездку автобуса.

        Активная поездка с непустым путём архивируется. Состояние
        сбрасывается при любой существующей записи, даже если архивация
        не удалась: ошибка возвращается в archive_error.

        Raises:
            StorageFailure: ошибка чтения или сброса LiveLocation
        """
        async with self._bus_locks.hold(bus_id):
            current = await self._store.get_by_bus(bus_id)
            if current is None:
                await log_info(
                    f"Нет данных о поездке для автобуса {bus_id}",
                    type_msg=TypeMsg.DEBUG,
                )
                return TripEndResult(bus_id=bus_id)

            result = TripEndResult(bus_id=bus_id, route_id=current.route_id)

            if current.trip_active and current.active_route_points:
                record = TripRecord.from_live(current, end_time=utc_now())
                result.record = record
                try:
                    await self._archive.append(record)
                    result.archived = True
                except StorageFailure as e:
                    result.archive_error = str(e)
                except Exception as e:
                    # Любой сбой архива не должен оставить автобус в активной поездке
                    await log_error(f"Непредвиденная ошибка архива автобуса {bus_id}: {e}", exc_info=True)
                    result.archive_error = f"{type(e).__name__}: {e}"
            else:
                await log_info(
                    f"Нет активной поездки для архивации у автобуса {bus_id}",
                    type_msg=TypeMsg.DEBUG,
                )

            await self._store.upsert_by_bus(
                bus_id,
                {"trip_active": False, "active_route_points": []},
                unset=_TRIP_START_FIELDS,
            )

        if result.archived:
            await log_info(
                f"Поездка автобуса {bus_id} по маршруту {result.route_id} сохранена, "
                f"точек: {result.record.total_points}",
                type_msg=TypeMsg.INFO,
            )
            await self._publish_archive_event("archived", result)
        elif result.archive_error is not None:
            await log_error(
                f"Не удалось сохранить поездку автобуса {bus_id}: {result.archive_error}",
                extra={"bus_id": bus_id, "route_id": result.route_id},
            )
            await self._publish_archive_event("failed", result)

        return result

    async def _publish_archive_event(self, outcome: str, result: TripEndResult) -> None:
        if self._event_bus is None or result.record is None:
            return

        from src.infra.event_bus import DomainEvent, EventTypes

        payload = {"record": result.record.model_dump(mode="json")}
        if outcome == "archived":
            event_type = EventTypes.TRIP_ARCHIVED
        else:
            event_type = EventTypes.TRIP_ARCHIVE_FAILED
            payload["error"] = result.archive_error

        await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
