# src/worker/archive_retry.py
"""
Воркер повторной архивации поездок.

Слушает trip.archive_failed и повторяет запись в trip_history с линейной
задержкой. Запись идемпотентна по (bus_id, start_time), поэтому повтор
уже сохранённой поездки безопасен.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from pydantic import ValidationError

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info, log_warning
from src.core.tracking.exceptions import StorageFailure
from src.core.tracking.interfaces import TripArchive
from src.core.tracking.models import TripRecord
from src.core.tracking.repository import TripHistoryRepository
from src.infra.database import DatabaseManager
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.worker.base import BaseWorker


class ArchiveRetryWorker(BaseWorker):
    """Повторяет архивацию поездок, которые не удалось сохранить сразу."""

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        db: Optional[DatabaseManager] = None,
        archive: Optional[TripArchive] = None,
        max_attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> None:
        """
        Args:
            event_bus: Шина событий
            db: Менеджер БД
            archive: Архив поездок (по умолчанию TripHistoryRepository)
            max_attempts: Число попыток (по умолчанию из конфига)
            delay: Базовая задержка между попытками, секунды
        """
        super().__init__(event_bus=event_bus, db=db)

        from src.config import settings

        self.archive = archive or TripHistoryRepository(self.db)
        self.max_attempts = max_attempts or settings.tracking.ARCHIVE_RETRY_ATTEMPTS
        self.delay = settings.tracking.ARCHIVE_RETRY_DELAY if delay is None else delay

    @property
    def name(self) -> str:
        return "archive_retry"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.TRIP_ARCHIVE_FAILED]

    async def handle_event(self, event: DomainEvent) -> None:
        try:
            record = TripRecord.model_validate(event.payload.get("record"))
        except ValidationError as e:
            await log_error(f"Некорректная запись поездки в {event.event_type}: {e}")
            return

        if await self.retry_append(record):
            await self.event_bus.publish(DomainEvent(
                event_type=EventTypes.TRIP_ARCHIVED,
                payload={"record": record.model_dump(mode="json"), "retried": True},
            ))

    async def retry_append(self, record: TripRecord) -> bool:
        """
        Повторяет запись поездки.

        Returns:
            True если поездка сохранена
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.archive.append(record)
            except StorageFailure as e:
                if attempt < self.max_attempts:
                    await log_warning(
                        f"Повтор архивации автобуса {record.bus_id} "
                        f"(попытка {attempt}/{self.max_attempts}): {e}",
                    )
                    await asyncio.sleep(self.delay * attempt)
                    continue
                await log_info(
                    f"Поездка автобуса {record.bus_id} по маршруту {record.route_id} потеряна "
                    f"после {self.max_attempts} попыток: {e}",
                    type_msg=TypeMsg.CRITICAL,
                    extra={"record": record.model_dump(mode="json")},
                )
                return False
            else:
                await log_info(
                    f"Поездка автобуса {record.bus_id} сохранена с попытки {attempt}",
                    type_msg=TypeMsg.INFO,
                )
                return True
        return False
