# src/worker/base.py
"""
Общая часть воркеров: подписка на события шины и защита
цикла потребления от ошибок обработчика.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from src.infra.event_bus import EventBus, DomainEvent, get_event_bus
from src.infra.database import DatabaseManager, get_db
from src.common.logger import log_info, log_error
from src.common.constants import TypeMsg


class BaseWorker(ABC):
    """
    Воркер получает события из собственной durable очереди
    bus.worker.{name}.{event_type}: несколько инстансов одного
    воркера делят очередь, разные воркеры получают свою копию события.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        db: Optional[DatabaseManager] = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.db = db or get_db()
        self._running = False
        self.processed = 0
        self.failed = 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера, часть имени очереди."""

    @property
    @abstractmethod
    def subscriptions(self) -> List[str]:
        """Типы событий (EventTypes), которые слушает воркер."""

    @abstractmethod
    async def handle_event(self, event: DomainEvent) -> None:
        ...

    @property
    def is_running(self) -> bool:
        return self._running

    def queue_name(self, event_type: str) -> str:
        return f"bus.worker.{self.name}.{event_type}"

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        for event_type in self.subscriptions:
            await self.event_bus.subscribe(
                event_type=event_type,
                handler=self._on_event,
                queue_name=self.queue_name(event_type),
            )

        await log_info(
            f"Воркер {self.name} слушает: {', '.join(self.subscriptions)}",
            type_msg=TypeMsg.INFO,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await log_info(
            f"Воркер {self.name} остановлен (обработано {self.processed}, ошибок {self.failed})",
            type_msg=TypeMsg.INFO,
        )

    async def _on_event(self, event: DomainEvent) -> None:
        # Сообщения, пришедшие после stop(), подтверждаются без обработки
        if not self._running:
            return

        await log_info(f"{self.name}: {event.event_type} ({event.event_id})", type_msg=TypeMsg.DEBUG)
        try:
            await self.handle_event(event)
        except Exception as e:
            self.failed += 1
            await log_error(
                f"Воркер {self.name} не обработал {event.event_type}: {e}",
                extra={"event_type": event.event_type, "payload": event.payload},
                exc_info=True,
            )
        else:
            self.processed += 1
