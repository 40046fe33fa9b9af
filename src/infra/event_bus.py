# src/infra/event_bus.py
"""
Доменные события трекинга поверх RabbitMQ.

Шлюз и трекер публикуют:
    trip.archived         поездка записана в trip_history
    trip.archive_failed   запись не удалась, нужен повтор (воркер archive_retry)
    route.lock_released   водитель отключился, маршрут свободен

Exchange типа topic, routing_key совпадает с event_type.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DomainEvent:
    event_id: str = field(default_factory=lambda: str(uuid4()))
    event_type: str = ""
    timestamp: str = field(default_factory=_utc_now_iso)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, data: str) -> DomainEvent:
        """Недостающие поля получают значения по умолчанию."""
        parsed = json.loads(data)
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in parsed.items() if key in known})


class EventTypes:
    TRIP_ARCHIVED = "trip.archived"
    TRIP_ARCHIVE_FAILED = "trip.archive_failed"
    ROUTE_LOCK_RELEASED = "route.lock_released"


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    Публикация и подписка на доменные события (Singleton).

    Соединение через connect_robust: после обрыва aio-pika сама
    восстанавливает канал и durable очереди.
    """

    _instance: EventBus | None = None
    _connection: AbstractConnection | None = None
    _channel: AbstractChannel | None = None
    _exchange: AbstractExchange | None = None
    _handlers: dict[str, list[EventHandler]]

    def __new__(cls) -> EventBus:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._connection = None
        self._channel = None
        self._exchange = None
        self._handlers = {}
        self._exchange_name = "bus.events"
        self._queues: dict[str, AbstractQueue] = {}

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(
        self,
        url: str | None = None,
        exchange_name: str | None = None,
        prefetch_count: int = 10,
    ) -> None:
        """
        Подключается к RabbitMQ и объявляет durable topic exchange.

        Args:
            url: amqp://... (если None, все параметры берутся из конфига)
            exchange_name: Имя exchange
            prefetch_count: Сколько сообщений воркер берёт без подтверждения
        """
        if self.is_connected:
            return

        if url is None:
            from src.config import settings
            url = settings.rabbitmq.url
            exchange_name = settings.rabbitmq.RABBITMQ_EXCHANGE
            prefetch_count = settings.rabbitmq.RABBITMQ_PREFETCH_COUNT

        if exchange_name:
            self._exchange_name = exchange_name

        await log_info(f"Подключение к RabbitMQ (exchange={self._exchange_name})...", type_msg=TypeMsg.INFO)

        self._connection = await aio_pika.connect_robust(url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=prefetch_count)
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )

    async def disconnect(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchange = None
        self._queues = {}
        await log_info("Соединение с RabbitMQ закрыто", type_msg=TypeMsg.INFO)

    async def publish(self, event: DomainEvent) -> bool:
        """
        Отправляет событие в exchange.

        Никогда не бросает: сбой брокера не должен ломать обработку
        точки или завершение поездки. Результат только для логов и тестов.
        """
        if not self.is_connected or self._exchange is None:
            await log_error(
                f"Событие {event.event_type} не отправлено: нет соединения с RabbitMQ",
                extra={"payload": event.payload},
            )
            return False

        message = Message(
            body=event.to_json().encode(),
            content_type="application/json",
            message_id=event.event_id,
            timestamp=datetime.now(timezone.utc),
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self._exchange.publish(message, routing_key=event.event_type)
        except Exception as e:
            await log_error(f"Ошибка публикации события {event.event_type}: {e}")
            return False

        await log_info(f"Событие {event.event_type} отправлено", type_msg=TypeMsg.DEBUG)
        return True

    async def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        queue_name: str | None = None,
    ) -> None:
        """
        Регистрирует обработчик и привязывает durable очередь к event_type.

        Повторная подписка на ту же очередь только добавляет обработчик.
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            await log_error(f"Подписка на {event_type} невозможна: нет соединения с RabbitMQ")
            return

        self._handlers.setdefault(event_type, []).append(handler)
        queue_name = queue_name or f"bus.{event_type.replace('.', '_')}"

        if queue_name in self._queues:
            return

        queue = await self._channel.declare_queue(queue_name, durable=True)
        await queue.bind(self._exchange, routing_key=event_type)
        await queue.consume(self._make_consumer(event_type))
        self._queues[queue_name] = queue
        await log_info(f"Очередь {queue_name} слушает {event_type}", type_msg=TypeMsg.DEBUG)

    def _make_consumer(self, event_type: str) -> Callable[[AbstractIncomingMessage], Awaitable[None]]:
        async def consumer(message: AbstractIncomingMessage) -> None:
            # process() подтверждает сообщение и при ошибке обработчика:
            # повтором занимается сам обработчик, а не брокер
            async with message.process():
                try:
                    event = DomainEvent.from_json(message.body.decode())
                except (ValueError, TypeError, UnicodeDecodeError) as e:
                    await log_error(f"Битое сообщение в очереди {event_type}: {e}")
                    return
                await self._dispatch(event_type, event)

        return consumer

    async def _dispatch(self, event_type: str, event: DomainEvent) -> None:
        for handler in self._handlers.get(event_type, []):
            try:
                await handler(event)
            except Exception as e:
                await log_error(
                    f"Обработчик {getattr(handler, '__name__', handler)} упал на {event.event_id}: {e}",
                    exc_info=True,
                )

    async def health_check(self) -> bool:
        return self.is_connected


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


async def init_event_bus() -> None:
    """Подключается к RabbitMQ по настройкам из конфига."""
    from src.config import settings

    await get_event_bus().connect(
        url=settings.rabbitmq.url,
        exchange_name=settings.rabbitmq.RABBITMQ_EXCHANGE,
        prefetch_count=settings.rabbitmq.RABBITMQ_PREFETCH_COUNT,
    )
    await log_info(
        f"RabbitMQ подключён: {settings.rabbitmq.RABBITMQ_HOST}:{settings.rabbitmq.RABBITMQ_PORT}",
        type_msg=TypeMsg.INFO,
    )


async def close_event_bus() -> None:
    await get_event_bus().disconnect()
