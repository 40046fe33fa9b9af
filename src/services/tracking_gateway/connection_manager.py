# src/services/tracking_gateway/connection_manager.py
"""
Менеджер WebSocket соединений.
Управляет подписками на маршруты и рассылкой событий.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket

from src.common.logger import log_debug
from src.core.tracking.keyed_lock import KeyedLock


@dataclass
class ConnectionInfo:
    """Информация о соединении."""
    websocket: WebSocket
    session_id: str
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    subscriptions: set[str] = field(default_factory=set)  # route_{id}


class ConnectionManager:
    """
    Менеджер WebSocket соединений.

    Поддерживает:
    - Подключение/отключение клиентов по session_id
    - Подписку на топики маршрутов (route_{route_id})
    - Рассылку по топику с сохранением порядка вызовов publish
    - Персональные сообщения

    Формат сообщения: {"event": <имя>, "data": {...}}.
    """

    def __init__(self, topic_prefix: str = "route_") -> None:
        self._topic_prefix = topic_prefix

        # session_id -> ConnectionInfo
        self._connections: dict[str, ConnectionInfo] = {}

        # topic -> set of session_ids
        self._subscriptions: dict[str, set[str]] = {}

        # Лок на отправку в топик: рассылки одного маршрута не перемешиваются
        self._topic_locks: KeyedLock[str] = KeyedLock()

        # Для статистики
        self._total_connections: int = 0
        self._total_messages_sent: int = 0

    @property
    def active_connections(self) -> int:
        """Количество активных соединений."""
        return len(self._connections)

    def topic_for(self, route_id: int) -> str:
        """Имя топика маршрута."""
        return f"{self._topic_prefix}{route_id}"

    async def connect(self, websocket: WebSocket, session_id: str) -> None:
        """Принять соединение и зарегистрировать его под session_id."""
        await websocket.accept()
        self._connections[session_id] = ConnectionInfo(websocket=websocket, session_id=session_id)
        self._total_connections += 1

    async def disconnect(self, session_id: str) -> None:
        """Отключить клиента и снять все его подписки."""
        conn = self._connections.pop(session_id, None)
        if conn is None:
            return
        for topic in list(conn.subscriptions):
            self._unsubscribe_from_topic(session_id, topic)

    async def subscribe(self, session_id: str, route_id: int) -> None:
        """Подписать соединение на маршрут."""
        if session_id not in self._connections:
            return

        topic = self.topic_for(route_id)
        self._connections[session_id].subscriptions.add(topic)
        self._subscriptions.setdefault(topic, set()).add(session_id)

    async def unsubscribe_all(self, session_id: str) -> None:
        """Снять все подписки соединения (само соединение остаётся)."""
        conn = self._connections.get(session_id)
        if conn is None:
            return
        for topic in list(conn.subscriptions):
            self._unsubscribe_from_topic(session_id, topic)

    def _unsubscribe_from_topic(self, session_id: str, topic: str) -> None:
        """Внутренний метод отписки."""
        if session_id in self._connections:
            self._connections[session_id].subscriptions.discard(topic)

        subscribers = self._subscriptions.get(topic)
        if subscribers is not None:
            subscribers.discard(session_id)
            if not subscribers:
                del self._subscriptions[topic]

    async def publish_to(self, session_id: str, event: str, payload: dict[str, Any]) -> bool:
        """
        Отправить событие конкретному соединению.

        Returns:
            True если сообщение отправлено, False если соединение закрыто
        """
        conn = self._connections.get(session_id)
        if conn is None:
            return False

        try:
            await conn.websocket.send_json({"event": event, "data": payload})
            self._total_messages_sent += 1
            return True
        except Exception as e:
            # Соединение разорвано
            await log_debug(f"Не удалось отправить {event} сессии {session_id}: {e}")
            await self.disconnect(session_id)
            return False

    async def publish(self, route_id: int, event: str, payload: dict[str, Any]) -> int:
        """
        Отправить событие всем подписчикам маршрута.

        Returns:
            Количество успешно отправленных сообщений
        """
        topic = self.topic_for(route_id)
        message = {"event": event, "data": payload}

        async with self._topic_locks.hold(topic):
            subscribers = list(self._subscriptions.get(topic, ()))
            sent_count = 0
            failed: list[str] = []

            for session_id in subscribers:
                conn = self._connections.get(session_id)
                if conn is None:
                    continue
                try:
                    await conn.websocket.send_json(message)
                    sent_count += 1
                    self._total_messages_sent += 1
                except Exception:
                    failed.append(session_id)

        # Отключаем failed соединения
        for session_id in failed:
            await self.disconnect(session_id)

        return sent_count

    def get_session_subscriptions(self, session_id: str) -> set[str]:
        """Получить все подписки соединения."""
        conn = self._connections.get(session_id)
        return conn.subscriptions.copy() if conn else set()

    def get_topic_subscribers(self, route_id: int) -> set[str]:
        """Получить всех подписчиков маршрута."""
        return self._subscriptions.get(self.topic_for(route_id), set()).copy()

    def get_stats(self) -> dict[str, Any]:
        """Получить статистику."""
        return {
            "active_connections": len(self._connections),
            "total_topics": len(self._subscriptions),
            "total_connections_ever": self._total_connections,
            "total_messages_sent": self._total_messages_sent,
        }
