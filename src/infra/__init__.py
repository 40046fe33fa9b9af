# src/infra/__init__.py
"""
Подключения к внешним сервисам трекинга:
PostgreSQL (архив поездок), Redis (живые координаты), RabbitMQ (события).
"""

from src.infra.database import close_db, get_db, init_db
from src.infra.event_bus import close_event_bus, get_event_bus, init_event_bus
from src.infra.redis_client import close_redis, get_redis, init_redis

__all__ = [
    "close_db",
    "close_event_bus",
    "close_redis",
    "get_db",
    "get_event_bus",
    "get_redis",
    "init_db",
    "init_event_bus",
    "init_redis",
]
