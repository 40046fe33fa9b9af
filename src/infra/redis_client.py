# src/infra/redis_client.py
"""
Redis для живых координат автобусов.

Ключи хранилища (live:bus:*, live:route:*) передаются без namespace,
клиент сам добавляет префикс REDIS_NAMESPACE. Исключение: команды
внутри pipeline(), там ключ оборачивается через make_key() вручную.
"""

from __future__ import annotations

import redis.asyncio as redis
from redis.asyncio.client import Pipeline

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg


class RedisClient:
    """Соединение с Redis (Singleton) и узкий набор команд для хранилища координат."""

    _instance: RedisClient | None = None
    _client: redis.Redis | None = None

    def __new__(cls) -> RedisClient:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._client = None
        self._namespace = "bus"

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    def make_key(self, key: str) -> str:
        """live:bus:42 -> {namespace}:live:bus:42"""
        return f"{self._namespace}:{key}"

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 50,
        namespace: str | None = None,
    ) -> None:
        """
        Открывает пул соединений и проверяет его PING.

        Args:
            url: redis://... (если None, все параметры берутся из конфига)
            max_connections: Размер пула
            namespace: Префикс ключей
        """
        if self._client is not None:
            return

        if url is None:
            from src.config import settings
            url = settings.redis.url
            max_connections = settings.redis.REDIS_MAX_CONNECTIONS
            namespace = settings.redis.REDIS_NAMESPACE

        if namespace:
            self._namespace = namespace

        await log_info(f"Подключение к Redis (namespace={self._namespace})...", type_msg=TypeMsg.INFO)
        # decode_responses: поля хеша приходят строками, JSON разбирает хранилище
        self._client = redis.from_url(url, max_connections=max_connections, decode_responses=True)
        await self._client.ping()

    async def disconnect(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    async def get(self, key: str) -> str | None:
        return await self.client.get(self.make_key(key))

    async def hgetall(self, name: str) -> dict[str, str]:
        """Все поля хеша; пустой dict, если ключа нет."""
        return await self.client.hgetall(self.make_key(name))

    def pipeline(self, transaction: bool = True) -> Pipeline:
        """
        Пайплайн команд.

        С transaction=True команды уходят в MULTI/EXEC: читатель видит
        либо старую запись автобуса целиком, либо новую.
        """
        return self.client.pipeline(transaction=transaction)

    async def health_check(self) -> bool:
        try:
            return await self.client.ping()
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}")
            return False


def get_redis() -> RedisClient:
    return RedisClient()


async def init_redis() -> None:
    """Подключается к Redis по настройкам из конфига."""
    from src.config import settings

    await get_redis().connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        namespace=settings.redis.REDIS_NAMESPACE,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
    )


async def close_redis() -> None:
    await get_redis().disconnect()
