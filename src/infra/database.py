# src/infra/database.py
"""
PostgreSQL для архива поездок.

Пул asyncpg (синглтон), повтор запросов при обрыве соединения
и применение migrations/init.sql при старте.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, AsyncGenerator, Callable, TypeVar

import asyncpg
from asyncpg import Connection, Pool

from src.common.logger import log_error, log_info, log_warning
from src.common.constants import TypeMsg

T = TypeVar("T")

# Ключ advisory lock для миграции (общий для всех инстансов)
SCHEMA_LOCK_KEY = 20240501

# Ошибки, после которых запрос имеет смысл повторить
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionRefusedError,
    OSError,
)


def _retry_defaults() -> tuple[int, float]:
    from src.config import settings
    return settings.database.DB_RETRY_ATTEMPTS, settings.database.DB_RETRY_DELAY


def retry_on_connection_error(
    max_attempts: int | None = None,
    delay: float | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Повторяет корутину при ошибках соединения с PostgreSQL.

    Ошибки SQL (нарушение ограничений, синтаксис) не повторяются.
    Задержка растёт линейно: delay * номер попытки.

    Args:
        max_attempts: Число попыток (по умолчанию DB_RETRY_ATTEMPTS)
        delay: Базовая задержка, секунды (по умолчанию DB_RETRY_DELAY)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempts, base_delay = max_attempts, delay
            if attempts is None or base_delay is None:
                default_attempts, default_delay = _retry_defaults()
                attempts = default_attempts if attempts is None else attempts
                base_delay = default_delay if base_delay is None else base_delay

            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except CONNECTION_ERRORS as e:
                    if attempt == attempts:
                        await log_error(f"{func.__name__}: PostgreSQL недоступен после {attempts} попыток: {e}")
                        raise
                    await log_warning(f"{func.__name__}: обрыв соединения с PostgreSQL ({attempt}/{attempts}): {e}")
                    await asyncio.sleep(base_delay * attempt)

            raise RuntimeError("max_attempts должен быть >= 1")

        return wrapper  # type: ignore[return-value]

    return decorator


class DatabaseManager:
    """
    Пул соединений PostgreSQL (Singleton).

    Запросы трекинга короткие: вставка поездки в trip_history
    и проверка здоровья, поэтому наружу торчат только execute/fetchval
    и транзакция.
    """

    _instance: DatabaseManager | None = None
    _pool: Pool | None = None

    def __new__(cls) -> DatabaseManager:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._pool = None

    @property
    def pool(self) -> Pool:
        if self._pool is None:
            raise RuntimeError("Пул соединений не инициализирован. Вызовите connect() сначала.")
        return self._pool

    @retry_on_connection_error()
    async def connect(
        self,
        dsn: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: int = 60,
    ) -> None:
        """
        Создаёт пул. Повторный вызов ничего не делает.

        Args:
            dsn: Строка подключения (если None, берётся из конфига вместе с размерами пула)
            min_size: Минимальный размер пула
            max_size: Максимальный размер пула
            command_timeout: Таймаут команды, секунды
        """
        if self._pool is not None:
            return

        if dsn is None:
            from src.config import settings
            dsn = settings.database.dsn
            min_size = settings.database.DB_MIN_POOL_SIZE
            max_size = settings.database.DB_MAX_POOL_SIZE
            command_timeout = settings.database.DB_COMMAND_TIMEOUT

        await log_info("Подключение к PostgreSQL...", type_msg=TypeMsg.INFO)
        self._pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
        )
        await log_info(f"Пул PostgreSQL создан ({min_size}..{max_size})", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        await log_info("Пул PostgreSQL закрыт", type_msg=TypeMsg.INFO)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """Соединение внутри транзакции: commit при выходе, rollback при исключении."""
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                yield connection

    @retry_on_connection_error()
    async def execute(self, query: str, *args: Any) -> str:
        """
        Выполняет запрос без выборки.

        Returns:
            Статус команды, например "INSERT 0 1"
        """
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    @retry_on_connection_error()
    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(query, *args, column=column)

    async def health_check(self) -> bool:
        """SELECT 1 через пул."""
        try:
            return await self.fetchval("SELECT 1") == 1
        except Exception as e:
            await log_error(f"Health check PostgreSQL failed: {e}")
            return False


_db_manager: DatabaseManager | None = None


def get_db() -> DatabaseManager:
    """Возвращает глобальный экземпляр DatabaseManager."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


async def init_db() -> None:
    """Подключается по настройкам из конфига и применяет схему trip_history."""
    from src.config import settings

    db = get_db()
    await db.connect(
        dsn=settings.database.dsn,
        min_size=settings.database.DB_MIN_POOL_SIZE,
        max_size=settings.database.DB_MAX_POOL_SIZE,
        command_timeout=settings.database.DB_COMMAND_TIMEOUT,
    )
    await log_info(
        f"PostgreSQL подключён: {settings.database.DB_HOST}:{settings.database.DB_PORT}/{settings.database.DB_NAME}",
        type_msg=TypeMsg.INFO,
    )
    await _init_schema(db)


async def _init_schema(db: DatabaseManager) -> None:
    """Применяет migrations/init.sql (идемпотентно, под advisory lock)."""
    from src.config.loader import get_project_root

    schema_path = get_project_root() / "migrations" / "init.sql"
    if not schema_path.exists():
        await log_error(f"Файл схемы БД не найден: {schema_path}")
        return

    schema_sql = schema_path.read_text(encoding="utf-8")

    try:
        # Несколько инстансов шлюза стартуют одновременно: сериализуем миграцию
        async with db.transaction() as conn:
            await conn.execute(f"SELECT pg_advisory_xact_lock({SCHEMA_LOCK_KEY})")
            await conn.execute(schema_sql)
    except asyncpg.PostgresError as e:
        if "deadlock detected" in str(e) or "already exists" in str(e):
            await log_warning(f"Схема уже применяется другим процессом: {e}")
            return
        await log_error(f"Ошибка при применении схемы БД: {e}")
        raise

    await log_info("Схема trip_history применена", type_msg=TypeMsg.INFO)


async def close_db() -> None:
    await get_db().disconnect()
