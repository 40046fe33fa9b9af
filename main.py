#!/usr/bin/env python3
# main.py
"""
Запуск сервиса трекинга автобусов.

    python main.py [gateway|worker|all]

Без аргумента режим берётся из COMPONENT_MODE.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Awaitable, Callable

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import init_db, close_db
from src.infra.redis_client import init_redis, close_redis
from src.infra.event_bus import init_event_bus, close_event_bus

USAGE = """
Bus Tracker: live-трекинг автобусов по маршрутам

Использование:
    python main.py [mode]

Режимы:
    gateway    WebSocket шлюз трекинга
    worker     Воркер повторной архивации поездок
    all        Шлюз и воркер в одном процессе

Без аргумента режим берётся из COMPONENT_MODE.
"""

_running_tasks: list[asyncio.Task] = []


async def run_tracking_gateway() -> None:
    """uvicorn внутри текущего event loop; подключения уже открыты."""
    import uvicorn
    from src.services.tracking_gateway.app import create_app

    host = settings.deployment.TRACKING_GATEWAY_HOST
    port = settings.deployment.TRACKING_GATEWAY_PORT
    await log_info(f"Шлюз трекинга слушает {host}:{port}{settings.tracking.WS_PATH}", type_msg=TypeMsg.INFO)

    server = uvicorn.Server(uvicorn.Config(
        create_app(init_infra=False),
        host=host,
        port=port,
        log_level="debug" if settings.system.DEBUG else "info",
    ))
    try:
        await server.serve()
    except asyncio.CancelledError:
        await server.shutdown()


async def run_archive_worker() -> None:
    from src.worker.runner import run_workers

    await run_workers(init_infra=False)


MODES: dict[str, list[Callable[[], Awaitable[None]]]] = {
    "gateway": [run_tracking_gateway],
    "worker": [run_archive_worker],
    "all": [run_tracking_gateway, run_archive_worker],
}


def install_signal_handlers() -> None:
    """SIGINT/SIGTERM отменяют запущенные компоненты."""
    def stop(sig: int) -> None:
        print(f"\nПолучен сигнал {sig}, останавливаемся...")
        for task in _running_tasks:
            if not task.done():
                task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop, sig)
    except NotImplementedError:
        # Windows: add_signal_handler недоступен
        signal.signal(signal.SIGINT, lambda s, f: stop(s))
        signal.signal(signal.SIGTERM, lambda s, f: stop(s))


async def open_connections() -> None:
    await init_db()
    await init_redis()
    await init_event_bus()


async def close_connections() -> None:
    # Обратный порядок: сначала события, последним архив
    for close in (close_event_bus, close_redis, close_db):
        try:
            await close()
        except Exception as e:
            await log_error(f"Ошибка при закрытии {close.__name__}: {e}")


async def main(mode: str | None = None) -> None:
    """
    Args:
        mode: gateway, worker или all; None означает COMPONENT_MODE из конфига
    """
    setup_logging()
    install_signal_handlers()

    if mode is None:
        mode = settings.system.COMPONENT_MODE
    if mode not in MODES:
        await log_error(f"Неизвестный режим '{mode}', используется 'all'")
        mode = "all"

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION} "
        f"({settings.system.ENVIRONMENT}): режим '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    try:
        await open_connections()
        _running_tasks.extend(asyncio.create_task(component()) for component in MODES[mode])
        await asyncio.gather(*_running_tasks, return_exceptions=True)
    except asyncio.CancelledError:
        await log_info("Остановка по отмене задачи", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        for task in _running_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*_running_tasks, return_exceptions=True)
        _running_tasks.clear()

        await close_connections()
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print(USAGE)
            sys.exit(0)
        if arg not in MODES:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print(USAGE)
            sys.exit(1)
        mode = arg

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
