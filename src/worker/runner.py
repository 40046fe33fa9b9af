# src/worker/runner.py
"""
Процесс фоновых воркеров трекинга.

    python -m src.worker.runner
"""

from __future__ import annotations

import asyncio
from typing import List

from src.worker.base import BaseWorker
from src.worker.archive_retry import ArchiveRetryWorker
from src.infra.database import init_db, close_db
from src.infra.event_bus import init_event_bus, close_event_bus
from src.common.logger import log_info, log_error
from src.common.constants import TypeMsg


def build_workers() -> List[BaseWorker]:
    return [ArchiveRetryWorker()]


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает воркеры и держит их до отмены задачи.

    Args:
        init_infra: Поднимать PostgreSQL и RabbitMQ самостоятельно.
                    main.py передаёт False: подключения уже открыты.
    """
    if init_infra:
        await init_db()
        await init_event_bus()

    workers = build_workers()

    try:
        for worker in workers:
            await worker.start()
        await log_info(f"Воркеров запущено: {len(workers)}", type_msg=TypeMsg.INFO)

        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        await log_info("Воркеры получили сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Воркеры остановлены из-за ошибки: {e}", exc_info=True)
    finally:
        for worker in workers:
            await worker.stop()

        if init_infra:
            await close_event_bus()
            await close_db()


def main() -> None:
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
