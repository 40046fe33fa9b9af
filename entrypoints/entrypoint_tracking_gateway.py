#!/usr/bin/env python3
# entrypoints/entrypoint_tracking_gateway.py
"""
Контейнер шлюза трекинга.

Таблица блокировок маршрутов живёт в памяти процесса, поэтому
шлюз запускается одним процессом uvicorn (без --workers).
Порт переопределяется переменной PORT.
"""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.resolve()))

import uvicorn

from src.config import settings


def main() -> None:
    os.environ.setdefault("SERVICE_NAME", "gateway")
    uvicorn.run(
        "src.services.tracking_gateway.app:app",
        host=settings.deployment.TRACKING_GATEWAY_HOST,
        port=settings.deployment.TRACKING_GATEWAY_PORT,
        log_level=settings.system.LOG_LEVEL.lower(),
        workers=1,
    )


if __name__ == "__main__":
    main()
