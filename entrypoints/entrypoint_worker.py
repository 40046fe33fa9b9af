#!/usr/bin/env python3
# entrypoints/entrypoint_worker.py
"""
Контейнер воркера повторной архивации поездок.

Инстансы воркера делят durable очередь bus.worker.archive_retry.*,
поэтому масштабирование сводится к числу контейнеров.
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.resolve()))

from main import main


if __name__ == "__main__":
    os.environ.setdefault("SERVICE_NAME", f"worker_{os.getenv('WORKER_INSTANCE_ID', '0')}")

    try:
        asyncio.run(main(mode="worker"))
    except KeyboardInterrupt:
        pass
