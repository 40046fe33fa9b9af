# src/worker/__init__.py
"""
Фоновые воркеры для обработки событий из RabbitMQ.
"""

from src.worker.base import BaseWorker
from src.worker.archive_retry import ArchiveRetryWorker

__all__ = ["BaseWorker", "ArchiveRetryWorker"]
