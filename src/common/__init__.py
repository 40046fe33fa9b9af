# src/common/__init__.py
"""Константы протокола трекинга и логирование."""

from src.common.constants import InboundEvent, OutboundEvent, SessionState, TypeMsg
from src.common.logger import log_debug, log_error, log_info, log_warning, setup_logging

__all__ = [
    "InboundEvent",
    "OutboundEvent",
    "SessionState",
    "TypeMsg",
    "log_debug",
    "log_error",
    "log_info",
    "log_warning",
    "setup_logging",
]
