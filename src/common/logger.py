# src/common/logger.py
"""
Логирование сервиса трекинга.

Два формата (json для продакшена, colored для разработки), файлы
с ротацией по размеру и отдельный error.log. Поля route_id, bus_id
и session_id из extra выносятся в отдельные колонки: по ним
в логах ищут историю конкретного маршрута или водителя.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from src.common.constants import TypeMsg


DEFAULT_LOGGER_NAME = "bus_tracker"

# Поля extra, которые показываются отдельно от остального контекста
CONTEXT_FIELDS = ("route_id", "bus_id", "session_id")

# Файловые хендлеры общие для всех логгеров процесса
_GLOBAL_FILE_HANDLER: logging.Handler | None = None
_GLOBAL_ERROR_HANDLER: logging.Handler | None = None

_LOGGING_INITIALIZED: bool = False

_loggers: dict[str, logging.Logger] = {}


def _tracking_context(record: logging.LogRecord) -> dict[str, Any]:
    extra_data = getattr(record, "extra_data", None) or {}
    return {key: extra_data[key] for key in CONTEXT_FIELDS if key in extra_data}


class JsonFormatter(logging.Formatter):
    """Одна запись = одна JSON строка."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(_tracking_context(record))

        if getattr(record, "extra_data", None):
            entry["extra"] = record.extra_data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    GRAY = "\033[90m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.GRAY)
        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            f"{color}[{record.levelname}]{self.RESET}",
        ]

        extra_data = getattr(record, "extra_data", None) or {}
        if extra_data.get("caller_function"):
            parts.append(
                f"{self.GRAY}[{extra_data.get('caller_module')}.{extra_data['caller_function']}() "
                f"{extra_data.get('caller_file')}:{extra_data.get('caller_line')}]{self.RESET}"
            )

        context = _tracking_context(record)
        if context:
            parts.append(" ".join(f"{key}={value}" for key, value in context.items()))

        parts.append(record.getMessage())
        message = " ".join(parts)

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class DateBasedRotatingFileHandler(RotatingFileHandler):
    """
    Пишет в {logger_name}.log; переполненный файл переименовывается
    в {logger_name}_{дата_время}.log, старые архивы не удаляются.
    """

    def __init__(self, log_dir: str, max_bytes: int, logger_name: str = "app", encoding: str = "utf-8"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.logger_name = logger_name
        super().__init__(
            filename=str(self.log_dir / f"{logger_name}.log"),
            maxBytes=max_bytes,
            backupCount=0,
            encoding=encoding,
        )

    def shouldRollover(self, record: logging.LogRecord) -> bool:
        if self.maxBytes <= 0:
            return False
        if self.stream is None:
            self.stream = self._open()
        self.stream.seek(0, 2)
        return self.stream.tell() >= self.maxBytes

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None

        archive = self.log_dir / f"{self.logger_name}_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.log"
        if os.path.exists(self.baseFilename):
            try:
                os.rename(self.baseFilename, archive)
            except OSError:
                # Файл держит другой процесс: пишем дальше в текущий
                pass

        self.stream = self._open()


def _read_logging_settings() -> dict[str, Any]:
    """Секция logging из конфига; при недоступном конфиге консольный DEBUG."""
    values: dict[str, Any] = {
        "level": "DEBUG",
        "format": "colored",
        "to_file": False,
        "file_path": "logs/app.log",
        "max_bytes": 10485760,
    }
    try:
        from src.config import settings
        section = settings.logging
    except Exception:
        return values

    for key, attr, expected in (
        ("level", "LOG_LEVEL", str),
        ("format", "LOG_FORMAT", str),
        ("to_file", "LOG_TO_FILE", bool),
        ("file_path", "LOG_FILE_PATH", str),
        ("max_bytes", "LOG_MAX_BYTES", int),
    ):
        value = getattr(section, attr, None)
        # В тестах settings бывает MagicMock
        if isinstance(value, expected):
            values[key] = value
    return values


def _file_handlers(config: dict[str, Any], formatter: logging.Formatter) -> list[logging.Handler]:
    global _GLOBAL_FILE_HANDLER, _GLOBAL_ERROR_HANDLER

    log_path = Path(config["file_path"])
    log_name = log_path.stem
    # Шлюз и воркер в одном каталоге логов различаются по SERVICE_NAME
    service_name = os.getenv("SERVICE_NAME")
    if service_name:
        log_name = f"{log_name}_{service_name}"

    if _GLOBAL_FILE_HANDLER is None:
        _GLOBAL_FILE_HANDLER = DateBasedRotatingFileHandler(
            log_dir=str(log_path.parent),
            max_bytes=config["max_bytes"],
            logger_name=log_name,
        )
        _GLOBAL_FILE_HANDLER.setFormatter(formatter)

    if _GLOBAL_ERROR_HANDLER is None:
        _GLOBAL_ERROR_HANDLER = DateBasedRotatingFileHandler(
            log_dir=str(log_path.parent),
            max_bytes=config["max_bytes"],
            logger_name="error",
        )
        _GLOBAL_ERROR_HANDLER.setLevel(logging.ERROR)
        _GLOBAL_ERROR_HANDLER.setFormatter(formatter)

    return [_GLOBAL_FILE_HANDLER, _GLOBAL_ERROR_HANDLER]


def setup_logging() -> None:
    """Создаёт основной логгер и приглушает болтливые библиотеки. Идемпотентна."""
    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED:
        return
    _LOGGING_INITIALIZED = True

    get_logger(DEFAULT_LOGGER_NAME)
    for noisy in ("asyncpg", "redis", "aio_pika", "aiormq", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """
    Логгер с хендлерами по конфигу.

    Результат кэшируется: повторный вызов не добавляет хендлеры.
    """
    if name in _loggers:
        return _loggers[name]

    config = _read_logging_settings()

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config["level"].upper(), logging.DEBUG))

    if not logger.handlers:
        formatter: logging.Formatter = JsonFormatter() if config["format"] == "json" else ColoredFormatter()

        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        logger.addHandler(console)

        if config["to_file"]:
            for handler in _file_handlers(config, formatter):
                logger.addHandler(handler)

        logger.propagate = False

    _loggers[name] = logger
    return logger


def _get_caller_info() -> dict[str, Any]:
    """Функция, модуль, файл и строка кода, вызвавшего log_*."""
    frame = inspect.currentframe()
    caller_frame = None
    try:
        # frame: _get_caller_info, f_back: log_*, f_back.f_back: вызывающий код
        caller_frame = frame.f_back.f_back if frame and frame.f_back else None
        if caller_frame is None:
            return {}

        frame_info = inspect.getframeinfo(caller_frame)
        caller_module = inspect.getmodule(caller_frame)
        return {
            "caller_function": caller_frame.f_code.co_name,
            "caller_module": caller_module.__name__ if caller_module else "unknown",
            "caller_file": Path(frame_info.filename).name if frame_info.filename else "unknown",
            "caller_line": frame_info.lineno,
        }
    except Exception:
        return {}
    finally:
        # Ссылки на фреймы держат локальные переменные вызывающего кода
        del frame
        del caller_frame


_LEVELS = {
    TypeMsg.DEBUG: logging.DEBUG,
    TypeMsg.INFO: logging.INFO,
    TypeMsg.WARNING: logging.WARNING,
    TypeMsg.ERROR: logging.ERROR,
    TypeMsg.CRITICAL: logging.CRITICAL,
}


async def log_info(
    message: str,
    *,
    type_msg: TypeMsg = TypeMsg.INFO,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Пишет сообщение с уровнем type_msg.

    Args:
        message: Текст
        type_msg: Уровень
        logger_name: Имя логгера
        extra: Контекст (route_id, bus_id, session_id и любые другие поля)
    """
    logger = get_logger(logger_name)
    record_extra = {"extra_data": {**_get_caller_info(), **(extra or {})}}
    logger.log(_LEVELS.get(type_msg, logging.INFO), message, extra=record_extra)


async def log_debug(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    await log_info(message, type_msg=TypeMsg.DEBUG, logger_name=logger_name, extra=extra)


async def log_warning(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    await log_info(message, type_msg=TypeMsg.WARNING, logger_name=logger_name, extra=extra)


async def log_error(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """ERROR, с трейсбеком текущего исключения при exc_info=True."""
    logger = get_logger(logger_name)
    record_extra = {"extra_data": {**_get_caller_info(), **(extra or {})}}
    logger.error(message, extra=record_extra, exc_info=exc_info)
