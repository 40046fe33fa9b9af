# src/config/loader.py
"""
Настройки сервиса трекинга.

config/config.json содержит плоский список ключей; каждый ключ попадает
в ту секцию Settings, где объявлено поле с таким именем (LOG_LEVEL
читают и system, и logging). Адреса инфраструктуры, пароли и порт
шлюза перекрываются переменными окружения и .env.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


def get_project_root() -> Path:
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    return get_project_root() / "config" / "config.json"


def load_config_json(path: Path | None = None) -> dict[str, Any]:
    """Читает config.json без ключей-комментариев (_comment_*)."""
    config_path = path or get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return {key: value for key, value in raw.items() if not key.startswith("_comment_")}


class SystemSettings(BaseModel):
    PROJECT_NAME: str = "bus_tracker"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    LOG_LEVEL: str = "DEBUG"
    ENVIRONMENT: str = "development"
    # gateway | worker | all
    COMPONENT_MODE: str = "all"


class DeploymentSettings(BaseModel):
    TRACKING_GATEWAY_HOST: str = "0.0.0.0"
    TRACKING_GATEWAY_PORT: int = 3000


class LoggingSettings(BaseModel):
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """PostgreSQL, архив завершённых поездок (trip_history)."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "bus_tracker"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 2
    DB_MAX_POOL_SIZE: int = 10
    DB_COMMAND_TIMEOUT: int = 60
    # Повтор запросов при обрыве соединения
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        return v or os.getenv("DB_PASSWORD", "")

    @property
    def dsn(self) -> str:
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Redis, живые координаты и индекс маршрут -> автобус."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "bus"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        return v or os.getenv("REDIS_PASSWORD", "")

    @property
    def url(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """RabbitMQ, доменные события trip.* и route.*"""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "bus.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        return os.getenv("RABBITMQ_PASSWORD", "") or v

    @property
    def url(self) -> str:
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class TrackingSettings(BaseModel):
    """Трекинг маршрутов."""
    # Топик рассылки: f"{ROUTE_TOPIC_PREFIX}{route_id}"
    ROUTE_TOPIC_PREFIX: str = "route_"
    WS_PATH: str = "/ws/tracking"
    # Воркер повторной архивации: попытки и линейный шаг задержки, секунды
    ARCHIVE_RETRY_ATTEMPTS: int = 5
    ARCHIVE_RETRY_DELAY: float = 2.0


# Переменная окружения -> ключ config.json, который она перекрывает
ENV_OVERRIDES: dict[str, str] = {
    "ENVIRONMENT": "ENVIRONMENT",
    "COMPONENT_MODE": "COMPONENT_MODE",
    "PORT": "TRACKING_GATEWAY_PORT",
    "DB_HOST": "DB_HOST",
    "DB_PORT": "DB_PORT",
    "DB_NAME": "DB_NAME",
    "DB_USER": "DB_USER",
    "DB_PASSWORD": "DB_PASSWORD",
    "REDIS_HOST": "REDIS_HOST",
    "REDIS_PORT": "REDIS_PORT",
    "REDIS_PASSWORD": "REDIS_PASSWORD",
    "RABBITMQ_HOST": "RABBITMQ_HOST",
    "RABBITMQ_PORT": "RABBITMQ_PORT",
    "RABBITMQ_USER": "RABBITMQ_USER",
    "RABBITMQ_PASSWORD": "RABBITMQ_PASSWORD",
}


def _section(model: type[BaseModel], data: dict[str, Any]) -> BaseModel:
    """Секция из тех ключей data, которые объявлены в model."""
    return model(**{name: data[name] for name in model.model_fields if name in data})


class Settings(BaseSettings):
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls, path: Path | None = None) -> "Settings":
        """
        Settings из config.json с перекрытием из окружения (ENV_OVERRIDES).

        Строковые значения из окружения приводятся к типу поля pydantic.
        """
        data = load_config_json(path)
        for env_name, key in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                data[key] = value

        sections = {
            name: _section(field.annotation, data)
            for name, field in cls.model_fields.items()
        }
        return cls(**sections)


@lru_cache()
def get_settings() -> Settings:
    """Настройки процесса; перед чтением config.json подгружается .env из корня."""
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


settings = get_settings()
