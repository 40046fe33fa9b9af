# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class InboundEvent(str, Enum):
    """События, которые присылает клиент по WebSocket."""
    AUTHENTICATE_DRIVER = "authenticate_driver"
    JOIN_ROUTE = "join_route"
    BUS_LOCATION = "bus_location"
    END_TRIP = "end_trip"


class OutboundEvent(str, Enum):
    """События, которые шлюз отправляет клиентам."""
    ROUTE_LOCK_SUCCESS = "route_lock_success"
    ROUTE_LOCKED = "route_locked"
    ROUTE_NOT_LOCKED = "route_not_locked"
    LOCATION_UPDATE = "location_update"
    TRIP_ENDED = "trip_ended"
    TRACKING_STOPPED = "tracking_stopped"
    INVALID_PAYLOAD = "invalid_payload"


class SessionState(str, Enum):
    """Состояния сессии водителя/подписчика."""
    UNAUTHENTICATED = "unauthenticated"
    LOCKED = "locked"
    CLOSED = "closed"


class TripAction(str, Enum):
    """Решение трекера по входящей точке."""
    START = "start"
    APPEND = "append"
    SKIP_DUPLICATE = "skip_duplicate"


# Сообщения, уходящие клиентам (формулировки совместимы с мобильным приложением)
MSG_ROUTE_LOCKED_OK = "Route locked successfully. You can now start tracking."
MSG_ROUTE_BUSY = "This route is already being tracked by another driver ({vehicle_number})"
MSG_ROUTE_LOCK_FAILED = "Failed to lock route. Please try again."
MSG_ALREADY_LOCKED = "This session is already tracking route {route_id}"
MSG_NOT_AUTHENTICATED = "You must authenticate first before sending location updates."
MSG_TRACKING_STOPPED = "Driver has disconnected. Tracking stopped."
