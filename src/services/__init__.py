# src/services/__init__.py
"""
Сервисы приложения.

Сервисы:
- tracking_gateway: WebSocket шлюз live-трекинга автобусов
"""

__all__: list[str] = []
