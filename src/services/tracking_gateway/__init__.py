# src/services/tracking_gateway/__init__.py
"""
Шлюз трекинга автобусов.

Обеспечивает:
- WebSocket соединения водителей и подписчиков маршрутов
- Эксклюзивную блокировку маршрута за одним водителем
- Рассылку location_update / trip_ended / tracking_stopped
"""
