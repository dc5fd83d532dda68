"""
Events published by the session services.

Front ends render by subscribing here; services never call into them.
"""

from .event_system import EventType, Event, EventBus, get_event_bus

__all__ = ['EventType', 'Event', 'EventBus', 'get_event_bus']
