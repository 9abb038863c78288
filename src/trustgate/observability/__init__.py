"""Observability module — structured gateway event bus."""

from trustgate.observability.event_bus import (
    EventType,
    GatewayEvent,
    GatewayEventBus,
)

__all__ = [
    "EventType",
    "GatewayEvent",
    "GatewayEventBus",
]
