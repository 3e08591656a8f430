"""
Core package: event bus and JSON helpers shared by protocol and solver code.
"""

from oif_solver.core.event_bus import Event, EventBus, EventType, Subscription

__all__ = [
    "Event",
    "EventBus",
    "EventType",
    "Subscription",
]
