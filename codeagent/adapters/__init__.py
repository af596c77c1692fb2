"""Adapters package - typed bus events and the in-process event bus."""
from __future__ import annotations

__all__ = [
    "EventBus",
    "event_to_dict",
    "dict_to_event",
]

from codeagent.adapters.event_bus import EventBus
from codeagent.adapters.events import dict_to_event, event_to_dict
