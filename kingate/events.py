"""Post-commit hooks toward the notification dispatcher and the layout recalculation job."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .models import utcnow

logger = logging.getLogger(__name__)

SUGGESTION_CREATED = "suggestion.created"
SUGGESTION_REVIEWED = "suggestion.reviewed"
PERSON_CHANGED = "person.changed"
LAYOUT_RECALCULATE = "layout.recalculate"


@dataclass
class Event:
    name: str
    payload: dict
    created_at: datetime = field(default_factory=utcnow)


EventHandler = Callable[[Event], None]

_handlers: dict[str, list[EventHandler]] = {}


def subscribe(name: str, handler: EventHandler):
    _handlers.setdefault(name, []).append(handler)
    logger.debug("Subscribed %s to %s", getattr(handler, "__name__", handler), name)


def unsubscribe(name: str, handler: EventHandler):
    handlers = _handlers.get(name, [])
    if handler in handlers:
        handlers.remove(handler)


def clear():
    _handlers.clear()


def emit(name: str, payload: dict) -> Event:
    """Deliver an event to every handler. Work is already committed, so handler errors are only logged."""
    event = Event(name, payload)
    handlers = list(_handlers.get(name, []))
    if not handlers:
        logger.debug("No handlers for %s", name)
    for handler in handlers:
        try:
            handler(event)
        except Exception as e:
            logger.error("Event handler error on %s: %s", name, e, exc_info=True)
    return event
