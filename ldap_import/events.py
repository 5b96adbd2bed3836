"""
Import events and the observer registry that delivers them.

Delivery is synchronous and in-process. Listener exceptions propagate to the
caller of dispatch().
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, List, Any, Set, Type

logger = logging.getLogger(__name__)


class Event:
    """Base class for import events."""

    name = 'event'


class Importing(Event):
    """A directory object is about to be imported as a new local record."""

    name = 'importing'

    def __init__(self, obj, record):
        self.object = obj
        self.record = record


class Synchronizing(Event):
    name = 'synchronizing'

    def __init__(self, obj, record):
        self.object = obj
        self.record = record


class Synchronized(Event):
    name = 'synchronized'

    def __init__(self, obj, record):
        self.object = obj
        self.record = record


class Imported(Event):
    """A new local record was inserted for a directory object."""

    name = 'imported'

    def __init__(self, obj, record):
        self.object = obj
        self.record = record


class DeletedMissing(Event):
    """Local records whose directory objects were absent from the batch."""

    name = 'deleted.missing'

    def __init__(self, ids: Set[int], batch: List[Any], store):
        self.ids = set(ids)
        self.batch = batch
        self.store = store


class Rejected(Event):
    """A directory user was rejected by the authentication flow."""

    name = 'rejected'

    def __init__(self, obj, record=None):
        self.object = obj
        self.record = record


class EventDispatcher:
    """Registry of listeners keyed by event class."""

    def __init__(self):
        self._listeners: Dict[Type[Event], List[Callable[[Event], Any]]] = defaultdict(list)

    def listen(self, event_type: Type[Event], listener: Callable[[Event], Any]):
        self._listeners[event_type].append(listener)

    def forget(self, event_type: Type[Event]):
        self._listeners.pop(event_type, None)

    def has_listeners(self, event_type: Type[Event]) -> bool:
        return bool(self._listeners.get(event_type))

    def dispatch(self, event: Event) -> Event:
        """Call every listener registered for the event's class, in registration order."""
        listeners = self._listeners.get(type(event), [])
        logger.debug(f"Dispatching '{event.name}' to {len(listeners)} listener(s)")
        for listener in listeners:
            listener(event)
        return event
