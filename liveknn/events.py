"""
Change Events
=============

Events a neighbor store fires after each mutation, and the listener set
that delivers them.

Delivery is synchronous: every registered listener sees the event exactly
once, before the insert/delete call that produced it returns. A listener
that raises aborts delivery and the exception reaches the mutating caller.
"""

import logging
import threading
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List

logger = logging.getLogger(__name__)


class ChangeType(Enum):
    """Kinds of population mutation."""

    INSERT = "insert"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    One mutation as seen by one neighbor store.

    Attributes:
        kind: INSERT or DELETE
        objects: The identifiers actually added or removed
        updates: Existing identifiers whose neighbor list changed as a consequence
        source: The neighbor store that produced the event
    """

    kind: ChangeType
    objects: FrozenSet[int]
    updates: FrozenSet[int]
    source: Any

    @classmethod
    def create(
        cls, kind: ChangeType, objects: Iterable[int], updates: Iterable[int], source: Any
    ) -> "ChangeEvent":
        return cls(kind, frozenset(objects), frozenset(updates), source)

    def matches(self, other: "ChangeEvent") -> bool:
        """Same mutation reported by a different store."""
        return (
            self.kind == other.kind
            and self.objects == other.objects
            and self.source is not other.source
        )

    def signature(self):
        """The mutation this event describes, independent of its source."""
        return (self.kind, self.objects)

    def __repr__(self) -> str:
        return (
            f"ChangeEvent({self.kind.name} objects={sorted(self.objects)} "
            f"updates={sorted(self.updates)})"
        )


Listener = Callable[[ChangeEvent], None]


class ListenerSet:
    """
    Registered listeners of one event source.

    Listeners are kept in registration order; registering the same callable
    twice has no effect.
    """

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()
        self._dispatch_count = 0

    def add(self, listener: Listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove(self, listener: Listener) -> bool:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
                return True
            return False

    def dispatch(self, event: ChangeEvent) -> None:
        """Invoke every listener with the event. Exceptions propagate."""
        with self._lock:
            listeners = list(self._listeners)
            self._dispatch_count += 1
        logger.debug("Dispatching %r to %d listener(s)", event, len(listeners))
        for listener in listeners:
            listener(event)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "listeners": len(self._listeners),
                "dispatched": self._dispatch_count,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


class Subscription:
    """
    Handle to a result subscription.

    Provides methods to pause, resume, and unsubscribe.
    """

    def __init__(self, subscriber_id: int, callback: Callable[[Any], None], owner: Any):
        self.id = subscriber_id
        self.callback = callback
        self._owner_ref = weakref.ref(owner)
        self.active = True

    def pause(self):
        """Pause this subscription (stop receiving notifications)."""
        self.active = False

    def resume(self):
        """Resume this subscription (start receiving notifications again)."""
        self.active = True

    def unsubscribe(self):
        """Unsubscribe from all notifications."""
        owner = self._owner_ref()
        if owner is not None:
            owner.unsubscribe(self.id)

    def notify(self, value: Any):
        """Notify this subscriber, unless paused."""
        if self.active:
            self.callback(value)
