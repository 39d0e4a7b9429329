"""
Dual-Index Synchronization
==========================

Pairs the change events that two neighbor stores fire for the same mutation,
so that a computation depending on both stores runs once, after both are up
to date.

State machine:

    WAITING_FIRST --event--> HAVE_FIRST --matching event--> WAITING_FIRST (dispatch)
          |                       |
          | same store for both   | wrong source, kind or objects
          v                       v
       dispatch                 FAILED (every later event raises)

Pairing relies on one mutation being in flight per population at a time.
There are no sequence numbers: an event from the wrong mutation shows up as a
kind or object mismatch and is fatal.
"""

import logging
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from .events import ChangeEvent

logger = logging.getLogger(__name__)


class ProtocolViolation(Exception):
    """Raised when change events cannot be paired."""

    pass


class SyncState(Enum):
    """States of the synchronizer."""

    WAITING_FIRST = "waiting_first"
    HAVE_FIRST = "have_first"
    FAILED = "failed"


PairCallback = Callable[[ChangeEvent, ChangeEvent], None]


class DualEventSynchronizer:
    """
    Listener that withholds a dependent computation until both stores reported.

    The callback always receives (reference_event, reachability_event),
    whichever store fired first. When both sources are the same store, every
    event is passed as both halves immediately.

    Usage:
        sync = DualEventSynchronizer(reference_store, reach_store, engine.on_change)
        sync.attach()
        database.insert(objects)   # engine.on_change runs once, after both stores
    """

    def __init__(self, reference_source: Any, reachability_source: Any, on_pair: PairCallback):
        self.reference_source = reference_source
        self.reachability_source = reachability_source
        self.on_pair = on_pair

        self._state = SyncState.WAITING_FIRST
        self._held: Optional[ChangeEvent] = None
        self._last_paired: Optional[Tuple] = None
        self._failure: Optional[str] = None
        self._pair_count = 0

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def pair_count(self) -> int:
        """Number of mutations dispatched so far."""
        return self._pair_count

    @property
    def single_source(self) -> bool:
        return self.reference_source is self.reachability_source

    def attach(self) -> None:
        """Register with the source store(s)."""
        self.reference_source.register_listener(self)
        if not self.single_source:
            self.reachability_source.register_listener(self)

    def detach(self) -> None:
        self.reference_source.unregister_listener(self)
        if not self.single_source:
            self.reachability_source.unregister_listener(self)

    def __call__(self, event: ChangeEvent) -> None:
        if self._state is SyncState.FAILED:
            raise ProtocolViolation(
                f"Synchronizer halted after an earlier violation ({self._failure}); "
                f"refusing {event!r}"
            )

        if event.source is not self.reference_source and event.source is not self.reachability_source:
            self._fail(f"Event from unknown source {event.source!r}")

        if self._state is SyncState.WAITING_FIRST:
            if self._last_paired is not None and event.signature() == self._last_paired:
                self._fail(f"{event!r} repeats an already paired mutation")
            if self.single_source:
                self._dispatch(event, event)
            else:
                logger.debug("Holding first half %r", event)
                self._held = event
                self._state = SyncState.HAVE_FIRST
            return

        held = self._held
        if not held.matches(event):
            self._fail(self._mismatch(held, event))

        self._held = None
        self._state = SyncState.WAITING_FIRST
        if held.source is self.reference_source:
            self._dispatch(held, event)
        else:
            self._dispatch(event, held)

    def _dispatch(self, reference_event: ChangeEvent, reachability_event: ChangeEvent) -> None:
        self._last_paired = reference_event.signature()
        self._pair_count += 1
        logger.debug(
            "Paired %s of %d object(s)",
            reference_event.kind.name,
            len(reference_event.objects),
        )
        try:
            self.on_pair(reference_event, reachability_event)
        except Exception as e:
            # Dependent state is now unknown; stop rather than build on it
            self._state = SyncState.FAILED
            self._failure = f"{type(e).__name__}: {e}"
            raise

    @staticmethod
    def _mismatch(held: ChangeEvent, event: ChangeEvent) -> str:
        if event.source is held.source:
            return f"Second event came from the same source as the held one: {held!r}, {event!r}"
        if event.kind != held.kind:
            return f"Event kinds do not fit: {held.kind.name} != {event.kind.name}"
        return f"Objects do not fit: {sorted(held.objects)} != {sorted(event.objects)}"

    def _fail(self, message: str) -> None:
        self._state = SyncState.FAILED
        self._failure = message
        self._held = None
        logger.error("Protocol violation: %s", message)
        raise ProtocolViolation(message)

    def __repr__(self) -> str:
        return f"DualEventSynchronizer(state={self._state.name}, pairs={self._pair_count})"
