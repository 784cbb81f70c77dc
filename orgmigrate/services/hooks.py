"""Lifecycle hook runners."""

import logging
from typing import Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

# Job-level events
ON_BEFORE = "onBefore"
ON_DATA_RETRIEVED = "onDataRetrieved"
ON_AFTER = "onAfter"
# Object-level events
ON_BEFORE_UPDATE = "onBeforeUpdate"
ON_AFTER_UPDATE = "onAfterUpdate"

HookCallback = Callable[[str, Optional[str]], bool]


class HookRunner(Protocol):
    def run_event(self, event_name: str, object_name: Optional[str] = None) -> bool:
        """Run handlers for an event; True when anything ran."""
        ...


class NullHookRunner:
    """Runs nothing."""

    def run_event(self, event_name: str, object_name: Optional[str] = None) -> bool:
        return False


class CallbackHookRunner:
    """
    Dispatches events to registered callables.

    Handlers are keyed by event name, optionally scoped to one object. A
    handler registered without an object runs for the job-level event and
    for every object-level occurrence of the same event.
    """

    def __init__(self):
        self._handlers: Dict[str, List[tuple]] = {}
        self.calls: List[tuple] = []

    def register(self, event_name: str, callback: HookCallback, object_name: Optional[str] = None) -> None:
        self._handlers.setdefault(event_name, []).append((object_name, callback))

    def run_event(self, event_name: str, object_name: Optional[str] = None) -> bool:
        self.calls.append((event_name, object_name))
        handled = False
        for scope, callback in self._handlers.get(event_name, []):
            if scope is not None and scope != object_name:
                continue
            logger.debug(f"Running {event_name} hook{f' for {object_name}' if object_name else ''}")
            handled = bool(callback(event_name, object_name)) or handled
        return handled
