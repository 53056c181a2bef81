"""The single owner of the current program state.

Every transition goes through a pure function ``(state, ...) -> state`` or
``-> Outcome``; the workspace only swaps in the result. Results from slow
collaborators (translation, PDF import) carry a ticket so that an older
request finishing after a newer one is dropped instead of overwriting it.
"""
from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Optional

from curriculum_studio.errors import Outcome
from curriculum_studio.models import ProgramState, default_state


logger = logging.getLogger(__name__)


class RequestTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._latest: dict[str, int] = {}

    def begin(self, key: str) -> int:
        with self._lock:
            ticket = next(self._counter)
            self._latest[key] = ticket
            return ticket

    def finish(self, key: str, ticket: int) -> bool:
        """Release ``key`` if ``ticket`` still owns it; False means a newer request took over."""
        with self._lock:
            if self._latest.get(key) != ticket:
                return False
            del self._latest[key]
            return True


class ProgramWorkspace:
    def __init__(self, state: Optional[ProgramState] = None, tracker: Optional[RequestTracker] = None):
        self.state = state or default_state()
        self.tracker = tracker or RequestTracker()

    def apply(self, operation: Callable, *args, **kwargs) -> Outcome:
        result = operation(self.state, *args, **kwargs)
        if isinstance(result, ProgramState):
            result = Outcome(state=result)
        if result.ok:
            self.state = result.state
        else:
            logger.info("%s rejected: %s %s", getattr(operation, "__name__", "operation"), result.error.code, result.error.message)
        return result

    def begin(self, key: str) -> int:
        return self.tracker.begin(key)

    def commit(self, key: str, ticket: int, operation: Callable, *args, **kwargs) -> Optional[Outcome]:
        """Apply a late result unless a newer request for ``key`` was started meanwhile.

        Returns None when the result was discarded.
        """
        if not self.tracker.finish(key, ticket):
            logger.info("Discarding stale result for %s (ticket %s)", key, ticket)
            return None
        return self.apply(operation, *args, **kwargs)

    def abandon(self, key: str, ticket: int) -> None:
        self.tracker.finish(key, ticket)
