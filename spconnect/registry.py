"""Process-wide registry of established sessions.

The registry is an explicit object rather than ambient module state: create one at process
start (``SessionRegistry()``), hand it to the ``Connector``, and ``clear()`` it at the end.
Tests build their own isolated instances.
"""

import logging
import threading
from typing import TYPE_CHECKING, List, Optional

from .errors import NoTokenAvailableError

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Holds the current session plus any sessions returned to callers without replacing it."""

    def __init__(self):
        self._lock = threading.RLock()
        self._current: Optional["Session"] = None
        self._sessions: List["Session"] = []

    @property
    def current(self) -> Optional["Session"]:
        with self._lock:
            return self._current

    def register(self, session: "Session", make_current: bool = True) -> Optional["Session"]:
        """Add ``session``; with ``make_current`` it replaces the current session.

        Returns the replaced session, already dropped from the registry, so the caller can
        tear it down. Sessions registered with ``make_current=False`` are never replaced.
        """
        replaced = None
        with self._lock:
            if session not in self._sessions:
                self._sessions.append(session)
            if make_current:
                if self._current is not None and self._current is not session:
                    replaced = self._current
                    self._sessions.remove(replaced)
                self._current = session
        logger.debug("Registered %s (current=%s)", session, make_current)
        return replaced

    def resolve(self, session: Optional["Session"] = None) -> "Session":
        """Return ``session`` if given, else the current session."""
        if session is not None:
            return session
        with self._lock:
            if self._current is None:
                raise NoTokenAvailableError("There is no connection; establish a session first")
            return self._current

    def remove(self, session: "Session") -> None:
        with self._lock:
            if session in self._sessions:
                self._sessions.remove(session)
            if self._current is session:
                self._current = None

    def sessions(self) -> List["Session"]:
        with self._lock:
            return list(self._sessions)

    def clear(self) -> List["Session"]:
        """Forget every session and return them so the caller can tear them down."""
        with self._lock:
            sessions, self._sessions, self._current = self._sessions, [], None
        return sessions
