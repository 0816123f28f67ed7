import logging
from typing import Callable, List, Optional

from .models import Session

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[Session], Optional[Session]], None]


class SessionStore:
    """
    Single source of truth for "is the user logged in".

    Pure in-memory state. Assumes one asyncio event loop; callers on several
    threads must guard it with their own lock.
    """

    def __init__(self, session: Optional[Session] = None):
        self._session: Optional[Session] = session
        self._listeners: List[SessionListener] = []

    def current(self) -> Optional[Session]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    def set(self, session: Optional[Session]) -> None:
        """
        Store a new session (or None) and notify listeners if the value changed.
        """
        previous = self._session
        if previous == session:
            return
        self._session = session
        logger.debug(
            f"Session changed: {'present' if previous else 'absent'} -> {'present' if session else 'absent'}"
        )
        # Copy so listeners may remove themselves while being notified
        for listener in list(self._listeners):
            try:
                listener(previous, session)
            except Exception as e:
                logger.error(f"Session listener {getattr(listener, '__name__', listener)} failed: {e}", exc_info=True)

    def clear(self) -> None:
        self.set(None)

    def on_change(self, listener: SessionListener) -> Callable[[], None]:
        """
        Register a listener called with (previous, current) on every transition.

        Returns:
            A callable that removes the listener. Calling it twice is harmless.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove
