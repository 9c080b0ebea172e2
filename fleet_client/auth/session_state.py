"""
Observable session state for the Fleet session client.

Holds the single current SessionSnapshot and delivers every change to
subscribers (screens, the request layer).
"""

import asyncio
import logging
from typing import Callable, List

from fleet_shared.models import SessionSnapshot, SessionStatus

logger = logging.getLogger(__name__)


SessionCallback = Callable[[SessionSnapshot], None]


class SessionState:
    """
    Current authentication state with change subscription.

    Starts as `unknown` until the stored session has been read. Only the
    session manager publishes; everyone else reads or subscribes.
    """

    def __init__(self):
        self._current = SessionSnapshot.unknown()
        self._subscribers: List[SessionCallback] = []
        self._resolved = asyncio.Event()

    @property
    def current(self) -> SessionSnapshot:
        return self._current

    @property
    def status(self) -> SessionStatus:
        return self._current.status

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        """
        Register a callback for state changes.

        Args:
            callback: Called with the new snapshot on every change

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, snapshot: SessionSnapshot) -> bool:
        """
        Replace the current value and notify subscribers.

        Returns:
            True if the value changed and subscribers were notified
        """
        if snapshot == self._current:
            return False

        previous = self._current
        self._current = snapshot
        if snapshot.is_resolved:
            self._resolved.set()

        logger.debug(f"Session state: {previous.status.value} -> {snapshot.status.value}")

        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Error in session state callback: {e}")

        return True

    async def wait_resolved(self) -> SessionSnapshot:
        """Wait until the state is no longer `unknown`."""
        await self._resolved.wait()
        return self._current
