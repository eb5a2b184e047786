"""
Headless user interface used by the command-line client.
"""

import logging
import threading
from typing import List, Callable, Optional

from cosmetica_shared.interfaces import IUserInterface
from cosmetica_shared.models import (
    UIEvent, ShowUnauthenticated, TransitionTo, ShowViewOtherError, ShowWelcome, WelcomeMode
)

logger = logging.getLogger(__name__)


class LoggingUserInterface(IUserInterface):
    """
    UI collaborator without a display: events are logged and recorded.

    The loading flag stands in for a loading screen. Events that need one are
    dropped when the flag is cleared, and applying a screen transition clears it.
    """

    def __init__(self, loading: bool = False, listener: Optional[Callable[[UIEvent], None]] = None):
        self._loading = loading
        self._listener = listener
        self._lock = threading.Lock()
        self.events: List[UIEvent] = []

    def set_loading(self, loading: bool) -> None:
        with self._lock:
            self._loading = loading

    def is_loading(self) -> bool:
        with self._lock:
            return self._loading

    def dispatch(self, event: UIEvent) -> None:
        with self._lock:
            if event.requires_loading_screen and not self._loading:
                logger.debug(f"Dropping {type(event).__name__}: no loading screen shown")
                return
            if event.requires_loading_screen:
                self._loading = False
            self.events.append(event)

        self._describe(event)
        if self._listener:
            self._listener(event)

    @staticmethod
    def _describe(event: UIEvent) -> None:
        if isinstance(event, ShowUnauthenticated):
            logger.warning(f"Unauthenticated{': ' + event.reason if event.reason else ''}")
        elif isinstance(event, TransitionTo):
            logger.info(f"Loading finished, opening {event.target.value}")
        elif isinstance(event, ShowViewOtherError):
            if event.other_identity is None:
                logger.warning("Could not find the requested player")
            else:
                logger.warning(f"Could not load profile of {event.other_identity}")
        elif isinstance(event, ShowWelcome):
            if event.mode == WelcomeMode.TUTORIAL:
                logger.info(f"Welcome to Cosmetica, {event.identity.display_name}! Starting the tutorial.")
            else:
                logger.info(f"Welcome to Cosmetica, {event.identity.display_name}!")
