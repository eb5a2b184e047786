"""
Qt integration for the Cosmetica session.

``QtUserInterface`` delivers session UI events to the Qt thread through queued
signals, and ``SessionWorker`` runs the session's asyncio loop in a QThread.
"""

import asyncio
import logging
import threading
from typing import Optional

from PyQt6.QtCore import QObject, QThread, Qt, pyqtSignal, pyqtSlot

from cosmetica_shared.interfaces import IUserInterface
from cosmetica_shared.models import (
    UIEvent, ShowUnauthenticated, TransitionTo, ShowViewOtherError, ShowWelcome, LoadTarget, Identity
)
from cosmetica.session import Session

logger = logging.getLogger(__name__)


class SessionSignals(QObject):
    """Signals emitted on the UI thread for each applied session event."""

    # Internal: crosses from the session thread to the UI thread
    event_posted = pyqtSignal(object)

    unauthenticated_requested = pyqtSignal(str)  # reason
    transition_requested = pyqtSignal(object)  # TransitionTo
    view_other_failed = pyqtSignal(object)  # ShowViewOtherError
    welcome_requested = pyqtSignal(object)  # ShowWelcome

    def __init__(self, ui: 'QtUserInterface', parent: Optional[QObject] = None):
        super().__init__(parent)
        self._ui = ui
        self.event_posted.connect(self._apply, Qt.ConnectionType.QueuedConnection)

    @pyqtSlot(object)
    def _apply(self, event: UIEvent) -> None:
        if event.requires_loading_screen:
            # the loading screen may have been closed since the event was posted
            if not self._ui.take_loading_screen():
                logger.debug(f"Dropping {type(event).__name__}: no loading screen shown")
                return

        if isinstance(event, ShowUnauthenticated):
            self.unauthenticated_requested.emit(event.reason)
        elif isinstance(event, TransitionTo):
            self.transition_requested.emit(event)
        elif isinstance(event, ShowViewOtherError):
            self.view_other_failed.emit(event)
        elif isinstance(event, ShowWelcome):
            self.welcome_requested.emit(event)
        else:
            logger.warning(f"Unknown UI event: {type(event).__name__}")


class QtUserInterface(IUserInterface):
    """
    UI collaborator for Qt hosts.

    The host reports whether a loading screen is shown with
    ``set_loading_screen`` and connects to the signals on ``signals``.
    ``dispatch`` may be called from any thread.
    """

    def __init__(self, parent: Optional[QObject] = None):
        self._loading = False
        self._lock = threading.Lock()
        self.signals = SessionSignals(self, parent)

    def set_loading_screen(self, shown: bool) -> None:
        with self._lock:
            self._loading = shown

    def is_loading(self) -> bool:
        with self._lock:
            return self._loading

    def take_loading_screen(self) -> bool:
        """Claim the loading screen for an event that replaces it."""
        with self._lock:
            shown = self._loading
            self._loading = False
            return shown

    def dispatch(self, event: UIEvent) -> None:
        self.signals.event_posted.emit(event)


class SessionWorker(QThread):
    """Worker thread running a session on its own asyncio event loop."""

    authentication_changed = pyqtSignal(bool)  # is_authenticated
    session_error = pyqtSignal(str)  # message

    def __init__(self, session: Session, parent: Optional[QObject] = None):
        super().__init__(parent)
        self.session = session
        self._stop_requested = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None

        self.session.coordinator.add_auth_callback(self.authentication_changed.emit)

    def run(self):
        """Run the session's event loop in the worker thread."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._stop_event = asyncio.Event()
        self._loop = loop

        try:
            loop.run_until_complete(self._run_session())
        except Exception as e:
            logger.error(f"Session worker error: {e}")
            self.session_error.emit(str(e))
        finally:
            self._loop = None
            loop.close()

    async def _run_session(self):
        await self.session.start()
        try:
            # stop() may have run before the loop existed
            if not self._stop_requested.is_set():
                await self._stop_event.wait()
        finally:
            await self.session.close()

    def mark_client_loaded(self) -> None:
        """Signal that the host finished loading."""
        self.session.mark_client_loaded()

    def request_authentication(self, force: bool = False) -> None:
        if self._loop is None:
            logger.warning("Cannot request authentication: worker not running")
            return
        self.session.request_authentication(force)

    def request_load(self, target: LoadTarget, view_other: Optional[Identity] = None) -> None:
        if self._loop is None:
            logger.warning("Cannot request load: worker not running")
            return
        self.session.request_load(target, view_other)

    def stop(self):
        """Stop the worker thread. Safe to call before or during ``run``."""
        self._stop_requested.set()
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._stop_event.set)
        except RuntimeError:
            logger.debug("Session loop already closed")
