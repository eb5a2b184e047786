"""
Readiness barrier gating the first authentication attempt.
"""

import logging
import threading
from typing import Callable, Optional

from cosmetica_shared.models import ReadinessBit, ALL_READINESS_BITS

logger = logging.getLogger(__name__)


class ReadinessGate:
    """
    Two-bit barrier: the API endpoint must be resolved and the client must have
    finished loading before authentication starts. Whichever completes second
    fires ``on_ready``, exactly once. Bits are never cleared.
    """

    def __init__(self, on_ready: Optional[Callable[[], None]] = None):
        self._on_ready = on_ready
        self._bits = ReadinessBit(0)
        self._fired = False
        self._lock = threading.Lock()

    def set_on_ready(self, on_ready: Callable[[], None]) -> None:
        self._on_ready = on_ready

    @property
    def bits(self) -> ReadinessBit:
        return self._bits

    @property
    def is_ready(self) -> bool:
        return self._fired

    def mark(self, bit: ReadinessBit) -> bool:
        """
        Set a readiness bit.

        Returns:
            True if this call completed the barrier and fired the callback
        """
        with self._lock:
            self._bits |= bit
            if self._fired or (self._bits & ALL_READINESS_BITS) != ALL_READINESS_BITS:
                logger.debug(f"Readiness bit set: {bit.name} (bits={int(self._bits)})")
                return False
            self._fired = True

        logger.info("Readiness conditions met: starting authentication")
        if self._on_ready:
            self._on_ready()
        return True
