"""
Background scheduler for periodic settings resync and credential revalidation.
"""

import asyncio
import logging
from typing import Optional

from cosmetica_shared.exceptions import CosmeticaError, TransientNetworkError
from cosmetica_shared.logging_config import AuditLogger
from cosmetica.auth.token_validator import TokenValidator

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    """
    Runs two periodic loops for the lifetime of a session:

    - resync: calls ``SettingsSynchronizer.sync()`` every ``resync_interval``
    - revalidation: checks the current master token every ``revalidate_interval``
      and forces re-authentication if the server reports it invalid

    Both loops are tasks on the session's event loop and stop on ``stop()``.
    """

    def __init__(
        self,
        coordinator,
        synchronizer,
        validator: TokenValidator,
        resync_interval: float = 300.0,
        revalidate_interval: float = 15.0
    ):
        self.coordinator = coordinator
        self.synchronizer = synchronizer
        self.validator = validator
        self.resync_interval = resync_interval
        self.revalidate_interval = revalidate_interval

        self._resync_task: Optional[asyncio.Task] = None
        self._revalidate_task: Optional[asyncio.Task] = None
        self._running = False
        self._audit_logger = AuditLogger()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start both loops. Must be called with a running event loop."""
        if self._running:
            return

        self._running = True
        self._resync_task = asyncio.create_task(self._resync_loop(), name="cosmetica-resync")
        self._revalidate_task = asyncio.create_task(self._revalidate_loop(), name="cosmetica-revalidate")
        logger.info(
            f"Background scheduler started (resync every {self.resync_interval}s, "
            f"revalidation every {self.revalidate_interval}s)"
        )

    async def stop(self) -> None:
        """Cancel both loops and wait for them to finish."""
        self._running = False

        tasks = [task for task in (self._resync_task, self._revalidate_task) if task]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._resync_task = None
        self._revalidate_task = None
        logger.info("Background scheduler stopped")

    async def _resync_loop(self) -> None:
        """Periodic settings resync loop."""
        try:
            while self._running:
                await asyncio.sleep(self.resync_interval)

                logger.debug("Periodic settings sync")
                try:
                    await self.synchronizer.sync()
                except CosmeticaError as e:
                    logger.error(f"Error during periodic settings sync: {e.message}")
                    self._audit_logger.log_error(e, user_id=self.coordinator.identity.key)

        except asyncio.CancelledError:
            logger.debug("Settings resync task cancelled")
            raise

    async def _revalidate_loop(self) -> None:
        """Periodic credential revalidation loop."""
        try:
            while self._running:
                await asyncio.sleep(self.revalidate_interval)
                try:
                    await self.revalidate_once()
                except CosmeticaError as e:
                    logger.error(f"Error during credential revalidation: {e.message}")
                    self._audit_logger.log_error(e, user_id=self.coordinator.identity.key)

        except asyncio.CancelledError:
            logger.debug("Credential revalidation task cancelled")
            raise

    async def revalidate_once(self) -> bool:
        """
        Check the current credential once.

        Returns:
            True if a forced re-authentication was requested
        """
        issued = self.coordinator.current_credential
        if issued is None:
            return False

        try:
            invalid = await self.validator.is_invalid(issued.master_token)
        except TransientNetworkError as e:
            logger.debug(f"Skipping credential check, server unreachable: {e.message}")
            return False

        if not invalid:
            return False

        logger.info("Current credential was revoked by the server; re-authenticating")
        self.coordinator.authenticate(force=True)
        return True
