"""
Settings synchronization for the Cosmetica session client.

Fetches the user's server-side settings once a credential is established and,
when the UI is showing a loading screen, resolves which screen to move on to.
"""

import asyncio
import logging
from typing import Optional

from cosmetica_shared.exceptions import CosmeticaError, TransientNetworkError, MalformedResponse
from cosmetica_shared.interfaces import IAPIClient, IUserInterface, IProfileLoader
from cosmetica_shared.logging_config import AuditLogger, log_structured_error
from cosmetica_shared.models import (
    Identity, LoadTarget, ProfileData, UserSettings, TransitionTo, ShowViewOtherError
)
from cosmetica.config import ClientConfiguration

logger = logging.getLogger(__name__)


class SettingsSynchronizer:
    """
    Pulls ``UserSettings`` from the server and drives loading-screen transitions.

    A failed sync never leaves the session in a worse state than it found it:
    malformed responses are logged, transient failures wait for the next sync,
    and any other failure forces one re-authentication.
    """

    def __init__(
        self,
        coordinator,
        api_client: IAPIClient,
        ui: IUserInterface,
        config: ClientConfiguration,
        profile_loader: Optional[IProfileLoader] = None
    ):
        self.coordinator = coordinator
        self.api_client = api_client
        self.ui = ui
        self.config = config
        self.profile_loader = profile_loader

        self._settings: Optional[UserSettings] = None
        self._rse_warning_pending = False
        self._load_target = LoadTarget.DEFAULT
        self._view_other: Optional[Identity] = None
        self._recovering = False
        self._sync_lock = asyncio.Lock()
        self._audit_logger = AuditLogger()

    @property
    def settings(self) -> Optional[UserSettings]:
        """Most recently synchronized settings, or None before the first sync."""
        return self._settings

    @property
    def rse_warning_pending(self) -> bool:
        """Whether the UI should prompt for regional effect settings."""
        return self._rse_warning_pending

    def request_load_target(self, target: LoadTarget, view_other: Optional[Identity] = None) -> None:
        """
        Record where the loading screen should lead once settings arrive.

        Args:
            target: Screen to open after a successful sync
            view_other: Identity whose profile is viewed (``VIEW_OTHER`` only)
        """
        self._load_target = target
        self._view_other = view_other if target == LoadTarget.VIEW_OTHER else None
        logger.debug(f"Load target set to {target.value}")

    async def sync(self) -> None:
        """Synchronise settings from the server, re-authenticating if needed."""
        identity = self.coordinator.identity
        if not self.coordinator.is_authenticated_as(identity):
            logger.debug("Not authenticated. [Re]authenticating...")
            self.coordinator.authenticate(force=True)
            return

        async with self._sync_lock:
            logger.debug("Synchronising settings")
            try:
                settings = await self.api_client.get_user_settings()
            except CosmeticaError as e:
                self._handle_failure(e)
                return

            self._recovering = False
            self._settings = settings
            self._rse_warning_pending = (
                not settings.has_per_region_effects_set and self.config.should_prompt_regional_effects()
            )
            self._audit_logger.log_settings_sync(identity.key, success=True)

            if self.ui.is_loading():
                await self._resolve_load_target(identity, settings)

    async def _resolve_load_target(self, identity: Identity, settings: UserSettings) -> None:
        # read once so a concurrent request does not change the target mid-resolution
        target = self._load_target
        view_other = self._view_other

        logger.debug(f"Loading own profile for menu (mode: {target.value})")
        own_profile = await self._load_profile(identity)

        other_profile = None
        if target == LoadTarget.VIEW_OTHER:
            if view_other is None:
                logger.debug("Failed to load viewed profile (no identity requested)")
            else:
                other_profile = await self._load_profile(view_other)

        # the lookups may take a while; the user could have left the loading screen
        if not self.ui.is_loading():
            logger.debug("Loading screen closed during settings sync")
            return

        if target == LoadTarget.VIEW_OTHER:
            if other_profile is None or not other_profile.found:
                self.ui.dispatch(ShowViewOtherError(
                    other_identity=view_other,
                    not_found=other_profile is not None
                ))
                return
            self.ui.dispatch(TransitionTo(
                target=target,
                own_profile=own_profile,
                other_identity=view_other,
                other_profile=other_profile,
                settings=settings
            ))
            return

        self.ui.dispatch(TransitionTo(target=target, own_profile=own_profile, settings=settings))

    async def _load_profile(self, identity: Identity) -> Optional[ProfileData]:
        if self.profile_loader is None:
            return None
        try:
            return await self.profile_loader.ensure_loaded(identity, force=True)
        except CosmeticaError as e:
            logger.warning(f"Failed to load profile for {identity}: {e.message}")
            return None

    def _handle_failure(self, error: CosmeticaError) -> None:
        identity_key = self.coordinator.identity.key
        self._audit_logger.log_settings_sync(identity_key, success=False, error_message=error.message)

        self.coordinator.show_unauthenticated_if_loading(error.user_message)

        if isinstance(error, MalformedResponse):
            log_structured_error(logger, error, user_id=identity_key)
            if self.config.is_elevated_logging() and error.raw_body is not None:
                logger.error(f"The response causing this error is as follows:\n{error.raw_body}")
            return

        if isinstance(error, TransientNetworkError):
            # the next scheduled sync or a menu opening will try again
            logger.warning(f"Settings sync failed, server unreachable: {error.message}")
            return

        log_structured_error(logger, error, user_id=identity_key)
        if self._recovering:
            logger.warning("Settings sync failed again after re-authentication; waiting for next sync")
            return

        task = self.coordinator.authenticate(force=True)
        if task is not None:
            # a later failure may force re-authentication again once this attempt ends
            self._recovering = True
            task.add_done_callback(self._recovery_finished)

    def _recovery_finished(self, task: asyncio.Future) -> None:
        self._recovering = False
