"""
Authentication Coordinator for the Cosmetica session client.

This module provides the session state machine: it runs the credential issuer
under a single-flight guard, classifies and reports failures, installs the
credential for authenticated API calls and runs the post-login side effects
(first-login defaults, welcome, profile prefetch, settings sync).
"""

import asyncio
import logging
import threading
from typing import Optional, Callable, List, Set, Coroutine, Any

from cosmetica_shared.exceptions import (
    CosmeticaError, TransientNetworkError, AuthRejected, MalformedResponse, handle_exception
)
from cosmetica_shared.interfaces import IAPIClient, IUserInterface, IProfileLoader
from cosmetica_shared.logging_config import AuditLogger, log_structured_error, register_secret
from cosmetica_shared.models import (
    Identity, IssuedCredential, CredentialSource, SessionState, LoginInfo,
    CosmeticPosition, ShowUnauthenticated, ShowWelcome, WelcomeMode, NEW_PLAYER_LORE
)
from cosmetica.auth.credential_issuer import CredentialIssuer
from cosmetica.config import ClientConfiguration, DefaultSettingsConfig

logger = logging.getLogger(__name__)


class AuthenticationCoordinator:
    """
    Orchestrates authentication for one identity.

    State moves ``UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED`` and back to
    ``UNAUTHENTICATED`` on failure. The transition into ``AUTHENTICATING`` is a
    compare-and-set under a lock, so at most one attempt is ever in flight.
    ``authenticate`` must be called from the thread running the event loop.
    """

    def __init__(
        self,
        identity: Identity,
        access_token: Optional[str],
        issuer: CredentialIssuer,
        api_client: IAPIClient,
        ui: IUserInterface,
        config: ClientConfiguration,
        default_settings: Optional[DefaultSettingsConfig] = None,
        profile_loader: Optional[IProfileLoader] = None
    ):
        self.identity = identity
        self.issuer = issuer
        self.api_client = api_client
        self.ui = ui
        self.config = config
        self.default_settings = default_settings
        self.profile_loader = profile_loader

        register_secret(access_token)
        self._access_token = access_token
        self._state = SessionState.UNAUTHENTICATED
        self._state_lock = threading.Lock()
        self._credential: Optional[IssuedCredential] = None
        self._authenticated_as: Optional[str] = None
        self._synchronizer = None

        self._attempt_counter = 0
        self._tasks: Set[asyncio.Task] = set()
        self._first_login_handled: Set[str] = set()
        self._auth_callbacks: List[Callable[[bool], None]] = []
        self._audit_logger = AuditLogger()

        logger.info(f"Authentication coordinator initialized for {identity}")

    def set_settings_synchronizer(self, synchronizer) -> None:
        """Attach the settings synchronizer run after each successful login."""
        self._synchronizer = synchronizer

    def add_auth_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Function called with authentication status (bool)
        """
        self._auth_callbacks.append(callback)

    def _notify_auth_change(self, is_authenticated: bool) -> None:
        for callback in self._auth_callbacks:
            try:
                callback(is_authenticated)
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state == SessionState.AUTHENTICATED

    @property
    def current_credential(self) -> Optional[IssuedCredential]:
        return self._credential

    @property
    def attempt_count(self) -> int:
        return self._attempt_counter

    def is_authenticated_as(self, identity: Identity) -> bool:
        """Whether the session is authenticated and bound to this identity."""
        return self.is_authenticated and self._authenticated_as == identity.key

    def pending_tasks(self) -> List[asyncio.Task]:
        """Authentication, sync and prefetch tasks that have not finished yet."""
        return [task for task in self._tasks if not task.done()]

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def authenticate(self, force: bool = False) -> Optional[asyncio.Task]:
        """
        Start authentication, or sync settings if already authenticated.

        Args:
            force: Re-run the credential protocols even when authenticated

        Returns:
            The task doing the work, or None if an attempt is already in flight

        Raises:
            RuntimeError: called outside the thread running the event loop
        """
        asyncio.get_running_loop()

        with self._state_lock:
            if self._state == SessionState.AUTHENTICATING:
                logger.debug("Authentication is already in progress.")
                return None

            if self._state == SessionState.AUTHENTICATED and not force:
                short_circuit = True
            else:
                short_circuit = False
                self._state = SessionState.AUTHENTICATING
                self._attempt_counter += 1
                attempt = self._attempt_counter

        if short_circuit:
            logger.debug("Session is authenticated: syncing settings!")
            return self._spawn(self._sync_settings(), "cosmetica-settings-sync")

        logger.info(f"Starting authentication attempt #{attempt} (force={force})")
        return self._spawn(self._run_attempt(), f"cosmetica-authenticator-{attempt}")

    async def _run_attempt(self) -> None:
        try:
            issued = await self.issuer.issue(self.identity, self._access_token)
        except CosmeticaError as e:
            self._handle_failure(e)
            return
        except Exception as e:
            logger.exception("Unexpected error while authenticating")
            self._handle_failure(handle_exception(e))
            return

        await self._handle_success(issued)

    async def _handle_success(self, issued: IssuedCredential) -> None:
        self.api_client.set_credential(issued.credential)
        with self._state_lock:
            self._credential = issued
            self._authenticated_as = self.identity.key
            self._state = SessionState.AUTHENTICATED

        logger.info(f"Authentication successful for {self.identity} ({issued.source.value} token)")
        self._audit_logger.log_authentication(self.identity.key, success=True, source=issued.source.value)
        self._notify_auth_change(True)

        # post-login steps are best effort; the settings sync always runs
        login_info: Optional[LoginInfo] = None
        if issued.source != CredentialSource.OVERRIDE:
            login_info = await self._fetch_login_info()
            if login_info and login_info.new_player:
                try:
                    await self._apply_first_login_defaults(login_info)
                except Exception:
                    logger.exception("Unexpected error applying default settings")

        # only freshly issued (or operator-provided) credentials get a welcome
        if issued.source != CredentialSource.CACHED:
            try:
                await self.prepare_welcome(
                    new_player=bool(login_info and login_info.new_player),
                    suppress_errors=False
                )
            except Exception:
                logger.exception("Unexpected error preparing welcome")

        if self.profile_loader:
            self._spawn(self._prefetch_profile(), "cosmetica-profile-prefetch")

        await self._sync_settings()

    def _handle_failure(self, error: CosmeticaError) -> None:
        with self._state_lock:
            self._state = SessionState.UNAUTHENTICATED
            self._credential = None
            self._authenticated_as = None
        self.api_client.set_credential(None)

        if isinstance(error, TransientNetworkError):
            logger.warning(f"Couldn't connect to cosmetica auth server: {error.message}")
        elif isinstance(error, AuthRejected):
            log_structured_error(logger, error, user_id=self.identity.key)
        elif isinstance(error, MalformedResponse):
            log_structured_error(logger, error, user_id=self.identity.key)
            if self.config.is_elevated_logging() and error.raw_body is not None:
                logger.error(f"The response causing this error is as follows:\n{error.raw_body}")
        else:
            log_structured_error(logger, error, user_id=self.identity.key)

        self._audit_logger.log_authentication(
            self.identity.key, success=False, failure_reason=error.error_code.value
        )
        self._notify_auth_change(False)
        self.show_unauthenticated_if_loading(error.user_message)

    def show_unauthenticated_if_loading(self, reason: str = "") -> None:
        """Replace a loading screen with the unauthenticated screen."""
        if self.ui.is_loading():
            self.ui.dispatch(ShowUnauthenticated(reason=reason))

    async def _fetch_login_info(self) -> Optional[LoginInfo]:
        try:
            return await self.api_client.get_login_info()
        except CosmeticaError as e:
            logger.warning(f"Failed to get login info: {e.message}")
            return None

    async def _apply_first_login_defaults(self, login_info: LoginInfo) -> None:
        """
        Apply configured defaults for a newly created user, once per identity.

        Each step is attempted independently. The settings fields are sent as
        one batched update, so they succeed or fail together.
        """
        key = self.identity.key
        if key in self._first_login_handled:
            return
        self._first_login_handled.add(key)

        defaults = self.default_settings
        if defaults is None or not defaults.was_loaded:
            return

        logger.info(f"New user {self.identity}: applying default settings")

        settings = defaults.get_settings_update()
        if settings:
            try:
                await self.api_client.update_user_settings(settings)
            except CosmeticaError as e:
                logger.error(f"Failed to apply default settings: {e.message}")

        if not login_info.has_special_cape:
            cape_id = defaults.get_cape_id()
            if cape_id:
                try:
                    await self.api_client.set_cosmetic(CosmeticPosition.CAPE, cape_id, True)
                except CosmeticaError as e:
                    logger.error(f"Failed to apply default cape: {e.message}")

        cape_server_settings = defaults.get_cape_server_settings()
        if cape_server_settings:
            try:
                await self.api_client.set_cape_server_settings(cape_server_settings)
            except CosmeticaError as e:
                logger.error(f"Failed to apply default cape server settings: {e.message}")

    async def prepare_welcome(self, new_player: bool, suppress_errors: bool = False) -> None:
        """
        Emit a welcome for the user based on configuration and their lore.

        Args:
            new_player: Whether the server reported this as the user's first login
            suppress_errors: Log user-info failures at debug level only
        """
        show_welcome = self.config.get_show_welcome_message()
        welcome_screen_allowed = new_player and self.config.may_show_welcome_screen()
        logger.debug(
            f"Preparing potential welcome: new_player={new_player} "
            f"welcome_screen_allowed={welcome_screen_allowed} show_welcome_message={show_welcome.value}"
        )

        try:
            user_info = await self.api_client.get_user_info(self.identity)
        except CosmeticaError as e:
            if suppress_errors:
                logger.debug(f"Suppressed error requesting user info: {e.message}")
            else:
                logger.error(f"Failed to request user info for welcome: {e.message}")
            return

        if (show_welcome.should_show_chat_message(welcome_screen_allowed)
                and user_info.colourless_lore == NEW_PLAYER_LORE):
            self.ui.dispatch(ShowWelcome(self.identity, new_player, WelcomeMode.CHAT, user_info))

        if show_welcome.should_show_welcome_tutorial(welcome_screen_allowed):
            logger.info("New user: showing welcome tutorial")
            self.ui.dispatch(ShowWelcome(self.identity, new_player, WelcomeMode.TUTORIAL, user_info))

    async def _prefetch_profile(self) -> None:
        try:
            await self.profile_loader.ensure_loaded(self.identity)
        except CosmeticaError as e:
            logger.debug(f"Profile prefetch failed: {e.message}")

    async def _sync_settings(self) -> None:
        if self._synchronizer is not None:
            await self._synchronizer.sync()

    async def shutdown(self) -> None:
        """Cancel outstanding work and forget the credential."""
        logger.info("Shutting down authentication coordinator")

        tasks = self.pending_tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        with self._state_lock:
            self._state = SessionState.UNAUTHENTICATED
            self._credential = None
            self._authenticated_as = None
        self.api_client.set_credential(None)
