"""
Session for the Cosmetica client.

The session owns every component (API client, token store, issuer, coordinator,
synchronizer, scheduler and readiness gate) for one identity. It is the single
entry point hosts use to start authentication, signal readiness and shut down.
"""

import asyncio
import logging
from typing import Optional

from cosmetica_shared.exceptions import CosmeticaError
from cosmetica_shared.interfaces import IUserInterface, IProfileLoader
from cosmetica_shared.models import Identity, LoadTarget, ReadinessBit
from cosmetica.api_client import CosmeticaAPIClient, RetryConfig
from cosmetica.auth.credential_issuer import CredentialIssuer
from cosmetica.auth.token_manager import AuthenticationCoordinator
from cosmetica.auth.token_storage import TokenStore
from cosmetica.auth.token_validator import TokenValidator
from cosmetica.config import ClientConfiguration, DefaultSettingsConfig
from cosmetica.profile_loader import ApiProfileLoader
from cosmetica.readiness import ReadinessGate
from cosmetica.scheduler import BackgroundScheduler
from cosmetica.settings_sync import SettingsSynchronizer
from cosmetica.ui import LoggingUserInterface

logger = logging.getLogger(__name__)


class Session:
    """
    One authenticated session for a locally known identity.

    Authentication starts once both readiness conditions hold: ``start()`` marks
    the API endpoint resolved and the host calls ``mark_client_loaded()``.
    Methods not marked async are safe to call from any thread after ``start()``.
    """

    def __init__(
        self,
        config: ClientConfiguration,
        identity: Identity,
        access_token: Optional[str] = None,
        ui: Optional[IUserInterface] = None,
        api_client: Optional[CosmeticaAPIClient] = None,
        profile_loader: Optional[IProfileLoader] = None,
        default_settings: Optional[DefaultSettingsConfig] = None,
        token_store: Optional[TokenStore] = None
    ):
        self.config = config
        self.identity = identity
        self.ui = ui or LoggingUserInterface()

        self.api_client = api_client or CosmeticaAPIClient(
            config.get_api_url(),
            timeout=config.get_server_timeout(),
            retry_config=RetryConfig(
                max_retries=config.get_retry_attempts(),
                base_delay=config.get_retry_delay()
            )
        )
        self.token_store = token_store or TokenStore(config.get_tokens_path())
        self.validator = TokenValidator(self.api_client)
        self.issuer = CredentialIssuer(
            self.api_client,
            self.token_store,
            self.validator,
            override_provider=config.get_token_override,
            client_id_provider=config.get_client_id
        )
        self.profile_loader = profile_loader or ApiProfileLoader(self.api_client)
        self.default_settings = default_settings or DefaultSettingsConfig(config.get_default_settings_path())

        self.coordinator = AuthenticationCoordinator(
            identity,
            access_token,
            self.issuer,
            self.api_client,
            self.ui,
            config,
            default_settings=self.default_settings,
            profile_loader=self.profile_loader
        )
        self.synchronizer = SettingsSynchronizer(
            self.coordinator,
            self.api_client,
            self.ui,
            config,
            profile_loader=self.profile_loader
        )
        self.coordinator.set_settings_synchronizer(self.synchronizer)

        self.scheduler = BackgroundScheduler(
            self.coordinator,
            self.synchronizer,
            self.validator,
            resync_interval=config.get_resync_interval(),
            revalidate_interval=config.get_revalidate_interval()
        )
        self.readiness = ReadinessGate(on_ready=self._on_ready)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._background = True
        self._closed = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self, background: bool = True) -> None:
        """
        Load cached credentials and resolve the API endpoint.

        Args:
            background: Run periodic resync and revalidation once authentication starts
        """
        self._loop = asyncio.get_running_loop()
        self._background = background

        self.token_store.load()
        await self._resolve_endpoint()
        self.readiness.mark(ReadinessBit.API_ENDPOINT_RESOLVED)

    async def _resolve_endpoint(self) -> None:
        lookup_url = self.config.get_api_url_lookup()
        if not lookup_url:
            return

        logger.debug("Fetching API url")
        try:
            api_url = await self.api_client.resolve_api_url(lookup_url)
        except CosmeticaError as e:
            logger.warning(f"Failed to fetch API url, using {self.api_client.api_url}: {e.message}")
            return
        self.api_client.set_api_url(api_url)

    def _on_ready(self) -> None:
        self._call_in_loop(self._begin)

    def _begin(self) -> None:
        if self._closed:
            return
        if self._background:
            self.scheduler.start()
        self.coordinator.authenticate()

    def _call_in_loop(self, callback, *args) -> None:
        if self._loop is None:
            raise RuntimeError("Session has not been started")
        self._loop.call_soon_threadsafe(callback, *args)

    def mark_client_loaded(self) -> None:
        """Signal that the host client has finished loading."""
        self.readiness.mark(ReadinessBit.CLIENT_LOAD_FINISHED)

    def request_authentication(self, force: bool = False) -> None:
        """Ask for authentication (or a settings sync if already authenticated)."""
        self._call_in_loop(self.coordinator.authenticate, force)

    def request_load(self, target: LoadTarget, view_other: Optional[Identity] = None) -> None:
        """
        Called by the host after it opened a loading screen.

        Records where the loading screen should lead and authenticates or
        syncs accordingly.
        """
        def _request():
            self.synchronizer.request_load_target(target, view_other)
            if self.readiness.is_ready:
                self.coordinator.authenticate()

        self._call_in_loop(_request)

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until no authentication, sync or prefetch work is outstanding."""
        async def _drain():
            while True:
                # let callbacks queued with call_soon_threadsafe spawn their tasks
                await asyncio.sleep(0)
                tasks = self.coordinator.pending_tasks()
                if not tasks:
                    return
                await asyncio.gather(*tasks, return_exceptions=True)

        await asyncio.wait_for(_drain(), timeout)

    async def close(self) -> None:
        """Stop background work and release network resources."""
        if self._closed:
            return
        self._closed = True

        logger.info(f"Closing session for {self.identity}")
        await self.scheduler.stop()
        await self.coordinator.shutdown()
        await self.api_client.close()
