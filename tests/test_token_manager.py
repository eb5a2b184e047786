"""
Tests for the authentication coordinator.

These tests run the coordinator against a real token store and validator with
a mocked API client, covering single flight, cache reuse and the first-login
and offline scenarios.
"""

import asyncio

import pytest

from cosmetica.auth.credential_issuer import CredentialIssuer
from cosmetica.auth.token_manager import AuthenticationCoordinator
from cosmetica.auth.token_storage import TokenStore
from cosmetica.auth.token_validator import TokenValidator
from cosmetica.config import DefaultSettingsConfig
from cosmetica.settings_sync import SettingsSynchronizer
from cosmetica.ui import LoggingUserInterface
from cosmetica_shared.exceptions import (
    TransientNetworkError, AuthServerUnreachable, AuthRejected, ServerError
)
from cosmetica_shared.models import (
    Credential, CredentialSource, SessionState, LoginInfo, UserInfo, UserSettings,
    CosmeticPosition, CapeDisplay, ShowUnauthenticated, ShowWelcome, TransitionTo,
    WelcomeMode, LoadTarget
)


async def settle(coordinator):
    """Wait for every task the coordinator spawned, including follow-ups."""
    while True:
        await asyncio.sleep(0)
        tasks = coordinator.pending_tasks()
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)


class TestAuthenticationCoordinator:
    """Test AuthenticationCoordinator state machine and side effects."""

    @pytest.fixture
    def tokens_path(self, tmp_path):
        return tmp_path / "cache" / "tokens"

    @pytest.fixture
    def ui(self):
        return LoggingUserInterface(loading=True)

    @pytest.fixture
    def build(self, api_client, config, identity, ui, tokens_path):
        """Factory wiring a coordinator the way a session does."""
        def _build(default_settings=None, access_token="platform-access-token"):
            token_store = TokenStore(tokens_path)
            token_store.load()
            validator = TokenValidator(api_client)
            issuer = CredentialIssuer(
                api_client,
                token_store,
                validator,
                override_provider=config.get_token_override,
                client_id_provider=config.get_client_id
            )
            coordinator = AuthenticationCoordinator(
                identity,
                access_token,
                issuer,
                api_client,
                ui,
                config,
                default_settings=default_settings
            )
            synchronizer = SettingsSynchronizer(coordinator, api_client, ui, config)
            coordinator.set_settings_synchronizer(synchronizer)
            return coordinator
        return _build

    @pytest.mark.asyncio
    async def test_single_flight(self, build, api_client):
        """Concurrent requests while authenticating start no second attempt."""
        release = asyncio.Event()

        async def slow_exchange(*args):
            await release.wait()
            return Credential("M1", "L1")

        api_client.exchange_platform_token.side_effect = slow_exchange
        coordinator = build()

        first = coordinator.authenticate()
        second = coordinator.authenticate()
        forced = coordinator.authenticate(force=True)

        assert first is not None
        assert second is None
        assert forced is None

        await asyncio.sleep(0)
        assert coordinator.state == SessionState.AUTHENTICATING

        release.set()
        await first
        await settle(coordinator)

        assert coordinator.state == SessionState.AUTHENTICATED
        assert coordinator.attempt_count == 1
        api_client.exchange_platform_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_authenticated_session_only_syncs(self, build, api_client):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)
        assert api_client.get_user_settings.await_count == 1

        task = coordinator.authenticate()
        assert task is not None
        await settle(coordinator)

        assert coordinator.attempt_count == 1
        api_client.exchange_platform_token.assert_awaited_once()
        api_client.get_uuid.assert_not_awaited()
        assert api_client.get_user_settings.await_count == 2

    @pytest.mark.asyncio
    async def test_new_user_first_login(self, build, api_client, identity, ui, tokens_path):
        """No cache, new player with a defaults file declaring hats."""
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True)
        api_client.get_user_info.return_value = UserInfo(lore="§aNew to Cosmetica")
        coordinator = build(default_settings=DefaultSettingsConfig.from_dict({'hats': 'true'}))

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.is_authenticated_as(identity)
        assert coordinator.current_credential.source == CredentialSource.ISSUED
        api_client.set_credential.assert_called_with(Credential("M1", "L1"))
        api_client.update_user_settings.assert_awaited_once_with({'dohats': True})
        api_client.set_cosmetic.assert_not_awaited()
        api_client.set_cape_server_settings.assert_not_awaited()

        assert TokenStore(tokens_path).get(identity) == Credential("M1", "L1")

        assert [type(event) for event in ui.events] == [ShowWelcome, TransitionTo]
        welcome = ui.events[0]
        assert welcome.mode == WelcomeMode.TUTORIAL
        assert welcome.is_new is True
        assert ui.events[1].target == LoadTarget.DEFAULT

    @pytest.mark.asyncio
    async def test_invalid_cached_token_is_replaced(self, build, api_client, identity, tokens_path):
        seeded = TokenStore(tokens_path)
        seeded.put(identity, Credential("M0", "L0"))
        api_client.get_uuid.return_value = {'error': 'invalid token'}
        api_client.exchange_platform_token.return_value = Credential("M2", "L2")
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.state == SessionState.AUTHENTICATED
        assert coordinator.current_credential.master_token == "M2"
        api_client.get_uuid.assert_awaited_once_with("M0")
        assert TokenStore(tokens_path).get(identity) == Credential("M2", "L2")

    @pytest.mark.asyncio
    async def test_valid_cached_token_skips_exchange_and_welcome(self, build, api_client, identity, ui, tokens_path):
        TokenStore(tokens_path).put(identity, Credential("M1", "L1"))
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.current_credential.source == CredentialSource.CACHED
        api_client.exchange_platform_token.assert_not_awaited()
        api_client.get_user_info.assert_not_awaited()
        assert [type(event) for event in ui.events] == [TransitionTo]

    @pytest.mark.asyncio
    async def test_offline_with_cache(self, build, api_client, identity, ui, tokens_path):
        """Every call fails: unauthenticated screen, no file write."""
        TokenStore(tokens_path).put(identity, Credential("M1", "L1"))
        before = tokens_path.read_text()
        api_client.get_uuid.side_effect = TransientNetworkError("offline")
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.state == SessionState.UNAUTHENTICATED
        assert coordinator.current_credential is None
        assert [type(event) for event in ui.events] == [ShowUnauthenticated]
        assert tokens_path.read_text() == before
        api_client.exchange_platform_token.assert_not_awaited()
        api_client.get_user_settings.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_offline_without_loading_screen_shows_nothing(self, build, api_client, ui):
        ui.set_loading(False)
        api_client.exchange_platform_token.side_effect = AuthServerUnreachable("connection refused")
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.state == SessionState.UNAUTHENTICATED
        assert ui.events == []

    @pytest.mark.asyncio
    async def test_rejected_platform_token(self, build, api_client, ui):
        api_client.exchange_platform_token.side_effect = AuthRejected("Platform token rejected")
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.state == SessionState.UNAUTHENTICATED
        assert len(ui.events) == 1
        assert isinstance(ui.events[0], ShowUnauthenticated)
        api_client.set_credential.assert_called_with(None)

    @pytest.mark.asyncio
    async def test_failed_attempt_can_be_retried(self, build, api_client):
        api_client.exchange_platform_token.side_effect = [
            AuthServerUnreachable("connection refused"),
            Credential("M1", "L1"),
        ]
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)
        assert coordinator.state == SessionState.UNAUTHENTICATED

        coordinator.authenticate()
        await settle(coordinator)
        assert coordinator.state == SessionState.AUTHENTICATED
        assert coordinator.attempt_count == 2

    @pytest.mark.asyncio
    async def test_auth_callbacks(self, build, api_client):
        api_client.exchange_platform_token.side_effect = [
            Credential("M1", "L1"),
            AuthRejected("Platform token rejected"),
        ]
        api_client.get_uuid.return_value = {'error': 'invalid token'}
        coordinator = build()
        changes = []
        coordinator.add_auth_callback(changes.append)

        coordinator.authenticate()
        await settle(coordinator)
        coordinator.authenticate(force=True)
        await settle(coordinator)

        assert changes == [True, False]

    @pytest.mark.asyncio
    async def test_first_login_defaults_run_once_per_identity(self, build, api_client):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True)
        coordinator = build(default_settings=DefaultSettingsConfig.from_dict({'hats': 'false', 'lore': 'true'}))

        coordinator.authenticate()
        await settle(coordinator)
        coordinator.authenticate(force=True)
        await settle(coordinator)

        assert coordinator.attempt_count == 2
        api_client.update_user_settings.assert_awaited_once_with({'dohats': False, 'dolore': True})

    @pytest.mark.asyncio
    async def test_defaults_ignored_without_defaults_file(self, build, api_client):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True)
        coordinator = build(default_settings=DefaultSettingsConfig())

        coordinator.authenticate()
        await settle(coordinator)

        api_client.update_user_settings.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_cape_and_cape_servers(self, build, api_client):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True, has_special_cape=False)
        coordinator = build(default_settings=DefaultSettingsConfig.from_dict({
            'cape_id': 'cape-123',
            'cape_server_settings': '{"optifine": "hide", "minecraftcapes": "show"}'
        }))

        coordinator.authenticate()
        await settle(coordinator)

        api_client.update_user_settings.assert_not_awaited()
        api_client.set_cosmetic.assert_awaited_once_with(CosmeticPosition.CAPE, 'cape-123', True)
        api_client.set_cape_server_settings.assert_awaited_once_with({
            'optifine': CapeDisplay.HIDE,
            'minecraftcapes': CapeDisplay.SHOW
        })

    @pytest.mark.asyncio
    async def test_special_cape_is_kept(self, build, api_client):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True, has_special_cape=True)
        coordinator = build(default_settings=DefaultSettingsConfig.from_dict({'cape_id': 'cape-123'}))

        coordinator.authenticate()
        await settle(coordinator)

        api_client.set_cosmetic.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_settings_failure_does_not_block_login(self, build, api_client, identity):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True)
        api_client.update_user_settings.side_effect = ServerError("Request failed (500)", status=500)
        coordinator = build(default_settings=DefaultSettingsConfig.from_dict({
            'hats': 'true',
            'cape_id': 'cape-123'
        }))

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.is_authenticated_as(identity)
        api_client.set_cosmetic.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_welcome_setting_still_syncs(self, build, api_client, config, identity, ui):
        config.set_override('ui.show_welcome_message', 'bogus')
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        coordinator = build()

        task = coordinator.authenticate()
        await settle(coordinator)

        assert task.exception() is None
        assert coordinator.is_authenticated_as(identity)
        api_client.get_user_settings.assert_awaited_once()
        assert [type(event) for event in ui.events] == [TransitionTo]

    @pytest.mark.asyncio
    async def test_cape_server_defaults_not_an_object(self, build, api_client, identity, ui):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True)
        coordinator = build(default_settings=DefaultSettingsConfig.from_dict({
            'cape_server_settings': '["optifine"]'
        }))

        task = coordinator.authenticate()
        await settle(coordinator)

        assert task.exception() is None
        api_client.set_cape_server_settings.assert_not_awaited()
        api_client.get_user_settings.assert_awaited_once()
        assert isinstance(ui.events[-1], TransitionTo)

    @pytest.mark.asyncio
    async def test_unexpected_default_settings_error_still_syncs(self, build, api_client, identity, monkeypatch):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True)
        defaults = DefaultSettingsConfig.from_dict({'hats': 'true'})
        monkeypatch.setattr(defaults, 'get_settings_update', lambda: 1 / 0)
        coordinator = build(default_settings=defaults)

        task = coordinator.authenticate()
        await settle(coordinator)

        assert task.exception() is None
        assert coordinator.is_authenticated_as(identity)
        api_client.get_user_settings.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_chat_welcome_for_new_to_cosmetica_lore(self, build, api_client, config, ui):
        config.set_override('ui.show_welcome_message', 'chat')
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_user_info.return_value = UserInfo(lore="§aNew to §bCosmetica")
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)

        welcomes = [event for event in ui.events if isinstance(event, ShowWelcome)]
        assert len(welcomes) == 1
        assert welcomes[0].mode == WelcomeMode.CHAT

    @pytest.mark.asyncio
    async def test_no_welcome_when_disabled(self, build, api_client, config, ui):
        config.set_override('ui.show_welcome_message', 'none')
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_login_info.return_value = LoginInfo(new_player=True)
        api_client.get_user_info.return_value = UserInfo(lore="New to Cosmetica")
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)

        assert not any(isinstance(event, ShowWelcome) for event in ui.events)

    @pytest.mark.asyncio
    async def test_override_token(self, build, api_client, monkeypatch):
        monkeypatch.setenv('COSMETICA_TOKEN', 'OVERRIDE-TOKEN')
        coordinator = build(access_token=None)

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.current_credential.source == CredentialSource.OVERRIDE
        api_client.set_credential.assert_called_with(Credential("OVERRIDE-TOKEN", ""))
        api_client.exchange_platform_token.assert_not_awaited()
        api_client.get_login_info.assert_not_awaited()
        api_client.get_user_settings.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_sync_forces_one_reauthentication(self, build, api_client, identity):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        api_client.get_user_settings.side_effect = [
            ServerError("Request failed (500)", status=500),
            UserSettings.from_dict({'uuid': identity.key}),
        ]
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)

        assert coordinator.attempt_count == 2
        assert coordinator.state == SessionState.AUTHENTICATED
        api_client.exchange_platform_token.assert_awaited_once()
        api_client.get_uuid.assert_awaited_once_with("M1")

    @pytest.mark.asyncio
    async def test_shutdown_forgets_credential(self, build, api_client):
        api_client.exchange_platform_token.return_value = Credential("M1", "L1")
        coordinator = build()

        coordinator.authenticate()
        await settle(coordinator)
        await coordinator.shutdown()

        assert coordinator.state == SessionState.UNAUTHENTICATED
        assert coordinator.current_credential is None
        api_client.set_credential.assert_called_with(None)

    def test_authenticate_requires_running_loop(self, build):
        coordinator = build()

        with pytest.raises(RuntimeError):
            coordinator.authenticate()

        assert coordinator.state == SessionState.UNAUTHENTICATED
