"""
Tests for settings synchronization and load-target resolution.
"""

import asyncio

import pytest
from unittest.mock import MagicMock, AsyncMock

from cosmetica.settings_sync import SettingsSynchronizer
from cosmetica.ui import LoggingUserInterface
from cosmetica_shared.exceptions import (
    MalformedResponse, TransientNetworkError, ServerError, AuthenticationError
)
from cosmetica_shared.interfaces import IProfileLoader
from cosmetica_shared.models import (
    LoadTarget, ProfileData, UserSettings, TransitionTo, ShowViewOtherError
)


class TestSettingsSynchronizer:
    """Test SettingsSynchronizer.sync behaviour."""

    @pytest.fixture
    def coordinator(self, identity):
        coordinator = MagicMock()
        coordinator.identity = identity
        coordinator.is_authenticated_as.return_value = True
        return coordinator

    @pytest.fixture
    def ui(self):
        return LoggingUserInterface(loading=False)

    @pytest.fixture
    def profile_loader(self, identity):
        loader = MagicMock(spec=IProfileLoader)
        loader.ensure_loaded = AsyncMock(side_effect=lambda who, force=False: ProfileData(identity=who, skin="skin.png"))
        return loader

    @pytest.fixture
    def synchronizer(self, coordinator, api_client, ui, config, profile_loader):
        return SettingsSynchronizer(coordinator, api_client, ui, config, profile_loader=profile_loader)

    @pytest.mark.asyncio
    async def test_unauthenticated_forces_authentication(self, synchronizer, coordinator, api_client):
        coordinator.is_authenticated_as.return_value = False

        await synchronizer.sync()

        coordinator.authenticate.assert_called_once_with(force=True)
        api_client.get_user_settings.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_settings_are_replaced(self, synchronizer, api_client, identity, ui):
        await synchronizer.sync()
        first = synchronizer.settings

        api_client.get_user_settings.return_value = UserSettings.from_dict({'uuid': identity.key, 'dohats': False})
        await synchronizer.sync()

        assert first.hats_shown is True
        assert synchronizer.settings.hats_shown is False
        assert ui.events == []

    @pytest.mark.asyncio
    async def test_regional_effects_prompt(self, synchronizer, api_client, identity, config):
        await synchronizer.sync()
        assert synchronizer.rse_warning_pending is True

        api_client.get_user_settings.return_value = UserSettings.from_dict({
            'uuid': identity.key, 'perregioneffectsset': True
        })
        await synchronizer.sync()
        assert synchronizer.rse_warning_pending is False

        config.set_override('ui.regional_effects_prompt', False)
        api_client.get_user_settings.return_value = UserSettings.from_dict({'uuid': identity.key})
        await synchronizer.sync()
        assert synchronizer.rse_warning_pending is False

    @pytest.mark.asyncio
    async def test_default_target_transition(self, synchronizer, ui, identity, profile_loader):
        ui.set_loading(True)

        await synchronizer.sync()

        assert len(ui.events) == 1
        event = ui.events[0]
        assert isinstance(event, TransitionTo)
        assert event.target == LoadTarget.DEFAULT
        assert event.own_profile.identity == identity
        assert event.settings is synchronizer.settings
        profile_loader.ensure_loaded.assert_awaited_once_with(identity, force=True)

    @pytest.mark.asyncio
    async def test_customize_and_tutorial_targets(self, synchronizer, ui):
        for target in (LoadTarget.CUSTOMIZE_OWN, LoadTarget.TUTORIAL):
            ui.set_loading(True)
            synchronizer.request_load_target(target)

            await synchronizer.sync()

            assert ui.events[-1].target == target

    @pytest.mark.asyncio
    async def test_view_other_transition(self, synchronizer, ui, other_identity):
        ui.set_loading(True)
        synchronizer.request_load_target(LoadTarget.VIEW_OTHER, other_identity)

        await synchronizer.sync()

        event = ui.events[0]
        assert isinstance(event, TransitionTo)
        assert event.target == LoadTarget.VIEW_OTHER
        assert event.other_identity == other_identity
        assert event.other_profile.identity == other_identity

    @pytest.mark.asyncio
    async def test_view_other_not_found(self, synchronizer, ui, other_identity, profile_loader):
        profile_loader.ensure_loaded.side_effect = (
            lambda who, force=False: ProfileData.missing(who) if who == other_identity else ProfileData(identity=who)
        )
        ui.set_loading(True)
        synchronizer.request_load_target(LoadTarget.VIEW_OTHER, other_identity)

        await synchronizer.sync()

        assert ui.events == [ShowViewOtherError(other_identity=other_identity, not_found=True)]

    @pytest.mark.asyncio
    async def test_view_other_without_identity(self, synchronizer, ui):
        ui.set_loading(True)
        synchronizer.request_load_target(LoadTarget.VIEW_OTHER, None)

        await synchronizer.sync()

        assert ui.events == [ShowViewOtherError(other_identity=None, not_found=False)]

    @pytest.mark.asyncio
    async def test_loading_screen_closed_during_lookup(self, synchronizer, ui, profile_loader):
        async def close_screen(who, force=False):
            ui.set_loading(False)
            return ProfileData(identity=who)

        profile_loader.ensure_loaded.side_effect = close_screen
        ui.set_loading(True)

        await synchronizer.sync()

        assert ui.events == []

    @pytest.mark.asyncio
    async def test_malformed_response_keeps_session(self, synchronizer, api_client, coordinator, config):
        config.set_override('logging.elevated_logging', True)
        api_client.get_user_settings.side_effect = MalformedResponse("not json", raw_body="<html>")

        await synchronizer.sync()

        assert synchronizer.settings is None
        coordinator.show_unauthenticated_if_loading.assert_called_once()
        coordinator.authenticate.assert_not_called()

    @pytest.mark.asyncio
    async def test_transient_failure_does_not_retry(self, synchronizer, api_client, coordinator):
        api_client.get_user_settings.side_effect = TransientNetworkError("offline")

        await synchronizer.sync()

        coordinator.show_unauthenticated_if_loading.assert_called_once()
        coordinator.authenticate.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_failure_reauthenticates_once(self, synchronizer, api_client, coordinator, identity):
        api_client.get_user_settings.side_effect = AuthenticationError("Authentication failed (401)")

        await synchronizer.sync()
        await synchronizer.sync()

        coordinator.authenticate.assert_called_once_with(force=True)

        api_client.get_user_settings.side_effect = None
        api_client.get_user_settings.return_value = UserSettings.from_dict({'uuid': identity.key})
        await synchronizer.sync()

        api_client.get_user_settings.side_effect = ServerError("Request failed (500)", status=500)
        await synchronizer.sync()

        assert coordinator.authenticate.call_count == 2

    @pytest.mark.asyncio
    async def test_failure_after_finished_reauthentication_retries(self, synchronizer, api_client, coordinator):
        reauthentication = asyncio.get_running_loop().create_future()
        coordinator.authenticate.return_value = reauthentication
        api_client.get_user_settings.side_effect = ServerError("Request failed (500)", status=500)

        await synchronizer.sync()
        await synchronizer.sync()
        assert coordinator.authenticate.call_count == 1

        reauthentication.set_result(None)
        await asyncio.sleep(0)
        await synchronizer.sync()

        assert coordinator.authenticate.call_count == 2

    @pytest.mark.asyncio
    async def test_reauthentication_in_flight_is_not_tracked(self, synchronizer, api_client, coordinator):
        coordinator.authenticate.return_value = None
        api_client.get_user_settings.side_effect = ServerError("Request failed (500)", status=500)

        await synchronizer.sync()
        await synchronizer.sync()

        assert coordinator.authenticate.call_count == 2

    @pytest.mark.asyncio
    async def test_profile_failure_still_transitions(self, synchronizer, ui, profile_loader):
        profile_loader.ensure_loaded.side_effect = TransientNetworkError("offline")
        ui.set_loading(True)

        await synchronizer.sync()

        assert isinstance(ui.events[0], TransitionTo)
        assert ui.events[0].own_profile is None
