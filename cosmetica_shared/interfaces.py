"""
Core interfaces for the Cosmetica session client.

This module defines the abstract interfaces of the collaborators the
authentication coordinator talks to: the remote API, the UI layer and the
profile data loader.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from .models import (
    Identity, Credential, LoginInfo, UserInfo, UserSettings, ProfileData,
    CosmeticPosition, CapeDisplay, UIEvent
)


class IAPIClient(ABC):
    """Interface for the remote authentication and settings service."""

    @abstractmethod
    def set_credential(self, credential: Optional[Credential]) -> None:
        """Install the credential used for authenticated calls."""
        pass

    @abstractmethod
    async def exchange_platform_token(
        self, access_token: str, identity: Identity, client_id: str
    ) -> Credential:
        """Exchange a platform access token for a session credential."""
        pass

    @abstractmethod
    async def get_uuid(self, token: str) -> Dict[str, Any]:
        """Whoami-style lookup; may return a structured error body."""
        pass

    @abstractmethod
    async def get_login_info(self) -> LoginInfo:
        """Get first-time metadata for the authenticated user."""
        pass

    @abstractmethod
    async def get_user_settings(self) -> UserSettings:
        """Fetch the authenticated user's settings."""
        pass

    @abstractmethod
    async def update_user_settings(self, settings: Dict[str, Any]) -> None:
        """Update several settings in one call."""
        pass

    @abstractmethod
    async def set_cosmetic(self, position: CosmeticPosition, cosmetic_id: str, require_official: bool = True) -> None:
        """Assign a cosmetic to the authenticated user."""
        pass

    @abstractmethod
    async def set_cape_server_settings(self, settings: Dict[str, CapeDisplay]) -> None:
        """Update how capes from other cape servers are displayed."""
        pass

    @abstractmethod
    async def get_user_info(self, identity: Identity) -> UserInfo:
        """Get public information about a user."""
        pass


class IUserInterface(ABC):
    """
    Interface for the UI layer.

    Implementations must apply events on the thread owning UI state and must
    drop events that require a loading screen if none is shown at apply time.
    """

    @abstractmethod
    def is_loading(self) -> bool:
        """Whether a loading-type screen is currently shown."""
        pass

    @abstractmethod
    def dispatch(self, event: UIEvent) -> None:
        """Schedule an event to be applied on the UI thread."""
        pass


class IProfileLoader(ABC):
    """Interface for the player profile data loader."""

    @abstractmethod
    async def ensure_loaded(self, identity: Identity, force: bool = False) -> ProfileData:
        """Load (or return cached) profile data for an identity."""
        pass
