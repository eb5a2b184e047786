"""
Core data models for the Cosmetica session client.

This module defines the identity, credential, session state and settings
structures shared by the authentication, synchronization and UI layers.
"""

import re
import uuid
from dataclasses import dataclass, field
from enum import Enum, IntFlag
from typing import Optional, Dict, Any


NEW_PLAYER_LORE = "New to Cosmetica"

_COLOUR_CODE = re.compile("§[0-9a-fk-or]", re.IGNORECASE)


def strip_colour(text: str) -> str:
    """Remove formatting codes (section sign + code character) from text."""
    return _COLOUR_CODE.sub("", text or "")


class SessionState(Enum):
    """Authentication state of the session."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


class ReadinessBit(IntFlag):
    """Preconditions that must both complete before the first authentication."""
    API_ENDPOINT_RESOLVED = 0x1
    CLIENT_LOAD_FINISHED = 0x2


ALL_READINESS_BITS = ReadinessBit.API_ENDPOINT_RESOLVED | ReadinessBit.CLIENT_LOAD_FINISHED


class LoadTarget(Enum):
    """Screen the UI should present after a successful settings sync."""
    DEFAULT = "default"
    CUSTOMIZE_OWN = "customize_own"
    VIEW_OTHER = "view_other"
    TUTORIAL = "tutorial"


class CredentialSource(Enum):
    """How a credential was obtained."""
    CACHED = "cached"
    ISSUED = "issued"
    OVERRIDE = "override"


class WelcomeMode(Enum):
    """Kind of welcome the UI should show."""
    CHAT = "chat"
    TUTORIAL = "tutorial"


class ShowWelcomeMessage(Enum):
    """Configured welcome behaviour."""
    NONE = "none"
    CHAT = "chat"
    FULL = "full"

    def should_show_chat_message(self, welcome_screen_allowed: bool) -> bool:
        if self == ShowWelcomeMessage.CHAT:
            return True
        # the tutorial replaces the chat message when it can be shown
        return self == ShowWelcomeMessage.FULL and not welcome_screen_allowed

    def should_show_welcome_tutorial(self, welcome_screen_allowed: bool) -> bool:
        return self == ShowWelcomeMessage.FULL and welcome_screen_allowed


class CosmeticPosition(Enum):
    """Cosmetic slots that can be assigned through the API."""
    CAPE = "cape"
    HAT = "hat"
    LEFT_SHOULDER_BUDDY = "left_shoulder_buddy"
    RIGHT_SHOULDER_BUDDY = "right_shoulder_buddy"
    BACK_BLING = "back_bling"


class CapeDisplay(Enum):
    """How capes from a given cape server are displayed."""
    HIDE = "hide"
    SHOW = "show"
    REPLACE = "replace"


@dataclass(frozen=True)
class Identity:
    """A locally known user identity supplied by the host platform."""
    user_id: str
    display_name: str

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("User id cannot be empty")

    @property
    def key(self) -> str:
        """Canonical string form used for persistence and comparisons."""
        try:
            return str(uuid.UUID(self.user_id))
        except ValueError:
            return self.user_id

    def __str__(self) -> str:
        return f"{self.display_name} ({self.key})"


@dataclass(frozen=True)
class Credential:
    """Session credential pair. Both tokens are bearer secrets."""
    master_token: str
    limited_token: str = ""

    def __post_init__(self):
        if not self.master_token:
            raise ValueError("Master token cannot be empty")
        if self.limited_token is None:
            raise ValueError("Limited token must be present (use an empty string)")

    def __repr__(self) -> str:
        return f"Credential(master_token=<hidden>, limited_token={'<hidden>' if self.limited_token else '<empty>'})"


@dataclass(frozen=True)
class IssuedCredential:
    """A credential together with the protocol that produced it."""
    credential: Credential
    source: CredentialSource

    @property
    def master_token(self) -> str:
        return self.credential.master_token

    @property
    def limited_token(self) -> str:
        return self.credential.limited_token


@dataclass
class LoginInfo:
    """First-time metadata returned after logging in."""
    new_player: bool
    has_special_cape: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoginInfo':
        if not isinstance(data, dict) or 'is_new_player' not in data:
            raise ValueError("Login info response is missing 'is_new_player'")
        return cls(
            new_player=bool(data['is_new_player']),
            has_special_cape=bool(data.get('has_special_cape', False))
        )


@dataclass
class UserInfo:
    """Public information about a user."""
    lore: str = ""
    platform: str = ""
    role: str = ""
    upside_down: bool = False
    prefix: str = ""
    suffix: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserInfo':
        if not isinstance(data, dict):
            raise ValueError("User info response is not an object")
        return cls(
            lore=str(data.get('lore', '')),
            platform=str(data.get('platform', '')),
            role=str(data.get('role', '')),
            upside_down=bool(data.get('upside-down', False)),
            prefix=str(data.get('prefix', '')),
            suffix=str(data.get('suffix', ''))
        )

    @property
    def colourless_lore(self) -> str:
        return strip_colour(self.lore)


@dataclass
class UserSettings:
    """
    Server-defined settings bundle.

    The raw payload is kept as-is; the typed accessors cover the fields the
    client acts on. A sync replaces the whole object.
    """
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserSettings':
        if not isinstance(data, dict):
            raise ValueError("User settings response is not an object")
        if 'uuid' not in data:
            raise ValueError("User settings response is missing 'uuid'")
        return cls(raw=dict(data))

    @property
    def user_id(self) -> str:
        return str(self.raw.get('uuid', ''))

    @property
    def hats_shown(self) -> bool:
        return bool(self.raw.get('dohats', True))

    @property
    def shoulder_buddies_shown(self) -> bool:
        return bool(self.raw.get('doshoulderbuddies', True))

    @property
    def back_blings_shown(self) -> bool:
        return bool(self.raw.get('dobackblings', True))

    @property
    def lore_shown(self) -> bool:
        return bool(self.raw.get('dolore', True))

    @property
    def online_activity_shown(self) -> bool:
        return bool(self.raw.get('doonlineactivity', True))

    @property
    def icon_settings(self) -> int:
        return int(self.raw.get('iconsettings', 0))

    @property
    def has_per_region_effects_set(self) -> bool:
        return bool(self.raw.get('perregioneffectsset', False))


@dataclass
class ProfileData:
    """Profile data loaded for a user (cosmetics, skin, lore)."""
    identity: Identity
    lore: str = ""
    skin: str = ""
    cosmetics: Dict[str, Any] = field(default_factory=dict)
    found: bool = True

    @classmethod
    def missing(cls, identity: Identity) -> 'ProfileData':
        return cls(identity=identity, found=False)


# UI events emitted by the coordinator and synchronizer

@dataclass(frozen=True)
class UIEvent:
    """Base class for events dispatched to the UI collaborator."""

    @property
    def requires_loading_screen(self) -> bool:
        return False


@dataclass(frozen=True)
class ShowUnauthenticated(UIEvent):
    """Replace the loading screen with the unauthenticated screen."""
    reason: str = ""

    @property
    def requires_loading_screen(self) -> bool:
        return True


@dataclass(frozen=True)
class TransitionTo(UIEvent):
    """Leave the loading screen for the resolved load target."""
    target: LoadTarget
    own_profile: Optional[ProfileData] = None
    other_identity: Optional[Identity] = None
    other_profile: Optional[ProfileData] = None
    settings: Optional[UserSettings] = None

    @property
    def requires_loading_screen(self) -> bool:
        return True


@dataclass(frozen=True)
class ShowViewOtherError(UIEvent):
    """The profile requested for VIEW_OTHER could not be loaded."""
    other_identity: Optional[Identity]
    not_found: bool = False

    @property
    def requires_loading_screen(self) -> bool:
        return True


@dataclass(frozen=True)
class ShowWelcome(UIEvent):
    """Welcome a user in chat or with the first-run tutorial."""
    identity: Identity
    is_new: bool
    mode: WelcomeMode
    user_info: Optional[UserInfo] = None
