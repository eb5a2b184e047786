"""
Configuration Management for the Cosmetica session client.

This module handles client configuration including the API endpoint, token cache
location, synchronization intervals and welcome behaviour, with support for
configuration files and environment variables. It also reads the optional
default-settings file applied on a user's first login.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from cosmetica_shared.exceptions import ConfigurationError, ErrorCode
from cosmetica_shared.models import ShowWelcomeMessage, CapeDisplay

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.cosmetica.cc"
DEFAULT_CLIENT_ID = "cosmetica"

TOKEN_OVERRIDE_ENV = 'COSMETICA_TOKEN'
CLIENT_ID_ENV = 'COSMETICA_CLIENT'


def _get_base_directory() -> Path:
    return Path.home() / '.cosmetica'


class ClientConfiguration:
    """
    Configuration manager for the Cosmetica session client.

    Supports configuration from:
    1. Overrides set at runtime (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path, creating a default file if needed."""
        config_dir = _get_base_directory()
        config_dir.mkdir(parents=True, exist_ok=True)
        user_config_path = str(config_dir / 'client.conf')

        if not os.path.exists(user_config_path):
            self._create_default_config(user_config_path)

        return user_config_path

    def _create_default_config(self, config_path: str) -> None:
        """Create a minimal default configuration file."""
        default_config = """# Cosmetica Client Configuration

[server]
# API base URL
api_url = {api_url}

# Optional URL returning the current API base URL as JSON ({{"api": "..."}})
# api_url_lookup =

# Request timeout in seconds
timeout = 20

[auth]
# Client identifier sent with the token exchange
client_id = {client_id}

[sync]
# Settings resync interval in seconds
resync_interval = 300

# Credential revalidation interval in seconds
revalidate_interval = 15

[ui]
# Welcome behaviour: none, chat, full
show_welcome_message = full

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = INFO
""".format(api_url=DEFAULT_API_URL, client_id=DEFAULT_CLIENT_ID)

        try:
            with open(config_path, 'w') as f:
                f.write(default_config)
            logger.info(f"Created default configuration file: {config_path}")
        except OSError as e:
            logger.warning(f"Failed to create default configuration: {e}")

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except ConfigParserError as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        env_mappings = {
            'COSMETICA_API_URL': ('server', 'api_url'),
            'COSMETICA_API_URL_LOOKUP': ('server', 'api_url_lookup'),
            TOKEN_OVERRIDE_ENV: ('auth', 'token_override'),
            CLIENT_ID_ENV: ('auth', 'client_id'),
            'COSMETICA_CACHE_DIR': ('auth', 'cache_dir'),
            'COSMETICA_LOG_LEVEL': ('logging', 'level'),
            'COSMETICA_ELEVATED_LOGGING': ('logging', 'elevated_logging'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                self._config_data.setdefault(section, {})[key] = self._coerce_env_value(value)

    @staticmethod
    def _coerce_env_value(value: str) -> Any:
        if value.lower() in ('true', 'false'):
            return value.lower() == 'true'
        if value.isdigit():
            return int(value)
        return value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'api_url': DEFAULT_API_URL,
                'api_url_lookup': None,
                'timeout': 20.0,
                'retry_attempts': 1,
                'retry_delay': 1.0
            },
            'auth': {
                'client_id': DEFAULT_CLIENT_ID,
                'token_override': None,
                'cache_dir': str(_get_base_directory() / 'cache')
            },
            'sync': {
                'resync_interval': 300,  # 5 minutes
                'revalidate_interval': 15
            },
            'ui': {
                'show_welcome_message': ShowWelcomeMessage.FULL.value,
                'may_show_welcome_screen': True,
                'regional_effects_prompt': True
            },
            'logging': {
                'level': 'INFO',
                'file': None,
                'format': 'standard',
                'elevated_logging': False
            }
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                section_data.setdefault(key, default_value)

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Look up a value by ``section.key`` (or a whole section by name).

        Runtime overrides win over everything loaded from the environment,
        the INI file and the built-in defaults.
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_override(self, key: str, value: Any) -> None:
        """Pin ``section.key`` to ``value`` for the lifetime of this object."""
        self._overrides[key] = value

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    # typed accessors

    def get_api_url(self) -> str:
        """Get API base URL."""
        return str(self.get_config('server.api_url', DEFAULT_API_URL)).rstrip('/')

    def get_api_url_lookup(self) -> Optional[str]:
        """Get optional API discovery URL."""
        return self.get_config('server.api_url_lookup') or None

    def get_server_timeout(self) -> float:
        """Get server request timeout."""
        return float(self.get_config('server.timeout', 20.0))

    def get_retry_attempts(self) -> int:
        """Get number of retry attempts for failed requests."""
        return int(self.get_config('server.retry_attempts', 1))

    def get_retry_delay(self) -> float:
        """Get base retry delay."""
        return float(self.get_config('server.retry_delay', 1.0))

    def get_client_id(self) -> str:
        """Get the client identifier sent with the token exchange."""
        return os.environ.get(CLIENT_ID_ENV) or str(self.get_config('auth.client_id', DEFAULT_CLIENT_ID))

    def get_token_override(self) -> Optional[str]:
        """
        Get the operator-supplied token, if any.

        The environment is consulted on every call so that the override is read
        at authentication time.
        """
        return os.environ.get(TOKEN_OVERRIDE_ENV) or self.get_config('auth.token_override') or None

    def get_cache_directory(self) -> Path:
        """Get the cache directory holding the tokens file."""
        return Path(str(self.get_config('auth.cache_dir'))).expanduser()

    def get_tokens_path(self) -> Path:
        """Get the path of the persisted tokens file."""
        return self.get_cache_directory() / 'tokens'

    def get_default_settings_path(self) -> Path:
        """Get the path of the first-login default settings file."""
        return Path(self._config_file).parent / 'default-settings.conf'

    def get_resync_interval(self) -> float:
        """Get settings resync interval in seconds."""
        return float(self.get_config('sync.resync_interval', 300))

    def get_revalidate_interval(self) -> float:
        """Get credential revalidation interval in seconds."""
        return float(self.get_config('sync.revalidate_interval', 15))

    def get_show_welcome_message(self) -> ShowWelcomeMessage:
        """Get configured welcome behaviour."""
        value = str(self.get_config('ui.show_welcome_message', 'full')).lower()
        try:
            return ShowWelcomeMessage(value)
        except ValueError:
            raise ConfigurationError(
                f"Invalid show_welcome_message value: {value}",
                ErrorCode.CONFIG_INVALID_VALUE,
                config_key='ui.show_welcome_message'
            )

    def may_show_welcome_screen(self) -> bool:
        """Whether the host allows a welcome tutorial screen."""
        return bool(self.get_config('ui.may_show_welcome_screen', True))

    def should_prompt_regional_effects(self) -> bool:
        """Whether to prompt users without regional effect settings."""
        return bool(self.get_config('ui.regional_effects_prompt', True))

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        """Get log output format."""
        return str(self.get_config('logging.format', 'standard'))

    def is_elevated_logging(self) -> bool:
        """Whether diagnostic payload dumps are enabled."""
        return bool(self.get_config('logging.elevated_logging', False))


class DefaultSettingsConfig:
    """
    Default settings applied to a user on their first login.

    Read once from an INI file with a single ``[defaults]`` section. Every field
    is optional; ``was_loaded`` tells whether a file was present at all.
    """

    _BOOLEAN_FIELDS = {
        'hats': 'dohats',
        'shoulder_buddies': 'doshoulderbuddies',
        'back_blings': 'dobackblings',
        'lore': 'dolore',
        'online_activity': 'doonlineactivity',
    }

    def __init__(self, path: Optional[Path] = None):
        self._path = path
        self._values: Dict[str, Any] = {}
        self._loaded = False

        if path is not None:
            self._load()

    def _load(self) -> None:
        if not self._path.is_file():
            logger.debug(f"No default settings file at {self._path}")
            return

        config = ConfigParser()
        try:
            config.read(self._path)
        except ConfigParserError as e:
            logger.error(f"Failed to read default settings file {self._path}: {e}")
            return

        if config.has_section('defaults'):
            self._values = dict(config['defaults'].items())
        self._loaded = True
        logger.info(f"Default settings loaded from: {self._path}")

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'DefaultSettingsConfig':
        """Build a loaded configuration from already-parsed values."""
        defaults = cls()
        defaults._values = {key: value for key, value in values.items()}
        defaults._loaded = True
        return defaults

    @property
    def was_loaded(self) -> bool:
        return self._loaded

    def _get_bool(self, key: str) -> Optional[bool]:
        value = self._values.get(key)
        if value is None or value == '':
            return None
        if isinstance(value, bool):
            return value
        lowered = str(value).strip().lower()
        if lowered in ('true', 'yes', '1', 'on'):
            return True
        if lowered in ('false', 'no', '0', 'off'):
            return False
        logger.warning(f"Ignoring invalid boolean default for {key}: {value}")
        return None

    def get_icon_settings(self) -> Optional[int]:
        value = self._values.get('icon_settings')
        if value is None or value == '':
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid icon_settings default: {value}")
            return None

    def get_cape_id(self) -> str:
        return str(self._values.get('cape_id') or '')

    def get_cape_server_settings(self) -> Dict[str, CapeDisplay]:
        raw = self._values.get('cape_server_settings')
        if not raw:
            return {}
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring invalid cape_server_settings default (not JSON)")
                return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring invalid cape_server_settings default (not an object)")
            return {}

        settings = {}
        for server, display in raw.items():
            try:
                settings[server] = display if isinstance(display, CapeDisplay) else CapeDisplay(str(display).lower())
            except ValueError:
                logger.warning(f"Ignoring invalid cape display for {server}: {display}")
        return settings

    def get_settings_update(self) -> Dict[str, Any]:
        """Settings fields to post in a single update call (may be empty)."""
        settings: Dict[str, Any] = {}
        for key, field_name in self._BOOLEAN_FIELDS.items():
            value = self._get_bool(key)
            if value is not None:
                settings[field_name] = value

        icon_settings = self.get_icon_settings()
        if icon_settings is not None:
            settings['iconsettings'] = icon_settings

        return settings
