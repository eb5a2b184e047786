"""
Token Storage for the Cosmetica session client.

This module persists session credentials per identity in a flat ``key=value``
text file. Each identity owns two keys: ``<id>`` for the master token and
``<id>-l`` for the limited token. The file is read once and rewritten in full on
every update; failures are reported and the session continues in memory.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Optional, Dict

from cosmetica_shared.exceptions import PersistenceError, ErrorCode
from cosmetica_shared.logging_config import log_structured_error
from cosmetica_shared.models import Identity, Credential

logger = logging.getLogger(__name__)

LIMITED_SUFFIX = "-l"
FILE_HEADER = "# Cosmetica session tokens. Do not share this file."


def parse_token_file(text: str) -> Dict[str, str]:
    """
    Parse the flat key=value token format.

    Blank lines and ``#``/``!`` comments are skipped. Any other line without a
    ``=`` separator makes the whole file invalid.
    """
    entries: Dict[str, str] = {}
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith(('#', '!')):
            continue
        key, sep, value = line.partition('=')
        if not sep or not key.strip():
            raise ValueError(f"Malformed token entry on line {line_number}")
        entries[key.strip()] = value.strip()
    return entries


def format_token_file(entries: Dict[str, str]) -> str:
    lines = [FILE_HEADER]
    lines.extend(f"{key}={value}" for key, value in sorted(entries.items()))
    return "\n".join(lines) + "\n"


class TokenStore:
    """
    Persisted cache mapping identities to credential pairs.

    All reads and writes of the backing file happen under a single lock, so one
    process never interleaves two rewrites. Concurrent writers in other processes
    are not coordinated.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Dict[str, str] = {}
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def load(self) -> Dict[str, Credential]:
        """
        Read the token file, creating an empty one if it is missing.

        Never raises: an unreadable or malformed file yields an empty cache.

        Returns:
            Mapping of identity key to credential
        """
        with self._lock:
            self._entries = self._read_entries()
            self._loaded = True
            return self._credentials()

    def _read_entries(self) -> Dict[str, str]:
        if not self.path.is_file():
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.touch()
                os.chmod(self.path, 0o600)
                logger.info(f"Created empty tokens file: {self.path}")
            except OSError as e:
                log_structured_error(logger, PersistenceError(
                    f"Failed to create tokens file: {e}",
                    ErrorCode.PERSISTENCE_WRITE_FAILED,
                    path=str(self.path),
                    cause=e
                ))
            return {}

        try:
            text = self.path.read_text(encoding='utf-8')
            return parse_token_file(text)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            log_structured_error(logger, PersistenceError(
                f"Failed to read tokens file, ignoring cached tokens: {e}",
                ErrorCode.PERSISTENCE_READ_FAILED,
                path=str(self.path),
                cause=e
            ))
            return {}

    def _credentials(self) -> Dict[str, Credential]:
        credentials = {}
        for key, value in self._entries.items():
            if key.endswith(LIMITED_SUFFIX) or not value:
                continue
            credential = self._pair(key)
            if credential:
                credentials[key] = credential
        return credentials

    def _pair(self, key: str) -> Optional[Credential]:
        master_token = self._entries.get(key)
        if not master_token:
            return None

        limited_token = self._entries.get(key + LIMITED_SUFFIX)
        if limited_token is None:
            logger.warning(f"Ignoring cached token for {key}: limited token entry is missing")
            return None

        return Credential(master_token=master_token, limited_token=limited_token)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def get(self, identity: Identity) -> Optional[Credential]:
        """Get the cached credential for an identity, if a complete pair exists."""
        self._ensure_loaded()
        with self._lock:
            return self._pair(identity.key)

    def put(self, identity: Identity, credential: Credential) -> bool:
        """
        Store a credential pair and rewrite the whole file.

        Args:
            identity: Identity the credential belongs to
            credential: Credential to store

        Returns:
            True if the file was written; False if only the in-memory cache changed
        """
        self._ensure_loaded()
        with self._lock:
            self._entries[identity.key] = credential.master_token
            self._entries[identity.key + LIMITED_SUFFIX] = credential.limited_token

            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_text(format_token_file(self._entries), encoding='utf-8')
                os.chmod(self.path, 0o600)
            except OSError as e:
                log_structured_error(logger, PersistenceError(
                    f"Failed to save tokens: {e}",
                    ErrorCode.PERSISTENCE_WRITE_FAILED,
                    path=str(self.path),
                    cause=e
                ))
                return False

        logger.debug(f"Cached credential for {identity.key}")
        return True
