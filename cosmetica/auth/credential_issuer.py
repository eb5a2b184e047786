"""
Credential Issuer for the Cosmetica session client.

This module implements the two credential acquisition protocols:

1. Cache reuse: a credential cached for the identity is checked with the
   token validator and reused if the server still accepts it.
2. Re-issuance: the platform access token is exchanged for a fresh credential,
   which is then persisted.

An operator-supplied token bypasses both protocols.
"""

import logging
from typing import Callable, Optional

from cosmetica_shared.exceptions import AuthRejected
from cosmetica_shared.interfaces import IAPIClient
from cosmetica_shared.logging_config import AuditLogger
from cosmetica_shared.models import Identity, Credential, IssuedCredential, CredentialSource
from cosmetica.auth.token_storage import TokenStore
from cosmetica.auth.token_validator import TokenValidator

logger = logging.getLogger(__name__)


class CredentialIssuer:
    """
    Obtains a credential for an identity.

    Args:
        api_client: Client used for the token exchange
        token_store: Persisted credential cache
        validator: Remote token validator
        override_provider: Returns the operator-supplied token, read per attempt
        client_id_provider: Returns the client identifier sent with the exchange
    """

    def __init__(
        self,
        api_client: IAPIClient,
        token_store: TokenStore,
        validator: TokenValidator,
        override_provider: Optional[Callable[[], Optional[str]]] = None,
        client_id_provider: Optional[Callable[[], str]] = None
    ):
        self.api_client = api_client
        self.token_store = token_store
        self.validator = validator
        self._override_provider = override_provider or (lambda: None)
        self._client_id_provider = client_id_provider or (lambda: "cosmetica")
        self._audit_logger = AuditLogger()

    def get_override_token(self) -> Optional[str]:
        return self._override_provider() or None

    async def issue(self, identity: Identity, access_token: Optional[str]) -> IssuedCredential:
        """
        Obtain a credential for an identity.

        Args:
            identity: Identity to authenticate
            access_token: Platform access token used for re-issuance

        Returns:
            The credential and the protocol that produced it

        Raises:
            TransientNetworkError: the cached token could not be checked
            AuthServerUnreachable: the token exchange could not reach the server
            AuthRejected: the server refused the platform token
        """
        override_token = self.get_override_token()
        if override_token:
            logger.info("Authenticating from provided token.")
            return IssuedCredential(Credential(master_token=override_token), CredentialSource.OVERRIDE)

        cached = await self._reuse_cached(identity)
        if cached:
            logger.info("Authentication successful with cached token.")
            return IssuedCredential(cached, CredentialSource.CACHED)

        return IssuedCredential(await self._reissue(identity, access_token), CredentialSource.ISSUED)

    async def _reuse_cached(self, identity: Identity) -> Optional[Credential]:
        credential = self.token_store.get(identity)
        if credential is None:
            logger.info("No cached token found.")
            return None

        logger.debug("Found cached token. Checking it with the server...")

        # a transient failure here propagates: re-issuance needs the network too
        if await self.validator.is_invalid(credential.master_token):
            logger.info("Cached token is invalid.")
            return None

        return credential

    async def _reissue(self, identity: Identity, access_token: Optional[str]) -> Credential:
        if not access_token:
            raise AuthRejected("No platform access token available for re-issuance")

        logger.info(f"Authenticating {identity} from platform access token.")
        credential = await self.api_client.exchange_platform_token(
            access_token, identity, self._client_id_provider()
        )

        logger.debug("Caching authentication tokens")
        persisted = self.token_store.put(identity, credential)
        self._audit_logger.log_token_cached(identity.key, persisted)
        return credential
