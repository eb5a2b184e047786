"""
HTTP API Client for the Cosmetica session client.

This module provides HTTP client functionality for communicating with the
Cosmetica API: exchanging a platform access token for a session credential,
whoami-style token checks, user settings and first-login calls, with retry logic
and classification of network, response and authentication failures.
"""

import asyncio
import json
import logging
import random
from typing import Optional, Dict, Any

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from cosmetica_shared.exceptions import (
    TransientNetworkError, AuthServerUnreachable, MalformedResponse, ServerError,
    AuthenticationError, AuthRejected, ErrorCode
)
from cosmetica_shared.interfaces import IAPIClient
from cosmetica_shared.logging_config import register_secret
from cosmetica_shared.models import (
    Identity, Credential, LoginInfo, UserInfo, UserSettings, ProfileData,
    CosmeticPosition, CapeDisplay
)

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 1,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


class CosmeticaAPIClient(IAPIClient):
    """
    HTTP API client for the Cosmetica authentication and settings service.

    Holds the session credential installed by the authentication coordinator and
    attaches the master token (privileged calls) or limited token (read-mostly
    calls) as a bearer header.
    """

    def __init__(
        self,
        api_url: str,
        timeout: float = 20.0,
        retry_config: Optional[RetryConfig] = None,
        user_agent: str = 'CosmeticaClient/1.0'
    ):
        self.api_url = api_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()
        self.user_agent = user_agent

        self._credential: Optional[Credential] = None

        self._session: Optional[ClientSession] = None
        self._is_offline = False

        logger.info(f"API client initialized for server: {self.api_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={'User-Agent': self.user_agent}
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def set_api_url(self, api_url: str) -> None:
        """Point the client at a different API base URL."""
        self.api_url = api_url.rstrip('/')
        logger.info(f"API base URL set to: {self.api_url}")

    def set_credential(self, credential: Optional[Credential]) -> None:
        if credential is not None:
            register_secret(credential.master_token)
            register_secret(credential.limited_token)
        self._credential = credential

    def _get_auth_headers(self, privileged: bool) -> Dict[str, str]:
        """Get authentication headers."""
        if not self._credential:
            return {}

        token = self._credential.master_token
        if not privileged and self._credential.limited_token:
            token = self._credential.limited_token
        return {'Authorization': f'Bearer {token}'}

    def _build_url(self, endpoint: str) -> str:
        if endpoint.startswith(('http://', 'https://')):
            return endpoint
        return f"{self.api_url}/{endpoint.lstrip('/')}"

    @staticmethod
    def _parse_body(body: str, url: str) -> Any:
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedResponse(
                f"Response from {url} is not valid JSON: {e}",
                raw_body=body,
                url=url,
                cause=e
            )

    @staticmethod
    def _error_detail(body: str) -> str:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return body.strip() or "Unknown error"
        if isinstance(payload, dict):
            return str(payload.get('error') or payload.get('detail') or payload)
        return str(payload)

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        privileged: bool = True,
        retry: bool = True,
        allow_error_body: bool = False
    ) -> Any:
        """
        Make HTTP request with retry logic and error handling.

        Args:
            method: HTTP method (GET, POST)
            endpoint: API endpoint path or absolute URL
            data: Request body data (sent as JSON)
            params: Query parameters
            authenticated: Whether to include the bearer header
            privileged: Use the master token rather than the limited token
            retry: Whether to retry on network failure
            allow_error_body: Return ``{"error": ...}`` bodies instead of raising

        Returns:
            Parsed JSON response

        Raises:
            TransientNetworkError: the request could not be completed
            MalformedResponse: the body could not be parsed
            AuthenticationError: the server refused the credential (401/403)
            ServerError: any other error status or error body
        """
        await self._ensure_session()

        url = self._build_url(endpoint)
        headers = self._get_auth_headers(privileged) if authenticated else {}

        attempt = 0
        last_exception: Optional[Exception] = None
        max_attempts = self.retry_config.max_retries if retry else 0

        while attempt <= max_attempts:
            try:
                logger.debug(f"Making {method} request to {url} (attempt {attempt + 1})")

                async with self._session.request(
                    method=method,
                    url=url,
                    json=data,
                    params=params,
                    headers=headers
                ) as response:
                    body = await response.text()
                    self._is_offline = False

                    if response.status == 200:
                        payload = self._parse_body(body, url)
                        if not allow_error_body and isinstance(payload, dict) and 'error' in payload:
                            raise ServerError(
                                f"Server returned error: {payload['error']}",
                                error_code=ErrorCode.RESPONSE_ERROR_BODY,
                                status=response.status,
                                context={'detail': str(payload['error'])}
                            )
                        return payload

                    detail = self._error_detail(body)

                    if response.status in (401, 403):
                        raise AuthenticationError(
                            f"Authentication failed ({response.status}): {detail}",
                            context={'status': response.status, 'detail': detail}
                        )
                    elif response.status == 404:
                        raise ServerError(
                            f"Not found: {detail}",
                            error_code=ErrorCode.RESPONSE_NOT_FOUND,
                            status=response.status,
                            context={'detail': detail}
                        )
                    else:
                        raise ServerError(
                            f"Request failed ({response.status}): {detail}",
                            status=response.status,
                            context={'detail': detail}
                        )

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                last_exception = e
                logger.warning(f"Network error on attempt {attempt + 1}: {e}")

                self._is_offline = True

                if attempt >= max_attempts:
                    break

                delay = min(
                    self.retry_config.base_delay * (self.retry_config.exponential_base ** attempt),
                    self.retry_config.max_delay
                )
                if self.retry_config.jitter:
                    delay *= (0.5 + random.random() * 0.5)

                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)
                attempt += 1

        error_code = (
            ErrorCode.NETWORK_TIMEOUT if isinstance(last_exception, asyncio.TimeoutError)
            else ErrorCode.NETWORK_CONNECTION_FAILED
        )
        raise TransientNetworkError(
            f"Network request to {url} failed after {attempt + 1} attempts: {last_exception}",
            error_code=error_code,
            cause=last_exception
        )

    def is_offline(self) -> bool:
        """Check if the last request failed at the network level."""
        return self._is_offline

    async def resolve_api_url(self, lookup_url: str) -> str:
        """
        Fetch the current API base URL from a discovery document.

        Args:
            lookup_url: Absolute URL returning ``{"api": "<base url>"}``

        Returns:
            The advertised API base URL
        """
        payload = await self._make_request('GET', lookup_url, authenticated=False)
        api_url = payload.get('api') if isinstance(payload, dict) else None
        if not isinstance(api_url, str) or not api_url:
            raise MalformedResponse("API lookup response is missing 'api'", raw_body=json.dumps(payload), url=lookup_url)
        return api_url

    async def exchange_platform_token(self, access_token: str, identity: Identity, client_id: str) -> Credential:
        """
        Exchange a platform access token for a session credential.

        Args:
            access_token: Access token supplied by the host platform
            identity: Identity the token belongs to
            client_id: Client identifier reported to the server

        Returns:
            New credential pair

        Raises:
            AuthServerUnreachable: the authentication server could not be reached
            AuthRejected: the server refused the platform token
            MalformedResponse: the response did not contain a token pair
        """
        logger.info(f"Exchanging platform token for user {identity}")

        try:
            payload = await self._make_request(
                method='POST',
                endpoint='/client/verifyforauthtokens',
                data={
                    'token': access_token,
                    'uuid': identity.key,
                    'username': identity.display_name,
                    'client': client_id
                },
                authenticated=False,
                allow_error_body=True
            )
        except TransientNetworkError as e:
            raise AuthServerUnreachable(f"Couldn't connect to the auth server: {e.message}", cause=e)
        except AuthenticationError as e:
            raise AuthRejected(f"Platform token rejected: {e.context.get('detail', e.message)}", cause=e)
        except ServerError as e:
            if e.status is not None and 400 <= e.status < 500:
                raise AuthRejected(f"Platform token rejected: {e.context.get('detail', e.message)}", cause=e)
            raise AuthServerUnreachable(f"Auth server failed the token exchange: {e.message}", cause=e)

        if not isinstance(payload, dict):
            raise MalformedResponse("Token exchange response is not an object", raw_body=json.dumps(payload))

        if 'error' in payload:
            raise AuthRejected(f"Platform token rejected: {payload['error']}")

        master_token = payload.get('master_token')
        if not master_token:
            raise MalformedResponse("Token exchange response is missing 'master_token'")

        return Credential(
            master_token=str(master_token),
            limited_token=str(payload.get('limited_token') or '')
        )

    async def get_uuid(self, token: str) -> Dict[str, Any]:
        """
        Look up the user a token belongs to.

        Returns the raw body, which is either the user (``uuid``, ``username``)
        or a structured ``{"error": ...}`` object.
        """
        payload = await self._make_request(
            method='GET',
            endpoint='/get/uuid',
            params={'token': token},
            authenticated=False,
            allow_error_body=True
        )
        if not isinstance(payload, dict):
            raise MalformedResponse("Whoami response is not an object", raw_body=json.dumps(payload))
        return payload

    async def get_login_info(self) -> LoginInfo:
        payload = await self._make_request('GET', '/client/logininfo')
        try:
            return LoginInfo.from_dict(payload)
        except ValueError as e:
            raise MalformedResponse(str(e), raw_body=json.dumps(payload), cause=e)

    async def get_user_settings(self) -> UserSettings:
        payload = await self._make_request('GET', '/client/settings')
        try:
            return UserSettings.from_dict(payload)
        except ValueError as e:
            raise MalformedResponse(str(e), raw_body=json.dumps(payload), cause=e)

    async def update_user_settings(self, settings: Dict[str, Any]) -> None:
        await self._make_request('POST', '/client/updatesettings', data=settings)
        logger.info(f"Updated user settings: {', '.join(sorted(settings))}")

    async def set_cosmetic(self, position: CosmeticPosition, cosmetic_id: str, require_official: bool = True) -> None:
        await self._make_request(
            'POST',
            '/client/setcosmetic',
            data={'type': position.value, 'id': cosmetic_id, 'requireofficial': require_official}
        )
        logger.info(f"Set {position.value} cosmetic to {cosmetic_id}")

    async def set_cape_server_settings(self, settings: Dict[str, CapeDisplay]) -> None:
        await self._make_request(
            'POST',
            '/client/setcapeserversettings',
            data={server: display.value for server, display in settings.items()}
        )

    async def get_user_info(self, identity: Identity) -> UserInfo:
        payload = await self._make_request(
            'GET',
            '/get/info',
            params={'uuid': identity.key, 'username': identity.display_name},
            privileged=False
        )
        try:
            return UserInfo.from_dict(payload)
        except ValueError as e:
            raise MalformedResponse(str(e), raw_body=json.dumps(payload), cause=e)

    async def get_user_profile(self, identity: Identity) -> ProfileData:
        """
        Get full profile data (lore, skin, cosmetics) for a user.

        Returns a ``ProfileData.missing`` placeholder when the user is unknown.
        """
        try:
            payload = await self._make_request(
                'GET',
                '/get/info',
                params={'uuid': identity.key, 'username': identity.display_name, 'full': 'true'},
                privileged=False
            )
        except ServerError as e:
            if e.error_code == ErrorCode.RESPONSE_NOT_FOUND:
                return ProfileData.missing(identity)
            raise

        if not isinstance(payload, dict):
            raise MalformedResponse("Profile response is not an object", raw_body=json.dumps(payload))

        cosmetics = {
            key: value for key, value in payload.items()
            if key not in ('lore', 'skin', 'uuid', 'username')
        }
        return ProfileData(
            identity=identity,
            lore=str(payload.get('lore', '')),
            skin=str(payload.get('skin', '')),
            cosmetics=cosmetics
        )
