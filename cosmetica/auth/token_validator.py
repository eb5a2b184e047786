"""
Remote validation of cached master tokens.
"""

import logging

from cosmetica_shared.exceptions import (
    TransientNetworkError, MalformedResponse, ServerError, AuthenticationError
)
from cosmetica_shared.interfaces import IAPIClient
from cosmetica_shared.logging_config import register_secret

logger = logging.getLogger(__name__)

INVALID_TOKEN_MARKER = "invalid token"


class TokenValidator:
    """
    Checks whether a master token is still accepted by the server.

    Only a structured error naming an invalid token counts as invalid. Anything
    else that goes wrong after the server answered is treated as "not invalid",
    so an unrelated failure never causes the credential to be re-issued.
    """

    def __init__(self, api_client: IAPIClient):
        self.api_client = api_client

    async def is_invalid(self, master_token: str) -> bool:
        """
        Args:
            master_token: Token to check

        Returns:
            True only if the server reported the token as invalid

        Raises:
            TransientNetworkError: the check could not be completed
        """
        register_secret(master_token)
        try:
            payload = await self.api_client.get_uuid(master_token)
        except TransientNetworkError:
            raise
        except (AuthenticationError, ServerError) as e:
            detail = str(e.context.get('detail', ''))
            if INVALID_TOKEN_MARKER in detail.lower():
                logger.info("Token check rejected the cached token")
                return True
            logger.warning(f"Token check failed, assuming token is still valid: {e.message}")
            return False
        except MalformedResponse as e:
            logger.warning(f"Token check returned an unreadable response, assuming token is still valid: {e.message}")
            return False

        error = payload.get('error')
        if error is None:
            return False

        if INVALID_TOKEN_MARKER in str(error).lower():
            logger.info("Token check rejected the cached token")
            return True

        logger.warning(f"Token check returned an unrelated error, assuming token is still valid: {error}")
        return False
