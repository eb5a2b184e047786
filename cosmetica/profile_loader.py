"""
Profile data loader backed by the Cosmetica API.
"""

import asyncio
import logging
from typing import Dict

from cosmetica_shared.interfaces import IProfileLoader
from cosmetica_shared.models import Identity, ProfileData
from cosmetica.api_client import CosmeticaAPIClient

logger = logging.getLogger(__name__)


class ApiProfileLoader(IProfileLoader):
    """
    Caches profile data per identity.

    Concurrent requests for the same identity share one lookup. ``force`` skips
    the cache but still joins a lookup that is already running.
    """

    def __init__(self, api_client: CosmeticaAPIClient):
        self.api_client = api_client
        self._cache: Dict[str, ProfileData] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    async def ensure_loaded(self, identity: Identity, force: bool = False) -> ProfileData:
        key = identity.key
        if not force and key in self._cache:
            return self._cache[key]

        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(self._load(identity), name=f"cosmetica-profile-{key}")
            self._pending[key] = task
            task.add_done_callback(lambda _: self._pending.pop(key, None))

        # shield so one cancelled waiter does not cancel the shared lookup
        return await asyncio.shield(task)

    async def _load(self, identity: Identity) -> ProfileData:
        logger.debug(f"Loading profile data for {identity}")
        profile = await self.api_client.get_user_profile(identity)
        if profile.found:
            self._cache[identity.key] = profile
        else:
            logger.info(f"No profile data found for {identity}")
        return profile
