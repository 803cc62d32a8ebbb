"""Profile service — business logic for profile records.

Learn: Service layer separates business logic from HTTP routing.
Routes call the service, the service calls the store. Every mutation
goes through the store exactly once, and the store's change feed turns
it into exactly one ChangeEvent; the service never publishes on its own.

No caching, no transactions beyond what the store provides.
"""

from typing import Optional

import structlog

from profilecast.store.base import Profile, ProfileStore

logger = structlog.get_logger()


class ProfileNotFoundError(Exception):
    """Raised when a profile id does not exist."""

    def __init__(self, profile_id: str):
        super().__init__(f"Profile {profile_id} not found")
        self.profile_id = profile_id


class ProfileService:
    """CRUD operations on profiles."""

    def __init__(self, store: ProfileStore):
        self.store = store

    async def all(self) -> list[Profile]:
        return [profile async for profile in self.store.all()]

    async def get(self, profile_id: str) -> Optional[Profile]:
        return await self.store.get(profile_id)

    async def create(self, email: str) -> Profile:
        profile = await self.store.insert(email)
        logger.info("profile.created", profile_id=profile.id)
        return profile

    async def update(self, profile_id: str, email: str) -> Profile:
        profile = await self.store.update(profile_id, email)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        logger.info("profile.updated", profile_id=profile_id)
        return profile

    async def delete(self, profile_id: str) -> Profile:
        profile = await self.store.delete(profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        logger.info("profile.deleted", profile_id=profile_id)
        return profile
