"""Profile stores.

The STORE_URI scheme picks the implementation:
- memory://                       → MemoryProfileStore (dev, tests)
- postgresql+asyncpg://...        → PostgresProfileStore
"""

from profilecast.store.base import (
    ChangeCursor,
    ChangeEvent,
    ChangeKind,
    Profile,
    ProfileStore,
    StoreError,
)
from profilecast.store.memory import MemoryProfileStore


def build_store(uri: str, echo: bool = False) -> ProfileStore:
    """Factory function to create the store selected by the URI scheme."""
    scheme = uri.split("://", 1)[0].lower()

    if scheme == "memory":
        return MemoryProfileStore()
    elif scheme.startswith("postgresql"):
        from profilecast.store.postgres import PostgresProfileStore

        if scheme == "postgresql":
            uri = uri.replace("postgresql://", "postgresql+asyncpg://", 1)
        return PostgresProfileStore(uri, echo=echo)
    else:
        raise ValueError(f"Unsupported STORE_URI scheme: {scheme}")


__all__ = [
    "ChangeCursor",
    "ChangeEvent",
    "ChangeKind",
    "MemoryProfileStore",
    "Profile",
    "ProfileStore",
    "StoreError",
    "build_store",
]
