"""
Key/value store interface shared by the challenge and session stores.
"""

from typing import Optional, Protocol


class KeyValueStore(Protocol):
    """
    Asynchronous TTL key/value store

    ``add`` must be an atomic set-if-absent, ``replace`` an atomic
    set-if-present and ``pop`` an atomic read-and-delete. Backend failures
    raise StorageUnavailable.
    """

    async def add(self, key: str, value: str, ttl: float) -> bool: ...

    async def replace(self, key: str, value: str, ttl: float) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def delete(self, *keys: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
