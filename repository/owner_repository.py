# repository/owner_repository.py
from typing import Dict, Final, Optional
from redis.asyncio import Redis
from config.cache import get_redis
from model.library import OwnerRecord
from repository.namespaces import OWNERS

KEY_PREFIX: Final[str] = OWNERS


class OwnerRepository:
    """
    Flow:
    - One JSON record per owner; written by the login flow (name, token) and
      by the upload sink (namespace reference, once created).
    - No TTL: owners outlive individual jobs.
    """

    def __init__(self, client: Optional[Redis] = None) -> None:
        self._redis = client

    async def _client(self) -> Redis:
        return self._redis if self._redis is not None else await get_redis()

    @staticmethod
    def _key(owner_id: str) -> str:
        return f"{KEY_PREFIX}:{owner_id}"

    async def get(self, owner_id: str) -> Optional[OwnerRecord]:
        r = await self._client()
        raw = await r.get(self._key(owner_id))
        if raw is None:
            return None
        return OwnerRecord.model_validate_json(raw)

    async def put(self, owner: OwnerRecord) -> None:
        r = await self._client()
        payload = owner.model_dump_json(exclude_none=True).encode("utf-8")
        await r.set(self._key(owner.id), payload)

    async def set_namespace(self, owner_id: str, namespace: Optional[str]) -> OwnerRecord:
        owner = await self.get(owner_id) or OwnerRecord(id=owner_id)
        owner.namespace = namespace
        await self.put(owner)
        return owner


class InMemoryOwnerRepository(OwnerRepository):
    def __init__(self) -> None:
        super().__init__()
        self._owners: Dict[str, OwnerRecord] = {}

    async def get(self, owner_id: str) -> Optional[OwnerRecord]:
        owner = self._owners.get(owner_id)
        return owner.model_copy() if owner is not None else None

    async def put(self, owner: OwnerRecord) -> None:
        self._owners[owner.id] = owner.model_copy()
