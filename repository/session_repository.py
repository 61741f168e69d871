# repository/session_repository.py
from typing import Final, Optional
from redis.asyncio import Redis
from config.cache import get_redis
from config.settings import settings
from repository.namespaces import SESSIONS

KEY_PREFIX: Final[str] = SESSIONS


class SessionRepository:
    """
    Bearer token -> owner id, written by the external login flow.
    TTL is refreshed on every successful lookup so active sessions stay alive.
    """

    def __init__(
        self,
        client: Optional[Redis] = None,
        ttl_seconds: int = settings.JOB_RETENTION_SECONDS,
    ) -> None:
        self._redis = client
        self._ttl = int(ttl_seconds)

    async def _client(self) -> Redis:
        return self._redis if self._redis is not None else await get_redis()

    @staticmethod
    def _key(token: str) -> str:
        return f"{KEY_PREFIX}:{token}"

    async def put(self, token: str, owner_id: str) -> None:
        r = await self._client()
        await r.set(self._key(token), owner_id.encode("utf-8"), ex=self._ttl)

    async def owner_for(self, token: str) -> Optional[str]:
        if not token:
            return None
        r = await self._client()
        raw = await r.get(self._key(token))
        if raw is None:
            return None
        await r.expire(self._key(token), self._ttl)
        return raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
