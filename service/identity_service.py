# service/identity_service.py
import logging
from typing import Optional
from config.settings import settings
from repository.session_repository import SessionRepository
from util.enums import ErrorMessage
from util.errors import AppError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


def bearer_token(authorization: Optional[str], query_token: Optional[str] = None) -> Optional[str]:
    """Header credential wins; `?token=` is for media elements that cannot set headers."""
    if authorization and authorization.lower().startswith(BEARER_PREFIX):
        token = authorization[len(BEARER_PREFIX):].strip()
        if token:
            return token
    return (query_token or "").strip() or None


class IdentityService:
    """Resolves an opaque bearer credential to an owner id, or fails with auth_required."""

    def __init__(self, sessions: SessionRepository) -> None:
        self._sessions = sessions

    async def resolve(self, token: Optional[str]) -> str:
        owner_id = await self._sessions.owner_for(token) if token else None
        if owner_id is None:
            logger.info("identity.rejected has_token=%s", bool(token))
            raise AppError.of(ErrorMessage.AUTH_REQUIRED, authUrl=settings.AUTH_URL)
        return owner_id
