# controller/controller_dependencies.py
from typing import List, Optional
from fastapi import Depends, Header, Query, Request
from fastapi_limiter.depends import RateLimiter
from config.settings import settings
from service.container import Services
from service.identity_service import IdentityService, bearer_token
from service.job_service import JobService
from service.library_service import LibraryService


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_job_service(request: Request) -> JobService:
    return get_services(request).jobs


def get_library_service(request: Request) -> LibraryService:
    return get_services(request).library


def get_identity_service(request: Request) -> IdentityService:
    return get_services(request).identity


async def get_current_owner(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
    identity: IdentityService = Depends(get_identity_service),
) -> str:
    return await identity.resolve(bearer_token(authorization, token))


def rate_limited() -> List:
    """Router-level limiter; RATE_LIMIT_TIMES=0 turns it off."""
    if settings.RATE_LIMIT_TIMES <= 0:
        return []
    return [
        Depends(
            RateLimiter(
                times=settings.RATE_LIMIT_TIMES, seconds=settings.RATE_LIMIT_SECONDS
            )
        )
    ]
