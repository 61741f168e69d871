# service/container.py
import logging
from dataclasses import dataclass
from typing import Optional
from redis.asyncio import Redis
from config.settings import settings
from core.broadcaster import ProgressBroadcaster
from core.metadata import MetadataResolver
from core.runner import JobRunner
from core.sinks import FilesystemSink, GoogleDriveSink, UploadSink
from core.strategies import build_default_chain
from core.supervisor import JobSupervisor
from repository.job_repository import JobRepository
from repository.owner_repository import OwnerRepository
from repository.session_repository import SessionRepository
from service.identity_service import IdentityService
from service.job_service import JobService
from service.library_service import LibraryService
from util.enums import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class Services:
    jobs: JobService
    library: LibraryService
    identity: IdentityService
    supervisor: JobSupervisor


def build_sink(owners: OwnerRepository) -> UploadSink:
    backend = StorageBackend(settings.STORAGE_BACKEND.lower())
    if backend is StorageBackend.LOCAL:
        return FilesystemSink(owners)
    return GoogleDriveSink(
        owners,
        api_url=settings.DRIVE_API_URL,
        upload_url=settings.DRIVE_UPLOAD_URL,
        folder_name=settings.DRIVE_FOLDER_NAME,
        chunk_bytes=settings.DRIVE_CHUNK_BYTES,
        retry_seconds=settings.DRIVE_RETRY_SECONDS,
    )


def build_services(redis: Optional[Redis] = None) -> Services:
    """One shared graph per process; the supervisor must be a singleton."""
    store = JobRepository(redis)
    owners = OwnerRepository(redis)
    sink = build_sink(owners)
    chain = build_default_chain()
    runner = JobRunner(store, chain, sink, MetadataResolver())
    supervisor = JobSupervisor(runner)
    logger.info(
        "services.built storage=%s strategies=%s",
        settings.STORAGE_BACKEND,
        ",".join(chain.names),
    )
    return Services(
        jobs=JobService(store, supervisor, ProgressBroadcaster(store)),
        library=LibraryService(sink, store),
        identity=IdentityService(SessionRepository(redis)),
        supervisor=supervisor,
    )
