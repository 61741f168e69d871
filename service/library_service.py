# service/library_service.py
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional
from core.sinks import UploadSink
from model.api import DeleteResponse, LibraryItem
from model.library import FetchedObject
from repository.job_repository import JobStore
from util.enums import ErrorMessage
from util.errors import AppError, StorageAccessDenied, StoredObjectNotFound, UploadFailed

logger = logging.getLogger(__name__)


@contextmanager
def storage_errors(owner_id: str, ref: str = "-") -> Iterator[None]:
    """Translate sink failures into HTTP-facing AppErrors."""
    try:
        yield
    except StoredObjectNotFound:
        raise AppError.of(ErrorMessage.NOT_FOUND)
    except StorageAccessDenied as e:
        logger.warning("library.denied owner=%s ref=%s", owner_id, ref)
        raise AppError.of(ErrorMessage.ACCESS_DENIED, reason=e.public_message)
    except UploadFailed as e:
        logger.error("library.storage.error owner=%s ref=%s err=%s", owner_id, ref, e)
        raise AppError.of(ErrorMessage.STORAGE_UNAVAILABLE)


class LibraryService:
    def __init__(self, sink: UploadSink, jobs: JobStore) -> None:
        self._sink = sink
        self._jobs = jobs

    async def list(self, owner_id: str) -> List[LibraryItem]:
        """Owner's stored objects, newest first, with the producing job's state where known."""
        with storage_errors(owner_id):
            objects = await self._sink.list(owner_id)

        items: List[LibraryItem] = []
        for obj in objects:
            item = LibraryItem(**obj.model_dump())
            job = await self._jobs.find_by_output_ref(obj.ref)
            if job is not None and job.owner == owner_id:
                item.jobId = job.id
                item.displayName = job.displayName
                item.stage = job.stage
                item.progress = job.progress
                item.active = job.active
                item.error = job.error
            items.append(item)
        logger.info("library.list owner=%s count=%d", owner_id, len(items))
        return items

    async def open(
        self, owner_id: str, ref: str, range_header: Optional[str] = None
    ) -> FetchedObject:
        with storage_errors(owner_id, ref):
            try:
                return await self._sink.fetch(owner_id, ref, range_header)
            except ValueError:
                raise AppError.of(ErrorMessage.RANGE_NOT_SATISFIABLE)

    async def delete(self, owner_id: str, ref: str) -> DeleteResponse:
        with storage_errors(owner_id, ref):
            await self._sink.delete(owner_id, ref)
        logger.info("library.deleted owner=%s ref=%s", owner_id, ref)
        return DeleteResponse(ok=True, ref=ref)
