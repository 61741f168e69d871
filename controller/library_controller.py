# controller/library_controller.py
from typing import List, Optional
from urllib.parse import quote
from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import StreamingResponse
from model.api import DeleteResponse, LibraryItem
from service.library_service import LibraryService
from util.constants import InternalURIs
from controller.controller_dependencies import (
    get_current_owner,
    get_library_service,
    rate_limited,
)

library_router = APIRouter(dependencies=rate_limited())


@library_router.get(InternalURIs.LIBRARY, response_model=List[LibraryItem])
async def list_library(
    owner: str = Depends(get_current_owner),
    service: LibraryService = Depends(get_library_service),
) -> List[LibraryItem]:
    return await service.list(owner)


@library_router.get(InternalURIs.LIBRARY_STREAM)
async def stream_item(
    ref: str,
    range_header: Optional[str] = Header(default=None, alias="Range"),
    owner: str = Depends(get_current_owner),
    service: LibraryService = Depends(get_library_service),
):
    obj = await service.open(owner, ref, range_header)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(obj.content_length),
        "Content-Disposition": f"inline; filename*=UTF-8''{quote(obj.name)}",
    }
    if obj.byte_range is None:
        return StreamingResponse(obj.chunks, media_type=obj.mime_type, headers=headers)

    start, end = obj.byte_range
    headers["Content-Range"] = f"bytes {start}-{end}/{obj.size}"
    return StreamingResponse(
        obj.chunks,
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=obj.mime_type,
        headers=headers,
    )


@library_router.delete(InternalURIs.LIBRARY_ITEM, response_model=DeleteResponse)
async def delete_item(
    ref: str,
    owner: str = Depends(get_current_owner),
    service: LibraryService = Depends(get_library_service),
) -> DeleteResponse:
    return await service.delete(owner, ref)
