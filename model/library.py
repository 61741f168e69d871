# model/library.py
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from pydantic import BaseModel


class OwnerRecord(BaseModel):
    """
    Per-owner record. `namespace` is the sink's isolated area reference
    (Drive folder id / local directory name); `accessToken` is written by the
    external login flow and used by the Drive sink.
    """

    id: str
    name: Optional[str] = None
    namespace: Optional[str] = None
    accessToken: Optional[str] = None


class StoredObject(BaseModel):
    ref: str
    name: str
    createdAt: Optional[str] = None
    size: Optional[int] = None
    mimeType: Optional[str] = None


@dataclass
class FetchedObject:
    """Byte stream of a stored object, optionally a (start, end) inclusive slice of it."""

    chunks: AsyncIterator[bytes]
    size: int
    mime_type: str
    name: str
    byte_range: Optional[tuple[int, int]] = None

    @property
    def content_length(self) -> int:
        if self.byte_range is None:
            return self.size
        start, end = self.byte_range
        return end - start + 1
