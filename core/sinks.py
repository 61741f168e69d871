# core/sinks.py
"""
Remote Upload Sinks.

Every call is scoped to the owner's namespace (a Drive folder or a local
directory). Objects outside that namespace are reported as missing or denied,
never served.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Final, List, Optional
from uuid import uuid4
import anyio
import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_random_exponential,
)
from config.settings import settings
from model.library import FetchedObject, OwnerRecord, StoredObject
from repository.owner_repository import OwnerRepository
from util.constants import MimeTypes
from util.errors import StorageAccessDenied, StoredObjectNotFound, UploadFailed
from util.functions import parse_byte_range
from util.timing import timed

logger = logging.getLogger(__name__)

UploadProgress = Callable[[int], None]  # bytes acknowledged so far


class UploadSink(ABC):
    @abstractmethod
    async def upload(
        self,
        owner_id: str,
        name: str,
        chunks: AsyncIterable[bytes],
        mime_type: str,
        on_progress: Optional[UploadProgress] = None,
    ) -> str:
        """Store the stream and return an opaque object reference."""

    @abstractmethod
    async def list(self, owner_id: str) -> List[StoredObject]: ...

    @abstractmethod
    async def fetch(
        self, owner_id: str, ref: str, range_header: Optional[str] = None
    ) -> FetchedObject:
        """
        Open an object for reading. With `range_header`, only that slice is
        streamed; ValueError signals an unsatisfiable range.
        """

    @abstractmethod
    async def delete(self, owner_id: str, ref: str) -> None: ...


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ---------------- Local filesystem ----------------

_LOCAL_REF_RE: Final[re.Pattern[str]] = re.compile(r"^[0-9a-f]{32}$")


class FilesystemSink(UploadSink):
    """
    <root>/<namespace>/<ref> plus <ref>.json metadata. The namespace directory
    name is random and kept in the owner record, like a Drive folder id.
    """

    def __init__(
        self,
        owners: OwnerRepository,
        root: str = settings.LOCAL_STORAGE_DIR,
        chunk_size: int = settings.CHUNK_SIZE_BYTES,
    ) -> None:
        self._owners = owners
        self._root = anyio.Path(root)
        self._chunk_size = chunk_size

    async def _existing_namespace(self, owner_id: str) -> Optional[anyio.Path]:
        owner = await self._owners.get(owner_id)
        if owner is not None and owner.namespace:
            folder = self._root / owner.namespace
            if await folder.is_dir():
                return folder
        return None

    async def _namespace(self, owner_id: str) -> anyio.Path:
        folder = await self._existing_namespace(owner_id)
        if folder is not None:
            return folder
        namespace = uuid4().hex
        folder = self._root / namespace
        await folder.mkdir(parents=True, exist_ok=True)
        await self._owners.set_namespace(owner_id, namespace)
        logger.info("sink.local.namespace.created owner=%s", owner_id)
        return folder

    async def _locate(self, owner_id: str, ref: str) -> tuple[anyio.Path, Dict[str, Any]]:
        if not _LOCAL_REF_RE.match(ref or ""):
            raise StoredObjectNotFound(ref)
        folder = await self._existing_namespace(owner_id)
        if folder is None:
            raise StoredObjectNotFound(ref)
        data, meta = folder / ref, folder / f"{ref}.json"
        if not await data.is_file() or not await meta.is_file():
            raise StoredObjectNotFound(ref)
        return data, json.loads(await meta.read_text(encoding="utf-8"))

    @staticmethod
    async def _discard_partial(*paths: anyio.Path) -> None:
        for path in paths:
            await path.unlink(missing_ok=True)

    async def upload(
        self,
        owner_id: str,
        name: str,
        chunks: AsyncIterable[bytes],
        mime_type: str,
        on_progress: Optional[UploadProgress] = None,
    ) -> str:
        folder = await self._namespace(owner_id)
        ref = uuid4().hex
        partial, sidecar = folder / f"{ref}.part", folder / f"{ref}.json"
        written = 0
        try:
            async with await anyio.open_file(partial, "wb") as f:
                async for chunk in chunks:
                    await f.write(chunk)
                    written += len(chunk)
                    if on_progress is not None:
                        on_progress(written)
            meta = {
                "name": name,
                "mimeType": mime_type,
                "size": written,
                "createdAt": _iso(datetime.now(timezone.utc).timestamp()),
            }
            await sidecar.write_text(json.dumps(meta), encoding="utf-8")
            # The object is visible only once the data file has its final name.
            await partial.rename(folder / ref)
        except OSError as e:
            await self._discard_partial(partial, sidecar)
            raise UploadFailed(f"local write failed: {e}")
        except BaseException:
            await self._discard_partial(partial, sidecar)
            raise
        logger.info("sink.local.stored owner=%s ref=%s bytes=%d", owner_id, ref, written)
        return ref

    async def list(self, owner_id: str) -> List[StoredObject]:
        folder = await self._existing_namespace(owner_id)
        if folder is None:
            return []
        out: List[StoredObject] = []
        async for meta_path in folder.glob("*.json"):
            ref = meta_path.stem
            if not await (folder / ref).is_file():
                continue
            meta = json.loads(await meta_path.read_text(encoding="utf-8"))
            out.append(
                StoredObject(
                    ref=ref,
                    name=meta.get("name") or ref,
                    createdAt=meta.get("createdAt"),
                    size=meta.get("size"),
                    mimeType=meta.get("mimeType"),
                )
            )
        out.sort(key=lambda o: o.createdAt or "", reverse=True)
        return out

    async def fetch(
        self, owner_id: str, ref: str, range_header: Optional[str] = None
    ) -> FetchedObject:
        data, meta = await self._locate(owner_id, ref)
        size = (await data.stat()).st_size
        byte_range = parse_byte_range(range_header, size)
        start, end = byte_range if byte_range else (0, size - 1)
        chunk_size = self._chunk_size

        async def _chunks() -> AsyncIterator[bytes]:
            remaining = end - start + 1
            async with await anyio.open_file(data, "rb") as f:
                await f.seek(start)
                while remaining > 0:
                    chunk = await f.read(min(chunk_size, remaining))
                    if not chunk:
                        return
                    remaining -= len(chunk)
                    yield chunk

        return FetchedObject(
            chunks=_chunks(),
            size=size,
            mime_type=meta.get("mimeType") or MimeTypes.DEFAULT_AUDIO,
            name=meta.get("name") or ref,
            byte_range=byte_range,
        )

    async def delete(self, owner_id: str, ref: str) -> None:
        data, _ = await self._locate(owner_id, ref)
        await data.unlink(missing_ok=True)
        await data.with_name(f"{ref}.json").unlink(missing_ok=True)
        logger.info("sink.local.deleted owner=%s ref=%s", owner_id, ref)


# ---------------- Google Drive ----------------

RETRY_STATUSES: Final[frozenset[int]] = frozenset({429, 500, 502, 503, 504})
DRIVE_CHUNK_ALIGN: Final[int] = 256 * 1024
_RANGE_ACK_RE: Final[re.Pattern[str]] = re.compile(r"bytes=0-(\d+)")


class TransientDriveError(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"drive transient status={response.status_code}")
        self.response = response


class GoogleDriveSink(UploadSink):
    """
    Drive v3 over httpx. Uploads use the resumable protocol in fixed chunks so
    memory stays bounded and every acknowledged chunk reports real progress.
    """

    def __init__(
        self,
        owners: OwnerRepository,
        *,
        api_url: str = settings.DRIVE_API_URL,
        upload_url: str = settings.DRIVE_UPLOAD_URL,
        folder_name: str = settings.DRIVE_FOLDER_NAME,
        chunk_bytes: int = settings.DRIVE_CHUNK_BYTES,
        retry_seconds: int = settings.DRIVE_RETRY_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if chunk_bytes <= 0 or chunk_bytes % DRIVE_CHUNK_ALIGN:
            raise ValueError("DRIVE_CHUNK_BYTES must be a positive multiple of 256 KiB")
        self._owners = owners
        self._api = api_url.rstrip("/")
        self._upload_url = upload_url
        self._folder_name = folder_name
        self._chunk_bytes = chunk_bytes
        self._retry_seconds = retry_seconds
        self._transport = transport

    # ---- plumbing ----

    async def _owner(self, owner_id: str) -> OwnerRecord:
        owner = await self._owners.get(owner_id)
        if owner is None or not owner.accessToken:
            raise StorageAccessDenied(f"no storage credentials for owner={owner_id}")
        return owner

    def _client(self, owner: OwnerRecord) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Authorization": f"Bearer {owner.accessToken}"},
            timeout=httpx.Timeout(60.0, connect=10.0),
            transport=self._transport,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_delay(self._retry_seconds),
            wait=wait_random_exponential(multiplier=0.5, max=10),
            retry=retry_if_exception_type(
                (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, TransientDriveError)
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _send(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        async for attempt in self._retrying():
            with attempt:
                response = await client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUSES:
                    raise TransientDriveError(response)
        return response

    async def _ensure_folder(self, owner: OwnerRecord, client: httpx.AsyncClient) -> str:
        if owner.namespace:
            res = await self._send(
                client, "GET", f"{self._api}/files/{owner.namespace}",
                params={"fields": "id,trashed"},
            )
            if res.status_code == 200 and not res.json().get("trashed"):
                return owner.namespace
            logger.info("sink.drive.folder.missing owner=%s", owner.id)

        res = await self._send(
            client,
            "POST",
            f"{self._api}/files",
            params={"fields": "id,name"},
            json={
                "name": f"{self._folder_name} - {owner.name or owner.id}",
                "mimeType": MimeTypes.DRIVE_FOLDER,
                "description": f"{self._folder_name} folder for {owner.name or owner.id}",
            },
        )
        if res.status_code // 100 != 2:
            raise UploadFailed(f"folder create failed status={res.status_code}")
        folder_id = res.json()["id"]
        await self._owners.set_namespace(owner.id, folder_id)
        logger.info("sink.drive.folder.created owner=%s folder=%s", owner.id, folder_id)
        return folder_id

    async def _file_in_namespace(
        self, owner: OwnerRecord, client: httpx.AsyncClient, ref: str
    ) -> Dict[str, Any]:
        folder_id = await self._ensure_folder(owner, client)
        res = await self._send(
            client, "GET", f"{self._api}/files/{ref}",
            params={"fields": "id,name,parents,mimeType,size,createdTime"},
        )
        if res.status_code == 404:
            raise StoredObjectNotFound(ref)
        if res.status_code // 100 != 2:
            raise UploadFailed(f"metadata lookup failed status={res.status_code}")
        info = res.json()
        if folder_id not in (info.get("parents") or []):
            raise StorageAccessDenied(f"file {ref} outside namespace of owner={owner.id}")
        if "audio" not in (info.get("mimeType") or ""):
            raise StorageAccessDenied("Access denied: Not an audio file")
        return info

    # ---- operations ----

    async def upload(
        self,
        owner_id: str,
        name: str,
        chunks: AsyncIterable[bytes],
        mime_type: str,
        on_progress: Optional[UploadProgress] = None,
    ) -> str:
        owner = await self._owner(owner_id)
        async with self._client(owner) as client:
            try:
                folder_id = await self._ensure_folder(owner, client)
                res = await self._send(
                    client,
                    "POST",
                    self._upload_url,
                    params={"uploadType": "resumable"},
                    headers={"X-Upload-Content-Type": mime_type},
                    json={
                        "name": name,
                        "mimeType": mime_type,
                        "parents": [folder_id],
                        "description": f"Uploaded for {owner.name or owner.id}",
                    },
                )
                session_url = res.headers.get("location")
                if res.status_code // 100 != 2 or not session_url:
                    raise UploadFailed(f"upload session refused status={res.status_code}")

                with timed(logger, "sink.drive.upload", owner=owner_id):
                    file_id = await self._push_chunks(client, session_url, chunks, on_progress)
            except (httpx.HTTPError, TransientDriveError) as e:
                raise UploadFailed(f"drive upload failed: {type(e).__name__}")
        logger.info("sink.drive.stored owner=%s ref=%s", owner_id, file_id)
        return file_id

    async def _push_chunks(
        self,
        client: httpx.AsyncClient,
        session_url: str,
        chunks: AsyncIterable[bytes],
        on_progress: Optional[UploadProgress],
    ) -> str:
        buffer = bytearray()
        offset = 0  # bytes acknowledged by Drive

        async def _put(body: bytes, final: bool) -> Optional[str]:
            nonlocal offset
            total = str(offset + len(body)) if final else "*"
            if body:
                content_range = f"bytes {offset}-{offset + len(body) - 1}/{total}"
            else:
                content_range = f"bytes */{total}"
            res = await self._send(
                client, "PUT", session_url,
                content=body, headers={"Content-Range": content_range},
            )
            if res.status_code in (200, 201):
                offset += len(body)
                return res.json()["id"]
            if res.status_code != 308:
                raise UploadFailed(f"chunk rejected status={res.status_code}")
            m = _RANGE_ACK_RE.search(res.headers.get("range", ""))
            acked = int(m.group(1)) + 1 if m else offset
            consumed = acked - offset
            if consumed <= 0 and body:
                raise UploadFailed("drive acknowledged no bytes")
            offset = acked
            # Keep whatever Drive did not persist for the next request.
            del buffer[:consumed]
            return None

        async for chunk in chunks:
            buffer.extend(chunk)
            while len(buffer) >= self._chunk_bytes:
                await _put(bytes(buffer[: self._chunk_bytes]), final=False)
                if on_progress is not None:
                    on_progress(offset)

        # Final request carries the remainder and the total size.
        file_id = await _put(bytes(buffer), final=True)
        if file_id is None:
            raise UploadFailed("upload did not finalize")
        if on_progress is not None:
            on_progress(offset)
        return file_id

    async def list(self, owner_id: str) -> List[StoredObject]:
        owner = await self._owner(owner_id)
        async with self._client(owner) as client:
            folder_id = await self._ensure_folder(owner, client)
            res = await self._send(
                client,
                "GET",
                f"{self._api}/files",
                params={
                    "q": f"'{folder_id}' in parents and mimeType contains 'audio/' and trashed=false",
                    "fields": "files(id,name,createdTime,size,mimeType)",
                    "orderBy": "createdTime desc",
                },
            )
            if res.status_code // 100 != 2:
                raise UploadFailed(f"list failed status={res.status_code}")
        return [
            StoredObject(
                ref=f["id"],
                name=f.get("name") or f["id"],
                createdAt=f.get("createdTime"),
                size=int(f["size"]) if f.get("size") else None,
                mimeType=f.get("mimeType"),
            )
            for f in res.json().get("files", [])
        ]

    async def fetch(
        self, owner_id: str, ref: str, range_header: Optional[str] = None
    ) -> FetchedObject:
        owner = await self._owner(owner_id)
        client = self._client(owner)
        try:
            info = await self._file_in_namespace(owner, client, ref)
            size = int(info.get("size") or 0)
            byte_range = parse_byte_range(range_header, size)
            headers = {}
            if byte_range:
                headers["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
            request = client.build_request(
                "GET", f"{self._api}/files/{ref}", params={"alt": "media"}, headers=headers
            )
            response = await client.send(request, stream=True)
            if response.status_code // 100 != 2:
                await response.aclose()
                raise UploadFailed(f"media fetch failed status={response.status_code}")
        except BaseException:
            await client.aclose()
            raise

        chunk_size = settings.CHUNK_SIZE_BYTES

        async def _chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes(chunk_size):
                    yield chunk
            finally:
                await response.aclose()
                await client.aclose()

        return FetchedObject(
            chunks=_chunks(),
            size=size,
            mime_type=info.get("mimeType") or MimeTypes.DEFAULT_AUDIO,
            name=info.get("name") or ref,
            byte_range=byte_range,
        )

    async def delete(self, owner_id: str, ref: str) -> None:
        owner = await self._owner(owner_id)
        async with self._client(owner) as client:
            await self._file_in_namespace(owner, client, ref)
            res = await self._send(client, "DELETE", f"{self._api}/files/{ref}")
            if res.status_code not in (200, 204):
                raise UploadFailed(f"delete failed status={res.status_code}")
        logger.info("sink.drive.deleted owner=%s ref=%s", owner_id, ref)
