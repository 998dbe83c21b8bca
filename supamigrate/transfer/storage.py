"""
Storage API client.

Talks to a project's storage REST API with httpx and exposes it as an
ObjectStore. Every failure is mapped onto TransientTransferError or
PermanentTransferError so the engine can decide whether to retry.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

import httpx

from supamigrate.core.error_handler import (
    effective_status,
    transfer_error_from_exception,
    transfer_error_from_response,
)
from supamigrate.core.exceptions import BucketNotFoundError
from supamigrate.models.config import ProjectEndpoint
from supamigrate.transfer.base import (
    BucketInfo,
    ObjectReader,
    ObjectStat,
    ObjectStore,
    TransferObject,
    normalize_etag,
)

DEFAULT_TIMEOUT = 60.0


def _object_path(bucket: str, key: str) -> str:
    return f"/object/{quote(bucket, safe='')}/{quote(key, safe='/')}"


class _ResponseReader(ObjectReader):
    def __init__(self, stat: ObjectStat, response: httpx.Response, action: str):
        super().__init__(stat)
        self._response = response
        self._action = action

    async def iter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes(chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise transfer_error_from_exception(e, self._action)


class StorageClient(ObjectStore):
    """ObjectStore backed by a live project's storage API."""

    def __init__(
        self,
        endpoint: ProjectEndpoint,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__()
        service_key = endpoint.require_service_key()
        self.name = endpoint.project_ref
        self.base_url = f"{endpoint.api_url}/storage/v1"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {service_key}",
                "apikey": service_key,
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._buckets: Optional[Dict[str, BucketInfo]] = None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise transfer_error_from_exception(e, action)
        if response.status_code >= 400:
            raise transfer_error_from_response(response, action)
        return response

    async def list_buckets(self) -> List[BucketInfo]:
        response = await self._request("GET", "/bucket", "List buckets")
        buckets = [
            BucketInfo(name=item.get("name") or item["id"], public=bool(item.get("public", False)))
            for item in response.json()
        ]
        self._buckets = {b.name: b for b in buckets}
        return buckets

    async def ensure_bucket(self, bucket: BucketInfo) -> bool:
        if self._buckets is None:
            await self.list_buckets()
        if bucket.name in self._buckets:
            return False

        try:
            response = await self._client.post(
                "/bucket",
                json={"id": bucket.name, "name": bucket.name, "public": bucket.public},
            )
        except httpx.HTTPError as e:
            raise transfer_error_from_exception(e, f"Create bucket {bucket.name}")
        # a concurrent creator may have won the race
        if response.status_code >= 400 and effective_status(response) != 409:
            raise transfer_error_from_response(response, f"Create bucket {bucket.name}")

        self._buckets[bucket.name] = bucket
        self.logger.info(f"Created bucket {bucket.name} on {self.name}")
        return response.status_code < 400

    async def list_page(
        self,
        bucket: str,
        prefix: str,
        offset: int,
        limit: int
    ) -> Tuple[List[TransferObject], List[str]]:
        action = f"List {bucket}/{prefix}"
        try:
            response = await self._client.post(
                f"/object/list/{quote(bucket, safe='')}",
                json={
                    "prefix": prefix,
                    "limit": limit,
                    "offset": offset,
                    "sortBy": {"column": "name", "order": "asc"},
                },
            )
        except httpx.HTTPError as e:
            raise transfer_error_from_exception(e, action)
        if response.status_code >= 400:
            if effective_status(response) == 404:
                raise BucketNotFoundError(f"Bucket not found: {bucket}", status_code=404)
            raise transfer_error_from_response(response, action)

        objects: List[TransferObject] = []
        folders: List[str] = []
        for item in response.json():
            name = item.get("name")
            if not name:
                continue
            if item.get("id") is None:
                folders.append(f"{prefix}{name}/")
                continue
            metadata: Dict[str, Any] = item.get("metadata") or {}
            objects.append(TransferObject(
                bucket=bucket,
                key=f"{prefix}{name}",
                size=int(metadata.get("size") or metadata.get("contentLength") or 0),
                etag=normalize_etag(metadata.get("eTag")),
                content_type=metadata.get("mimetype"),
            ))
        return objects, folders

    async def stat(self, bucket: str, key: str) -> Optional[ObjectStat]:
        action = f"Stat {bucket}/{key}"
        try:
            response = await self._client.head(_object_path(bucket, key))
        except httpx.HTTPError as e:
            raise transfer_error_from_exception(e, action)
        # HEAD on a missing object answers 400 or 404 without a body
        if response.status_code in (400, 404):
            return None
        if response.status_code >= 400:
            raise transfer_error_from_response(response, action)
        return ObjectStat(
            size=int(response.headers.get("content-length", 0)),
            etag=normalize_etag(response.headers.get("etag")),
            content_type=response.headers.get("content-type"),
        )

    @asynccontextmanager
    async def open_read(self, bucket: str, key: str) -> AsyncIterator[ObjectReader]:
        action = f"Download {bucket}/{key}"
        request = self._client.build_request("GET", _object_path(bucket, key))
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise transfer_error_from_exception(e, action)
        try:
            if response.status_code >= 400:
                await response.aread()
                raise transfer_error_from_response(response, action)
            length = response.headers.get("content-length")
            stat = ObjectStat(
                size=int(length) if length is not None else -1,
                etag=normalize_etag(response.headers.get("etag")),
                content_type=response.headers.get("content-type"),
            )
            yield _ResponseReader(stat, response, action)
        finally:
            await response.aclose()

    async def write(
        self,
        bucket: str,
        key: str,
        data: Union[bytes, AsyncIterable[bytes]],
        size: int,
        content_type: Optional[str] = None,
        upsert: bool = True
    ) -> None:
        headers = {
            "Content-Type": content_type or "application/octet-stream",
            "x-upsert": "true" if upsert else "false",
        }
        if size >= 0:
            headers["Content-Length"] = str(size)
        await self._request(
            "POST",
            _object_path(bucket, key),
            f"Upload {bucket}/{key}",
            content=data,
            headers=headers,
        )
