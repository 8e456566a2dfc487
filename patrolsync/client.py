"""
HTTP client for the remote sync API.

Every failure mode of a delivery (connection error, timeout, non-2xx
response) surfaces as `SyncDeliveryError`, so callers only have to decide
between "delivered" and "not delivered".
"""

import asyncio
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import httpx
import structlog
from pydantic import ValidationError

from patrolsync.errors import ShiftNotFoundError, SyncDeliveryError
from patrolsync.models import RemoteShift, SyncItemType, SyncQueueItem
from patrolsync.pair_code import normalize_pair_code

logger = structlog.get_logger(__name__)

SYNC_TIMEOUT = 15.0
INLINE_TIMEOUT = 3.0

ENDPOINTS: dict[SyncItemType, str] = {
    SyncItemType.SHIFT_START: "/api/sync/shift",
    SyncItemType.LOCATION: "/api/sync/location",
    SyncItemType.PHOTO: "/api/sync/photo",
    SyncItemType.NOTE: "/api/sync/note",
    SyncItemType.SHIFT_END: "/api/sync/shift-end",
}

UPLOAD_URL_PATH = "/api/upload-url"
PHOTO_METADATA_PATH = "/api/sync/photo-metadata"


def local_photo_path(uri: str) -> Path | None:
    """Return the file behind a photo uri, or None for remote/data uris."""
    if uri.startswith("file://"):
        return Path(unquote(urlparse(uri).path))
    if "://" in uri or uri.startswith("data:"):
        return None
    return Path(uri)


class SyncApiClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = SYNC_TIMEOUT,
    ) -> None:
        if http_client is None:
            if base_url is None:
                raise ValueError("base_url or http_client is required")
            http_client = httpx.AsyncClient(base_url=base_url.rstrip("/"))
        self.http = http_client
        self.timeout = timeout

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        timeout: float | None,
        **kwargs: Any,
    ) -> httpx.Response:
        timeout = self.timeout if timeout is None else timeout
        try:
            response = await self.http.request(
                method, url, timeout=timeout, **kwargs
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning(
                "sync_api.timeout", method=method, url=url, timeout=timeout
            )
            raise SyncDeliveryError(
                f"{method} {url} timed out after {timeout}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning(
                "sync_api.bad_status",
                method=method,
                url=url,
                status=status,
                body=exc.response.text[:200],
            )
            raise SyncDeliveryError(
                f"{method} {url} returned HTTP {status}", status_code=status
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "sync_api.network_error", method=method, url=url, error=str(exc)
            )
            raise SyncDeliveryError(f"{method} {url} failed: {exc}") from exc
        return response

    async def _post(
        self,
        path: str,
        body: dict[str, Any],
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return await self._request(
            "POST", path, json=body, headers=headers, timeout=timeout
        )

    async def post_json(
        self,
        path: str,
        body: dict[str, Any],
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        response = await self._post(
            path, body, idempotency_key=idempotency_key, timeout=timeout
        )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise SyncDeliveryError(
                f"POST {path} returned a non-JSON body",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise SyncDeliveryError(
                f"POST {path} returned {type(data).__name__}, expected an object",
                status_code=response.status_code,
            )
        return data

    async def deliver(
        self, item: SyncQueueItem, *, timeout: float | None = None
    ) -> str | None:
        """
        Send one queued item. A 2xx status is success whatever the body
        says. Returns the public url when a local photo was uploaded.
        """
        if item.type == SyncItemType.PHOTO:
            path = local_photo_path(item.payload.get("photoUri", ""))
            if path is not None:
                return await self.upload_photo_direct(item, path, timeout=timeout)

        await self._post(
            ENDPOINTS[item.type],
            item.payload,
            idempotency_key=item.id,
            timeout=timeout,
        )
        return None

    async def upload_photo_direct(
        self,
        item: SyncQueueItem,
        path: Path,
        *,
        timeout: float | None = None,
        content_type: str = "image/jpeg",
    ) -> str:
        """
        Upload the binary photo without base64 inflation: ask for an upload
        url, PUT the bytes there, then register the metadata. Returns the
        public url of the photo.
        """
        payload = item.payload
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise SyncDeliveryError(f"cannot read photo {path}: {exc}") from exc

        upload = await self.post_json(
            UPLOAD_URL_PATH,
            {
                "shiftId": payload.get("shiftId"),
                "pairCode": payload.get("pairCode"),
                "contentType": content_type,
            },
            timeout=timeout,
        )
        try:
            upload_url = str(upload["uploadUrl"])
            public_url = str(upload["publicUrl"])
        except KeyError as exc:
            raise SyncDeliveryError(
                f"{UPLOAD_URL_PATH} reply is missing {exc.args[0]}"
            ) from exc

        await self._request(
            "PUT",
            upload_url,
            content=data,
            headers={"Content-Type": content_type},
            timeout=timeout,
        )

        metadata = {k: v for k, v in payload.items() if k != "photoUri"}
        metadata["url"] = public_url
        await self._post(
            PHOTO_METADATA_PATH,
            metadata,
            idempotency_key=item.id,
            timeout=timeout,
        )
        logger.info(
            "sync_api.photo_uploaded",
            photo_id=payload.get("photoId"),
            url=public_url,
        )
        return public_url

    async def fetch_shift(
        self, pair_code: str, *, timeout: float | None = None
    ) -> RemoteShift:
        code = normalize_pair_code(pair_code)
        try:
            response = await self._request(
                "GET", f"/api/sync/shift/{code}", timeout=timeout
            )
        except SyncDeliveryError as exc:
            if exc.status_code == 404:
                raise ShiftNotFoundError(code) from exc
            raise
        try:
            return RemoteShift.model_validate_json(response.content)
        except ValidationError as exc:
            raise SyncDeliveryError(
                f"unreadable shift snapshot for {code}",
                status_code=response.status_code,
            ) from exc
