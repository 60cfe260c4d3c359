import abc
import asyncio
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable
from urllib.parse import quote, urlsplit

import httpx

from messenger.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingFile:
    """An uploaded file read into memory, before it reaches the media store."""

    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredMedia:
    key: str
    url: str
    mime_type: str
    size: int


def build_media_key(folder: str, mime_type: str) -> str:
    """Builds a unique object key such as ``messages/1700000000000-abc123.png``."""
    extension = mime_type.split("/")[1] if "/" in mime_type else "bin"
    extension = extension.split("+")[0] or "bin"
    return f"{folder}/{int(time.time() * 1000)}-{secrets.token_urlsafe(8)}.{extension}"


class MediaStore(abc.ABC):
    """Storage for binary attachments addressed by key."""

    @abc.abstractmethod
    async def upload(self, file: IncomingFile, folder: str) -> StoredMedia:
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def delete_many(self, keys: Iterable[str]) -> list[str]:
        """
        Best-effort removal of several objects.

        Failures are logged and never raised. Returns the keys that could not
        be removed.
        """
        failed = []
        for key in keys:
            if not key:
                continue
            try:
                await self.delete(key)
            except Exception as e:
                logger.warning(f"Failed to delete media object {key}: {e}")
                failed.append(key)
        return failed

    async def close(self) -> None:
        """Releases clients held by the store."""


class LocalMediaStore(MediaStore):
    """Keeps objects on the local filesystem under ``root``, served from ``base_url``."""

    def __init__(self, root: str | Path, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Media key escapes the storage root: {key}")
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def upload(self, file: IncomingFile, folder: str) -> StoredMedia:
        if not file.data or not file.content_type:
            raise ValueError("Invalid file data")

        key = build_media_key(folder, file.content_type)
        await asyncio.to_thread(self._write, self._path_for(key), file.data)
        logger.debug(f"Stored media object {key} ({file.size} bytes)")
        return StoredMedia(
            key=key,
            url=f"{self.base_url}/{key}",
            mime_type=file.content_type,
            size=file.size,
        )

    async def delete(self, key: str) -> None:
        if not key:
            return
        path = self._path_for(key)
        await asyncio.to_thread(path.unlink, True)


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def _quote(value: str, safe: str = "-_.~") -> str:
    return quote(value, safe=safe)


class S3MediaStore(MediaStore):
    """
    S3 compatible object storage (AWS S3, Cloudflare R2, MinIO).

    Requests are authenticated with SigV4 query-string presigned URLs and
    an unsigned payload, so no AWS SDK is needed. Without ``endpoint_url``
    the AWS virtual-hosted bucket URL is used; otherwise the bucket is
    addressed path-style under the endpoint.
    """

    algorithm = "AWS4-HMAC-SHA256"
    service = "s3"

    def __init__(
        self,
        bucket: str,
        region: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint_url: str | None = None,
        public_base_url: str | None = None,
        public_read: bool = False,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if not bucket or not access_key_id or not secret_access_key:
            raise RuntimeError("S3 configuration is missing; check the S3_* settings")
        self.bucket = bucket
        self.region = region
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        if endpoint_url:
            self.bucket_url = f"{endpoint_url.rstrip('/')}/{bucket}"
        else:
            self.bucket_url = f"https://{bucket}.s3.{region}.amazonaws.com"
        self.public_base_url = (public_base_url or self.bucket_url).rstrip("/")
        self.public_read = public_read
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30)
        return self._client

    def presigned_url(
        self,
        method: str,
        key: str,
        expires_seconds: int = 300,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        now = self._clock()
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        datestamp = now.strftime("%Y%m%d")
        object_url = urlsplit(f"{self.bucket_url}/{_quote(key, safe='/-_.~')}")
        credential_scope = f"{datestamp}/{self.region}/{self.service}/aws4_request"

        params = {
            "X-Amz-Algorithm": self.algorithm,
            "X-Amz-Credential": f"{self.access_key_id}/{credential_scope}",
            "X-Amz-Date": amz_date,
            "X-Amz-Expires": str(expires_seconds),
            "X-Amz-SignedHeaders": "host",
        }
        if extra_params:
            params.update(extra_params)
        canonical_query = "&".join(
            f"{_quote(name)}={_quote(value)}" for name, value in sorted(params.items())
        )
        canonical_request = "\n".join(
            [
                method.upper(),
                object_url.path,
                canonical_query,
                f"host:{object_url.netloc}\n",
                "host",
                "UNSIGNED-PAYLOAD",
            ]
        )
        string_to_sign = "\n".join(
            [
                self.algorithm,
                amz_date,
                credential_scope,
                hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
            ]
        )

        signing_key = _hmac(f"AWS4{self.secret_access_key}".encode("utf-8"), datestamp)
        for part in (self.region, self.service, "aws4_request"):
            signing_key = _hmac(signing_key, part)
        signature = hmac.new(
            signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()

        return (
            f"{object_url.scheme}://{object_url.netloc}{object_url.path}"
            f"?{canonical_query}&X-Amz-Signature={signature}"
        )

    async def upload(self, file: IncomingFile, folder: str) -> StoredMedia:
        if not file.data or not file.content_type:
            raise ValueError("Invalid file data")

        key = build_media_key(folder, file.content_type)
        extra_params = {"x-amz-acl": "public-read"} if self.public_read else None
        response = await self.client.put(
            self.presigned_url("PUT", key, extra_params=extra_params),
            content=file.data,
            headers={"Content-Type": file.content_type},
        )
        response.raise_for_status()
        logger.debug(f"Uploaded media object {key} to bucket {self.bucket}")
        return StoredMedia(
            key=key,
            url=f"{self.public_base_url}/{key}",
            mime_type=file.content_type,
            size=file.size,
        )

    async def delete(self, key: str) -> None:
        if not key:
            return
        response = await self.client.delete(self.presigned_url("DELETE", key))
        # Already gone counts as deleted
        if response.status_code != 404:
            response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def build_media_store(config: Settings) -> MediaStore:
    """Creates the media store selected by ``MEDIA_BACKEND``."""
    if config.MEDIA_BACKEND == "s3":
        return S3MediaStore(
            bucket=config.S3_BUCKET or "",
            region=config.S3_REGION,
            access_key_id=config.S3_ACCESS_KEY_ID or "",
            secret_access_key=(
                config.S3_SECRET_ACCESS_KEY.get_secret_value()
                if config.S3_SECRET_ACCESS_KEY
                else ""
            ),
            endpoint_url=config.S3_ENDPOINT_URL,
            public_base_url=config.S3_PUBLIC_BASE_URL,
            public_read=config.S3_PUBLIC_READ,
        )
    return LocalMediaStore(config.MEDIA_ROOT, config.MEDIA_BASE_URL)
