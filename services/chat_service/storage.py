from minio import Minio
from minio.error import S3Error
from dataclasses import dataclass
from datetime import timedelta
from io import BytesIO
from typing import Iterator, Optional
from urllib.parse import quote
import logging
import httpx

from config import (
    MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET, MINIO_SECURE,
    PRESIGNED_URL_EXPIRY_SECONDS,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024
TEXT_CONTENT_TYPES = ("text/", "application/json", "application/xml", "application/javascript")


class ObjectNotFound(Exception):
    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


@dataclass
class ObjectInfo:
    size: Optional[int]
    content_type: str


@dataclass
class StoredObject:
    chunks: Iterator[bytes]
    content_type: str
    size: Optional[int]


class ObjectStore:
    """Bucket-scoped wrapper around the MinIO client."""

    def __init__(self, client: Minio, bucket: str, presign_expiry: int = PRESIGNED_URL_EXPIRY_SECONDS,
                 transport: Optional[httpx.BaseTransport] = None):
        self.client = client
        self.bucket = bucket
        self.presign_expiry = timedelta(seconds=presign_expiry)
        self.transport = transport
        self._bucket_checked = False

    def ensure_bucket(self):
        if self._bucket_checked:
            return
        try:
            if not self.client.bucket_exists(bucket_name=self.bucket):
                self.client.make_bucket(bucket_name=self.bucket)
                logger.info("Created bucket: %s", self.bucket)
            self._bucket_checked = True
        except S3Error as e:
            logger.error("Error ensuring bucket %s: %s", self.bucket, e)
            raise

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream",
            original_filename: Optional[str] = None) -> str:
        self.ensure_bucket()
        content_type = content_type or "application/octet-stream"
        if "charset" not in content_type and content_type.startswith(TEXT_CONTENT_TYPES):
            content_type = f"{content_type}; charset=utf-8"
        metadata = {}
        if original_filename:
            metadata["original-filename"] = quote(original_filename)
        try:
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=key,
                data=BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata=metadata or None,
            )
        except S3Error as e:
            logger.error("Error uploading %s: %s", key, e)
            raise
        logger.info("Uploaded %s (%d bytes)", key, len(data))
        return key

    def stat(self, key: str) -> ObjectInfo:
        stat = self.client.stat_object(bucket_name=self.bucket, object_name=key)
        return ObjectInfo(size=stat.size, content_type=stat.content_type or "application/octet-stream")

    def open_stream(self, key: str) -> Iterator[bytes]:
        response = self.client.get_object(bucket_name=self.bucket, object_name=key)

        def chunks():
            try:
                yield from response.stream(CHUNK_SIZE)
            finally:
                response.close()
                response.release_conn()

        return chunks()

    def presigned_url(self, key: str) -> str:
        return self.client.presigned_get_object(
            bucket_name=self.bucket, object_name=key, expires=self.presign_expiry
        )

    def _fetch_direct(self, key: str) -> StoredObject:
        info = self.stat(key)
        return StoredObject(chunks=self.open_stream(key), content_type=info.content_type, size=info.size)

    def _fetch_via_presigned_url(self, key: str) -> StoredObject:
        url = self.presigned_url(key)
        client = httpx.Client(timeout=30.0, transport=self.transport)
        try:
            response = client.send(client.build_request("GET", url), stream=True)
        except httpx.HTTPError:
            client.close()
            raise
        if response.status_code != 200:
            response.close()
            client.close()
            raise ObjectNotFound(key)

        def chunks():
            try:
                yield from response.iter_bytes(CHUNK_SIZE)
            finally:
                response.close()
                client.close()

        length = response.headers.get("content-length")
        return StoredObject(
            chunks=chunks(),
            content_type=response.headers.get("content-type", "application/octet-stream"),
            size=int(length) if length and length.isdigit() else None,
        )

    def fetch(self, key: str, context: str = "") -> StoredObject:
        """Stream an object, proxying through a presigned URL if the direct read fails."""
        try:
            return self._fetch_direct(key)
        except Exception as exc:
            logger.warning("Direct read of %s failed%s: %s; trying presigned URL", key, context, exc)
        try:
            return self._fetch_via_presigned_url(key)
        except Exception as exc:
            logger.error("Presigned read of %s failed%s: %s", key, context, exc)
            raise ObjectNotFound(key) from exc

    def remove(self, key: str):
        try:
            self.client.remove_object(bucket_name=self.bucket, object_name=key)
        except S3Error as e:
            if e.code != "NoSuchKey":
                logger.error("Error deleting %s: %s", key, e)
                raise


def create_object_store() -> ObjectStore:
    client = Minio(
        MINIO_ENDPOINT,
        access_key=MINIO_ACCESS_KEY,
        secret_key=MINIO_SECRET_KEY,
        secure=MINIO_SECURE,
    )
    return ObjectStore(client, MINIO_BUCKET)
