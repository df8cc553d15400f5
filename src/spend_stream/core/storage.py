from __future__ import annotations

import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from spend_stream.core.config import Settings, settings
from spend_stream.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

_RETRYABLE_CODES = frozenset(
    {
        "RequestTimeout",
        "Throttling",
        "ThrottlingException",
        "SlowDown",
        "InternalError",
        "ServiceUnavailable",
    }
)
_BUCKET_EXISTS_CODES = frozenset({"BucketAlreadyOwnedByYou", "BucketAlreadyExists", "409"})
_BUCKET_MISSING_CODES = frozenset({"404", "NoSuchBucket", "NotFound"})


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int
    url: str


class ObjectStorage:
    backend = "abstract"

    def put(self, *, key: str, body: bytes, content_type: str) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def get(self, *, key: str) -> bytes:  # pragma: no cover
        raise NotImplementedError

    def delete(self, *, key: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def url_for(self, key: str) -> str:  # pragma: no cover
        raise NotImplementedError


def _public_url(base: str, key: str) -> str:
    return f"{base.rstrip('/')}/{quote(key)}"


class LocalObjectStorage(ObjectStorage):
    backend = "local"

    def __init__(self, root: Path, *, public_base_url: str | None = None):
        self._root = root
        self._public_base_url = public_base_url
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def url_for(self, key: str) -> str:
        if self._public_base_url:
            return _public_url(self._public_base_url, key)
        return (self._root / key).resolve().as_uri()

    def put(self, *, key: str, body: bytes, content_type: str) -> StoredObject:
        start = time.monotonic()
        path = self._root / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
        except OSError:
            log_exception(
                logger, "storage.put.failure", backend=self.backend, storage_key=key
            )
            raise
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            content_type=content_type,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body), url=self.url_for(key))

    def get(self, *, key: str) -> bytes:
        path = self._root / key
        if not path.exists():
            log_event(logger, "storage.get.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Object not found: {key}")
        return path.read_bytes()

    def delete(self, *, key: str) -> None:
        path = self._root / key
        if path.exists():
            path.unlink()


class S3ObjectStorage(ObjectStorage):
    """S3-compatible bucket storage.

    The bucket is provisioned by :meth:`ensure_bucket`, which ``build_storage``
    calls exactly once; a concurrent "already exists" answer counts as success.
    """

    backend = "s3"

    def __init__(self, cfg: Settings, *, client: Any | None = None):
        self._bucket = cfg.s3_bucket
        self._endpoint_url = cfg.s3_endpoint_url or None
        self._public_base_url = cfg.storage_public_base_url
        if client is None:
            region = cfg.s3_region
            if not region or region.lower() == "auto":
                region = "us-east-1"
            session = boto3.session.Session(
                aws_access_key_id=cfg.s3_access_key_id,
                aws_secret_access_key=cfg.s3_secret_access_key,
                region_name=region,
            )
            client = session.client(
                "s3",
                endpoint_url=self._endpoint_url,
                config=Config(
                    retries={"max_attempts": 3, "mode": "adaptive"},
                    connect_timeout=30,
                    read_timeout=60,
                ),
            )
        self._client = client

    @property
    def bucket(self) -> str:
        return self._bucket

    def ensure_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self._bucket)
            return
        except ClientError as e:
            if _error_code(e) not in _BUCKET_MISSING_CODES:
                raise
        try:
            self._client.create_bucket(Bucket=self._bucket)
        except ClientError as e:
            if _error_code(e) not in _BUCKET_EXISTS_CODES:
                raise
        log_event(logger, "storage.bucket.ready", backend=self.backend, bucket=self._bucket)

    def url_for(self, key: str) -> str:
        if self._public_base_url:
            return _public_url(self._public_base_url, key)
        if self._endpoint_url:
            return _public_url(f"{self._endpoint_url.rstrip('/')}/{self._bucket}", key)
        return f"https://{self._bucket}.s3.amazonaws.com/{quote(key)}"

    def _retry_delay_s(self, attempt: int) -> float:
        return min(3.0, 0.25 * (2 ** (attempt - 1)))

    def _should_retry(self, error: Exception) -> bool:
        if isinstance(error, ClientError):
            return _error_code(error) in _RETRYABLE_CODES
        return isinstance(error, BotoCoreError)

    def put(self, *, key: str, body: bytes, content_type: str) -> StoredObject:
        start = time.monotonic()
        max_attempts = 4
        for attempt in range(1, max_attempts + 1):
            try:
                self._client.put_object(
                    Bucket=self._bucket, Key=key, Body=body, ContentType=content_type
                )
                break
            except (ClientError, BotoCoreError) as e:
                if attempt < max_attempts and self._should_retry(e):
                    delay_s = self._retry_delay_s(attempt)
                    log_event(
                        logger,
                        "storage.put.retry",
                        backend=self.backend,
                        storage_key=key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                log_exception(
                    logger,
                    "storage.put.failure",
                    backend=self.backend,
                    storage_key=key,
                    attempt=attempt,
                )
                raise StorageError(f"Upload failed: {key}") from e
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            content_type=content_type,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body), url=self.url_for(key))

    def get(self, *, key: str) -> bytes:
        try:
            resp = self._client.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            log_exception(logger, "storage.get.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Object not found: {key}") from e
        return resp["Body"].read()

    def delete(self, *, key: str) -> None:
        self._client.delete_object(Bucket=self._bucket, Key=key)


def _error_code(error: ClientError) -> str | None:
    code = (error.response.get("Error") or {}).get("Code")
    if code:
        return str(code)
    status = (error.response.get("ResponseMetadata") or {}).get("HTTPStatusCode")
    return str(status) if status else None


def _local_root(cfg: Settings) -> Path:
    root = cfg.local_storage_path
    if not root.is_absolute():
        root = Path(os.getcwd()) / root
    return root


def build_storage(cfg: Settings = settings) -> ObjectStorage:
    """Construct the configured backend and make it ready for writes.

    Call once per process (API lifespan, worker init) and pass the result on.
    """
    if cfg.storage_backend == "s3":
        storage = S3ObjectStorage(cfg)
        storage.ensure_bucket()
        return storage
    return LocalObjectStorage(_local_root(cfg), public_base_url=cfg.storage_public_base_url)


def diagnose_storage(storage: ObjectStorage, *, write_test: bool = False) -> dict[str, Any]:
    """Connectivity check for the health endpoint; never includes credentials."""
    result: dict[str, Any] = {"ok": True, "backend": storage.backend}
    if isinstance(storage, S3ObjectStorage):
        result["bucket"] = storage.bucket
    elif isinstance(storage, LocalObjectStorage):
        result["root"] = str(storage.root)
    if not write_test:
        return result

    key = f"diagnostics/healthz/{uuid.uuid4()}.txt"
    body = b"ok"
    start = time.monotonic()
    try:
        storage.put(key=key, body=body, content_type="text/plain")
        out = storage.get(key=key)
        storage.delete(key=key)
    except (StorageError, OSError, ClientError, BotoCoreError) as e:
        result.update(ok=False, error_type=type(e).__name__, error=str(e))
        return result
    result["write_test"] = {"ok": out == body, "key": key, "duration_ms": monotonic_ms(start)}
    result["ok"] = out == body
    return result
