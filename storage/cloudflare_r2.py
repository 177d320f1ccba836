"""
Cloudflare R2 blob store backend (S3 API via boto3).

R2 uses static access keys: ``client_id`` is the access key id, the encrypted
``client_secret`` the secret access key, ``api_url`` the account endpoint and
``folder_id`` the bucket. There is no token to refresh. Object keys are
``{folder}/{name}`` and serve as the remote file id.

boto3 is synchronous, calls run in a worker thread.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from api.errors import (
    BackendRateLimited,
    BackendRequestFailed,
    RemoteFileNotFound,
    UnsupportedOperation,
)
from api.metrics import BACKEND_REQUEST_DURATION_SECONDS, BACKEND_REQUESTS_TOTAL
from api.models import TokenSet
from config import UPLOAD_SESSION_TTL_HOURS
from storage.base import BackendAdapter, RemoteFile, UploadTarget

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
RATE_LIMIT_CODES = {"429", "SlowDown", "TooManyRequests"}

# delete_objects accepts at most 1000 keys per call
DELETE_BATCH_SIZE = 1000


class CloudflareR2Adapter(BackendAdapter):
    def __init__(self, backend, *args, s3_client=None, **kwargs):
        super().__init__(backend, *args, **kwargs)
        self._s3 = s3_client

    @property
    def bucket(self) -> str:
        return self.backend.folder_id

    def _get_s3(self):
        if self._s3 is None:
            self.vault.decrypt(self.backend)
            self._s3 = boto3.client(
                "s3",
                endpoint_url=self.backend.api_url,
                aws_access_key_id=self.backend.client_id,
                aws_secret_access_key=self.backend.client_secret,
                config=Config(region_name="auto", signature_version="s3v4"),
            )
        return self._s3

    async def ensure_token(self) -> None:
        # Static keys, nothing to refresh
        self.vault.decrypt(self.backend)

    async def refresh_token(self, trigger: str = "expired") -> TokenSet:
        raise UnsupportedOperation("Cloudflare R2 uses static keys", kind=self.kind)

    async def _call(self, func: Callable[..., Any], *args, allow_not_found: bool = False, retry: bool = False, **kwargs):
        retries = self.retry_attempts if retry else 0
        attempt = 0
        while True:
            start_time = time.monotonic()
            try:
                result = await asyncio.to_thread(func, *args, **kwargs)
                BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="success").inc()
                return result
            except ClientError as e:
                error = e.response.get("Error", {})
                code = str(error.get("Code", ""))
                status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
                if code in NOT_FOUND_CODES or status == 404:
                    BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="not_found").inc()
                    if allow_not_found:
                        return None
                    raise RemoteFileNotFound(bucket=self.bucket) from e
                if code in RATE_LIMIT_CODES or status == 429:
                    BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="rate_limited").inc()
                    raise BackendRateLimited(backend_id=str(self.backend.id)) from e
                BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="failed").inc()
                if status is not None and status >= 500 and attempt < retries:
                    attempt += 1
                    logger.warning(f"R2 returned {status} ({code}), retrying in {self.retry_delay}s")
                    await asyncio.sleep(self.retry_delay)
                    continue
                logger.warning(f"R2 request failed for backend {self.backend.id}: {code} {error.get('Message', '')}")
                raise BackendRequestFailed(
                    f"Received {status} error from third party api",
                    upstream_status=status,
                    backend_id=str(self.backend.id),
                ) from e
            except BotoCoreError as e:
                BACKEND_REQUESTS_TOTAL.labels(kind=self.kind, result="error").inc()
                if attempt < retries:
                    attempt += 1
                    logger.warning(f"R2 request error ({e}), retrying in {self.retry_delay}s")
                    await asyncio.sleep(self.retry_delay)
                    continue
                raise BackendRequestFailed(f"Request to storage backend failed: {e}") from e
            finally:
                BACKEND_REQUEST_DURATION_SECONDS.labels(kind=self.kind).observe(time.monotonic() - start_time)

    @staticmethod
    def _key(name: str, folder: Optional[str]) -> str:
        return f"{folder}/{name}" if folder else name

    async def create_upload_session(self, filename: str, folder: str, size: int, mime_type: str) -> UploadTarget:
        await self.ensure_token()
        s3 = self._get_s3()
        url = await self._call(
            s3.generate_presigned_url,
            "put_object",
            Params={"Bucket": self.bucket, "Key": self._key(filename, folder), "ContentType": mime_type},
            ExpiresIn=UPLOAD_SESSION_TTL_HOURS * 3600,
        )
        return UploadTarget(upload_url=url, backend_id=self.backend.id)

    async def upload(self, local_path: Path, name: str, mime_type: str, folder: Optional[str] = None) -> RemoteFile:
        await self.ensure_token()
        s3 = self._get_s3()
        key = self._key(name, folder)
        await self._call(s3.upload_file, str(local_path), self.bucket, key, ExtraArgs={"ContentType": mime_type})
        size = local_path.stat().st_size
        return RemoteFile(remote_id=key, name=name, size=size, mime_type=mime_type)

    async def find_file(self, remote_id: str) -> RemoteFile:
        await self.ensure_token()
        s3 = self._get_s3()
        head = await self._call(s3.head_object, Bucket=self.bucket, Key=remote_id, allow_not_found=True, retry=True)
        if head is None:
            raise RemoteFileNotFound(remote_id=remote_id)
        return RemoteFile(
            remote_id=remote_id,
            name=remote_id.rsplit("/", 1)[-1],
            size=int(head.get("ContentLength", 0)),
            mime_type=head.get("ContentType"),
        )

    async def delete(self, remote_id: str) -> None:
        await self.ensure_token()
        s3 = self._get_s3()
        await self._call(s3.delete_object, Bucket=self.bucket, Key=remote_id, allow_not_found=True, retry=True)

    async def delete_folder(self, folder: str) -> None:
        await self.ensure_token()
        s3 = self._get_s3()
        keys: List[str] = []
        token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": f"{folder}/"}
            if token:
                params["ContinuationToken"] = token
            page = await self._call(s3.list_objects_v2, retry=True, **params)
            keys.extend(item["Key"] for item in page.get("Contents", []))
            if not page.get("IsTruncated"):
                break
            token = page.get("NextContinuationToken")

        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            await self._call(
                s3.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                retry=True,
            )
        logger.debug(f"Deleted {len(keys)} object(s) under {folder}/ from bucket {self.bucket}")
