import os
import shutil
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from drive_service.config import settings
from drive_service.limits import COPY_BUFFER_BYTES


@dataclass(frozen=True)
class StorageWriteResult:
    key: str
    size: int | None = None
    etag: str | None = None


class BlobStore:
    """Contract the upload pipeline needs from an object-storage backend."""

    name = "blob"

    def put(self, key: str, source: BinaryIO, content_type: str) -> StorageWriteResult:
        raise NotImplementedError

    def open_stream(self, key: str) -> Iterator[bytes]:
        raise NotImplementedError

    def signed_url(self, key: str, expires_in: int) -> str:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    def copy(self, source_key: str, dest_key: str) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    name = "local"

    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        target = (self.root / key).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"key escapes storage root: {key}")
        return target

    def put(self, key: str, source: BinaryIO, content_type: str) -> StorageWriteResult:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write beside the target and rename so readers never see a partial object.
        staging = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        try:
            with staging.open("wb") as out:
                shutil.copyfileobj(source, out, COPY_BUFFER_BYTES)
            os.replace(staging, target)
        except BaseException:
            staging.unlink(missing_ok=True)
            raise
        return StorageWriteResult(key=key, size=target.stat().st_size)

    def open_stream(self, key: str) -> Iterator[bytes]:
        path = self._path(key)
        if not path.is_file():
            raise FileNotFoundError(key)

        def _iter() -> Iterator[bytes]:
            with path.open("rb") as handle:
                while block := handle.read(COPY_BUFFER_BYTES):
                    yield block

        return _iter()

    def signed_url(self, key: str, expires_in: int) -> str:
        # Local files are served by whoever mounts the root; there is nothing to sign.
        return self._path(key).as_uri()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def delete_prefix(self, prefix: str) -> int:
        base = self._path(prefix)
        if not base.exists():
            return 0
        if base.is_file():
            base.unlink()
            return 1
        deleted = 0
        for path in base.rglob("*"):
            if path.is_file():
                path.unlink()
                deleted += 1
        shutil.rmtree(base, ignore_errors=True)
        return deleted

    def copy(self, source_key: str, dest_key: str) -> None:
        source = self._path(source_key)
        if not source.is_file():
            raise FileNotFoundError(source_key)
        with source.open("rb") as handle:
            self.put(dest_key, handle, "application/octet-stream")

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


class S3BlobStore(BlobStore):
    name = "s3"

    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        force_path_style: bool = False,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        if force_path_style:
            from botocore.config import Config

            client_kwargs["config"] = Config(s3={"addressing_style": "path"})
        self.client = boto3.client("s3", **client_kwargs)

    def put(self, key: str, source: BinaryIO, content_type: str) -> StorageWriteResult:
        # upload_fileobj switches to a managed multipart transfer for large bodies.
        self.client.upload_fileobj(source, self.bucket, key, ExtraArgs={"ContentType": content_type})
        return StorageWriteResult(key=key)

    def open_stream(self, key: str) -> Iterator[bytes]:
        body = self.client.get_object(Bucket=self.bucket, Key=key)["Body"]
        return body.iter_chunks(chunk_size=COPY_BUFFER_BYTES)

    def signed_url(self, key: str, expires_in: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def delete_prefix(self, prefix: str) -> int:
        if not prefix.endswith("/"):
            prefix = f"{prefix}/"
        deleted = 0
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            keys = [{"Key": item["Key"]} for item in response.get("Contents", []) if item.get("Key")]
            if keys:
                # list_objects_v2 pages hold at most 1000 keys, the delete_objects ceiling.
                self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": keys, "Quiet": True})
                deleted += len(keys)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return deleted

    def copy(self, source_key: str, dest_key: str) -> None:
        self.client.copy_object(
            Bucket=self.bucket,
            Key=dest_key,
            CopySource={"Bucket": self.bucket, "Key": source_key},
        )

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except Exception as exc:
            code = str(getattr(exc, "response", {}).get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True


def build_blob_store() -> BlobStore | None:
    """Return the configured backend, or None when no backend is active."""
    backend = settings.storage_backend.lower().strip()
    if backend in ("", "none"):
        return None
    if backend == "local":
        return LocalBlobStore(settings.storage_root)
    if backend == "s3":
        if not settings.s3_bucket:
            return None
        return S3BlobStore(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url or None,
            access_key_id=settings.s3_access_key_id or None,
            secret_access_key=settings.s3_secret_access_key or None,
            force_path_style=settings.s3_force_path_style,
        )
    if backend == "r2":
        if not settings.r2_bucket:
            return None
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"
        return S3BlobStore(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
