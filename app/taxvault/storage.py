from __future__ import annotations

import os
import shutil
import stat
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO

from app.taxvault.errors import IOFailure

READ_ONLY = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH  # 0o444


class StorageError(IOFailure):
    pass


class Storage:
    """
    Write-once byte storage. Objects are never overwritten in place.
    """

    def put_stream(
        self,
        key: str,
        stream: BinaryIO,
        *,
        content_type: str | None = None,
        retain_until: datetime | None = None,
    ) -> int:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        """Raises FileNotFoundError when the object is gone."""
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        p = (self.root / safe_key).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Storage key escapes storage root: {key!r}")
        return p

    def put_stream(
        self,
        key: str,
        stream: BinaryIO,
        *,
        content_type: str | None = None,
        retain_until: datetime | None = None,
    ) -> int:
        p = self._path(key)
        part = p.with_name(p.name + ".part")
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            if p.exists():
                raise StorageError(f"Refusing to overwrite stored object {key!r}")
            with part.open("xb") as out:
                shutil.copyfileobj(stream, out)
                out.flush()
                os.fsync(out.fileno())
            os.replace(part, p)
            # Write-once at the filesystem level as well.
            os.chmod(p, READ_ONLY)
            _fsync_dir(p.parent)
            return p.stat().st_size
        except OSError as e:
            part.unlink(missing_ok=True)
            raise StorageError(f"Failed to store {key!r}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        try:
            return p.open("rb")
        except FileNotFoundError:
            raise
        except OSError as e:
            raise StorageError(f"Failed to open {key!r}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        p = self._path(key)
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {key!r}: {e}") from e


def _fsync_dir(path: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    object_lock: bool = False

    def _client(self):
        import boto3

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_stream(
        self,
        key: str,
        stream: BinaryIO,
        *,
        content_type: str | None = None,
        retain_until: datetime | None = None,
    ) -> int:
        from botocore.exceptions import BotoCoreError, ClientError

        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        if self.object_lock and retain_until is not None:
            # Bucket must have Object Lock enabled; COMPLIANCE mode cannot be shortened by anyone.
            extra["ObjectLockMode"] = "COMPLIANCE"
            extra["ObjectLockRetainUntilDate"] = retain_until
        start = stream.tell() if stream.seekable() else 0
        try:
            self._client().upload_fileobj(stream, self.bucket, key, ExtraArgs=extra or None)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to store {key!r}: {e}") from e
        return stream.tell() - start if stream.seekable() else 0

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(key) from e
            raise StorageError(f"Failed to open {key!r}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to open {key!r}: {e}") from e
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                return False
            raise StorageError(f"Failed to stat {key!r}: {e}") from e

    def delete(self, key: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client().delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete {key!r}: {e}") from e


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "eu-central-1").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            object_lock=bool(config.get("S3_OBJECT_LOCK")),
        )
    # default local
    root = Path(config.get("UPLOAD_DIR") or "./uploads")
    return LocalStorage(root=root)
