from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        _, _, ext = self.filename.rpartition('.')
        return ext.lower() if ext and ext != self.filename else 'bin'


class StorageError(RuntimeError):
    pass


class BlobStorage(Protocol):
    def upload(self, path: str, data: bytes, *, content_type: str) -> None: ...

    def public_url(self, path: str) -> str: ...

    def remove(self, path: str) -> None: ...


class LocalBlobStorage:
    """Filesystem-backed bucket; objects live under ``root/bucket/path``."""

    def __init__(self, root: str, *, bucket: str, public_base_url: str) -> None:
        self.base_dir = Path(root) / bucket
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip('/')

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path).resolve()
        if self.base_dir.resolve() not in target.parents:
            raise StorageError(f'Invalid storage path: {path}')
        return target

    def upload(self, path: str, data: bytes, *, content_type: str) -> None:
        target = self._resolve(path)
        if target.exists():
            raise StorageError(f'Object already exists: {path}')
        try:
            os.makedirs(target.parent, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f'Could not write {path}: {exc}') from exc
        logger.debug('Stored %d bytes at %s', len(data), target)

    def public_url(self, path: str) -> str:
        return f'{self.public_base_url}/{self.bucket}/{path}'

    def remove(self, path: str) -> None:
        target = self._resolve(path)
        if not target.exists():
            raise StorageError(f'Object not found: {path}')
        target.unlink()


class S3BlobStorage:
    def __init__(self, *, bucket: str, region: str) -> None:
        self.client = boto3.client('s3', region_name=region)
        self.bucket = bucket
        self.region = region

    def upload(self, path: str, data: bytes, *, content_type: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl='max-age=3600',
            )
        except ClientError as exc:
            raise StorageError(f'S3 upload failed for {path}: {exc}') from exc
        logger.info('Uploaded %s to s3://%s', path, self.bucket)

    def public_url(self, path: str) -> str:
        return f'https://{self.bucket}.s3.{self.region}.amazonaws.com/{path}'

    def remove(self, path: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            raise StorageError(f'S3 delete failed for {path}: {exc}') from exc
