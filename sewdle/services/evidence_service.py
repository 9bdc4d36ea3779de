from __future__ import annotations

import logging
import secrets
import time
import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sewdle.models import DeliveryFile, FileCategory
from sewdle.services.errors import DeliveryNotFound
from sewdle.services.storage import BlobStorage, StorageError, UploadedFile

logger = logging.getLogger(__name__)

EVIDENCE_NOTE = 'Quality control evidence'


class EvidenceUploadError(RuntimeError):
    pass


def unique_object_name(prefix: str, upload: UploadedFile) -> str:
    return f'{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}.{upload.extension}'


def store_delivery_file(
    db: Session,
    *,
    delivery_id: uuid.UUID,
    upload: UploadedFile,
    storage: BlobStorage,
    path: str,
    category: FileCategory,
    notes: str | None = None,
    uploaded_by: str | None = None,
) -> DeliveryFile:
    storage.upload(path, upload.data, content_type=upload.content_type)
    row = DeliveryFile(
        delivery_id=delivery_id,
        file_name=upload.filename,
        file_url=storage.public_url(path),
        storage_path=path,
        file_type=upload.content_type,
        file_size=upload.size,
        uploaded_by=uploaded_by,
        notes=notes,
        file_category=category,
    )
    db.add(row)
    db.commit()
    return row


def upload_evidence_files(
    db: Session,
    *,
    delivery_id: uuid.UUID,
    files: list[UploadedFile],
    storage: BlobStorage,
    description: str | None = None,
    uploaded_by: str | None = None,
) -> list[str]:
    """Upload quality evidence photos and record one DeliveryFile per success.

    Raises EvidenceUploadError when files were given but none could be stored;
    a partial success only logs a warning and returns the stored URLs.
    """
    urls: list[str] = []
    failures: list[str] = []
    for upload in files:
        path = f'evidence/{unique_object_name(str(delivery_id), upload)}'
        try:
            row = store_delivery_file(
                db,
                delivery_id=delivery_id,
                upload=upload,
                storage=storage,
                path=path,
                category=FileCategory.EVIDENCE,
                notes=description or EVIDENCE_NOTE,
                uploaded_by=uploaded_by,
            )
        except (StorageError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning('Evidence upload failed for %s: %s', upload.filename, exc)
            failures.append(f'{upload.filename}: {exc}')
            continue
        urls.append(row.file_url)

    if files and not urls:
        raise EvidenceUploadError(f'No evidence file could be uploaded ({"; ".join(failures)})')
    if failures:
        logger.warning(
            'Uploaded %d of %d evidence files for delivery %s', len(urls), len(files), delivery_id
        )
    return urls


def list_delivery_files(db: Session, *, delivery_id: uuid.UUID) -> list[DeliveryFile]:
    return db.execute(
        select(DeliveryFile)
        .where(DeliveryFile.delivery_id == delivery_id)
        .order_by(DeliveryFile.created_at.desc())
    ).scalars().all()


def delete_delivery_file(db: Session, *, file_id: uuid.UUID, storage: BlobStorage) -> bool:
    row = db.get(DeliveryFile, file_id)
    if not row:
        raise DeliveryNotFound('File not found')
    if row.storage_path:
        try:
            storage.remove(row.storage_path)
        except StorageError as exc:
            logger.warning('Could not remove %s from storage: %s', row.storage_path, exc)
    db.delete(row)
    db.commit()
    return True
