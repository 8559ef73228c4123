"""Attachment handling for image and file fields.

Store A keeps a file reference (an image URL or an uploaded file name);
Store B keeps an opaque local attachment id. AttachmentService bridges the
two:

- import_reference(): locate or create the local attachment for a Store A
  reference. The referenced file is copied into local storage, never moved,
  so the shared original stays untouched. Content hashes let an identical
  file be reused instead of imported twice.
- export(): copy a local attachment into Store A's upload directory and
  return the (path, mime type) pair Store A's API expects.
- unlink(): delete the Store A side file of an attachment.

Metadata lives in the attachments table via AttachmentRepository.
"""

from __future__ import annotations

import hashlib
import mimetypes
import shutil
import uuid
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from urllib.parse import unquote, urlparse

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.core.exceptions import TranscodeFailure
from src.crmsync.sync.models import AttachmentModel

logger = structlog.get_logger(__name__)


# ── Repository ──────────────────────────────────────────────────────────────


class AttachmentRepository:
    """Async persistence for attachment metadata.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, attachment_id: str) -> AttachmentModel | None:
        async for session in self._session_factory():
            return await session.get(AttachmentModel, int(attachment_id))
        return None

    async def find_by_hash(self, content_hash: str) -> AttachmentModel | None:
        async for session in self._session_factory():
            stmt = (
                select(AttachmentModel)
                .where(AttachmentModel.content_hash == content_hash)
                .order_by(AttachmentModel.id)
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
        return None

    async def create(
        self, file_path: str, content_hash: str, mime_type: str, source_url: str | None
    ) -> AttachmentModel:
        async for session in self._session_factory():
            model = AttachmentModel(
                file_path=file_path,
                content_hash=content_hash,
                mime_type=mime_type,
                source_url=source_url,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return model

    async def update(self, attachment_id: str, **values: str | None) -> AttachmentModel | None:
        async for session in self._session_factory():
            model = await session.get(AttachmentModel, int(attachment_id))
            if model is None:
                return None
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return model
        return None


# ── Service ─────────────────────────────────────────────────────────────────


class AttachmentService:
    """Moves attachment files between local storage and Store A's upload dir.

    Args:
        repository: Attachment metadata persistence.
        storage_dir: Local attachment storage (Store B side).
        upload_dir: Store A's custom file upload directory.
        url_marker: Marker preceding the file name in Store A image URLs.
    """

    def __init__(
        self,
        repository: AttachmentRepository,
        storage_dir: str | Path,
        upload_dir: str | Path,
        url_marker: str = "photo=",
    ) -> None:
        self._repository = repository
        self._storage_dir = Path(storage_dir)
        self._upload_dir = Path(upload_dir)
        self._url_marker = url_marker

    # ── Inbound (Store A -> Store B) ───────────────────────────────────────

    def filename_from_reference(self, reference: str) -> str:
        """Extract the file name from a Store A image URL or file reference.

        Only the final path component is kept, so a reference can never
        point outside Store A's upload directory. Returns "" when no usable
        name remains.
        """
        if self._url_marker and self._url_marker in reference:
            name = reference.split(self._url_marker, 1)[1].split("&", 1)[0]
        else:
            name = urlparse(reference).path
        name = Path(unquote(name).replace("\\", "/")).name
        if name in ("", ".", ".."):
            return ""
        return name

    async def import_reference(self, reference: str, previous_id: str | None = None) -> str | None:
        """Return the local attachment id for a Store A file reference.

        Keeps ``previous_id`` when it was imported from the same reference.
        Raises TranscodeFailure when the referenced file cannot be read.
        """
        if not reference:
            return None

        if previous_id:
            previous = await self._repository.get(previous_id)
            if previous is not None and previous.source_url == reference:
                return str(previous.id)

        filename = self.filename_from_reference(reference)
        source = self._upload_dir / filename
        if not filename or not source.is_file():
            raise TranscodeFailure(reference, f"file not found: {source}")

        try:
            content = source.read_bytes()
        except OSError as exc:
            raise TranscodeFailure(reference, f"unreadable file: {exc}") from exc
        digest = hashlib.sha256(content).hexdigest()

        existing = await self._repository.find_by_hash(digest)
        if existing is not None:
            logger.debug("attachments.reused", attachment_id=existing.id, reference=reference)
            await self._repository.update(str(existing.id), source_url=reference)
            return str(existing.id)

        self._storage_dir.mkdir(parents=True, exist_ok=True)
        target = self._unique_path(self._storage_dir, filename)
        shutil.copyfile(source, target)
        mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        model = await self._repository.create(str(target), digest, mime_type, reference)
        logger.info("attachments.imported", attachment_id=model.id, reference=reference)
        return str(model.id)

    # ── Outbound (Store B -> Store A) ──────────────────────────────────────

    async def export(self, attachment_id: str, previous_id: str | None = None) -> dict[str, str] | None:
        """Copy an attachment into Store A's upload directory.

        Returns ``{"name": path, "type": mime}``, or None when ``previous_id``
        (the value this record's field held before) is the same attachment
        and its exported copy is still in place. Another record setting the
        same attachment always gets its own copy. A previously linked,
        different attachment has its Store A file removed first.
        """
        model = await self._repository.get(attachment_id)
        if model is None:
            raise TranscodeFailure(str(attachment_id), "unknown attachment")

        if (
            previous_id is not None
            and str(previous_id) == str(attachment_id)
            and model.store_a_file
            and model.exported_from == model.file_path
            and Path(model.store_a_file).is_file()
        ):
            return None

        if previous_id and str(previous_id) != str(attachment_id):
            await self.unlink(previous_id)

        source = Path(model.file_path)
        if not source.is_file():
            raise TranscodeFailure(str(attachment_id), f"file not found: {source}")

        self._upload_dir.mkdir(parents=True, exist_ok=True)
        target = self._unique_path(self._upload_dir, source.name)
        shutil.copyfile(source, target)
        await self._repository.update(
            str(attachment_id), store_a_file=str(target), exported_from=model.file_path
        )
        logger.info("attachments.exported", attachment_id=attachment_id, path=str(target))
        return {"name": str(target), "type": model.mime_type}

    async def unlink(self, attachment_id: str) -> bool:
        """Delete the Store A side file of an attachment. Returns True if one existed."""
        model = await self._repository.get(attachment_id)
        if model is None or not model.store_a_file:
            return False
        path = Path(model.store_a_file)
        path.unlink(missing_ok=True)
        await self._repository.update(str(attachment_id), store_a_file=None, exported_from=None)
        logger.info("attachments.unlinked", attachment_id=attachment_id, path=str(path))
        return True

    @staticmethod
    def _unique_path(directory: Path, filename: str) -> Path:
        candidate = directory / filename
        if not candidate.exists():
            return candidate
        stem, suffix = Path(filename).stem, Path(filename).suffix
        return directory / f"{stem}_{uuid.uuid4().hex[:8]}{suffix}"
