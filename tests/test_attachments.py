"""Tests for the attachment service (file name extraction, import, export, unlink)."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.crmsync.core.exceptions import TranscodeFailure
from src.crmsync.sync.attachments import AttachmentRepository, AttachmentService


@pytest.fixture
def upload_dir(tmp_path) -> Path:
    path = tmp_path / "upload"
    path.mkdir()
    return path


@pytest.fixture
def service(session_factory, tmp_path, upload_dir) -> AttachmentService:
    return AttachmentService(
        AttachmentRepository(session_factory),
        storage_dir=tmp_path / "storage",
        upload_dir=upload_dir,
    )


class TestFilenameFromReference:
    def test_image_url_with_marker(self, service):
        url = "https://crm.example.org/civicrm/contact/imagefile?photo=jane%20doe.png&reset=1"
        assert service.filename_from_reference(url) == "jane doe.png"

    def test_plain_url(self, service):
        assert service.filename_from_reference("https://cdn.example.org/files/cv.pdf") == "cv.pdf"

    def test_bare_file_name(self, service):
        assert service.filename_from_reference("cv.pdf") == "cv.pdf"

    def test_directory_parts_are_dropped(self, service):
        url = "https://crm.example.org/civicrm/contact/imagefile?photo=..%2F..%2Fsecret.txt"
        assert service.filename_from_reference(url) == "secret.txt"
        assert service.filename_from_reference("photo=..%5Csecret.txt") == "secret.txt"

    def test_no_usable_name(self, service):
        assert service.filename_from_reference("imagefile?photo=..") == ""
        assert service.filename_from_reference("imagefile?photo=.&reset=1") == ""
        assert service.filename_from_reference("https://cdn.example.org/") == ""


class TestImportConfinement:
    async def test_reference_cannot_leave_upload_dir(self, service, upload_dir, tmp_path):
        (tmp_path / "secret.txt").write_text("TOP SECRET", encoding="utf-8")
        reference = "https://crm.example.org/civicrm/contact/imagefile?photo=..%2Fsecret.txt"

        with pytest.raises(TranscodeFailure, match="file not found"):
            await service.import_reference(reference)

        assert not (tmp_path / "storage").exists()

    async def test_dot_dot_reference_fails(self, service):
        with pytest.raises(TranscodeFailure, match="file not found"):
            await service.import_reference("imagefile?photo=..")


class TestImportExport:
    async def test_import_records_metadata(self, service, upload_dir, session_factory):
        (upload_dir / "cv.pdf").write_bytes(b"%PDF")

        attachment_id = await service.import_reference("cv.pdf")

        model = await AttachmentRepository(session_factory).get(attachment_id)
        assert model.mime_type == "application/pdf"
        assert model.source_url == "cv.pdf"
        assert Path(model.file_path).read_bytes() == b"%PDF"

    async def test_empty_reference(self, service):
        assert await service.import_reference("") is None

    async def test_import_name_clash_gets_unique_path(self, service, upload_dir, tmp_path):
        (upload_dir / "cv.pdf").write_bytes(b"one")
        first = await service.import_reference("cv.pdf")
        (upload_dir / "cv.pdf").write_bytes(b"two")

        second = await service.import_reference("cv.pdf", previous_id=None)

        assert first != second
        assert len(list((tmp_path / "storage").iterdir())) == 2

    async def test_export_replaces_previous_file(self, service, upload_dir, session_factory):
        (upload_dir / "a.png").write_bytes(b"a")
        (upload_dir / "b.png").write_bytes(b"b")
        first = await service.import_reference("a.png")
        second = await service.import_reference("b.png")
        exported_first = await service.export(first)

        exported_second = await service.export(second, previous_id=first)

        assert not Path(exported_first["name"]).exists()
        assert Path(exported_second["name"]).read_bytes() == b"b"
        model = await AttachmentRepository(session_factory).get(first)
        assert model.store_a_file is None

    async def test_export_unchanged_only_for_same_previous(self, service, upload_dir):
        (upload_dir / "a.png").write_bytes(b"a")
        attachment_id = await service.import_reference("a.png")
        first = await service.export(attachment_id)

        assert await service.export(attachment_id, previous_id=attachment_id) is None
        other_record = await service.export(attachment_id)

        assert other_record["name"] != first["name"]
        assert Path(first["name"]).exists()
        assert Path(other_record["name"]).read_bytes() == b"a"

    async def test_export_again_when_copy_was_removed(self, service, upload_dir):
        (upload_dir / "a.png").write_bytes(b"a")
        attachment_id = await service.import_reference("a.png")
        first = await service.export(attachment_id)
        Path(first["name"]).unlink()

        again = await service.export(attachment_id, previous_id=attachment_id)

        assert Path(again["name"]).read_bytes() == b"a"

    async def test_export_missing_local_file(self, service, upload_dir, session_factory):
        (upload_dir / "a.png").write_bytes(b"a")
        attachment_id = await service.import_reference("a.png")
        model = await AttachmentRepository(session_factory).get(attachment_id)
        Path(model.file_path).unlink()

        with pytest.raises(TranscodeFailure, match="file not found"):
            await service.export(attachment_id)

    async def test_unlink(self, service, upload_dir):
        (upload_dir / "a.png").write_bytes(b"a")
        attachment_id = await service.import_reference("a.png")
        exported = await service.export(attachment_id)

        assert await service.unlink(attachment_id) is True
        assert not Path(exported["name"]).exists()
        assert await service.unlink(attachment_id) is False
