"""Attachment storage on disk."""

import io

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from helpdesk.errors import AppError
from helpdesk.services import storage


def _upload(name, content, content_type):
    return UploadFile(file=io.BytesIO(content), filename=name, headers=Headers({"content-type": content_type}))


@pytest.mark.asyncio
async def test_store_and_delete(upload_dir):
    stored = await storage.store(_upload("../../etc/report.pdf", b"%PDF-1.4", "application/pdf"))
    assert stored.original_name == "report.pdf"
    assert stored.filename.endswith(".pdf")
    assert stored.size == 8
    assert (upload_dir / stored.filename).read_bytes() == b"%PDF-1.4"

    storage.delete(stored.filename)
    assert not (upload_dir / stored.filename).exists()
    storage.delete(stored.filename)


@pytest.mark.asyncio
async def test_oversize_file_is_rejected_and_removed(upload_dir):
    with pytest.raises(AppError) as exc_info:
        await storage.store(_upload("big.txt", b"x" * 2048, "text/plain"), max_bytes=1024)
    assert exc_info.value.status_code == 400
    assert list(upload_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_empty_file_is_rejected(upload_dir):
    with pytest.raises(AppError):
        await storage.store(_upload("empty.txt", b"", "text/plain"))


@pytest.mark.parametrize("name", ["../secret", "a/b.txt", "..", ""])
def test_path_for_refuses_traversal(name, upload_dir):
    with pytest.raises(AppError):
        storage.path_for(name)
