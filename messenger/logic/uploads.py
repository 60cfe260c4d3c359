from typing import Iterable

from fastapi import UploadFile

from messenger.services.media_store import IncomingFile


async def read_upload(upload: UploadFile | None) -> IncomingFile | None:
    """Reads a multipart upload into memory; empty parts count as absent."""
    if upload is None or not upload.filename:
        return None
    data = await upload.read()
    await upload.close()
    return IncomingFile(
        filename=upload.filename,
        content_type=upload.content_type or "application/octet-stream",
        data=data,
    )


async def read_uploads(uploads: Iterable[UploadFile] | None) -> list[IncomingFile]:
    files = []
    for upload in uploads or []:
        incoming = await read_upload(upload)
        if incoming is not None:
            files.append(incoming)
    return files
