"""Storage of user uploads (payment proofs, damage photos) under UPLOAD_DIR."""

import uuid
from pathlib import Path
from typing import List, Tuple

from fastapi import UploadFile

from bookhive import config
from bookhive.errors import ValidationError


def _is_image(content_type: str) -> bool:
    return content_type.startswith("image/")


def _is_image_or_pdf(content_type: str) -> bool:
    return _is_image(content_type) or content_type == "application/pdf"


async def read_uploads(uploads: List[UploadFile], allow_pdf: bool = True) -> List[Tuple[str, str, bytes]]:
    """
    Check and read every upload before anything is written.

    Returns:
        (filename, content type, bytes) per upload

    Raises:
        ValidationError: too many files, wrong type, empty or too large
    """
    if len(uploads) > config.MAX_PROOFS_PER_UPLOAD:
        raise ValidationError(
            f"You can upload at most {config.MAX_PROOFS_PER_UPLOAD} files at a time."
        )

    accepted = _is_image_or_pdf if allow_pdf else _is_image
    files = []
    for upload in uploads:
        name = upload.filename or "file"
        content_type = (upload.content_type or "").lower()
        if not accepted(content_type):
            kind = "an image or PDF receipt" if allow_pdf else "an image"
            raise ValidationError(f"'{name}' is not {kind}.")
        data = await upload.read()
        if not data:
            raise ValidationError(f"'{name}' is empty.")
        if len(data) > config.MAX_PROOF_BYTES:
            raise ValidationError(f"'{name}' is larger than {config.MAX_PROOF_BYTES} bytes.")
        files.append((name, content_type, data))
    return files


def write_upload(subdir: str, prefix, name: str, data: bytes) -> Tuple[str, Path]:
    """Write one file and return its public URL and its path on disk."""
    directory = Path(config.UPLOAD_DIR) / subdir
    directory.mkdir(parents=True, exist_ok=True)
    stored_name = f"{prefix}-{uuid.uuid4().hex}{Path(name).suffix.lower()[:10]}"
    path = directory / stored_name
    path.write_bytes(data)
    return f"/uploads/{subdir}/{stored_name}", path


def path_for_url(url: str) -> Path:
    relative = url[len("/uploads/"):] if url.startswith("/uploads/") else url
    return Path(config.UPLOAD_DIR) / relative


def remove_files(paths):
    for path in paths:
        Path(path).unlink(missing_ok=True)
