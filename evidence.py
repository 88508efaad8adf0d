# File storage for recycler documents and inspection photos
# (local disk; swap for object storage in production).
import hashlib
import io
import os
import uuid
from typing import Iterable, List, Optional

import imagehash
from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError

from database import now_utc
from pickup_workflow import ValidationFailed

STORAGE_DIR = os.getenv("STORAGE_DIR", "/tmp/uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
MAX_FILES_PER_UPLOAD = 5

IMAGE_TYPES = {"image/jpeg", "image/png"}
DOCUMENT_TYPES = IMAGE_TYPES | {"application/pdf"}


def read_upload(file: UploadFile, allowed_types: Iterable[str]) -> bytes:
    if file.content_type not in allowed_types:
        raise ValidationFailed(f"Invalid file type for {file.filename}. Only JPEG, PNG and PDF files are allowed")
    contents = file.file.read()
    if len(contents) > MAX_UPLOAD_BYTES:
        raise ValidationFailed(f"File too large. Maximum size is {MAX_UPLOAD_BYTES // (1024 * 1024)}MB.")
    if not contents:
        raise ValidationFailed(f"{file.filename} is empty")
    return contents


def check_upload_count(files: List[UploadFile]) -> None:
    if not files:
        raise ValidationFailed("No files uploaded")
    if len(files) > MAX_FILES_PER_UPLOAD:
        raise ValidationFailed(f"At most {MAX_FILES_PER_UPLOAD} files can be uploaded at once")


def save_locally(contents: bytes, filename: Optional[str], folder: str) -> str:
    directory = os.path.join(STORAGE_DIR, folder)
    os.makedirs(directory, exist_ok=True)
    safe_name = os.path.basename(filename or "upload")
    path = os.path.join(directory, f"{uuid.uuid4().hex}-{safe_name}")
    with open(path, "wb") as f:
        f.write(contents)
    return path


def open_image(contents: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(contents))
        image.load()
    except (UnidentifiedImageError, OSError):
        raise ValidationFailed("Uploaded file is not a readable image")
    return image


def image_perceptual_hash(image: Image.Image) -> str:
    return str(imagehash.phash(image))


def build_evidence(file: UploadFile, folder: str) -> dict:
    """Store one inspection photo and describe it for the inspection record."""
    contents = read_upload(file, IMAGE_TYPES)
    image = open_image(contents)
    return {
        "path": save_locally(contents, file.filename, folder),
        "phash": image_perceptual_hash(image),
        "sha256": hashlib.sha256(contents).hexdigest(),
        "width": image.width,
        "height": image.height,
        "uploaded_at": now_utc(),
        "duplicate_of": None,
    }


def store_document(file: UploadFile, folder: str) -> dict:
    contents = read_upload(file, DOCUMENT_TYPES)
    if file.content_type in IMAGE_TYPES:
        open_image(contents)
    return {
        "document_type": file.content_type,
        "document_url": save_locally(contents, file.filename, folder),
        "uploaded_at": now_utc(),
        "status": "pending",
    }
