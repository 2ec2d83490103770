"""
Image hosting on Cloudinary.

upload() returns the public URL plus the public_id needed to delete the
image later. Deletion goes through release(), which is best-effort: a
failure is logged and never raised, so the enclosing request still
succeeds and the remote image is left orphaned.
"""
import logging
import os
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, List, Optional

import cloudinary.uploader
from starlette.datastructures import UploadFile

from errors import UploadError

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024
ALLOWED_FORMATS = ["jpg", "png", "jpeg", "gif", "webp", "svg"]
# content subtype -> format name
_SUBTYPE_FORMATS = {"jpeg": "jpeg", "jpg": "jpg", "pjpeg": "jpeg", "png": "png", "gif": "gif", "webp": "webp", "svg+xml": "svg"}


@dataclass
class StoredImage:
    url: str
    public_id: str


def _file_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


def check_image(upload: UploadFile) -> None:
    content_type = (upload.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise UploadError("Only image files are allowed!", details=upload.filename)
    if _SUBTYPE_FORMATS.get(content_type.split("/", 1)[1]) not in ALLOWED_FORMATS:
        raise UploadError("Unsupported image format", details=f"allowed formats: {', '.join(ALLOWED_FORMATS)}")
    if _file_size(upload) > MAX_IMAGE_BYTES:
        raise UploadError("File too large", details=f"{upload.filename} exceeds {MAX_IMAGE_BYTES} bytes")


def make_public_id(filename: Optional[str]) -> str:
    safe_name = re.sub(r"[^\w.-]", "", re.sub(r"\s+", "_", filename or "image"))
    stem = safe_name.split(".")[0] or "image"
    return f"{int(time.time() * 1000)}-{stem}"


class CloudinaryBlobStore:
    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str):
        self.folder = folder
        # passed on every call instead of cloudinary.config() so nothing global is mutated
        self._credentials = {"cloud_name": cloud_name, "api_key": api_key, "api_secret": api_secret}

    def upload(self, upload: UploadFile) -> StoredImage:
        upload.file.seek(0)
        result = cloudinary.uploader.upload(
            upload.file,
            folder=self.folder,
            public_id=make_public_id(upload.filename),
            allowed_formats=ALLOWED_FORMATS,
            resource_type="image",
            **self._credentials,
        )
        logger.info(f"Uploaded image {result['public_id']}")
        return StoredImage(url=result["secure_url"], public_id=result["public_id"])

    def destroy(self, public_id: str) -> None:
        result = cloudinary.uploader.destroy(public_id, resource_type="image", **self._credentials)
        if result.get("result") != "ok":
            logger.info(f"Cloudinary destroy of {public_id} returned {result.get('result')}")


def upload_all(blobs, uploads: Iterable[UploadFile]) -> List[StoredImage]:
    """Upload a batch; if one fails, the ones already stored are released."""
    stored: List[StoredImage] = []
    try:
        for upload in uploads:
            stored.append(blobs.upload(upload))
    except Exception:
        release(blobs, [s.public_id for s in stored])
        raise
    return stored


def release(blobs, public_ids: Iterable[Optional[str]]) -> None:
    """Delete blobs one by one; meant to run as a background task."""
    for public_id in public_ids:
        if not public_id:
            continue
        try:
            blobs.destroy(public_id)
        except Exception as e:
            logger.warning(f"Could not destroy Cloudinary asset {public_id}: {e}")


@contextmanager
def released_on_error(blobs, images: Iterable[StoredImage]):
    """Release freshly uploaded images if the block that records them fails."""
    try:
        yield
    except Exception:
        release(blobs, [image.public_id for image in images])
        raise
