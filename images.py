# ============================================================
# images.py - Image storage backends + staging
# ============================================================
# ImageStore is the only thing services know about storage:
#   store(content, hint)            -> stable reference
#   delete(reference)               -> True if something was removed
#   resolve_display_url(reference)  -> URL a browser can load
#
# Backends:
#   LocalImageStore       files under UPLOAD_DIR, reference = filename
#   CloudinaryImageStore  Cloudinary, reference = secure URL
#
# ImageStaging wraps one composite write: uploads happen first,
# replaced images are only deleted after the database commits,
# and uploads are deleted again if anything fails.
# ============================================================

import base64
import binascii
import io
import logging
import os
import re
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union

import cloudinary
import cloudinary.uploader
import cloudinary.utils
from cloudinary.exceptions import Error as CloudinaryError

import config
from errors import StorageFailure, ValidationFailed

logger = logging.getLogger(__name__)

DATA_URI_PATTERN = re.compile(r"^data:image/[\w.+-]+;base64,(?P<data>.+)$", re.DOTALL)
VERSION_SEGMENT = re.compile(r"^v\d+$")


@dataclass
class ImageUpload:
    """One image to store: raw bytes or a base64 data URI."""
    content: Union[bytes, str]
    filename: str = "image.jpg"


# ============================================================
# HELPER: validation
# ============================================================

def validate_image(content: Union[bytes, str], hint: str):
    """
    Reject anything that is not a jpeg/jpg/png/gif/webp image
    under MAX_IMAGE_BYTES.
    """
    ext = os.path.splitext(hint or "")[1].lower()
    if ext not in config.ALLOWED_IMAGE_EXTENSIONS:
        raise ValidationFailed(f"Only image files are allowed (got '{hint}')")

    if isinstance(content, str):
        if not DATA_URI_PATTERN.match(content):
            raise ValidationFailed("Image strings must be base64 data URIs")
        size = len(content) * 3 // 4
    else:
        size = len(content)

    if size == 0:
        raise ValidationFailed(f"Image '{hint}' is empty")
    if size > config.MAX_IMAGE_BYTES:
        raise ValidationFailed(f"Image '{hint}' exceeds {config.MAX_IMAGE_BYTES} bytes")


def decode_data_uri(content: str) -> bytes:
    match = DATA_URI_PATTERN.match(content)
    if not match:
        raise ValidationFailed("Image strings must be base64 data URIs")
    try:
        return base64.b64decode(match.group("data"), validate=True)
    except binascii.Error as e:
        raise ValidationFailed(f"Invalid base64 image data: {e}") from e


def extract_public_id(url: str) -> Optional[str]:
    """
    Public id of a Cloudinary delivery URL, e.g.
    https://res.cloudinary.com/demo/image/upload/v1712/products/p_1.jpg
    -> products/p_1. None for anything that is not a Cloudinary URL.
    """
    if not url or "/upload/" not in url:
        return None

    parts = url.split("/upload/", 1)[1].split("/")

    # Drop transformation segments and the version, if any
    for index, part in enumerate(parts):
        if VERSION_SEGMENT.match(part):
            parts = parts[index + 1:]
            break

    public_id = "/".join(parts)
    if not public_id:
        return None
    return os.path.splitext(public_id)[0]


# ============================================================
# INTERFACE
# ============================================================

class ImageStore(ABC):

    @abstractmethod
    def store(self, content: Union[bytes, str], hint: str) -> str:
        """Persist the image, return its stable reference."""

    @abstractmethod
    def delete(self, reference: str) -> bool:
        """Remove a stored image. False if it was already gone."""

    @abstractmethod
    def resolve_display_url(self, reference: str, **options) -> str:
        """URL for showing the image; options may carry width/height."""


# ============================================================
# BACKEND: local filesystem
# ============================================================

class LocalImageStore(ImageStore):

    def __init__(self, directory: str, base_url: str):
        self.directory = directory
        self.base_url = base_url.rstrip("/")

    def _path(self, reference: str) -> str:
        # References are bare filenames; never leave the upload dir
        return os.path.join(self.directory, os.path.basename(reference))

    def store(self, content: Union[bytes, str], hint: str) -> str:
        if isinstance(content, str):
            content = decode_data_uri(content)

        ext = os.path.splitext(hint)[1].lower() or ".jpg"
        filename = f"{int(time.time())}_{uuid.uuid4().hex[:12]}{ext}"

        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(self._path(filename), "wb") as buffer:
                buffer.write(content)
        except OSError as e:
            raise StorageFailure(f"Could not write image {filename}: {e}") from e

        logger.debug("Stored image %s (%d bytes)", filename, len(content))
        return filename

    def delete(self, reference: str) -> bool:
        try:
            os.remove(self._path(reference))
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"Could not delete image {reference}: {e}") from e
        return True

    def exists(self, reference: str) -> bool:
        return os.path.isfile(self._path(reference))

    def resolve_display_url(self, reference: str, **options) -> str:
        if reference.startswith(("http://", "https://")):
            return reference
        return f"{self.base_url}/{os.path.basename(reference)}"


# ============================================================
# BACKEND: Cloudinary
# ============================================================

class CloudinaryImageStore(ImageStore):

    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str = "products"):
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True
        )
        self.folder = folder

    def store(self, content: Union[bytes, str], hint: str) -> str:
        stem = re.sub(r"[^A-Za-z0-9_-]", "_", os.path.splitext(os.path.basename(hint))[0])
        public_id = f"product_{stem}_{int(time.time() * 1000)}"

        # Data URIs go to the SDK as-is, bytes as a file object
        payload = content if isinstance(content, str) else io.BytesIO(content)

        try:
            result = cloudinary.uploader.upload(
                payload,
                folder=self.folder,
                public_id=public_id,
                resource_type="image"
            )
        except CloudinaryError as e:
            raise StorageFailure(f"Failed to upload image: {e}") from e

        return result["secure_url"]

    def delete(self, reference: str) -> bool:
        public_id = extract_public_id(reference)
        if not public_id:
            return False

        try:
            result = cloudinary.uploader.destroy(public_id)
        except CloudinaryError as e:
            raise StorageFailure(f"Failed to delete image {public_id}: {e}") from e

        return result.get("result") == "ok"

    def resolve_display_url(self, reference: str, **options) -> str:
        public_id = extract_public_id(reference)
        if not public_id:
            return reference

        url, _ = cloudinary.utils.cloudinary_url(
            public_id,
            secure=True,
            transformation=[
                {
                    "width": options.get("width", config.DISPLAY_WIDTH),
                    "height": options.get("height", config.DISPLAY_HEIGHT),
                    "crop": "fill"
                },
                {"quality": "auto"},
                {"fetch_format": "auto"}
            ]
        )
        return url


def build_image_store() -> ImageStore:
    """Pick the backend named by IMAGE_BACKEND."""
    if config.IMAGE_BACKEND.lower() == "cloudinary":
        return CloudinaryImageStore(
            cloud_name=config.CLOUDINARY_CLOUD_NAME,
            api_key=config.CLOUDINARY_API_KEY,
            api_secret=config.CLOUDINARY_API_SECRET,
            folder=config.CLOUDINARY_FOLDER
        )
    return LocalImageStore(
        directory=config.UPLOAD_DIR,
        base_url=config.PUBLIC_BASE_URL + config.UPLOAD_URL_PATH
    )


# ============================================================
# STAGING: two-phase handling of external side effects
# ============================================================

class ImageStaging:
    """
    Usage:

        with ImageStaging(store) as staging:
            refs = staging.upload(images)      # before the transaction
            with database.transaction() as db:
                ...
                staging.release(old_reference)

    Clean exit deletes released references (finalize). An exception
    deletes everything uploaded through this staging (compensate).
    Both are attempted once per reference; failures are logged and
    never replace the exception already in flight.
    """

    def __init__(self, store: ImageStore, workers: int = None):
        self.store = store
        self.workers = workers or config.UPLOAD_WORKERS
        self.uploaded: List[str] = []
        self.released: List[str] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.finalize()
        else:
            self.compensate()
        return False

    def upload(self, images: Optional[Mapping[str, ImageUpload]]) -> Dict[str, str]:
        """
        Store every image concurrently. Returns slot → reference once
        all of them finished; raises StorageFailure if any failed.
        """
        if not images:
            return {}

        for upload in images.values():
            validate_image(upload.content, upload.filename)

        references, failures = {}, {}
        with ThreadPoolExecutor(max_workers=min(self.workers, len(images))) as pool:
            futures = {
                pool.submit(self.store.store, upload.content, upload.filename): slot
                for slot, upload in images.items()
            }
            for future in as_completed(futures):
                slot = futures[future]
                try:
                    reference = future.result()
                except Exception as e:
                    failures[slot] = e
                else:
                    references[slot] = reference
                    self.uploaded.append(reference)

        if failures:
            slot, error = sorted(failures.items())[0]
            logger.error("Upload failed for %s: %s", ", ".join(sorted(failures)), error)
            if isinstance(error, StorageFailure):
                raise error
            raise StorageFailure(f"Upload failed for {slot}: {error}") from error

        return {slot: references[slot] for slot in images}

    def release(self, reference: Optional[str]):
        """Delete `reference` from storage once the transaction commits."""
        if reference:
            self.released.append(reference)

    def finalize(self):
        for reference in self.released:
            self._delete(reference, "release replaced image")
        self.released = []
        self.uploaded = []

    def compensate(self):
        for reference in self.uploaded:
            self._delete(reference, "compensate upload")
        self.released = []
        self.uploaded = []

    def _delete(self, reference: str, action: str):
        try:
            if not self.store.delete(reference):
                logger.warning("%s: %s was already gone", action, reference)
        except StorageFailure as e:
            logger.error("%s failed for %s: %s", action, reference, e)
        except Exception:
            # Never replaces the error in flight or undoes a commit
            logger.exception("%s failed for %s", action, reference)
