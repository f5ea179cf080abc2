"""
Shared fixtures: a fresh SQLite file per test, an in-memory image
store that records every call, and the four services bound to them.
"""

import os

# Cheap hashes for the test run; read when services is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import threading

import pytest

from database import Database
from errors import StorageFailure
from images import ImageStore, ImageUpload
from services import OrderService, ProductGroupService, ProductService, UserService

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PNG_DATA_URI = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR4nGNgYGD4DwABBAEAwS2OUAAAAABJRU5ErkJggg=="


def png(name: str = "front.png") -> ImageUpload:
    return ImageUpload(content=PNG_BYTES, filename=name)


class RecordingImageStore(ImageStore):
    """
    Keeps images in a dict. Uploads whose filename is listed in
    `fail_on` raise StorageFailure.
    """

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.stored = {}
        self.deleted = []
        self._lock = threading.Lock()
        self._counter = 0

    def store(self, content, hint):
        if hint in self.fail_on:
            raise StorageFailure(f"upload of {hint} refused")
        with self._lock:
            self._counter += 1
            reference = f"ref-{self._counter}-{hint}"
            self.stored[reference] = content
        return reference

    def delete(self, reference):
        with self._lock:
            self.deleted.append(reference)
            return self.stored.pop(reference, None) is not None

    def resolve_display_url(self, reference, **options):
        return f"https://img.test/{reference}?w={options.get('width')}&h={options.get('height')}"


# ── Database ─────────────────────────────────────────────────

@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'shop.db'}")
    db.init()
    yield db
    db.close()


# ── Images ───────────────────────────────────────────────────

@pytest.fixture
def images():
    return RecordingImageStore()


# ── Services ─────────────────────────────────────────────────

@pytest.fixture
def products(database, images):
    return ProductService(database, images)


@pytest.fixture
def orders(database):
    return OrderService(database)


@pytest.fixture
def groups(database):
    return ProductGroupService(database)


@pytest.fixture
def users(database):
    return UserService(database)
