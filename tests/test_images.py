"""
Image validation, the two storage backends and ImageStaging.
"""

import os

import cloudinary.uploader
import pytest
from cloudinary.exceptions import Error as CloudinaryError

import config
from conftest import PNG_BYTES, PNG_DATA_URI, RecordingImageStore, png
from errors import StorageFailure, ValidationFailed
from images import (
    CloudinaryImageStore,
    ImageStaging,
    LocalImageStore,
    extract_public_id,
    validate_image,
)


# ── Validation ───────────────────────────────────────────────

class TestValidateImage:

    @pytest.mark.parametrize("name", ["a.jpg", "a.JPEG", "a.png", "a.gif", "a.webp"])
    def test_allowed_types(self, name):
        validate_image(PNG_BYTES, name)

    @pytest.mark.parametrize("name", ["a.pdf", "a.exe", "noext", ""])
    def test_rejected_types(self, name):
        with pytest.raises(ValidationFailed):
            validate_image(PNG_BYTES, name)

    def test_empty(self):
        with pytest.raises(ValidationFailed):
            validate_image(b"", "a.png")

    def test_too_large(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_IMAGE_BYTES", 10)
        with pytest.raises(ValidationFailed):
            validate_image(PNG_BYTES, "a.png")

    def test_data_uri(self):
        validate_image(PNG_DATA_URI, "a.png")
        with pytest.raises(ValidationFailed):
            validate_image("not a data uri", "a.png")


class TestExtractPublicId:

    @pytest.mark.parametrize("url, expected", [
        ("https://res.cloudinary.com/demo/image/upload/v1712345/products/p_1.jpg", "products/p_1"),
        ("https://res.cloudinary.com/demo/image/upload/c_fill,w_400/v1/products/p_2.png", "products/p_2"),
        ("https://res.cloudinary.com/demo/image/upload/sample.png", "sample"),
        ("1712345_abc.png", None),
        ("", None),
    ])
    def test_urls(self, url, expected):
        assert extract_public_id(url) == expected


# ── Local backend ────────────────────────────────────────────

class TestLocalImageStore:

    @pytest.fixture
    def store(self, tmp_path):
        return LocalImageStore(str(tmp_path / "uploads"), "http://shop.test/uploads/products/")

    def test_store_and_delete(self, store):
        reference = store.store(PNG_BYTES, "front.png")

        assert reference.endswith(".png")
        assert os.path.dirname(reference) == ""
        assert store.exists(reference)
        assert store.delete(reference) is True
        assert store.delete(reference) is False
        assert not store.exists(reference)

    def test_data_uri_is_decoded(self, store):
        reference = store.store(PNG_DATA_URI, "pixel.png")
        with open(os.path.join(store.directory, reference), "rb") as f:
            assert f.read().startswith(b"\x89PNG")

    def test_references_are_unique(self, store):
        assert store.store(PNG_BYTES, "a.png") != store.store(PNG_BYTES, "a.png")

    def test_display_url(self, store):
        assert store.resolve_display_url("1_abc.png") == "http://shop.test/uploads/products/1_abc.png"
        assert store.resolve_display_url("https://cdn.test/x.png") == "https://cdn.test/x.png"

    def test_delete_stays_inside_directory(self, store, tmp_path):
        outside = tmp_path / "keep.png"
        outside.write_bytes(PNG_BYTES)

        assert store.delete("../keep.png") is False
        assert outside.exists()


# ── Cloudinary backend ───────────────────────────────────────

class TestCloudinaryImageStore:

    @pytest.fixture
    def store(self):
        return CloudinaryImageStore("demo", "key", "secret", folder="products")

    def test_store_returns_secure_url(self, store, monkeypatch):
        calls = []

        def fake_upload(payload, **options):
            calls.append(options)
            return {"secure_url": f"https://res.cloudinary.com/demo/image/upload/v1/products/{options['public_id']}.png"}

        monkeypatch.setattr(cloudinary.uploader, "upload", fake_upload)

        url = store.store(PNG_BYTES, "front view.png")

        assert url.startswith("https://res.cloudinary.com/demo/")
        assert calls[0]["folder"] == "products"
        assert calls[0]["public_id"].startswith("product_front_view_")

    def test_upload_error_is_storage_failure(self, store, monkeypatch):
        def failing_upload(payload, **options):
            raise CloudinaryError("quota exceeded")

        monkeypatch.setattr(cloudinary.uploader, "upload", failing_upload)

        with pytest.raises(StorageFailure):
            store.store(PNG_BYTES, "a.png")

    def test_delete_uses_public_id(self, store, monkeypatch):
        destroyed = []

        def fake_destroy(public_id, **options):
            destroyed.append(public_id)
            return {"result": "ok" if len(destroyed) == 1 else "not found"}

        monkeypatch.setattr(cloudinary.uploader, "destroy", fake_destroy)
        url = "https://res.cloudinary.com/demo/image/upload/v171/products/p_1.jpg"

        assert store.delete(url) is True
        assert store.delete(url) is False
        assert destroyed == ["products/p_1", "products/p_1"]
        assert store.delete("not-a-cloudinary-reference") is False

    def test_display_url_is_transformed(self, store):
        url = store.resolve_display_url(
            "https://res.cloudinary.com/demo/image/upload/v171/products/p_1.jpg",
            width=200, height=100
        )
        assert "c_fill" in url
        assert "w_200" in url
        assert "h_100" in url
        assert url.endswith("products/p_1")


# ── Staging ──────────────────────────────────────────────────

class TestImageStaging:

    def test_finalize_deletes_only_released(self):
        store = RecordingImageStore()
        old = store.store(PNG_BYTES, "old.png")

        with ImageStaging(store) as staging:
            refs = staging.upload({"image_url": png("new.png")})
            staging.release(old)
            staging.release(None)

        assert store.deleted == [old]
        assert refs["image_url"] in store.stored

    def test_exception_compensates_uploads(self):
        store = RecordingImageStore()
        old = store.store(PNG_BYTES, "old.png")

        with pytest.raises(RuntimeError):
            with ImageStaging(store) as staging:
                refs = staging.upload({"image_url": png("a.png"), "image_url2": png("b.png")})
                staging.release(old)
                raise RuntimeError("commit failed")

        assert sorted(store.deleted) == sorted(refs.values())
        assert list(store.stored) == [old]

    def test_upload_keeps_slot_order(self):
        store = RecordingImageStore()
        with ImageStaging(store, workers=2) as staging:
            refs = staging.upload({"image_url3": png("c.png"), "image_url": png("a.png")})
        assert list(refs) == ["image_url3", "image_url"]

    def test_invalid_image_uploads_nothing(self):
        store = RecordingImageStore()
        with pytest.raises(ValidationFailed):
            with ImageStaging(store) as staging:
                staging.upload({"image_url": png("a.png"), "image_url2": png("b.txt")})
        assert store.stored == {}

    def test_unexpected_delete_error_is_logged_not_raised(self, caplog):
        class DroppedConnection(RecordingImageStore):
            def delete(self, reference):
                raise ConnectionError("connection reset")

        store = DroppedConnection()
        old = store.store(PNG_BYTES, "old.png")

        with ImageStaging(store) as staging:
            staging.release(old)

        with pytest.raises(RuntimeError, match="commit failed"):
            with ImageStaging(store) as staging:
                staging.upload({"image_url": png("a.png")})
                raise RuntimeError("commit failed")

        assert "release replaced image failed" in caplog.text
        assert "compensate upload failed" in caplog.text
