import hashlib
import io

import pytest
from starlette.datastructures import Headers, UploadFile

from storage import (
    CloudinaryStorage,
    LocalStorage,
    StorageError,
    attachment_ref,
    folder_for,
    public_id_from_url,
    purge_files,
    resource_type_for,
    store_all,
)


def upload(name="photo.png", content=b"data", mimetype="image/png"):
    return UploadFile(file=io.BytesIO(content), filename=name, headers=Headers({"content-type": mimetype}))


def test_folders_by_context_and_type():
    assert folder_for("Event Files", "image/png") == "Event Files/Images"
    assert folder_for("Event Files", "video/mp4") == "Event Files/Videos"
    assert folder_for("User Files", "application/pdf") == "User Files/Documents"
    assert folder_for("User Files", "application/msword") == "User Files/Documents"
    assert folder_for("../etc", "text/plain") == "etc/Others"
    assert folder_for(None, None) == "General/Others"


def test_local_store_and_delete(tmp_path):
    storage = LocalStorage(tmp_path, base_url="http://api.local")
    stored = storage.store(upload(content=b"hello"), "Gallery")

    assert stored.publicId.startswith("Gallery/Images/")
    assert stored.publicId.endswith(".png")
    assert stored.url == f"http://api.local/uploads/{stored.publicId}"
    assert (tmp_path / stored.publicId).read_bytes() == b"hello"

    assert storage.delete(stored.url) is True
    assert not (tmp_path / stored.publicId).exists()
    # already gone is not an error
    assert storage.delete(stored.publicId) is False


def test_local_resolve_stays_inside_root(tmp_path):
    storage = LocalStorage(tmp_path)
    assert storage.resolve("../../etc/passwd") is None
    assert storage.resolve("/static/app.js") is None
    assert storage.resolve("") is None
    assert storage.resolve("/uploads/Gallery%20Posts/Images/a.png") == tmp_path.resolve() / "Gallery Posts/Images/a.png"


class FlakyStorage(LocalStorage):
    def __init__(self, root, fail_on):
        super().__init__(root)
        self.calls = 0
        self.fail_on = fail_on

    def store(self, upload, context="General"):
        self.calls += 1
        if self.calls == self.fail_on:
            raise StorageError("disk full")
        return super().store(upload, context)


def test_store_all_rolls_back_on_failure(tmp_path):
    storage = FlakyStorage(tmp_path, fail_on=3)
    with pytest.raises(StorageError):
        store_all(storage, [upload("a.png"), upload("b.png"), upload("c.png")], "Gallery")
    assert list((tmp_path / "Gallery" / "Images").iterdir()) == []


class BrokenDeletes(LocalStorage):
    def delete(self, reference, mimetype=None, resource_type=None):
        if reference == "bad":
            raise StorageError("permission denied")
        return super().delete(reference, mimetype, resource_type)


def test_purge_files_collects_errors(tmp_path):
    storage = BrokenDeletes(tmp_path)
    kept = storage.store(upload(), "Gallery")
    errors = purge_files(storage, [("bad", None), (kept.publicId, "image/png"), (None, None)])
    assert len(errors) == 1
    assert "permission denied" in errors[0]
    assert not (tmp_path / kept.publicId).exists()


def test_cloudinary_public_id_and_resource_type():
    url = "https://res.cloudinary.com/demo/image/upload/v1700000000/Gallery/Images/abc.jpg"
    assert public_id_from_url(url) == "Gallery/Images/abc"
    assert resource_type_for("video/mp4") == "video"
    assert resource_type_for("application/pdf") == "raw"
    assert resource_type_for("image/png") == "image"
    with pytest.raises(StorageError):
        public_id_from_url("https://example.org/file.jpg")


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.responses.pop(0)


def test_cloudinary_signed_upload(monkeypatch):
    monkeypatch.setattr("storage.time.time", lambda: 1700000000)
    session = FakeSession(FakeResponse(200, {"secure_url": "https://cdn/x.png", "public_id": "Gallery/Images/x"}))
    storage = CloudinaryStorage("demo", "key", "secret", session=session)

    stored = storage.store(upload(), "Gallery")
    assert stored.url == "https://cdn/x.png"
    assert stored.publicId == "Gallery/Images/x"

    url, kwargs = session.calls[0]
    assert url == "https://api.cloudinary.com/v1_1/demo/auto/upload"
    data = kwargs["data"]
    expected = hashlib.sha1(b"folder=Gallery/Images&timestamp=1700000000secret").hexdigest()
    assert data["signature"] == expected
    assert data["api_key"] == "key"


def test_cloudinary_failures(monkeypatch):
    session = FakeSession(
        FakeResponse(400, {"error": {"message": "Invalid image file"}}),
        FakeResponse(200, {"result": "not found"}),
        FakeResponse(500, {}),
    )
    storage = CloudinaryStorage("demo", "key", "secret", session=session)

    with pytest.raises(StorageError, match="Invalid image file"):
        storage.store(upload(), "Gallery")
    assert storage.delete("Gallery/Images/x", "image/png") is False
    with pytest.raises(StorageError):
        storage.delete("https://res.cloudinary.com/demo/video/upload/v1/Event Files/Videos/clip.mp4", "video/mp4")
    assert session.calls[2][0].endswith("/video/destroy")
    assert session.calls[2][1]["data"]["public_id"] == "Event Files/Videos/clip"


def test_cloudinary_pdf_is_destroyed_under_its_upload_resource_type():
    session = FakeSession(
        FakeResponse(200, {"secure_url": "https://cdn/cv.pdf", "public_id": "User Files/Documents/cv",
                           "resource_type": "image"}),
        FakeResponse(200, {"result": "ok"}),
    )
    storage = CloudinaryStorage("demo", "key", "secret", session=session)

    stored = storage.store(upload("cv.pdf", b"%PDF-1.4", "application/pdf"), "User Files")
    attachment = stored.as_attachment()
    assert attachment["resourceType"] == "image"

    assert purge_files(storage, [attachment_ref(attachment)]) == []
    assert session.calls[1][0] == "https://api.cloudinary.com/v1_1/demo/image/destroy"


def test_cloudinary_rows_without_resource_type_fall_back_to_mimetype():
    session = FakeSession(FakeResponse(200, {"result": "ok"}))
    storage = CloudinaryStorage("demo", "key", "secret", session=session)

    legacy = {"id": "1", "url": "https://cdn/old.pdf", "mimetype": "application/pdf", "publicId": "old"}
    assert purge_files(storage, [attachment_ref(legacy)]) == []
    assert session.calls[0][0].endswith("/raw/destroy")


def test_local_files_carry_no_resource_type(tmp_path):
    stored = LocalStorage(tmp_path).store(upload(), "Gallery")
    assert stored.resourceType is None
    assert "resourceType" not in stored.as_attachment(alt="x")
    assert stored.as_attachment(alt="x")["alt"] == "x"
