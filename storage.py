"""
File storage adapter.

Two interchangeable backends share one contract:

    store(upload, context)                     -> StoredFile(url, publicId, mimetype, resourceType)
    delete(reference, mimetype, resource_type) -> True if removed, False if it was already gone

Files land in "<context>/<Images|Videos|Documents|Others>". A missing object
is never an error on delete. Any other failure raises StorageError.
"""
import hashlib
import logging
import re
import secrets
import shutil
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import quote, unquote, urlparse

import requests
from pydantic import BaseModel
from starlette.datastructures import UploadFile

from config import Settings, settings
from database import new_id

logger = logging.getLogger(__name__)

CLOUDINARY_API = "https://api.cloudinary.com/v1_1"


class StorageError(Exception):
    pass


FileRef = Tuple[Optional[str], Optional[str], Optional[str]]


class StoredFile(BaseModel):
    url: str
    publicId: str
    mimetype: str
    # Cloudinary resource type reported at upload; None for local files
    resourceType: Optional[str] = None

    @property
    def ref(self) -> FileRef:
        return self.publicId, self.mimetype, self.resourceType

    def as_attachment(self, **extra: Any) -> Dict[str, Any]:
        doc = {"id": new_id(), "url": self.url, "mimetype": self.mimetype, "publicId": self.publicId}
        if self.resourceType:
            doc["resourceType"] = self.resourceType
        doc.update(extra)
        return doc


def attachment_ref(item: Dict[str, Any]) -> FileRef:
    return item.get("publicId") or item.get("url"), item.get("mimetype"), item.get("resourceType")


def subfolder_for(mimetype: Optional[str]) -> str:
    if not mimetype:
        return "Others"
    if mimetype.startswith("image/"):
        return "Images"
    if mimetype.startswith("video/"):
        return "Videos"
    if mimetype == "application/pdf" or "word" in mimetype:
        return "Documents"
    return "Others"


def _clean_context(context: Optional[str]) -> List[str]:
    parts = re.split(r"[\\/]", context or "General")
    return [p.strip() for p in parts if p.strip() and p.strip() not in (".", "..")] or ["General"]


def folder_for(context: Optional[str], mimetype: Optional[str]) -> str:
    return "/".join(_clean_context(context) + [subfolder_for(mimetype)])


class LocalStorage:
    """Keeps files under `root`, served by the app at `mount_path`."""

    def __init__(self, root: Union[str, Path], base_url: str = "", mount_path: str = "/uploads"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = (base_url or "").rstrip("/")
        self.mount_path = "/" + mount_path.strip("/")

    def url_for(self, relative: str) -> str:
        return f"{self.base_url}{self.mount_path}/{quote(relative)}"

    def store(self, upload: UploadFile, context: str = "General") -> StoredFile:
        mimetype = upload.content_type or "application/octet-stream"
        folder = self.root.joinpath(*folder_for(context, mimetype).split("/"))
        suffix = Path(upload.filename or "").suffix.lower()
        name = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}{suffix}"
        destination = folder / name
        try:
            folder.mkdir(parents=True, exist_ok=True)
            upload.file.seek(0)
            with destination.open("wb") as out:
                shutil.copyfileobj(upload.file, out)
        except OSError as exc:
            raise StorageError(f"Could not save {upload.filename}: {exc}") from exc
        relative = destination.relative_to(self.root).as_posix()
        return StoredFile(url=self.url_for(relative), publicId=relative, mimetype=mimetype)

    def resolve(self, reference: Optional[str]) -> Optional[Path]:
        """Map a URL or storage id to a path, or None when it falls outside the uploads root."""
        if not reference or not reference.strip():
            return None
        cleaned = reference.strip()
        if self.base_url and cleaned.startswith(self.base_url):
            cleaned = cleaned[len(self.base_url):]
        if re.match(r"^https?://", cleaned, re.IGNORECASE):
            cleaned = urlparse(cleaned).path
        if cleaned.startswith("/"):
            # URL path form: must sit under the mount point
            prefix = self.mount_path + "/"
            if not cleaned.startswith(prefix):
                return None
            cleaned = cleaned[len(prefix):]
        cleaned = unquote(cleaned)
        candidate = (self.root / cleaned).resolve()
        if candidate == self.root or not candidate.is_relative_to(self.root):
            return None
        return candidate

    def delete(self, reference: Optional[str], mimetype: Optional[str] = None,
               resource_type: Optional[str] = None) -> bool:
        path = self.resolve(reference)
        if path is None:
            logger.warning("Refusing to delete %r: not inside the uploads folder", reference)
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            logger.info("File already gone: %s", path)
            return False
        except OSError as exc:
            raise StorageError(f"Could not delete {reference}: {exc}") from exc
        return True


def public_id_from_url(url: str) -> str:
    decoded = unquote(url)
    parts = decoded.split("/upload/", 1)
    if len(parts) < 2:
        raise StorageError(f"Not a Cloudinary delivery URL: {url}")
    path = re.sub(r"^v\d+/", "", parts[1])
    return re.sub(r"\.[^/.]+$", "", path)


def resource_type_for(mimetype: Optional[str]) -> str:
    mimetype = mimetype or ""
    if mimetype.startswith("video/"):
        return "video"
    if mimetype == "application/pdf" or "word" in mimetype:
        return "raw"
    return "image"


class CloudinaryStorage:
    """Cloudinary upload/destroy over its signed REST API."""

    def __init__(self, cloud_name: str, api_key: str, api_secret: str,
                 session: Optional[requests.Session] = None, timeout: int = 60):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.session = session or requests.Session()
        self.timeout = timeout

    def _signed(self, params: dict) -> dict:
        params = {k: v for k, v in params.items() if v not in (None, "")}
        params["timestamp"] = int(time.time())
        to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params))
        params["signature"] = hashlib.sha1((to_sign + self.api_secret).encode("utf-8")).hexdigest()
        params["api_key"] = self.api_key
        return params

    def _post(self, path: str, **kwargs) -> Tuple[int, dict]:
        try:
            resp = self.session.post(f"{CLOUDINARY_API}/{self.cloud_name}/{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise StorageError(f"Cloudinary request failed: {exc}") from exc
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return resp.status_code, body

    def store(self, upload: UploadFile, context: str = "General") -> StoredFile:
        mimetype = upload.content_type or "application/octet-stream"
        upload.file.seek(0)
        status, body = self._post(
            "auto/upload",
            data=self._signed({"folder": folder_for(context, mimetype)}),
            files={"file": (upload.filename or "upload", upload.file, mimetype)},
        )
        if status != 200 or not body.get("secure_url"):
            reason = (body.get("error") or {}).get("message") or f"HTTP {status}"
            raise StorageError(f"Cloudinary upload failed: {reason}")
        return StoredFile(url=body["secure_url"], publicId=body["public_id"], mimetype=mimetype,
                          resourceType=body.get("resource_type") or resource_type_for(mimetype))

    def delete(self, reference: Optional[str], mimetype: Optional[str] = None,
               resource_type: Optional[str] = None) -> bool:
        """Destroy under the resource type recorded at upload; older rows fall back to a mimetype guess."""
        if not reference:
            return False
        public_id = public_id_from_url(reference) if reference.startswith("http") else reference
        status, body = self._post(
            f"{resource_type or resource_type_for(mimetype)}/destroy",
            data=self._signed({"public_id": public_id, "invalidate": "true"}),
        )
        result = body.get("result")
        if result == "ok":
            return True
        if result == "not found":
            logger.warning("Cloudinary object already gone: %s", public_id)
            return False
        raise StorageError(f"Cloudinary deletion failed for {public_id}: {body or f'HTTP {status}'}")


Storage = Union[LocalStorage, CloudinaryStorage]


def build_storage(config: Settings) -> Storage:
    if config.storage_backend == "cloudinary":
        if not (config.cloudinary_cloud_name and config.cloudinary_api_key and config.cloudinary_api_secret):
            raise RuntimeError("STORAGE_BACKEND=cloudinary needs CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET")
        return CloudinaryStorage(config.cloudinary_cloud_name, config.cloudinary_api_key, config.cloudinary_api_secret)
    return LocalStorage(config.uploads_dir, base_url=config.base_url)


_storage: Optional[Storage] = None


def get_storage() -> Storage:
    global _storage
    if _storage is None:
        _storage = build_storage(settings)
    return _storage


def store_all(storage: Storage, uploads: Iterable[UploadFile], context: str) -> List[StoredFile]:
    """Store every upload or none of them: on failure the ones already stored are removed."""
    stored: List[StoredFile] = []
    try:
        for upload in uploads:
            stored.append(storage.store(upload, context))
    except StorageError:
        purge_files(storage, [item.ref for item in stored])
        raise
    return stored


def purge_files(storage: Storage, items: Iterable[tuple]) -> List[str]:
    """Delete every (reference, mimetype[, resource_type]) item, collecting failures instead of stopping at the first."""
    errors = []
    for reference, mimetype, *resource_type in items:
        if not reference:
            continue
        try:
            storage.delete(reference, mimetype, *resource_type)
        except StorageError as exc:
            logger.error("Failed to delete %s: %s", reference, exc)
            errors.append(f"Failed to delete {reference}: {exc}")
    return errors
