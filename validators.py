"""Upload allow-lists, per-category ceilings and slug derivation."""
import re
from typing import Iterable, List, Optional, Sequence

from fastapi import HTTPException
from starlette.datastructures import UploadFile

IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
VIDEO_TYPES = ("video/mp4", "video/webm", "video/mov", "video/quicktime")
DOCUMENT_TYPES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)

MAX_UPLOAD_BYTES = 100 * 1024 * 1024
MAX_EVENT_FILES = 10
EVENT_LIMITS = {"image": 5, "video": 3, "document": 2}
MAX_IMAGES = 10


def mimetype_of(upload: UploadFile) -> str:
    return (upload.content_type or "").split(";")[0].strip().lower()


def file_category(mimetype: Optional[str]) -> Optional[str]:
    """Coarse category used for the event ceilings, or None when not allowed."""
    mimetype = (mimetype or "").lower()
    if mimetype in IMAGE_TYPES:
        return "image"
    if mimetype in VIDEO_TYPES:
        return "video"
    if mimetype in DOCUMENT_TYPES:
        return "document"
    return None


def check_size(files: Iterable[UploadFile]) -> None:
    for upload in files:
        if upload.size is not None and upload.size > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=400, detail=f"{upload.filename} exceeds the 100 MB limit")


def validate_event_files(files: Sequence[UploadFile], existing: Sequence[str] = (),
                         require: bool = True) -> None:
    """Check new uploads plus the mimetypes already attached to the event."""
    if require and not files:
        raise HTTPException(status_code=400, detail="At least one file is required")
    if len(files) + len(existing) > MAX_EVENT_FILES:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_EVENT_FILES} files allowed")
    check_size(files)

    counts = {"image": 0, "video": 0, "document": 0}
    for mimetype in existing:
        category = file_category(mimetype)
        if category:
            counts[category] += 1
    for upload in files:
        category = file_category(mimetype_of(upload))
        if category is None:
            raise HTTPException(status_code=400, detail=f"Unsupported file type: {upload.content_type}")
        counts[category] += 1

    for category, limit in EVENT_LIMITS.items():
        if counts[category] > limit:
            raise HTTPException(status_code=400, detail=f"Maximum {limit} {category}s allowed")


def validate_user_files(profile_pics: Sequence[UploadFile], additional: Sequence[UploadFile],
                        require_profile_pic: bool = True) -> None:
    if require_profile_pic and len(profile_pics) != 1:
        raise HTTPException(status_code=400, detail="Exactly one profile picture is required")
    if len(profile_pics) > 1:
        raise HTTPException(status_code=400, detail="Exactly one profile picture is required")
    if len(additional) > 1:
        raise HTTPException(status_code=400, detail="Only one additional file is allowed")
    check_size(list(profile_pics) + list(additional))
    if profile_pics and mimetype_of(profile_pics[0]) not in IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Profile picture must be an image")
    if additional and mimetype_of(additional[0]) not in IMAGE_TYPES + DOCUMENT_TYPES:
        raise HTTPException(status_code=400, detail="Additional file must be an image, PDF, or Word document")


def validate_images(files: Sequence[UploadFile], existing_count: int = 0, limit: int = MAX_IMAGES,
                    label: str = "carousel") -> None:
    if not files or len(files) > limit:
        raise HTTPException(status_code=400, detail=f"At least one image is required (max {limit})")
    for upload in files:
        if mimetype_of(upload) not in IMAGE_TYPES:
            raise HTTPException(status_code=400, detail="Only JPEG, PNG, GIF, or WebP images are allowed")
    check_size(files)
    if existing_count + len(files) > limit:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot exceed {limit} images per {label}. Current: {existing_count}, Adding: {len(files)}",
        )


def validate_image(upload: UploadFile, label: str = "Image") -> None:
    if mimetype_of(upload) not in IMAGE_TYPES:
        raise HTTPException(status_code=400, detail=f"{label} must be a JPEG, PNG, GIF, or WebP image")
    check_size([upload])


def slugify(name: str) -> str:
    """Lowercase, then drop whitespace and anything not a-z/0-9: Pokhara Branch!! -> pokharabranch."""
    slug = re.sub(r"\s+", "", (name or "").lower())
    return re.sub(r"[^a-z0-9]", "", slug)


def missing_fields(data: dict, required: List[str]) -> List[str]:
    return [field for field in required if not str(data.get(field) or "").strip()]
