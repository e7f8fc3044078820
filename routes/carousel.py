"""
Homepage and branch carousels.

A branch carousel is tied to a branch by slug. New carousels go to the end of
their (type, branch) group: last order + 1.
"""
import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pymongo.errors import PyMongoError

from database import COLL_BRANCHES, COLL_CAROUSELS, db, now_utc, object_id, serialize
from forms import read_form, sanitize_value
from responses import ApiError, api_response
from schemas import Carousel as CarouselSchema, CarouselUpdateBody
from security import require_admin
from storage import Storage, attachment_ref, get_storage, purge_files, store_all
from validators import validate_images

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/carousel", tags=["carousel"])

CONTEXT = "Carousel"
CAROUSEL_TYPES = ("home", "branch")


def find_carousel(carousel_id: str) -> Dict[str, Any]:
    carousel = db[COLL_CAROUSELS].find_one({"_id": object_id(carousel_id, "carousel")})
    if not carousel:
        raise ApiError(404, "Carousel not found")
    return carousel


def resolve_branch_slug(value: str) -> str:
    """Accept an active branch's slug or id and return the slug."""
    key = value.strip().lower()
    branch = db[COLL_BRANCHES].find_one({"slug": key, "isActive": True}, {"slug": 1})
    if not branch:
        try:
            branch = db[COLL_BRANCHES].find_one({"_id": ObjectId(key), "isActive": True}, {"slug": 1})
        except (InvalidId, TypeError):
            branch = None
    if not branch:
        raise ApiError(404, "Branch not found for carousel")
    return branch["slug"]


def next_order(carousel_type: str, branch: Optional[str]) -> int:
    query = {"type": carousel_type}
    if branch:
        query["branch"] = branch
    last = db[COLL_CAROUSELS].find_one(query, {"order": 1}, sort=[("order", -1)])
    return (last.get("order") or 0) + 1 if last else 1


def image_docs(stored, title):
    return [s.as_attachment(alt=f"{title} - Carousel Image") for s in stored]


@router.get("/get-all-carousels")
def get_all_carousels(type: Optional[str] = None, branch: Optional[str] = None):
    query: Dict[str, Any] = {"isActive": True}
    if type:
        query["type"] = type
    if branch:
        query["branch"] = branch.strip().lower()
    carousels = db[COLL_CAROUSELS].find(query).sort([("order", 1), ("createdAt", -1)])
    return api_response([serialize(c) for c in carousels], "Carousels fetched successfully")


@router.get("/get-carousel/{carousel_id}")
def get_carousel(carousel_id: str):
    return api_response(serialize(find_carousel(carousel_id)), "Carousel fetched successfully")


@router.post("/upload-carousel")
async def upload_carousel(request: Request, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    fields, files = await read_form(request)
    return await run_in_threadpool(create_carousel, fields, files, storage)


def create_carousel(fields, files, storage: Storage):
    title = sanitize_value(fields.get("title"))
    carousel_type = sanitize_value(fields.get("type")).lower()
    if not title or not carousel_type:
        raise ApiError(400, "Title and type are required")
    if carousel_type not in CAROUSEL_TYPES:
        raise ApiError(400, f"Invalid carousel type. Allowed types: {', '.join(CAROUSEL_TYPES)}")

    branch = None
    if carousel_type == "branch":
        raw = sanitize_value(fields.get("branch"))
        if not raw:
            raise ApiError(400, "Branch is required for branch type carousel")
        branch = resolve_branch_slug(raw)

    uploads = files.get("images", [])
    validate_images(uploads)
    doc = {
        "title": title,
        "type": carousel_type,
        "branch": branch,
        "images": [],
        "isActive": True,
        "order": next_order(carousel_type, branch),
    }
    CarouselSchema.model_validate(doc)

    stored = store_all(storage, uploads, CONTEXT)
    doc["images"] = image_docs(stored, title)
    now = now_utc()
    doc.update({"createdAt": now, "updatedAt": now})
    try:
        inserted_id = db[COLL_CAROUSELS].insert_one(doc).inserted_id
    except PyMongoError:
        purge_files(storage, [s.ref for s in stored])
        raise
    return api_response(serialize(db[COLL_CAROUSELS].find_one({"_id": inserted_id})),
                        "Carousel images uploaded successfully", 201)


@router.put("/update-carousel/{carousel_id}")
def update_carousel(carousel_id: str, body: CarouselUpdateBody, admin=Depends(require_admin)):
    carousel = find_carousel(carousel_id)
    updates: Dict[str, Any] = {}
    if body.title and body.title.strip():
        updates["title"] = body.title.strip()
    if body.isActive is not None:
        updates["isActive"] = body.isActive
    if body.order is not None:
        updates["order"] = body.order
    updates["updatedAt"] = now_utc()
    db[COLL_CAROUSELS].update_one({"_id": carousel["_id"]}, {"$set": updates})
    return api_response(serialize(find_carousel(carousel_id)), "Carousel updated successfully")


@router.post("/add-images/{carousel_id}")
async def add_images(carousel_id: str, request: Request, admin=Depends(require_admin),
                     storage: Storage = Depends(get_storage)):
    _, files = await read_form(request)
    return await run_in_threadpool(append_images, carousel_id, files.get("images", []), storage)


def append_images(carousel_id: str, uploads, storage: Storage):
    carousel = find_carousel(carousel_id)
    validate_images(uploads, existing_count=len(carousel.get("images") or []))

    stored = store_all(storage, uploads, CONTEXT)
    added = image_docs(stored, carousel["title"])
    try:
        db[COLL_CAROUSELS].update_one(
            {"_id": carousel["_id"]},
            {"$push": {"images": {"$each": added}}, "$set": {"updatedAt": now_utc()}},
        )
    except PyMongoError:
        purge_files(storage, [s.ref for s in stored])
        raise
    return api_response(serialize(find_carousel(carousel_id)), f"{len(added)} image(s) added successfully")


@router.delete("/delete-carousel-image/{carousel_id}/{image_id}")
def delete_carousel_image(carousel_id: str, image_id: str, admin=Depends(require_admin),
                          storage: Storage = Depends(get_storage)):
    carousel = find_carousel(carousel_id)
    image = next((img for img in carousel.get("images") or [] if img.get("id") == image_id), None)
    if image is None:
        raise ApiError(404, "Image not found in carousel")

    errors = purge_files(storage, [attachment_ref(image)])
    if errors:
        raise ApiError(500, f"Failed to delete image: {'; '.join(errors)}", errors=errors)

    remaining = [img for img in carousel["images"] if img.get("id") != image_id]
    if not remaining:
        db[COLL_CAROUSELS].delete_one({"_id": carousel["_id"]})
        return api_response({}, "Carousel deleted (no images remaining)")

    db[COLL_CAROUSELS].update_one({"_id": carousel["_id"]},
                                  {"$set": {"images": remaining, "updatedAt": now_utc()}})
    return api_response(serialize(find_carousel(carousel_id)), "Image deleted successfully")


@router.delete("/delete-carousel/{carousel_id}")
def delete_carousel(carousel_id: str, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    carousel = find_carousel(carousel_id)
    refs = [attachment_ref(img) for img in carousel.get("images") or []]
    for error in purge_files(storage, refs):
        logger.warning("Deleting carousel %s: %s", carousel_id, error)
    db[COLL_CAROUSELS].delete_one({"_id": carousel["_id"]})
    return api_response({}, "Carousel deleted successfully")
