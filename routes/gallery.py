import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pymongo.errors import PyMongoError

from database import COLL_GALLERY, db, now_utc, object_id, serialize
from forms import read_form, sanitize_value
from responses import ApiError, api_response
from schemas import GalleryPost as GalleryPostSchema
from security import require_admin
from storage import Storage, attachment_ref, get_storage, purge_files, store_all
from validators import validate_images

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gallery", tags=["gallery"])

CONTEXT = "Gallery"
ALL_CATEGORIES = "All Photos"


def find_post(post_id: str) -> Dict[str, Any]:
    post = db[COLL_GALLERY].find_one({"_id": object_id(post_id, "post")})
    if not post:
        raise ApiError(404, "Post not found")
    return post


@router.get("/get-all-images")
def get_all_images(category: Optional[str] = None):
    query = {}
    if category and category != ALL_CATEGORIES:
        query["category"] = category
    posts = [serialize(p) for p in db[COLL_GALLERY].find(query).sort("createdAt", -1)]
    return api_response(posts, "All posts fetched successfully")


@router.get("/get-image/{post_id}")
def get_image(post_id: str):
    return api_response(serialize(find_post(post_id)), "Post fetched successfully")


@router.post("/upload-images")
async def upload_images(request: Request, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    fields, files = await read_form(request)
    return await run_in_threadpool(save_new_post, fields, files, storage)


def save_new_post(fields, files, storage: Storage):
    title = sanitize_value(fields.get("title"))
    category = sanitize_value(fields.get("category"))
    date = sanitize_value(fields.get("date"))
    if not title or not category or not date:
        raise ApiError(400, "Title, category, and date are required")

    uploads = files.get("images", [])
    validate_images(uploads, label="post")
    doc = {"title": title, "category": category, "date": date, "images": []}
    GalleryPostSchema.model_validate(doc)

    stored = store_all(storage, uploads, CONTEXT)
    doc["images"] = [s.as_attachment() for s in stored]
    now = now_utc()
    doc.update({"createdAt": now, "updatedAt": now})
    try:
        inserted_id = db[COLL_GALLERY].insert_one(doc).inserted_id
    except PyMongoError:
        purge_files(storage, [s.ref for s in stored])
        raise
    return api_response(serialize(db[COLL_GALLERY].find_one({"_id": inserted_id})),
                        "Images uploaded successfully as a post", 201)


@router.delete("/delete-image/{post_id}/{image_id}")
def delete_image(post_id: str, image_id: str, admin=Depends(require_admin),
                 storage: Storage = Depends(get_storage)):
    post = find_post(post_id)
    image = next((img for img in post.get("images") or [] if img.get("id") == image_id), None)
    if image is None:
        raise ApiError(404, "Image not found in post")

    errors = purge_files(storage, [attachment_ref(image)])
    if errors:
        raise ApiError(500, f"Failed to delete image: {'; '.join(errors)}", errors=errors)

    remaining = [img for img in post["images"] if img.get("id") != image_id]
    if not remaining:
        db[COLL_GALLERY].delete_one({"_id": post["_id"]})
        return api_response({}, "Post deleted (no images remaining)")

    db[COLL_GALLERY].update_one({"_id": post["_id"]}, {"$set": {"images": remaining, "updatedAt": now_utc()}})
    return api_response(serialize(find_post(post_id)), "Image deleted successfully")


@router.delete("/delete-post/{post_id}")
def delete_post(post_id: str, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    post = find_post(post_id)
    refs = [attachment_ref(img) for img in post.get("images") or []]
    for error in purge_files(storage, refs):
        logger.warning("Deleting post %s: %s", post_id, error)
    db[COLL_GALLERY].delete_one({"_id": post["_id"]})
    return api_response({}, "Post deleted successfully")
