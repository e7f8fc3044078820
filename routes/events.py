import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import COLL_EVENTS, db, now_utc, object_id, serialize
from forms import read_form, sanitize_value
from responses import ApiError, api_response
from schemas import Event as EventSchema
from security import require_admin
from storage import Storage, attachment_ref, get_storage, purge_files, store_all
from validators import validate_event_files

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/event", tags=["event"])

CONTEXT = "Event Files"
OPTIONAL_FIELDS = ("date", "time", "location")


def find_event(event_id: str) -> Dict[str, Any]:
    event = db[COLL_EVENTS].find_one({"_id": object_id(event_id, "event")})
    if not event:
        raise ApiError(404, "Event not found")
    return event


def attachments(stored):
    return [s.as_attachment() for s in stored]


def file_refs(files):
    return [attachment_ref(f) for f in files]


@router.get("/get-all-event")
def get_all_events():
    events = [serialize(e) for e in db[COLL_EVENTS].find({}).sort("createdAt", -1)]
    return api_response(events, "All events fetched successfully" if events else "No events found")


@router.get("/get-event/{event_id}")
def get_event(event_id: str):
    return api_response(serialize(find_event(event_id)), "Event fetched successfully")


@router.post("/create-event")
async def create_event(request: Request, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    fields, files = await read_form(request)
    return await run_in_threadpool(save_new_event, fields, files, storage)


def save_new_event(fields, files, storage: Storage):
    title = sanitize_value(fields.get("title")).lower()
    description = sanitize_value(fields.get("description")).lower()
    if not title or not description:
        raise ApiError(400, "Title and description are required")
    if db[COLL_EVENTS].count_documents({"title": title}, limit=1):
        raise ApiError(400, "Event already exists")

    uploads = files.get("files", [])
    validate_event_files(uploads)
    doc = {"title": title, "description": description, "files": []}
    doc.update({field: sanitize_value(fields.get(field)) or None for field in OPTIONAL_FIELDS})
    EventSchema.model_validate(doc)

    stored = store_all(storage, uploads, CONTEXT)
    doc["files"] = attachments(stored)
    now = now_utc()
    doc.update({"createdAt": now, "updatedAt": now})
    try:
        inserted_id = db[COLL_EVENTS].insert_one(doc).inserted_id
    except DuplicateKeyError:
        purge_files(storage, file_refs(doc["files"]))
        raise ApiError(400, "Event already exists")
    except PyMongoError:
        purge_files(storage, file_refs(doc["files"]))
        raise

    logger.info("Created event %r with %d files", title, len(stored))
    return api_response(serialize(db[COLL_EVENTS].find_one({"_id": inserted_id})), "Event created successfully", 201)


@router.put("/update-event/{event_id}")
async def update_event(event_id: str, request: Request, admin=Depends(require_admin),
                       storage: Storage = Depends(get_storage)):
    object_id(event_id, "event")
    fields, files = await read_form(request)
    return await run_in_threadpool(save_event_changes, event_id, fields, files.get("files", []), storage)


def save_event_changes(event_id: str, fields, uploads, storage: Storage):
    updates: Dict[str, Any] = {}
    for field in ("title", "description"):
        value = sanitize_value(fields.get(field)).lower()
        if value:
            updates[field] = value
    for field in OPTIONAL_FIELDS:
        value = sanitize_value(fields.get(field))
        if value:
            updates[field] = value
    if not updates and not uploads:
        raise ApiError(400, "At least one field must be provided for update")

    event = find_event(event_id)
    if updates.get("title") and updates["title"] != event["title"]:
        if db[COLL_EVENTS].count_documents({"title": updates["title"], "_id": {"$ne": event["_id"]}}, limit=1):
            raise ApiError(400, "Event already exists")

    existing = event.get("files") or []
    if uploads:
        validate_event_files(uploads, existing=[f.get("mimetype") for f in existing])
    EventSchema.model_validate({**event, **updates})

    stored = store_all(storage, uploads, CONTEXT)
    change: Dict[str, Any] = {"$set": {**updates, "updatedAt": now_utc()}}
    if stored:
        change["$push"] = {"files": {"$each": attachments(stored)}}
    try:
        updated = db[COLL_EVENTS].find_one_and_update(
            {"_id": event["_id"]}, change, return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        purge_files(storage, [s.ref for s in stored])
        raise ApiError(400, "Event already exists")
    except PyMongoError:
        purge_files(storage, [s.ref for s in stored])
        raise
    return api_response(serialize(updated), "Event updated successfully")


@router.delete("/delete-event/{event_id}")
def delete_event(event_id: str, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    event = find_event(event_id)
    errors = purge_files(storage, file_refs(event.get("files") or []))
    if errors:
        raise ApiError(500, f"Some files could not be deleted: {'; '.join(errors)}", errors=errors)
    db[COLL_EVENTS].delete_one({"_id": event["_id"]})
    return api_response({}, "Event deleted successfully")


@router.delete("/delete-event-file/{event_id}/{file_id}")
def delete_event_file(event_id: str, file_id: str, admin=Depends(require_admin),
                      storage: Storage = Depends(get_storage)):
    event = find_event(event_id)
    match = next((f for f in event.get("files") or [] if f.get("id") == file_id), None)
    if match is None:
        raise ApiError(404, "File not found in event")

    errors = purge_files(storage, file_refs([match]))
    if errors:
        raise ApiError(500, f"Failed to delete file: {'; '.join(errors)}", errors=errors)
    updated = db[COLL_EVENTS].find_one_and_update(
        {"_id": event["_id"]},
        {"$pull": {"files": {"id": file_id}}, "$set": {"updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    return api_response(serialize(updated), "File deleted successfully")
