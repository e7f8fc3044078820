import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pymongo.errors import PyMongoError

from database import COLL_COMMITTEE, create_document, db, now_utc, object_id, serialize
from forms import linked_user_id, parse_bool, read_form, sanitize_value
from responses import ApiError, api_response
from routes.linked import approved_member, attach_member, display_name, member_summaries
from schemas import CommitteeMember as CommitteeMemberSchema
from security import require_admin
from storage import Storage, get_storage, purge_files
from validators import validate_image

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/committee-members", tags=["committee"])

TEXT_FIELDS = ("name", "role", "bio", "committeeTitle", "startDate", "endDate")
CONTEXT = "Committee Profiles"


def find_member(member_id: str) -> Dict[str, Any]:
    doc = db[COLL_COMMITTEE].find_one({"_id": object_id(member_id, "committee member")})
    if not doc:
        raise ApiError(404, "Committee member not found")
    return doc


def present(docs):
    docs = [serialize(d) for d in docs]
    summaries = member_summaries(d.get("userId") for d in docs)
    return [attach_member(d, summaries) for d in docs]


def link_member(user_id: str) -> Dict[str, Any]:
    return approved_member(user_id, "Member must be approved before being assigned to a committee")


@router.get("")
def list_committee_members(committeeTitle: Optional[str] = None):
    query = {}
    if committeeTitle and committeeTitle.strip() and committeeTitle != "All Years":
        query["committeeTitle"] = {"$regex": f"^{re.escape(committeeTitle.strip())}$", "$options": "i"}
    docs = db[COLL_COMMITTEE].find(query).sort("createdAt", 1)
    return api_response(present(docs), "Committee members retrieved successfully")


@router.get("/titles")
def list_committee_titles():
    titles = sorted(t for t in db[COLL_COMMITTEE].distinct("committeeTitle") if t)
    return api_response(titles, "Committee titles retrieved successfully")


@router.get("/{member_id}")
def get_committee_member(member_id: str):
    return api_response(present([find_member(member_id)])[0], "Committee member retrieved successfully")


@router.post("")
async def create_committee_member(request: Request, admin=Depends(require_admin),
                                  storage: Storage = Depends(get_storage)):
    fields, files = await read_form(request)
    return await run_in_threadpool(save_new_member, fields, files, storage)


def save_new_member(fields, files, storage: Storage):
    data = {field: sanitize_value(fields.get(field)) or None for field in TEXT_FIELDS}

    user_id = linked_user_id(fields.get("userId"))
    if user_id:
        linked = link_member(user_id)
        data["name"] = data["name"] or display_name(linked)
    data["userId"] = user_id
    CommitteeMemberSchema.model_validate(data)

    pictures = files.get("profilePic", [])
    stored = None
    if pictures:
        validate_image(pictures[0], "Profile picture")
        stored = storage.store(pictures[0], CONTEXT)
        data["profilePic"] = stored.url
        data["profilePicId"] = stored.publicId
    else:
        data["profilePic"] = ""
        data["profilePicId"] = None

    try:
        member_id = create_document(COLL_COMMITTEE, data)
    except PyMongoError:
        if stored:
            purge_files(storage, [stored.ref])
        raise
    created = db[COLL_COMMITTEE].find_one({"_id": object_id(member_id)})
    return api_response(present([created])[0], "Committee member created successfully", 201)


@router.put("/{member_id}")
async def update_committee_member(member_id: str, request: Request, admin=Depends(require_admin),
                                  storage: Storage = Depends(get_storage)):
    fields, files = await read_form(request)
    return await run_in_threadpool(save_member_changes, member_id, fields, files, storage)


def save_member_changes(member_id: str, fields, files, storage: Storage):
    member = find_member(member_id)

    updates: Dict[str, Any] = {}
    for field in TEXT_FIELDS:
        value = sanitize_value(fields.get(field))
        if value:
            updates[field] = value

    if "userId" in fields:
        user_id = linked_user_id(fields.get("userId"))
        if user_id:
            linked = link_member(user_id)
            if "name" not in updates and not member.get("name"):
                updates["name"] = display_name(linked)
        updates["userId"] = user_id
    CommitteeMemberSchema.model_validate({**member, **updates})

    stale = stored = None
    pictures = files.get("profilePic", [])
    if pictures:
        validate_image(pictures[0], "Profile picture")
        stored = storage.store(pictures[0], CONTEXT)
        updates["profilePic"] = stored.url
        updates["profilePicId"] = stored.publicId
        stale = member.get("profilePicId")
    elif parse_bool(fields.get("removeProfilePic"), False):
        updates["profilePic"] = ""
        updates["profilePicId"] = None
        stale = member.get("profilePicId")

    updates["updatedAt"] = now_utc()
    try:
        db[COLL_COMMITTEE].update_one({"_id": member["_id"]}, {"$set": updates})
    except PyMongoError:
        if stored:
            purge_files(storage, [stored.ref])
        raise
    for error in purge_files(storage, [(stale, None)]):
        logger.warning("Old committee picture left behind for %s: %s", member_id, error)

    updated = db[COLL_COMMITTEE].find_one({"_id": member["_id"]})
    return api_response(present([updated])[0], "Committee member updated successfully")


@router.delete("/{member_id}")
def delete_committee_member(member_id: str, admin=Depends(require_admin),
                            storage: Storage = Depends(get_storage)):
    member = find_member(member_id)
    # borrowed pictures have no profilePicId and stay with the member
    errors = purge_files(storage, [(member.get("profilePicId"), None)])
    if errors:
        raise ApiError(500, f"Failed to delete profile picture: {'; '.join(errors)}", errors=errors)
    db[COLL_COMMITTEE].delete_one({"_id": member["_id"]})
    return api_response({}, "Committee member deleted successfully")
