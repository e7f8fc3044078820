"""
Branch directory.

Public: active branch list and branch pages by slug.
Admin: full records, create/update/delete and the active toggle.

Team-member photos arrive as one ordered multipart list, `teamMemberProfilePics`;
a team member entry picks its photo with `profilePicIndex`.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pymongo.errors import DuplicateKeyError

from database import COLL_BRANCHES, COLL_USERS, db, new_id, now_utc, object_id, serialize
from forms import linked_user_id, parse_bool, parse_int, parse_json_field, read_form, sanitize_value
from responses import ApiError, api_response
from routes.linked import approved_member, attach_member, display_name, member_summaries
from schemas import DEFAULT_WORKING_HOURS, Branch as BranchSchema
from security import get_current_user, require_admin
from storage import Storage, StorageError, StoredFile, get_storage, purge_files, store_all
from validators import validate_image, slugify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/branches", tags=["branches"])

HERO_CONTEXT = "Branch Images"
TEAM_CONTEXT = "Team Member Profiles"
REQUIRED_TEXT = ("name", "address", "mapLink", "description")
AUDIT_FIELDS = {"username": 1, "email": 1}


# Parsing

def parse_contact(value: Any) -> Dict[str, str]:
    contact = parse_json_field(value, "contact")
    if contact is not None and not isinstance(contact, dict):
        raise ApiError(400, "Invalid contact format")
    contact = contact or {}
    phone = sanitize_value(contact.get("phone"))
    email = sanitize_value(contact.get("email")).lower()
    if not phone or not email:
        raise ApiError(400, "Contact phone and email are required")
    return {"phone": phone, "email": email}


def parse_list(value: Any, label: str) -> List[Any]:
    items = parse_json_field(value, label)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ApiError(400, f"Invalid {label} format")
    return items


def clean_services(value: Any) -> List[Dict[str, str]]:
    services = []
    for item in parse_list(value, "services"):
        if not isinstance(item, dict):
            continue
        name, description = sanitize_value(item.get("name")), sanitize_value(item.get("description"))
        if name and description:
            services.append({"name": name, "description": description})
    return services


def clean_programs(value: Any) -> List[Dict[str, str]]:
    programs = []
    for item in parse_list(value, "uniquePrograms"):
        if not isinstance(item, dict):
            continue
        title, description = sanitize_value(item.get("title")), sanitize_value(item.get("description"))
        if title and description:
            programs.append({"title": title, "description": description,
                             "schedule": sanitize_value(item.get("schedule"))})
    return programs


class TeamPlan:
    """Team members to save, plus the photo uploads and deletions that go with them."""

    def __init__(self, members: List[Dict[str, Any]], uploads: List[Tuple[int, int]]):
        self.members = members
        self.uploads = uploads  # (member position, photo index)

    def apply(self, storage: Storage, photos) -> List[StoredFile]:
        stored = store_all(storage, [photos[photo] for _, photo in self.uploads], TEAM_CONTEXT)
        for (position, _), item in zip(self.uploads, stored):
            self.members[position]["profilePic"] = item.url
            self.members[position]["profilePicId"] = item.publicId
        return stored


def plan_team(value: Any, photos, existing: Optional[List[Dict[str, Any]]] = None) -> TeamPlan:
    entries = parse_list(value, "teamMembers")
    previous = {m.get("id"): m for m in existing or [] if m.get("id")}
    for photo in photos:
        validate_image(photo, "Team member photo")

    members, uploads, used = [], [], set()
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ApiError(400, "Invalid teamMembers format")
        prev = previous.get(entry.get("id") or entry.get("_id")) or {}

        if "userId" in entry:
            user_id = linked_user_id(entry.get("userId"))
        else:
            user_id = prev.get("userId")
        linked = approved_member(user_id, "Team member must be an approved member") if user_id else None

        name = sanitize_value(entry.get("name")) or prev.get("name") or (display_name(linked) if linked else None)
        member = {
            "id": prev.get("id") or new_id(),
            "userId": user_id,
            "name": name or None,
            "position": sanitize_value(entry.get("position")) or prev.get("position"),
            "experience": sanitize_value(entry.get("experience")) or prev.get("experience"),
            "profilePic": prev.get("profilePic", ""),
            "profilePicId": prev.get("profilePicId"),
        }

        photo = parse_int(entry.get("profilePicIndex"), "profilePicIndex")
        if photo is not None:
            if not 0 <= photo < len(photos):
                raise ApiError(400, f"profilePicIndex {photo} has no matching file in teamMemberProfilePics")
            if photo in used:
                raise ApiError(400, f"Photo {photo} is assigned to more than one team member")
            used.add(photo)
            uploads.append((position, photo))
        elif "profilePic" in entry:
            url = sanitize_value(entry.get("profilePic"))
            if url != member["profilePic"]:
                # a pasted URL is borrowed, never ours to delete
                member["profilePic"], member["profilePicId"] = url, None
        members.append(member)
    return TeamPlan(members, uploads)


def owned_team_files(members: List[Dict[str, Any]]) -> List[str]:
    return [m["profilePicId"] for m in members if m.get("profilePicId")]


# Presentation

def present(doc: Dict[str, Any], public: bool = False) -> Dict[str, Any]:
    branch = serialize(doc)
    team = branch.get("teamMembers") or []
    summaries = member_summaries(m.get("userId") for m in team)
    branch["teamMembers"] = [attach_member(m, summaries) for m in team]
    if public:
        branch.pop("createdBy", None)
        branch.pop("updatedBy", None)
        for member in branch["teamMembers"]:
            member.pop("linkedMember", None)
        return branch

    for field in ("createdBy", "updatedBy"):
        ref = branch.get(field)
        if ref:
            user = db[COLL_USERS].find_one({"_id": object_id(ref)}, AUDIT_FIELDS)
            branch[field] = serialize(user) if user else {"id": ref}
    return branch


def find_branch(branch_id: str) -> Dict[str, Any]:
    doc = db[COLL_BRANCHES].find_one({"_id": object_id(branch_id, "branch")})
    if not doc:
        raise ApiError(404, "Branch not found")
    return doc


def conflict_for(name: str, slug: str, exclude=None) -> Optional[str]:
    scope = {"_id": {"$ne": exclude}} if exclude is not None else {}
    if db[COLL_BRANCHES].count_documents({"name": name, **scope}, limit=1):
        return "Branch with this name already exists"
    if db[COLL_BRANCHES].count_documents({"slug": slug, **scope}, limit=1):
        return "Branch slug already exists. Please use a different name."
    return None


# Public

@router.get("")
def list_branches(request: Request, includeInactive: Optional[str] = None):
    query = {"isActive": True}
    if parse_bool(includeInactive, False):
        require_admin(get_current_user(request))
        query = {}
    branches = db[COLL_BRANCHES].find(query).sort([("order", 1), ("name", 1)])
    return api_response([present(b, public=True) for b in branches], "Branches retrieved successfully")


@router.get("/slug/{slug}")
def get_branch_by_slug(slug: str):
    branch = db[COLL_BRANCHES].find_one({"slug": slug.strip().lower(), "isActive": True})
    if not branch:
        raise ApiError(404, "Branch not found")
    return api_response(present(branch, public=True), "Branch retrieved successfully")


# Admin

@router.post("")
async def create_branch(request: Request, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    fields, files = await read_form(request)
    return await run_in_threadpool(save_new_branch, fields, files, admin, storage)


def save_new_branch(fields, files, admin: Dict[str, Any], storage: Storage):
    text = {field: sanitize_value(fields.get(field)) for field in REQUIRED_TEXT}
    if not all(text.values()):
        raise ApiError(400, "Name, address, map link, and description are required")
    contact = parse_contact(fields.get("contact"))

    slug = slugify(text["name"])
    if not slug:
        raise ApiError(400, "Branch name must contain letters or numbers")
    conflict = conflict_for(text["name"], slug)
    if conflict:
        raise ApiError(400, conflict)

    heroes = files.get("heroImage", [])
    if heroes:
        validate_image(heroes[0], "Hero image")
    photos = files.get("teamMemberProfilePics", [])
    team = plan_team(fields.get("teamMembers"), photos)

    doc = {
        **text,
        "slug": slug,
        "contact": contact,
        "workingHours": sanitize_value(fields.get("workingHours")) or DEFAULT_WORKING_HOURS,
        "services": clean_services(fields.get("services")),
        "uniquePrograms": clean_programs(fields.get("uniquePrograms")),
        "teamMembers": team.members,
        "heroImage": "",
        "heroImageId": None,
        "isActive": parse_bool(fields.get("isActive"), True),
        "order": parse_int(fields.get("order"), "order", 0),
        "createdBy": admin["id"],
        "updatedBy": None,
    }
    BranchSchema.model_validate(doc)

    stored = store_all(storage, heroes[:1], HERO_CONTEXT)
    try:
        stored += team.apply(storage, photos)
    except StorageError:
        purge_files(storage, [item.ref for item in stored])
        raise
    if heroes:
        doc["heroImage"], doc["heroImageId"] = stored[0].url, stored[0].publicId

    now = now_utc()
    doc.update({"createdAt": now, "updatedAt": now})
    try:
        inserted_id = db[COLL_BRANCHES].insert_one(doc).inserted_id
    except DuplicateKeyError:
        purge_files(storage, [item.ref for item in stored])
        raise ApiError(400, conflict_for(text["name"], slug) or "Branch slug already exists. Please use a different name.")

    logger.info("Created branch %s (%s)", slug, inserted_id)
    return api_response(present(db[COLL_BRANCHES].find_one({"_id": inserted_id})), "Branch created successfully", 201)


@router.get("/{branch_id}")
def get_branch(branch_id: str, admin=Depends(require_admin)):
    return api_response(present(find_branch(branch_id)), "Branch retrieved successfully")


@router.put("/{branch_id}")
async def update_branch(branch_id: str, request: Request, admin=Depends(require_admin),
                        storage: Storage = Depends(get_storage)):
    fields, files = await read_form(request)
    return await run_in_threadpool(save_branch_changes, branch_id, fields, files, admin, storage)


def save_branch_changes(branch_id: str, fields, files, admin: Dict[str, Any], storage: Storage):
    branch = find_branch(branch_id)
    updates: Dict[str, Any] = {}

    for field in REQUIRED_TEXT:
        if field in fields:
            value = sanitize_value(fields.get(field))
            if not value:
                raise ApiError(400, "Name, address, map link, and description are required")
            updates[field] = value
    if "workingHours" in fields:
        updates["workingHours"] = sanitize_value(fields.get("workingHours")) or DEFAULT_WORKING_HOURS

    name = updates.get("name", branch.get("name"))
    if name != branch.get("name"):
        slug = slugify(name)
        if not slug:
            raise ApiError(400, "Branch name must contain letters or numbers")
        conflict = conflict_for(name, slug, exclude=branch["_id"])
        if conflict:
            raise ApiError(400, conflict)
        updates["slug"] = slug
    elif not branch.get("slug"):
        updates["slug"] = slugify(name)

    if "contact" in fields:
        updates["contact"] = parse_contact(fields.get("contact"))
    if "services" in fields:
        updates["services"] = clean_services(fields.get("services"))
    if "uniquePrograms" in fields:
        updates["uniquePrograms"] = clean_programs(fields.get("uniquePrograms"))
    if "isActive" in fields:
        updates["isActive"] = parse_bool(fields.get("isActive"), branch.get("isActive", True))
    if "order" in fields:
        updates["order"] = parse_int(fields.get("order"), "order", branch.get("order", 0))

    stale: List[Optional[str]] = []
    photos = files.get("teamMemberProfilePics", [])
    team = None
    if "teamMembers" in fields:
        team = plan_team(fields.get("teamMembers"), photos, branch.get("teamMembers"))
        updates["teamMembers"] = team.members

    heroes = files.get("heroImage", [])
    if heroes:
        validate_image(heroes[0], "Hero image")
    updates["updatedBy"] = admin["id"]
    BranchSchema.model_validate({**branch, **updates})

    stored = store_all(storage, heroes[:1], HERO_CONTEXT)
    if heroes:
        updates["heroImage"], updates["heroImageId"] = stored[0].url, stored[0].publicId
        stale.append(branch.get("heroImageId"))
    elif parse_bool(fields.get("removeHeroImage"), False):
        updates["heroImage"], updates["heroImageId"] = "", None
        stale.append(branch.get("heroImageId"))
    if team is not None:
        try:
            stored += team.apply(storage, photos)
        except StorageError:
            purge_files(storage, [item.ref for item in stored])
            raise
        kept = set(owned_team_files(team.members))
        stale.extend(pic for pic in owned_team_files(branch.get("teamMembers") or []) if pic not in kept)

    updates["updatedAt"] = now_utc()
    try:
        db[COLL_BRANCHES].update_one({"_id": branch["_id"]}, {"$set": updates})
    except DuplicateKeyError:
        purge_files(storage, [item.ref for item in stored])
        raise ApiError(400, "Branch slug already exists. Please use a different name.")

    for error in purge_files(storage, [(ref, None) for ref in stale]):
        logger.warning("Old branch image left behind for %s: %s", branch_id, error)
    return api_response(present(find_branch(branch_id)), "Branch updated successfully")


@router.delete("/{branch_id}")
def delete_branch(branch_id: str, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    branch = find_branch(branch_id)
    owned = [branch.get("heroImageId")] + owned_team_files(branch.get("teamMembers") or [])
    for error in purge_files(storage, [(ref, None) for ref in owned]):
        logger.warning("Deleting branch %s: %s", branch_id, error)
    db[COLL_BRANCHES].delete_one({"_id": branch["_id"]})
    return api_response({}, "Branch deleted successfully")


@router.patch("/{branch_id}/toggle-status")
def toggle_branch_status(branch_id: str, admin=Depends(require_admin)):
    branch = find_branch(branch_id)
    is_active = not branch.get("isActive", True)
    db[COLL_BRANCHES].update_one(
        {"_id": branch["_id"]},
        {"$set": {"isActive": is_active, "updatedBy": admin["id"], "updatedAt": now_utc()}},
    )
    state = "activated" if is_active else "deactivated"
    return api_response(present(find_branch(branch_id)), f"Branch {state} successfully")
