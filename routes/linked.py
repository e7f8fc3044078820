"""Read-time joins for the optional member links on committee and branch records.

A link only borrows a member's display name and picture. It never owns the
member and nothing cascades through it.
"""
from typing import Any, Dict, Iterable, Optional

from bson import ObjectId
from bson.errors import InvalidId

from database import COLL_USERS, db, serialize
from responses import ApiError

SUMMARY_FIELDS = {
    "username": 1,
    "surname": 1,
    "email": 1,
    "employeeId": 1,
    "profilePic": 1,
    "membershipStatus": 1,
    "office": 1,
}


def display_name(user: Dict[str, Any]) -> str:
    return " ".join(part for part in (user.get("username"), user.get("surname")) if part).title()


def approved_member(user_id: str, not_approved: str = "Linked member must be approved") -> Dict[str, Any]:
    """Load the member behind a link, which must exist and be approved."""
    try:
        oid = ObjectId(user_id)
    except (InvalidId, TypeError):
        raise ApiError(400, "Invalid linked member ID")
    user = db[COLL_USERS].find_one({"_id": oid}, SUMMARY_FIELDS)
    if not user:
        raise ApiError(404, "Linked member not found")
    if user.get("membershipStatus") != "approved":
        raise ApiError(400, not_approved)
    return user


def member_summaries(user_ids: Iterable[Optional[str]]) -> Dict[str, Dict[str, Any]]:
    ids = []
    for user_id in set(filter(None, user_ids)):
        try:
            ids.append(ObjectId(user_id))
        except (InvalidId, TypeError):
            continue
    if not ids:
        return {}
    return {str(u["_id"]): serialize(u) for u in db[COLL_USERS].find({"_id": {"$in": ids}}, SUMMARY_FIELDS)}


def attach_member(doc: Dict[str, Any], summaries: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Add `linkedMember` and fill an empty name or picture from it."""
    linked = summaries.get(doc.get("userId") or "")
    doc["linkedMember"] = linked
    if linked:
        if not doc.get("name"):
            doc["name"] = display_name(linked)
        if not doc.get("profilePic"):
            doc["profilePic"] = linked.get("profilePic") or ""
    return doc
