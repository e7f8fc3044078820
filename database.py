"""
MongoDB access for the REST membership API.

One client per process, shared by every router. Collection names follow the
schemas module: lowercase class name.
"""
from datetime import datetime, timezone
from typing import Any, Dict

import pymongo
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pymongo.errors import PyMongoError

from config import settings

# Collections
COLL_USERS = "user"
COLL_COMMITTEE = "committeemember"
COLL_BRANCHES = "branch"
COLL_EVENTS = "event"
COLL_GALLERY = "gallerypost"
COLL_CAROUSELS = "carousel"
COLL_CONTENT = "content"
COLL_SETTINGS = "setting"
SERVICE_COLLECTIONS = (
    COLL_USERS, COLL_COMMITTEE, COLL_BRANCHES, COLL_EVENTS,
    COLL_GALLERY, COLL_CAROUSELS, COLL_CONTENT, COLL_SETTINGS,
)

client = pymongo.MongoClient(settings.database_url)
db = client[settings.database_name]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


def object_id(value: Any, label: str = "") -> ObjectId:
    """Parse a path/query id, failing the request with 400 when malformed."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        name = f"{label} " if label else ""
        raise HTTPException(status_code=400, detail=f"Invalid {name}ID")


def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    doc = dict(data)
    now = now_utc()
    doc["createdAt"] = now
    doc["updatedAt"] = now
    inserted_id = db[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly: `_id` -> `id`, ObjectId -> str, datetime -> ISO."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            out["id" if k == "_id" else k] = serialize(v)
        return out
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def ensure_indexes() -> None:
    users = db[COLL_USERS]
    for field in ("employeeId", "email", "mobileNumber", "membershipNumber", "registrationNumber"):
        users.create_index(field, unique=True)
    db[COLL_BRANCHES].create_index("name", unique=True)
    db[COLL_BRANCHES].create_index("slug", unique=True)
    db[COLL_BRANCHES].create_index([("isActive", 1), ("order", 1)])
    db[COLL_EVENTS].create_index("title", unique=True)
    db[COLL_CAROUSELS].create_index([("type", 1), ("isActive", 1), ("order", 1)])
    db[COLL_CAROUSELS].create_index([("type", 1), ("branch", 1), ("isActive", 1)])
    db[COLL_CONTENT].create_index("key", unique=True)
    db[COLL_CONTENT].create_index([("page", 1), ("section", 1)])
    db[COLL_SETTINGS].create_index("key", unique=True)
    db[COLL_COMMITTEE].create_index("userId")


def database_status() -> Dict[str, Any]:
    """Health report for /test: whether MongoDB answers and which service collections exist yet."""
    report: Dict[str, Any] = {
        "backend": "✅ Running",
        "database": settings.database_name,
        "connection_status": "Not Connected",
        "collections": {name: False for name in SERVICE_COLLECTIONS},
    }
    try:
        existing = set(db.list_collection_names())
    except PyMongoError as exc:
        report["error"] = str(exc)[:80]
        return report
    report["connection_status"] = "Connected"
    report["collections"] = {name: name in existing for name in SERVICE_COLLECTIONS}
    return report
