import logging

from fastapi import APIRouter, Depends
from pymongo import ReturnDocument

from database import COLL_SETTINGS, db, now_utc, serialize
from responses import ApiError, api_response
from schemas import Setting as SettingSchema, SettingBody
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/settings", tags=["settings"])

DEFAULT_SETTINGS = [
    {"key": "curtainAnimationEnabled", "value": True, "description": "Enable/Disable inauguration animation"},
    {"key": "curtainAnimationMessage", "value": "Welcome to REST!", "description": "Message shown during animation"},
]


def seed_settings() -> None:
    """Insert any default setting that is not stored yet. Existing values are left alone."""
    for default in DEFAULT_SETTINGS:
        now = now_utc()
        result = db[COLL_SETTINGS].update_one(
            {"key": default["key"]},
            {"$setOnInsert": {**default, "createdAt": now, "updatedAt": now}},
            upsert=True,
        )
        if result.upserted_id is not None:
            logger.info("Seeded setting: %s", default["key"])


@router.get("")
def get_settings():
    values = {row["key"]: row.get("value") for row in db[COLL_SETTINGS].find({})}
    return api_response(values, "Settings fetched successfully")


@router.put("")
def update_setting(body: SettingBody, admin=Depends(require_admin)):
    key = (body.key or "").strip()
    if not key:
        raise ApiError(400, "Setting key is required")
    SettingSchema.model_validate({"key": key, "value": body.value, "description": body.description})

    now = now_utc()
    changes = {"value": body.value, "updatedAt": now}
    if body.description is not None:
        changes["description"] = body.description.strip()
    setting = db[COLL_SETTINGS].find_one_and_update(
        {"key": key},
        {"$set": changes, "$setOnInsert": {"createdAt": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return api_response(serialize(setting), "Setting updated successfully")
