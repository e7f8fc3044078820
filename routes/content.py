"""
Editable page content.

Rows are keyed by a unique lowercase `key`. Published pages are served from a
short-lived in-process cache that every write clears.
"""
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends
from pydantic import ValidationError
from pymongo import ReturnDocument

from config import settings
from database import COLL_CONTENT, db, now_utc, serialize
from responses import ApiError, api_response
from schemas import Content as ContentSchema, ContentBatchBody, ContentBody
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/content", tags=["content"])

REQUIRED_MESSAGE = "Key, page, section, and content are required"


class PageCache:
    """Time-boxed cache of published page content, keyed by page name."""

    def __init__(self, ttl_seconds: int):
        self.ttl = ttl_seconds
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, page: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(page)
            if entry is None:
                return None
            expires, value = entry
            if time.monotonic() >= expires:
                del self._entries[page]
                return None
            return value

    def set(self, page: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self._entries[page] = (time.monotonic() + self.ttl, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


page_cache = PageCache(settings.content_cache_seconds)


def content_data(body: ContentBody) -> Dict[str, Any]:
    """Validate one upsert payload into the stored row, minus timestamps."""
    key = (body.key or "").strip().lower()
    if not key or not body.page or not body.section or not body.content:
        raise ApiError(400, REQUIRED_MESSAGE)
    data = {
        "key": key,
        "page": body.page.strip(),
        "section": body.section.strip(),
        "content": body.content,
        "type": body.type or "text",
        "order": body.order or 0,
        "isActive": True if body.isActive is None else body.isActive,
    }
    if body.title:
        data["title"] = body.title
    ContentSchema.model_validate(data)
    return data


def save_content(data: Dict[str, Any]) -> Dict[str, Any]:
    now = now_utc()
    return db[COLL_CONTENT].find_one_and_update(
        {"key": data["key"]},
        {"$set": {**data, "updatedAt": now}, "$setOnInsert": {"createdAt": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


# Public

@router.get("/get-all")
def get_all_content(page: Optional[str] = None, section: Optional[str] = None):
    query = {}
    if page:
        query["page"] = page
    if section:
        query["section"] = section
    rows = db[COLL_CONTENT].find(query).sort([("page", 1), ("order", 1), ("createdAt", 1)])
    return api_response([serialize(r) for r in rows], "Content fetched successfully")


@router.get("/get-by-key/{key}")
def get_content_by_key(key: str):
    row = db[COLL_CONTENT].find_one({"key": key.strip().lower(), "isActive": True})
    if not row:
        raise ApiError(404, "Content not found")
    return api_response(serialize(row), "Content fetched successfully")


@router.get("/get-by-page/{page}")
def get_content_by_page(page: str):
    cached = page_cache.get(page)
    if cached is not None:
        return api_response(cached, "Page content fetched successfully")

    rows = db[COLL_CONTENT].find({"page": page, "isActive": True}).sort([("order", 1), ("createdAt", 1)])
    content = {
        row["key"]: {
            "title": row.get("title"),
            "content": row.get("content"),
            "type": row.get("type", "text"),
            "section": row.get("section"),
        }
        for row in rows
    }
    page_cache.set(page, content)
    return api_response(content, "Page content fetched successfully")


# Admin

@router.post("/upsert")
def upsert_content(body: ContentBody, admin=Depends(require_admin)):
    row = save_content(content_data(body))
    page_cache.clear()
    return api_response(serialize(row), "Content saved successfully")


@router.post("/update-multiple")
def update_multiple_contents(body: ContentBatchBody, admin=Depends(require_admin)):
    results = []
    for item in body.contents:
        key = (item.key or "").strip().lower() or "unknown"
        try:
            row = save_content(content_data(item))
        except ApiError as exc:
            results.append({"key": key, "success": False, "error": exc.detail})
            continue
        except ValidationError as exc:
            results.append({"key": key, "success": False, "error": exc.errors()[0].get("msg", "Invalid content")})
            continue
        results.append({"key": key, "success": True, "data": serialize(row)})
    page_cache.clear()
    return api_response(results, "Contents updated successfully")


@router.delete("/delete/{key}")
def delete_content(key: str, admin=Depends(require_admin)):
    row = db[COLL_CONTENT].find_one_and_delete({"key": key.strip().lower()})
    if not row:
        raise ApiError(404, "Content not found")
    page_cache.clear()
    return api_response(None, "Content deleted successfully")


@router.post("/initialize-defaults")
def initialize_default_content(admin=Depends(require_admin)):
    results = []
    for item in DEFAULT_CONTENT:
        key = item["key"]
        if db[COLL_CONTENT].count_documents({"key": key}, limit=1):
            results.append({"key": key, "action": "skipped", "success": True})
            continue
        now = now_utc()
        db[COLL_CONTENT].insert_one({"isActive": True, **item, "createdAt": now, "updatedAt": now})
        results.append({"key": key, "action": "created", "success": True})
    page_cache.clear()
    created = sum(1 for r in results if r["action"] == "created")
    logger.info("Default content: %d created, %d skipped", created, len(results) - created)
    return api_response(results, "Default content initialized successfully")


@router.post("/clear-cache")
def clear_content_cache(admin=Depends(require_admin)):
    page_cache.clear()
    return api_response(None, "Content cache cleared")


DEFAULT_CONTENT = [
    # Home
    {
        "key": "home_about_community",
        "page": "home",
        "section": "about",
        "title": "About Our Community",
        "content": (
            "R.E.S.T is a vibrant community dedicated to supporting retired telecommunications "
            "professionals. We provide a platform for continued connection, shared experiences, and "
            "mutual support among our members."
        ),
        "type": "text",
        "order": 1,
    },
    {
        "key": "home_vision",
        "page": "home",
        "section": "vision_mission_values",
        "title": "Vision",
        "content": (
            "To create a supportive platform where retired telecommunications professionals can thrive, "
            "share their expertise, and contribute to national development and social welfare."
        ),
        "type": "text",
        "order": 1,
    },
    {
        "key": "home_mission",
        "page": "home",
        "section": "vision_mission_values",
        "title": "Mission",
        "content": (
            "To safeguard the welfare of retired employees through income-generating programs, skill "
            "enhancement, advocacy for rights, and facilitation of their involvement in telecom-related "
            "initiatives and disaster response."
        ),
        "type": "text",
        "order": 2,
    },
    # Page heroes
    {
        "key": "events_hero_subtitle",
        "page": "events",
        "section": "hero",
        "content": "Stay connected with our community through regular events and activities",
        "type": "text",
        "order": 1,
    },
    {
        "key": "gallery_hero_subtitle",
        "page": "gallery",
        "section": "hero",
        "content": "Capturing moments of our vibrant community life and activities",
        "type": "text",
        "order": 1,
    },
    {
        "key": "login_hero_subtitle",
        "page": "login",
        "section": "hero",
        "content": "Access your account to connect with the retired telecommunications community.",
        "type": "text",
        "order": 1,
    },
    # Contact
    {
        "key": "contact_hero_subtitle",
        "page": "contact",
        "section": "hero",
        "content": "We're here to help and answer any questions you may have",
        "type": "text",
        "order": 1,
    },
    {
        "key": "contact_phone",
        "page": "contact",
        "section": "contact_info",
        "title": "Phone",
        "content": "+977-1-4271711",
        "type": "text",
        "order": 1,
    },
    {
        "key": "contact_email_primary",
        "page": "contact",
        "section": "contact_info",
        "title": "Email Primary",
        "content": "info@rest.org.np",
        "type": "text",
        "order": 2,
    },
    {
        "key": "contact_office_hours",
        "page": "contact",
        "section": "contact_info",
        "title": "Office Hours",
        "content": "Sun - Fri: 9:00 AM - 5:00 PM",
        "type": "text",
        "order": 3,
    },
    # Footer
    {
        "key": "footer_copyright",
        "page": "footer",
        "section": "copyright",
        "content": "© 2024 R.E.S.T. All Rights Reserved.",
        "type": "text",
        "order": 1,
    },
    {
        "key": "footer_address",
        "page": "footer",
        "section": "contact",
        "content": "Babarmahal, Kathmandu, Nepal",
        "type": "text",
        "order": 1,
    },
    {
        "key": "footer_email",
        "page": "footer",
        "section": "contact",
        "content": "rest@ntc.net.np",
        "type": "text",
        "order": 2,
    },
]
