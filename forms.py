"""Request body helpers shared by the multipart and JSON endpoints."""
import json
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException, Request
from starlette.datastructures import UploadFile

Fields = Dict[str, Any]
Files = Dict[str, List[UploadFile]]


async def read_form(request: Request) -> Tuple[Fields, Files]:
    """Split a request body into plain fields and uploaded files.

    Multipart and urlencoded bodies go through Starlette's form parser, so a
    field sent more than once keeps its last value. JSON bodies come back with
    no files.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")
        return body, {}

    if not (content_type.startswith("multipart/form-data")
            or content_type.startswith("application/x-www-form-urlencoded")):
        return {}, {}

    form = await request.form()
    fields: Fields = {}
    files: Files = {}
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            # browsers send an empty part for an untouched file input
            if value.filename:
                files.setdefault(key, []).append(value)
        else:
            fields[key] = value
    return fields, files


def sanitize_value(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_json_field(value: Any, label: str) -> Any:
    """Decode a stringified JSON sub-field; already decoded values pass through."""
    if value is None or isinstance(value, (dict, list)):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label} format")


def parse_int(value: Any, label: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{label} must be a number")
    try:
        return int(str(value).strip())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{label} must be a number")


def parse_bool(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return default
    return text in ("true", "1", "yes", "on")


def linked_user_id(value: Any) -> Optional[str]:
    """Normalise an optional member link. Empty strings and "null" clear it."""
    text = sanitize_value(value)
    if text.lower() in ("", "null", "undefined", "none"):
        return None
    return text
