"""
Members: registration, sessions, password reset and the admin membership workflow.

Mounted at /api/v1/user.
"""
import io
import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from openpyxl import Workbook
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import settings
from database import COLL_USERS, db, now_utc, object_id, serialize
from forms import parse_bool, read_form, sanitize_value
from mailer import send_password_reset
from responses import ApiError, api_response
from schemas import (
    MEMBER_ROLES,
    MEMBERSHIP_STATUSES,
    BulkImportBody,
    ForgotPasswordBody,
    LoginBody,
    PasswordBody,
    RefreshBody,
    ResetPasswordBody,
    User as UserSchema,
)
from security import (
    PRIVATE_FIELDS,
    create_access_token,
    create_refresh_token,
    create_reset_token,
    decode_refresh_token,
    decode_reset_token,
    get_current_user,
    hash_password,
    require_admin,
    verify_password,
)
from storage import Storage, StorageError, attachment_ref, get_storage, purge_files, store_all
from validators import missing_fields, validate_user_files

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/user", tags=["user"])

REQUIRED_MEMBER_FIELDS = [
    "employeeId",
    "username",
    "surname",
    "address",
    "province",
    "district",
    "municipality",
    "wardNumber",
    "tole",
    "telephoneNumber",
    "mobileNumber",
    "dob",
    "postAtRetirement",
    "pensionLeaseNumber",
    "office",
    "serviceStartDate",
    "serviceRetirementDate",
    "dateOfFillUp",
    "place",
    "email",
]
CHECKED_FIELDS = {"employeeId": "Employee ID", "email": "Email", "mobileNumber": "Mobile Number"}
UNIQUE_FIELDS = ("employeeId", "email", "mobileNumber", "membershipNumber", "registrationNumber")
LOOKUP_FIELDS = (
    "username", "surname", "email", "mobileNumber", "membershipNumber", "registrationNumber",
    "employeeId", "profilePic", "membershipStatus", "role", "address", "province", "district",
    "municipality", "wardNumber", "tole",
)
EXPORT_COLUMNS = [
    ("Employee ID", "employeeId"),
    ("First Name", "username"),
    ("Surname", "surname"),
    ("Email", "email"),
    ("Mobile", "mobileNumber"),
    ("Telephone", "telephoneNumber"),
    ("Address", "address"),
    ("Province", "province"),
    ("District", "district"),
    ("Municipality", "municipality"),
    ("Ward Number", "wardNumber"),
    ("Tole", "tole"),
    ("DOB", "dob"),
    ("Post At Retirement", "postAtRetirement"),
    ("Pension Lease Number", "pensionLeaseNumber"),
    ("Office", "office"),
    ("Service Start Date", "serviceStartDate"),
    ("Service Retirement Date", "serviceRetirementDate"),
    ("Date Of Fill Up", "dateOfFillUp"),
    ("Place", "place"),
    ("Role", "role"),
    ("Membership Status", "membershipStatus"),
    ("Membership Number", "membershipNumber"),
    ("Registration Number", "registrationNumber"),
]
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# Helpers

def generate_identifiers() -> Dict[str, str]:
    return {
        "membershipNumber": f"MEM-{uuid.uuid4().hex[:8].upper()}",
        "registrationNumber": f"REG-{uuid.uuid4().hex[:8].upper()}",
    }


def generate_password() -> str:
    return uuid.uuid4().hex[:10]


def normalize_profile(raw: Dict[str, Any]) -> Dict[str, str]:
    """Profile strings are stored trimmed and lowercased."""
    return {field: sanitize_value(raw.get(field)).lower() for field in REQUIRED_MEMBER_FIELDS if field in raw}


def taken_fields(values: Dict[str, Any], exclude_id=None) -> List[str]:
    taken = []
    for field, label in CHECKED_FIELDS.items():
        value = values.get(field)
        if not value:
            continue
        query = {field: value}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if db[COLL_USERS].count_documents(query, limit=1):
            taken.append(label)
    return taken


def duplicate_error(labels: List[str]) -> ApiError:
    joined = ", ".join(labels)
    return ApiError(
        400,
        f"User already exists with this {joined}. Please use different {joined.lower()}.",
        errors=labels,
    )


def duplicate_keys(exc: DuplicateKeyError, values: Dict[str, Any]) -> List[str]:
    key_value = (exc.details or {}).get("keyValue") or {}
    if key_value:
        return list(key_value)
    return [field for field in UNIQUE_FIELDS
            if values.get(field) and db[COLL_USERS].count_documents({field: values[field]}, limit=1)]


def find_user(user_id: str) -> Dict[str, Any]:
    user = db[COLL_USERS].find_one({"_id": object_id(user_id, "user")})
    if not user:
        raise ApiError(404, "User not found")
    return user


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    return serialize({k: v for k, v in doc.items() if k not in PRIVATE_FIELDS})


def owned_files(user: Dict[str, Any]):
    """Storage objects this member uploaded. Imported picture URLs are not ours to delete."""
    items = []
    if user.get("profilePicId"):
        items.append((user["profilePicId"], None))
    for item in user.get("files") or []:
        items.append(attachment_ref(item))
    return items


def purge_member_files(storage: Storage, user: Dict[str, Any]) -> None:
    errors = purge_files(storage, owned_files(user))
    if errors:
        raise ApiError(500, f"Some files could not be deleted: {'; '.join(errors)}", errors=errors)


def cookie_options() -> Dict[str, Any]:
    return {"httponly": True, "secure": settings.cookie_secure, "samesite": "lax", "path": "/"}


def issue_tokens(user: Dict[str, Any]) -> Dict[str, str]:
    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    db[COLL_USERS].update_one({"_id": user["_id"]}, {"$set": {"refreshToken": refresh_token}})
    return {"accessToken": access_token, "refreshToken": refresh_token}


def session_response(data: Dict[str, Any], tokens: Dict[str, str], message: str) -> Response:
    response = api_response(data, message)
    for name, value in tokens.items():
        response.set_cookie(name, value, **cookie_options())
    return response


# Registration and sessions

@router.post("/register")
async def register(request: Request, storage: Storage = Depends(get_storage)):
    fields, files = await read_form(request)
    return await run_in_threadpool(create_member, fields, files, storage)


def create_member(fields, files, storage: Storage):
    profile = {field: sanitize_value(fields.get(field)) for field in REQUIRED_MEMBER_FIELDS}
    password = sanitize_value(fields.get("password"))

    missing = missing_fields({**profile, "password": password}, REQUIRED_MEMBER_FIELDS + ["password"])
    if missing:
        raise ApiError(
            400,
            f"Missing required fields: {', '.join(missing)}",
            errors=[{"field": field, "message": f"Field '{field}' is required"} for field in missing],
        )

    profile = normalize_profile(profile)
    taken = taken_fields(profile)
    if taken:
        raise duplicate_error(taken)

    profile_pics = files.get("profilePic", [])
    additional = files.get("additionalFile", [])
    validate_user_files(profile_pics, additional)

    doc = {
        **profile,
        **generate_identifiers(),
        "password": hash_password(password),
        "role": "user",
        "membershipStatus": "pending",
        "refreshToken": None,
        "profilePic": "",
        "profilePicId": None,
        "files": [],
    }
    UserSchema.model_validate(doc)

    stored = store_all(storage, profile_pics, "User Profiles")
    try:
        stored += store_all(storage, additional, "User Files")
    except StorageError:
        purge_files(storage, [item.ref for item in stored])
        raise
    picture = stored[0]
    doc["profilePic"] = picture.url
    doc["profilePicId"] = picture.publicId
    doc["files"] = [item.as_attachment() for item in stored[1:]]

    now = now_utc()
    doc.update({"createdAt": now, "updatedAt": now})
    try:
        inserted_id = db[COLL_USERS].insert_one(doc).inserted_id
    except DuplicateKeyError:
        purge_files(storage, [item.ref for item in stored])
        raise duplicate_error(taken_fields(profile) or ["Employee ID", "Email", "Mobile Number"])

    created = db[COLL_USERS].find_one({"_id": inserted_id}, PRIVATE_FIELDS)
    logger.info("Registered member %s (%s)", profile["employeeId"], inserted_id)
    return api_response(serialize(created), "User created successfully")


@router.post("/login")
def login(body: LoginBody, request: Request):
    email = body.email.strip().lower()
    if not email or not body.password:
        raise ApiError(400, "Email and password are required")

    user = db[COLL_USERS].find_one({"email": email})
    if not user or not verify_password(body.password, user.get("password")):
        raise ApiError(401, "Invalid email or password")

    if parse_bool(request.headers.get("x-admin-frontend"), False) and user.get("role") != "admin":
        raise ApiError(403, "Not an admin user from this frontend")

    tokens = issue_tokens(user)
    logged_in = public_user(db[COLL_USERS].find_one({"_id": user["_id"]}))
    return session_response({"loggedInUser": logged_in, **tokens}, tokens, "User logged in successfully")


@router.post("/logout")
def logout(request: Request, body: Optional[RefreshBody] = None):
    refresh_token = request.cookies.get("refreshToken") or (body.refreshToken if body else None)
    if not refresh_token:
        raise ApiError(400, "No refresh token found")

    db[COLL_USERS].update_one({"refreshToken": refresh_token}, {"$set": {"refreshToken": None}})
    response = api_response({}, "User logged out successfully")
    for name in ("accessToken", "refreshToken"):
        response.delete_cookie(name, path="/", httponly=True, secure=settings.cookie_secure, samesite="lax")
    return response


@router.post("/refresh-token")
def refresh_token(request: Request, body: Optional[RefreshBody] = None):
    incoming = request.cookies.get("refreshToken") or (body.refreshToken if body else None)
    if not incoming:
        raise ApiError(401, "No refresh token found")

    payload = decode_refresh_token(incoming)
    user = db[COLL_USERS].find_one({"_id": object_id(payload.get("sub"), "user")})
    if not user or user.get("refreshToken") != incoming:
        raise ApiError(401, "Refresh token is expired or used")

    tokens = issue_tokens(user)
    return session_response(tokens, tokens, "Access token refreshed")


@router.get("/check-auth")
def check_auth(user=Depends(get_current_user)):
    return api_response(user, "User is authenticated")


@router.post("/forgot-password/request")
def request_password_reset(body: ForgotPasswordBody, background_tasks: BackgroundTasks):
    email = sanitize_value(body.email).lower()
    if not email:
        raise ApiError(400, "Email is required")

    generic = "If the account exists, password reset instructions have been sent"
    user = db[COLL_USERS].find_one({"email": email}, {"_id": 1})
    if not user:
        return api_response({}, generic)

    reset_token = create_reset_token(str(user["_id"]))
    if settings.can_send_email:
        background_tasks.add_task(send_password_reset, email, reset_token, settings.reset_token_expire_minutes)
    if not settings.expose_reset_token:
        return api_response({}, generic)
    return api_response({"resetToken": reset_token}, "Password reset token generated")


@router.post("/forgot-password/reset")
def reset_password(body: ResetPasswordBody):
    if not body.resetToken or not body.newPassword:
        raise ApiError(400, "Reset token and new password are required")
    if len(body.newPassword.strip()) < 8:
        raise ApiError(400, "Password must be at least 8 characters long")

    user_id = decode_reset_token(body.resetToken)
    user = find_user(user_id)
    db[COLL_USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"password": hash_password(body.newPassword.strip()), "refreshToken": None,
                  "updatedAt": now_utc()}},
    )
    return api_response({}, "Password reset successful. Please log in.")


# Admin tools

@router.get("/check-availability")
def check_availability(field: Optional[str] = None, value: Optional[str] = None,
                       admin=Depends(require_admin)):
    if not field or not value:
        raise ApiError(400, "Field and value are required")
    if field not in CHECKED_FIELDS:
        raise ApiError(400, f"Invalid field. Allowed fields: {', '.join(CHECKED_FIELDS)}")

    label = CHECKED_FIELDS[field]
    is_available = db[COLL_USERS].count_documents({field: value.strip().lower()}, limit=1) == 0
    data = {
        "isAvailable": is_available,
        "field": label,
        "message": f"{label} is available" if is_available else f"{label} is already taken",
    }
    return api_response(data, "Field is available" if is_available else "Field is not available")


@router.get("/lookup")
def lookup_member(employeeId: Optional[str] = None, admin=Depends(require_admin)):
    if not employeeId or not employeeId.strip():
        raise ApiError(400, "employeeId query parameter is required")

    projection = {field: 1 for field in LOOKUP_FIELDS}
    user = db[COLL_USERS].find_one({"employeeId": employeeId.strip().lower()}, projection)
    if not user:
        raise ApiError(404, "Member not found")
    return api_response(serialize(user), "Member lookup successful")


@router.post("/bulk-import")
def bulk_import(body: BulkImportBody, admin=Depends(require_admin)):
    if not body.members:
        raise ApiError(400, "No members provided for import")

    successes, failures = [], []
    for index, raw in enumerate(body.members):
        row = {key: sanitize_value(value) for key, value in (raw or {}).items()}
        missing = missing_fields(row, REQUIRED_MEMBER_FIELDS)
        if missing:
            failures.append({"index": index, "reason": f"Missing required fields: {', '.join(missing)}"})
            continue

        role = row.get("role", "").lower()
        status = row.get("membershipStatus", "").lower()
        doc = {
            **normalize_profile(row),
            **generate_identifiers(),
            "password": hash_password(row.get("password") or generate_password()),
            "role": role if role in MEMBER_ROLES else "user",
            "membershipStatus": status if status in MEMBERSHIP_STATUSES else "pending",
            "refreshToken": None,
            "profilePic": row.get("profilePic", ""),
            "profilePicId": None,
            "files": [],
        }
        try:
            UserSchema.model_validate(doc)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ()))
            failures.append({"index": index, "reason": f"{field}: {first.get('msg', 'Invalid value')}"})
            continue

        now = now_utc()
        doc.update({"createdAt": now, "updatedAt": now})
        try:
            inserted_id = db[COLL_USERS].insert_one(doc).inserted_id
        except DuplicateKeyError as exc:
            doc.pop("_id", None)
            keys = duplicate_keys(exc, doc) or ["unique field"]
            failures.append({"index": index, "reason": f"Duplicate value for {', '.join(keys)}"})
            continue

        successes.append({"index": index, "employeeId": doc["employeeId"], "email": doc["email"],
                          "id": str(inserted_id)})

    logger.info("Bulk import: %d imported, %d failed", len(successes), len(failures))
    data = {"imported": len(successes), "failed": len(failures), "successes": successes, "failures": failures}
    return api_response(data, "Bulk import processed")


@router.get("/export")
def export_members(status: Optional[str] = None, admin=Depends(require_admin)):
    query = {"membershipStatus": status} if status and status != "all" else {}

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Members"
    sheet.append([header for header, _ in EXPORT_COLUMNS])
    for member in db[COLL_USERS].find(query, PRIVATE_FIELDS):
        sheet.append([member.get(field, "") for _, field in EXPORT_COLUMNS])

    buffer = io.BytesIO()
    workbook.save(buffer)
    return Response(
        content=buffer.getvalue(),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": "attachment; filename=members_export.xlsx"},
    )


@router.get("/get-all-users")
def get_all_users(status: Optional[str] = None, admin=Depends(require_admin)):
    query = {"membershipStatus": status} if status else {}
    users = db[COLL_USERS].find(query, PRIVATE_FIELDS).sort("createdAt", -1)
    return api_response([serialize(u) for u in users], "Users retrieved successfully")


@router.post("/approve-membership/{user_id}")
def approve_membership(user_id: str, admin=Depends(require_admin)):
    oid = object_id(user_id, "user")
    updated = db[COLL_USERS].find_one_and_update(
        {"_id": oid, "membershipStatus": "pending"},
        {"$set": {"membershipStatus": "approved", "updatedAt": now_utc()}},
        projection=PRIVATE_FIELDS,
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ApiError(400, "Membership is not pending")
    return api_response(serialize(updated), "Membership approved successfully")


@router.post("/decline-membership/{user_id}")
def decline_membership(user_id: str, admin=Depends(require_admin),
                       storage: Storage = Depends(get_storage)):
    user = db[COLL_USERS].find_one({"_id": object_id(user_id, "user"), "membershipStatus": "pending"})
    if not user:
        raise ApiError(400, "Membership is not pending")

    purge_member_files(storage, user)
    db[COLL_USERS].delete_one({"_id": user["_id"], "membershipStatus": "pending"})
    logger.info("Declined membership of %s", user_id)
    return api_response({}, "Membership declined and user deleted successfully")


# Profile

@router.get("/get-user/{user_id}")
def get_user(user_id: str, current=Depends(get_current_user)):
    if current["id"] != user_id and current.get("role") != "admin":
        raise ApiError(403, "You can only view your own profile")
    user = find_user(user_id)
    return api_response(public_user(user), "User retrieved successfully")


@router.patch("/update-user/{user_id}")
async def update_user(user_id: str, request: Request, current=Depends(get_current_user),
                      storage: Storage = Depends(get_storage)):
    is_admin = current.get("role") == "admin"
    if current["id"] != user_id and not is_admin:
        raise ApiError(403, "You can only update your own profile")

    fields, files = await read_form(request)
    return await run_in_threadpool(save_profile_changes, user_id, is_admin, fields, files, storage)


def save_profile_changes(user_id: str, is_admin: bool, fields, files, storage: Storage):
    user = find_user(user_id)
    remove_picture = parse_bool(fields.get("removeProfilePic"), False)

    updates = normalize_profile(fields)
    empty = [field for field, value in updates.items() if not value]
    if empty:
        raise ApiError(400, f"Fields cannot be empty: {', '.join(empty)}")

    if "role" in fields:
        role = sanitize_value(fields.get("role")).lower()
        if role != user.get("role"):
            if not is_admin:
                raise ApiError(403, "Only admins can change roles")
            if role not in MEMBER_ROLES:
                raise ApiError(400, f"Invalid role. Allowed roles: {', '.join(MEMBER_ROLES)}")
            updates["role"] = role

    changed = {field: value for field, value in updates.items()
               if field in CHECKED_FIELDS and value != user.get(field)}
    taken = taken_fields(changed, exclude_id=user["_id"])
    if taken:
        raise duplicate_error(taken)

    profile_pics = files.get("profilePic", [])
    additional = files.get("additionalFile", [])
    if profile_pics or additional:
        validate_user_files(profile_pics, additional, require_profile_pic=False)
    UserSchema.model_validate({**user, **updates})

    stale = []
    stored = []
    if profile_pics:
        picture = store_all(storage, profile_pics, "User Profiles")[0]
        stored.append(picture)
        updates["profilePic"] = picture.url
        updates["profilePicId"] = picture.publicId
        stale.append((user.get("profilePicId"), None))
    elif remove_picture and user.get("profilePic"):
        updates["profilePic"] = ""
        updates["profilePicId"] = None
        stale.append((user.get("profilePicId"), None))
    if additional:
        try:
            item = store_all(storage, additional, "User Files")[0]
        except StorageError:
            purge_files(storage, [s.ref for s in stored])
            raise
        stored.append(item)
        updates["files"] = [item.as_attachment()]
        stale.extend(attachment_ref(f) for f in user.get("files") or [])

    updates["updatedAt"] = now_utc()
    try:
        updated = db[COLL_USERS].find_one_and_update(
            {"_id": user["_id"]}, {"$set": updates},
            projection=PRIVATE_FIELDS, return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        purge_files(storage, [s.ref for s in stored])
        raise duplicate_error(taken_fields(changed, exclude_id=user["_id"]) or list(CHECKED_FIELDS.values()))

    # replaced objects are cleaned up after the new reference is saved
    for error in purge_files(storage, stale):
        logger.warning("Old file left behind for user %s: %s", user_id, error)
    return api_response(serialize(updated), "User updated successfully")


@router.post("/update-password/{user_id}")
def update_password(user_id: str, body: PasswordBody, admin=Depends(require_admin)):
    password = (body.password or "").strip()
    if len(password) < 8:
        raise ApiError(400, "Password must be at least 8 characters long")

    user = find_user(user_id)
    db[COLL_USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"password": hash_password(password), "updatedAt": now_utc()}},
    )
    return api_response(None, "Password updated successfully")


@router.delete("/delete-user/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin), storage: Storage = Depends(get_storage)):
    user = find_user(user_id)
    purge_member_files(storage, user)
    db[COLL_USERS].delete_one({"_id": user["_id"]})
    logger.info("Deleted user %s", user_id)
    return api_response({}, "User deleted successfully")
