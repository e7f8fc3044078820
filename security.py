"""Password hashing, JWTs and the auth dependencies."""
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException, Request
from jwt import exceptions as jwt_exc
from passlib.context import CryptContext

from config import settings
from database import COLL_USERS, db, now_utc, serialize

JWT_ALGORITHM = "HS256"
RESET_PURPOSE = "password_reset"
PRIVATE_FIELDS = {"password": 0, "refreshToken": 0}

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # not a bcrypt hash
        return False


# JWT utilities

def _encode(claims: dict, secret: str, expires_delta: timedelta) -> str:
    to_encode = claims.copy()
    now = now_utc()
    to_encode.update({"iat": now, "exp": now + expires_delta})
    return jwt.encode(to_encode, secret, algorithm=JWT_ALGORITHM)


def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    claims = {"sub": str(user["_id"]), "email": user.get("email"), "username": user.get("username")}
    return _encode(claims, settings.access_token_secret,
                   expires_delta or timedelta(minutes=settings.access_token_expire_minutes))


def create_refresh_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    # jti keeps two refresh tokens minted in the same second distinct
    claims = {"sub": str(user["_id"]), "jti": secrets.token_hex(8)}
    return _encode(claims, settings.refresh_token_secret,
                   expires_delta or timedelta(days=settings.refresh_token_expire_days))


def decode_refresh_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.refresh_token_secret, algorithms=[JWT_ALGORITHM])
    except jwt_exc.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Refresh token expired")
    except jwt_exc.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")


def create_reset_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    return _encode({"uid": user_id, "purpose": RESET_PURPOSE}, settings.jwt_secret,
                   expires_delta or timedelta(minutes=settings.reset_token_expire_minutes))


def decode_reset_token(token: str) -> str:
    """Return the user id bound to a reset token."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt_exc.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid or expired reset token")
    if payload.get("purpose") != RESET_PURPOSE or not payload.get("uid"):
        raise HTTPException(status_code=401, detail="Invalid reset token")
    return payload["uid"]


def extract_token(request: Request) -> Optional[str]:
    """Cookie first, then the Authorization header."""
    token = request.cookies.get("accessToken")
    if token:
        return token
    auth = request.headers.get("authorization")
    if auth and auth.startswith("Bearer "):
        return auth.split(" ", 1)[1].strip() or None
    return None


def get_current_user(request: Request) -> Dict[str, Any]:
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="No authorization token provided")
    try:
        payload = jwt.decode(token, settings.access_token_secret, algorithms=[JWT_ALGORITHM])
    except jwt_exc.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt_exc.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token: Missing user ID")
    try:
        doc = db[COLL_USERS].find_one({"_id": ObjectId(user_id)}, PRIVATE_FIELDS)
    except InvalidId:
        doc = None
    if not doc:
        raise HTTPException(status_code=401, detail="Invalid token: User not found")
    return serialize(doc)


def require_admin(user=Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return user


def bootstrap_admin() -> Optional[str]:
    """Create the ADMIN_EMAIL account on first start. Returns the new id, if any."""
    email = (settings.admin_email or "").strip().lower()
    if not email or not settings.admin_password:
        return None
    if db[COLL_USERS].count_documents({"email": email}) > 0:
        return None
    local = email.split("@")[0]
    now = now_utc()
    profile = {field: "-" for field in (
        "address", "province", "district", "municipality", "wardNumber", "tole",
        "telephoneNumber", "dob", "postAtRetirement", "pensionLeaseNumber", "office",
        "serviceStartDate", "serviceRetirementDate", "dateOfFillUp", "place",
    )}
    doc = {
        **profile,
        "employeeId": f"admin-{local}",
        "username": "admin",
        "surname": "admin",
        "mobileNumber": f"admin-{local}",
        "membershipNumber": f"mem-admin-{local}",
        "registrationNumber": f"reg-admin-{local}",
        "email": email,
        "password": hash_password(settings.admin_password),
        "role": "admin",
        "membershipStatus": "approved",
        "refreshToken": None,
        "profilePic": "",
        "profilePicId": None,
        "files": [],
        "createdAt": now,
        "updatedAt": now,
    }
    return str(db[COLL_USERS].insert_one(doc).inserted_id)
