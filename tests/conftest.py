import os
import shutil
import tempfile

import mongomock
import pytest

UPLOADS_DIR = tempfile.mkdtemp(prefix="rest-uploads-")

os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "rest_test"
os.environ["UPLOADS_DIR"] = UPLOADS_DIR
os.environ["STORAGE_BACKEND"] = "local"
os.environ["BCRYPT_ROUNDS"] = "4"
for name in ("CORS_ORIGIN", "USER_CORS_ORIGIN", "CORS_ORIGINS", "ADMIN_EMAIL", "ADMIN_PASSWORD",
             "EMAIL_HOST", "EMAIL_PORT", "EMAIL_USER", "EMAIL_PASS", "EXPOSE_RESET_TOKEN"):
    os.environ.pop(name, None)

# every pymongo.MongoClient built from here on talks to an in-memory server
mongomock.patch(servers=(("localhost", 27017),)).start()

from fastapi.testclient import TestClient  # noqa: E402

from database import COLL_USERS, db, now_utc  # noqa: E402
from main import app  # noqa: E402
from routes.content import page_cache  # noqa: E402
from security import create_access_token, hash_password  # noqa: E402

PASSWORD = "secret-pass-1"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def quiet_client():
    """Unhandled errors come back as 500 responses instead of being raised in the test."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture(autouse=True)
def clean_state():
    yield
    for name in db.list_collection_names():
        db[name].delete_many({})
    page_cache.clear()
    for entry in os.listdir(UPLOADS_DIR):
        path = os.path.join(UPLOADS_DIR, entry)
        if os.path.isdir(path):
            shutil.rmtree(path)
        else:
            os.remove(path)


def member_profile(n, **overrides):
    profile = {
        "employeeId": f"emp{n:03d}",
        "username": "ram",
        "surname": f"shrestha{n}",
        "address": "babarmahal",
        "province": "bagmati",
        "district": "kathmandu",
        "municipality": "kathmandu metropolitan",
        "wardNumber": "11",
        "tole": "tole",
        "telephoneNumber": "01-4271711",
        "mobileNumber": f"98000000{n:02d}",
        "dob": "2010/01/01",
        "postAtRetirement": "engineer",
        "pensionLeaseNumber": f"pl-{n}",
        "office": "ntc",
        "serviceStartDate": "2040/01/01",
        "serviceRetirementDate": "2075/01/01",
        "dateOfFillUp": "2081/01/01",
        "place": "kathmandu",
        "email": f"member{n}@rest.org.np",
    }
    profile.update(overrides)
    return profile


_counter = {"n": 1000}


def make_user(role="user", status="approved", **overrides):
    """Insert a member straight into the database and return the stored document."""
    _counter["n"] += 1
    n = _counter["n"]
    now = now_utc()
    doc = {
        **member_profile(n),
        "membershipNumber": f"MEM-{n:08d}",
        "registrationNumber": f"REG-{n:08d}",
        "password": hash_password(PASSWORD),
        "role": role,
        "membershipStatus": status,
        "refreshToken": None,
        "profilePic": "",
        "profilePicId": None,
        "files": [],
        "createdAt": now,
        "updatedAt": now,
    }
    doc.update(overrides)
    doc["_id"] = db[COLL_USERS].insert_one(doc).inserted_id
    return doc


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


def png(name="photo.png"):
    return (name, PNG, "image/png")


@pytest.fixture
def admin():
    return make_user(role="admin")


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def member():
    return make_user()


@pytest.fixture
def member_headers(member):
    return auth_headers(member)
