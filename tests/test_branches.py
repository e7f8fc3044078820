import json
import os

from conftest import UPLOADS_DIR, make_user, png
from database import COLL_BRANCHES, db

API = "/api/v1/branches"
CONTACT = json.dumps({"phone": "061-520000", "email": "pokhara@rest.org.np"})


def branch_form(name="Pokhara Branch!!", **extra):
    form = {
        "name": name,
        "address": "Lakeside, Pokhara",
        "mapLink": "https://maps.example.org/pokhara",
        "description": "Western region branch",
        "contact": CONTACT,
    }
    form.update(extra)
    return form


def create_branch(client, headers, files=None, **extra):
    return client.post(API, data=branch_form(**extra), files=files or [], headers=headers)


def test_create_branch_derives_slug(client, admin_headers, admin):
    res = create_branch(client, admin_headers)
    assert res.status_code == 201
    branch = res.json()["data"]
    assert branch["slug"] == "pokharabranch"
    assert branch["workingHours"] == "Sunday - Friday: 10:00 AM - 5:00 PM"
    assert branch["isActive"] is True
    assert branch["createdBy"]["id"] == str(admin["_id"])


def test_branch_name_and_slug_conflicts(client, admin_headers):
    create_branch(client, admin_headers)

    res = create_branch(client, admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Branch with this name already exists"

    res = create_branch(client, admin_headers, name="Pokhara  Branch")
    assert res.status_code == 400
    assert res.json()["message"] == "Branch slug already exists. Please use a different name."


def test_branch_requires_core_fields_and_contact(client, admin_headers):
    res = create_branch(client, admin_headers, mapLink="")
    assert res.status_code == 400
    assert res.json()["message"] == "Name, address, map link, and description are required"

    res = create_branch(client, admin_headers, contact="{not json")
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid contact format"

    res = create_branch(client, admin_headers, contact=json.dumps({"phone": "061-520000"}))
    assert res.status_code == 400
    assert res.json()["message"] == "Contact phone and email are required"


def test_team_photos_follow_profile_pic_index(client, admin_headers):
    team = [
        {"name": "Hari", "position": "Coordinator", "profilePicIndex": 1},
        {"name": "Sita", "position": "Treasurer", "profilePicIndex": 0},
        {"name": "Gita", "position": "Volunteer"},
    ]
    files = [
        ("teamMemberProfilePics", ("sita.png", b"png-bytes", "image/png")),
        ("teamMemberProfilePics", ("hari.jpg", b"jpg-bytes", "image/jpeg")),
    ]
    res = create_branch(client, admin_headers, files=files, teamMembers=json.dumps(team))
    assert res.status_code == 201
    members = res.json()["data"]["teamMembers"]

    assert [m["name"] for m in members] == ["Hari", "Sita", "Gita"]
    assert members[0]["profilePic"].endswith(".jpg")
    assert members[1]["profilePic"].endswith(".png")
    assert members[2]["profilePic"] == ""
    with open(os.path.join(UPLOADS_DIR, members[0]["profilePicId"]), "rb") as fh:
        assert fh.read() == b"jpg-bytes"


def test_team_photo_index_must_match_an_upload(client, admin_headers):
    team = [{"name": "Hari", "profilePicIndex": 2}]
    res = create_branch(client, admin_headers, files=[("teamMemberProfilePics", png())],
                        teamMembers=json.dumps(team))
    assert res.status_code == 400
    assert os.listdir(UPLOADS_DIR) == []


def test_team_photo_cannot_be_shared(client, admin_headers):
    team = [{"name": "Hari", "profilePicIndex": 0}, {"name": "Sita", "profilePicIndex": 0}]
    res = create_branch(client, admin_headers, files=[("teamMemberProfilePics", png())],
                        teamMembers=json.dumps(team))
    assert res.status_code == 400


def test_team_member_link_borrows_name_and_requires_approval(client, admin_headers):
    pending = make_user(status="pending")
    res = create_branch(client, admin_headers, teamMembers=json.dumps([{"userId": str(pending["_id"])}]))
    assert res.status_code == 400
    assert res.json()["message"] == "Team member must be an approved member"

    linked = make_user(profilePic="https://example.org/ram.png")
    res = create_branch(client, admin_headers, teamMembers=json.dumps([{"userId": str(linked["_id"])}]))
    assert res.status_code == 201
    member = res.json()["data"]["teamMembers"][0]
    assert member["name"] == f"Ram {linked['surname'].title()}"
    assert member["profilePic"] == "https://example.org/ram.png"
    assert member["profilePicId"] is None
    assert member["linkedMember"]["email"] == linked["email"]

    public = client.get(f"{API}/slug/pokharabranch").json()["data"]
    assert "linkedMember" not in public["teamMembers"][0]
    assert "createdBy" not in public


def test_public_listing_and_toggle(client, admin_headers):
    branch = create_branch(client, admin_headers).json()["data"]
    create_branch(client, admin_headers, name="Dharan", contact=CONTACT)

    assert len(client.get(API).json()["data"]) == 2

    res = client.patch(f"{API}/{branch['id']}/toggle-status", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["message"] == "Branch deactivated successfully"

    assert [b["slug"] for b in client.get(API).json()["data"]] == ["dharan"]
    assert client.get(f"{API}/slug/pokharabranch").status_code == 404

    assert client.get(API, params={"includeInactive": "true"}).status_code == 401
    res = client.get(API, params={"includeInactive": "true"}, headers=admin_headers)
    assert len(res.json()["data"]) == 2


def test_rename_regenerates_slug(client, admin_headers):
    branch = create_branch(client, admin_headers).json()["data"]
    res = client.put(f"{API}/{branch['id']}", data={"name": "Kaski Branch"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"]["slug"] == "kaskibranch"
    assert client.get(f"{API}/slug/kaskibranch").status_code == 200


def test_hero_image_replacement_and_delete(client, admin_headers):
    branch = create_branch(client, admin_headers, files=[("heroImage", png("hero.png"))]).json()["data"]
    first = os.path.join(UPLOADS_DIR, branch["heroImageId"])
    assert os.path.exists(first)

    res = client.put(f"{API}/{branch['id']}", files=[("heroImage", png("hero2.png"))], headers=admin_headers)
    second = res.json()["data"]["heroImageId"]
    assert not os.path.exists(first)
    assert os.path.exists(os.path.join(UPLOADS_DIR, second))

    res = client.delete(f"{API}/{branch['id']}", headers=admin_headers)
    assert res.status_code == 200
    assert not os.path.exists(os.path.join(UPLOADS_DIR, second))
    assert db[COLL_BRANCHES].count_documents({}) == 0


def test_branch_admin_routes_need_admin(client, member_headers):
    assert create_branch(client, member_headers).status_code == 403
