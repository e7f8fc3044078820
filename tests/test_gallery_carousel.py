import os

from pymongo.errors import PyMongoError

from conftest import UPLOADS_DIR, png
from database import COLL_BRANCHES, COLL_CAROUSELS, db, now_utc

GALLERY = "/api/v1/gallery"
CAROUSEL = "/api/v1/carousel"


def images(count, prefix="img"):
    return [("images", png(f"{prefix}{i}.png")) for i in range(count)]


def add_branch(slug="pokhara", active=True):
    now = now_utc()
    return db[COLL_BRANCHES].insert_one({
        "name": slug.title(), "slug": slug, "isActive": active, "order": 0,
        "createdAt": now, "updatedAt": now,
    }).inserted_id


# Gallery

def upload_post(client, headers, category="Meetings", count=2, title="Board meeting"):
    data = {"title": title, "category": category, "date": "2081-05-01"}
    return client.post(f"{GALLERY}/upload-images", data=data, files=images(count), headers=headers)


def test_upload_post_and_filter_by_category(client, admin_headers):
    res = upload_post(client, admin_headers)
    assert res.status_code == 201
    assert len(res.json()["data"]["images"]) == 2
    upload_post(client, admin_headers, category="Workshops", count=1)

    res = client.get(f"{GALLERY}/get-all-images", params={"category": "Meetings"})
    assert [p["category"] for p in res.json()["data"]] == ["Meetings"]

    res = client.get(f"{GALLERY}/get-all-images", params={"category": "All Photos"})
    assert len(res.json()["data"]) == 2


def test_upload_post_validation(client, admin_headers):
    res = client.post(f"{GALLERY}/upload-images", data={"title": "x"}, files=images(1), headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Title, category, and date are required"

    res = upload_post(client, admin_headers, category="Picnics")
    assert res.status_code == 400
    assert res.json()["message"] == "Validation failed"
    assert os.listdir(UPLOADS_DIR) == []

    res = upload_post(client, admin_headers, count=11)
    assert res.status_code == 400


def test_deleting_last_gallery_image_deletes_post(client, admin_headers):
    post = upload_post(client, admin_headers).json()["data"]
    first, second = post["images"]

    res = client.delete(f"{GALLERY}/delete-image/{post['id']}/{first['id']}", headers=admin_headers)
    assert res.status_code == 200
    assert [i["id"] for i in res.json()["data"]["images"]] == [second["id"]]
    assert not os.path.exists(os.path.join(UPLOADS_DIR, first["publicId"]))

    res = client.delete(f"{GALLERY}/delete-image/{post['id']}/{second['id']}", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["message"] == "Post deleted (no images remaining)"
    assert client.get(f"{GALLERY}/get-image/{post['id']}").status_code == 404


def test_delete_whole_post(client, admin_headers):
    post = upload_post(client, admin_headers).json()["data"]
    res = client.delete(f"{GALLERY}/delete-post/{post['id']}", headers=admin_headers)
    assert res.status_code == 200
    for image in post["images"]:
        assert not os.path.exists(os.path.join(UPLOADS_DIR, image["publicId"]))


# Carousel

def upload_carousel(client, headers, count=3, **data):
    form = {"title": "Welcome", "type": "home", **data}
    return client.post(f"{CAROUSEL}/upload-carousel", data=form, files=images(count), headers=headers)


def test_branch_carousel_needs_an_existing_branch(client, admin_headers):
    res = upload_carousel(client, admin_headers, type="branch")
    assert res.status_code == 400
    assert res.json()["message"] == "Branch is required for branch type carousel"

    res = upload_carousel(client, admin_headers, type="branch", branch="nowhere")
    assert res.status_code == 404
    assert res.json()["message"] == "Branch not found for carousel"

    add_branch("pokhara")
    res = upload_carousel(client, admin_headers, type="branch", branch="Pokhara")
    assert res.status_code == 201
    carousel = res.json()["data"]
    assert carousel["branch"] == "pokhara"
    assert carousel["order"] == 1
    assert len(carousel["images"]) == 3
    assert carousel["images"][0]["alt"] == "Welcome - Carousel Image"


def test_branch_carousel_accepts_branch_id(client, admin_headers):
    branch_id = add_branch("dharan")
    res = upload_carousel(client, admin_headers, type="branch", branch=str(branch_id))
    assert res.status_code == 201
    assert res.json()["data"]["branch"] == "dharan"


def test_inactive_branch_is_refused_by_slug_and_by_id(client, admin_headers):
    branch_id = add_branch("kaski", active=False)
    for ref in ("kaski", str(branch_id)):
        res = upload_carousel(client, admin_headers, type="branch", branch=ref)
        assert res.status_code == 404
        assert res.json()["message"] == "Branch not found for carousel"
    assert db[COLL_CAROUSELS].count_documents({}) == 0


class RefusingInserts:
    def __init__(self, collection):
        self.collection = collection

    def insert_one(self, doc):
        raise PyMongoError("write refused")

    def __getattr__(self, name):
        return getattr(self.collection, name)


def test_failed_carousel_insert_removes_stored_images(quiet_client, admin_headers, monkeypatch):
    monkeypatch.setattr("routes.carousel.db", {
        COLL_CAROUSELS: RefusingInserts(db[COLL_CAROUSELS]),
        COLL_BRANCHES: db[COLL_BRANCHES],
    })
    res = upload_carousel(quiet_client, admin_headers)
    assert res.status_code == 500
    assert not any(files for _, _, files in os.walk(UPLOADS_DIR))


def test_carousel_rejects_unknown_type(client, admin_headers):
    res = upload_carousel(client, admin_headers, type="sidebar")
    assert res.status_code == 400


def test_carousel_order_is_per_group(client, admin_headers):
    add_branch("pokhara")
    assert upload_carousel(client, admin_headers).json()["data"]["order"] == 1
    assert upload_carousel(client, admin_headers).json()["data"]["order"] == 2
    branch = upload_carousel(client, admin_headers, type="branch", branch="pokhara").json()["data"]
    assert branch["order"] == 1


def test_carousel_image_ceiling(client, admin_headers):
    carousel = upload_carousel(client, admin_headers).json()["data"]
    res = client.post(f"{CAROUSEL}/add-images/{carousel['id']}", files=images(8, "more"), headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot exceed 10 images per carousel. Current: 3, Adding: 8"

    res = client.post(f"{CAROUSEL}/add-images/{carousel['id']}", files=images(7, "more"), headers=admin_headers)
    assert res.status_code == 200
    assert len(res.json()["data"]["images"]) == 10


def test_carousel_requires_images(client, admin_headers):
    res = upload_carousel(client, admin_headers, count=0)
    assert res.status_code == 400
    assert res.json()["message"] == "At least one image is required (max 10)"


def test_removing_carousel_images_keeps_order_then_cascades(client, admin_headers):
    carousel = upload_carousel(client, admin_headers).json()["data"]
    ids = [image["id"] for image in carousel["images"]]

    res = client.delete(f"{CAROUSEL}/delete-carousel-image/{carousel['id']}/{ids[1]}", headers=admin_headers)
    assert res.status_code == 200
    assert [i["id"] for i in res.json()["data"]["images"]] == [ids[0], ids[2]]

    client.delete(f"{CAROUSEL}/delete-carousel-image/{carousel['id']}/{ids[0]}", headers=admin_headers)
    res = client.delete(f"{CAROUSEL}/delete-carousel-image/{carousel['id']}/{ids[2]}", headers=admin_headers)
    assert res.json()["message"] == "Carousel deleted (no images remaining)"
    assert db[COLL_CAROUSELS].count_documents({}) == 0


def test_inactive_carousels_are_not_listed(client, admin_headers):
    carousel = upload_carousel(client, admin_headers).json()["data"]
    res = client.put(f"{CAROUSEL}/update-carousel/{carousel['id']}", json={"isActive": False, "title": "Renamed"},
                     headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"]["title"] == "Renamed"

    res = client.get(f"{CAROUSEL}/get-all-carousels", params={"type": "home"})
    assert res.json()["data"] == []


def test_delete_carousel_removes_files(client, admin_headers):
    carousel = upload_carousel(client, admin_headers, count=2).json()["data"]
    res = client.delete(f"{CAROUSEL}/delete-carousel/{carousel['id']}", headers=admin_headers)
    assert res.status_code == 200
    for image in carousel["images"]:
        assert not os.path.exists(os.path.join(UPLOADS_DIR, image["publicId"]))
