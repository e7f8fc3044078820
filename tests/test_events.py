import os

from conftest import UPLOADS_DIR, png

API = "/api/v1/event"
PDF = ("minutes.pdf", b"%PDF-1.4 minutes", "application/pdf")


def create_event(client, headers, title="Annual General Meeting", files=None, **fields):
    data = {"title": title, "description": "Yearly meeting of all members", **fields}
    if files is None:
        files = [("files", png())]
    return client.post(f"{API}/create-event", data=data, files=files, headers=headers)


def test_create_event_lowercases_text_and_stores_files(client, admin_headers):
    res = create_event(client, admin_headers, location="Babarmahal")
    assert res.status_code == 201
    event = res.json()["data"]
    assert event["title"] == "annual general meeting"
    assert event["description"] == "yearly meeting of all members"
    assert event["location"] == "Babarmahal"
    assert len(event["files"]) == 1
    stored = event["files"][0]
    assert stored["id"]
    assert stored["publicId"].startswith("Event Files/Images/")
    assert os.path.exists(os.path.join(UPLOADS_DIR, stored["publicId"]))


def test_event_titles_are_unique_ignoring_case(client, admin_headers):
    assert create_event(client, admin_headers).status_code == 201
    res = create_event(client, admin_headers, title="ANNUAL general MEETING")
    assert res.status_code == 400
    assert res.json()["message"] == "Event already exists"


def test_create_event_requires_a_file(client, admin_headers):
    res = create_event(client, admin_headers, files=[])
    assert res.status_code == 400
    assert res.json()["message"] == "At least one file is required"


def test_create_event_enforces_category_ceilings(client, admin_headers):
    res = create_event(client, admin_headers, files=[("files", png(f"{i}.png")) for i in range(6)])
    assert res.status_code == 400
    assert res.json()["message"] == "Maximum 5 images allowed"
    assert os.listdir(UPLOADS_DIR) == []


def test_create_event_rejects_unknown_types(client, admin_headers):
    res = create_event(client, admin_headers, files=[("files", ("notes.txt", b"hello", "text/plain"))])
    assert res.status_code == 400
    assert res.json()["message"] == "Unsupported file type: text/plain"


def test_members_cannot_create_events(client, member_headers):
    assert create_event(client, member_headers).status_code == 403


def test_update_event_appends_files_within_limits(client, admin_headers):
    event = create_event(client, admin_headers).json()["data"]
    url = f"{API}/update-event/{event['id']}"

    res = client.put(url, data={"location": "Pokhara"}, files=[("files", PDF)], headers=admin_headers)
    assert res.status_code == 200
    updated = res.json()["data"]
    assert updated["location"] == "Pokhara"
    assert [f["mimetype"] for f in updated["files"]] == ["image/png", "application/pdf"]

    res = client.put(url, files=[("files", PDF), ("files", PDF)], headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Maximum 2 documents allowed"


def test_update_event_needs_something_to_change(client, admin_headers):
    event = create_event(client, admin_headers).json()["data"]
    res = client.put(f"{API}/update-event/{event['id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "At least one field must be provided for update"


def test_delete_single_event_file(client, admin_headers):
    event = create_event(client, admin_headers, files=[("files", png("a.png")), ("files", png("b.png"))]).json()["data"]
    target = event["files"][0]

    res = client.delete(f"{API}/delete-event-file/{event['id']}/{target['id']}", headers=admin_headers)
    assert res.status_code == 200
    assert [f["id"] for f in res.json()["data"]["files"]] == [event["files"][1]["id"]]
    assert not os.path.exists(os.path.join(UPLOADS_DIR, target["publicId"]))

    res = client.delete(f"{API}/delete-event-file/{event['id']}/{target['id']}", headers=admin_headers)
    assert res.status_code == 404


def test_delete_event_removes_files(client, admin_headers):
    event = create_event(client, admin_headers).json()["data"]
    res = client.delete(f"{API}/delete-event/{event['id']}", headers=admin_headers)
    assert res.status_code == 200
    assert not os.path.exists(os.path.join(UPLOADS_DIR, event["files"][0]["publicId"]))
    assert client.get(f"{API}/get-event/{event['id']}").status_code == 404


def test_list_events_is_public(client, admin_headers):
    res = client.get(f"{API}/get-all-event")
    assert res.status_code == 200
    assert res.json()["data"] == []
    assert res.json()["message"] == "No events found"

    create_event(client, admin_headers)
    res = client.get(f"{API}/get-all-event")
    assert len(res.json()["data"]) == 1
