import csv
import io

from fastapi.testclient import TestClient

from crmforms.app import create_app

from conftest import CONTACT_FIELDS, make_settings

GOOD_DATA = {"name": "Ada", "email": "ada@example.com", "employees": "12", "interest": "crm", "subscribe": True}


def _submit(client, form_id, data, source_info=None):
    envelope = {"formId": form_id, "data": data}
    if source_info is not None:
        envelope["sourceInfo"] = source_info
    return client.post("/api/form-submissions", json=envelope)


def test_create_and_get_form(client, contact_form):
    assert contact_form["name"] == "Contact us"
    assert contact_form["status"] == "active"
    assert [field["id"] for field in contact_form["fields"]] == [f["id"] for f in CONTACT_FIELDS]

    response = client.get(f"/api/forms/{contact_form['id']}")
    assert response.status_code == 200
    assert response.json()["description"] == "We reply within a day"

    listed = client.get("/api/forms").json()
    assert [form["id"] for form in listed] == [contact_form["id"]]


def test_create_form_rejects_authoring_defects(client):
    response = client.post(
        "/api/forms",
        json={"name": "Broken", "fields": [{"id": "a", "type": "select", "label": "A"}]},
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["message"] == "Invalid form data"
    assert detail["errors"] == ["Field 1: select needs at least one option"]

    response = client.post("/api/forms", json={"fields": CONTACT_FIELDS})
    assert response.status_code == 400

    response = client.post(
        "/api/forms", json={"name": "Hooked", "fields": CONTACT_FIELDS, "webhook_url": "ftp://x"}
    )
    assert response.status_code == 400


def test_get_missing_form_is_404(client):
    response = client.get("/api/forms/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "Form not found"


def test_update_and_status(client, contact_form):
    form_id = contact_form["id"]
    response = client.put(
        f"/api/forms/{form_id}",
        json={"name": "Talk to sales", "listId": "leads", "fields": CONTACT_FIELDS[:2]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Talk to sales"
    assert body["list_id"] == "leads"
    assert len(body["fields"]) == 2

    response = client.post(f"/api/forms/{form_id}/status", json={"status": "inactive"})
    assert response.json()["status"] == "inactive"
    response = client.post(f"/api/forms/{form_id}/status", json={"status": "paused"})
    assert response.status_code == 400


def test_schema_endpoint(client, contact_form):
    document = client.get(f"/api/forms/{contact_form['id']}/schema").json()
    assert document["type"] == "object"
    assert document["required"] == ["name", "email"]
    assert document["properties"]["email"]["x-field-type"] == "email"


def test_submission_accepted_and_listed(client, contact_form):
    form_id = contact_form["id"]
    response = _submit(client, form_id, GOOD_DATA, {"referrer": "https://acme.test/contact"})
    assert response.status_code == 201
    receipt = response.json()
    assert receipt["id"]
    assert receipt["createdAt"]

    listed = client.get(f"/api/forms/{form_id}/submissions").json()
    assert len(listed) == 1
    assert listed[0]["id"] == receipt["id"]
    assert listed[0]["data"] == GOOD_DATA
    assert listed[0]["source_info"]["referrer"] == "https://acme.test/contact"
    assert listed[0]["source_info"]["ip"] == "testclient"


def test_submission_validation_errors(client, contact_form):
    response = _submit(client, contact_form["id"], {**GOOD_DATA, "email": "not-an-email"})
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["reason"] == "validation"
    assert detail["errors"] == {"email": "Please enter a valid email address"}


def test_submission_envelope_is_checked(client, contact_form):
    response = client.post("/api/form-submissions", json={"formId": contact_form["id"], "data": "x"})
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "invalid_request"

    response = client.post("/api/form-submissions", json={"data": {}})
    assert response.status_code == 400


def test_submission_to_missing_or_closed_form(client, contact_form):
    assert _submit(client, "missing", GOOD_DATA).status_code == 404

    client.post(f"/api/forms/{contact_form['id']}/status", json={"status": "inactive"})
    response = _submit(client, contact_form["id"], GOOD_DATA)
    assert response.status_code == 409
    assert response.json()["detail"]["message"] == "This form is not accepting responses"


def test_submission_rate_limited(tmp_path):
    settings = make_settings(tmp_path)
    settings.rate_limit = 1
    client = TestClient(create_app(settings))
    form_id = client.post("/api/forms", json={"name": "Quick", "fields": CONTACT_FIELDS}).json()["id"]

    assert _submit(client, form_id, GOOD_DATA).status_code == 201
    response = _submit(client, form_id, GOOD_DATA)
    assert response.status_code == 429
    assert response.json()["detail"]["reason"] == "rate_limited"


def test_submission_listing_filters_and_cursor(client, contact_form):
    form_id = contact_form["id"]
    for name in ("Ada", "Grace", "Linus"):
        assert _submit(client, form_id, {**GOOD_DATA, "name": name}).status_code == 201

    found = client.get(f"/api/forms/{form_id}/submissions", params={"q": "grace"}).json()
    assert [item["data"]["name"] for item in found] == ["Grace"]

    found = client.get(f"/api/forms/{form_id}/submissions", params={"f_name": "li"}).json()
    assert [item["data"]["name"] for item in found] == ["Linus"]

    first = client.get(f"/api/forms/{form_id}/submissions", params={"limit": 2})
    assert len(first.json()) == 2
    cursor = first.headers["X-Next-Cursor"]
    rest = client.get(f"/api/forms/{form_id}/submissions", params={"limit": 2, "cursor": cursor})
    seen = [item["id"] for item in first.json()] + [item["id"] for item in rest.json()]
    assert len(set(seen)) == 3

    bad = client.get(f"/api/forms/{form_id}/submissions", params={"cursor": "%%%"})
    assert bad.status_code == 400


def test_export_csv(client, contact_form):
    form_id = contact_form["id"]
    _submit(client, form_id, GOOD_DATA)

    response = client.get(f"/api/forms/{form_id}/submissions/export")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0] == ["Submission ID", "Date", "IP Address", "name", "email", "employees", "interest", "subscribe"]
    assert rows[1][2:] == ["testclient", "Ada", "ada@example.com", "12", "crm", "true"]


def test_delete_form_cascades(client, contact_form):
    form_id = contact_form["id"]
    submission_id = _submit(client, form_id, GOOD_DATA).json()["id"]

    response = client.delete(f"/api/forms/{form_id}")
    assert response.json() == {"deleted": form_id, "submissions_deleted": 1}
    assert client.get(f"/api/forms/{form_id}").status_code == 404
    assert client.delete(f"/api/submissions/{submission_id}").status_code == 404


def test_delete_submission(client, contact_form):
    submission_id = _submit(client, contact_form["id"], GOOD_DATA).json()["id"]
    assert client.delete(f"/api/submissions/{submission_id}").status_code == 200
    assert client.get(f"/api/forms/{contact_form['id']}/submissions").json() == []


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_list_id_is_checked_and_stored_as_text(client):
    response = client.post(
        "/api/forms", json={"name": "Bad list", "fields": CONTACT_FIELDS, "listId": {"a": 1}}
    )
    assert response.status_code == 400

    response = client.post("/api/forms", json={"name": "Numbered", "fields": CONTACT_FIELDS, "listId": 5})
    assert response.status_code == 201
    form_id = response.json()["id"]
    assert client.get(f"/api/forms/{form_id}").json()["list_id"] == "5"

    assert client.put(f"/api/forms/{form_id}", json={"listId": [5]}).status_code == 400
    assert client.put(f"/api/forms/{form_id}", json={"listId": None}).json()["list_id"] is None


def test_form_listing_has_counts_and_embed_code(client, contact_form):
    form_id = contact_form["id"]
    _submit(client, form_id, GOOD_DATA)
    _submit(client, form_id, GOOD_DATA)

    listed = client.get("/api/forms").json()[0]
    assert listed["field_count"] == len(CONTACT_FIELDS)
    assert listed["submission_count"] == 2
    assert f'src="http://testserver/forms/embed/{form_id}"' in listed["embed_code"]
    assert listed["embed_code"].startswith("<iframe")


def test_malformed_json_bodies_are_400(client, contact_form):
    form_id = contact_form["id"]
    headers = {"content-type": "application/json"}
    assert client.post("/api/forms", content="{oops", headers=headers).status_code == 400
    assert client.put(f"/api/forms/{form_id}", content="{oops", headers=headers).status_code == 400
    assert client.post(f"/api/forms/{form_id}/status", content="{oops", headers=headers).status_code == 400
    assert client.post(f"/api/forms/{form_id}/status", json=["active"]).status_code == 400
