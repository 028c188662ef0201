import pytest
from fastapi.testclient import TestClient

from app.models.database import get_session_factory
from main import app

XLSX_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture
def client(session_factory):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def acme_upload(make_workbook, acme_sheets):
    return make_workbook(dict(acme_sheets))


def _upload(client, content, filename="acme.xlsx"):
    return client.post(
        "/api/workbook-import/upload",
        files={"file": (filename, content, XLSX_TYPE)},
    )


def _import(client, content):
    session_id = _upload(client, content).json()["session_id"]
    response = client.post(f"/api/workbook-import/save/{session_id}")
    assert response.status_code == 200, response.text
    return response.json()


def test_upload_preview_and_save(client, acme_upload):
    response = _upload(client, acme_upload)
    assert response.status_code == 200
    body = response.json()
    assert body["summary"]["transactions"] == 1
    assert body["plan"]["transaction_rule"] == "content"

    preview = client.get(f"/api/workbook-import/preview/{body['session_id']}")
    assert preview.status_code == 200
    assert preview.json()["batch"]["issuer"]["issuer_name"] == "Acme Corp"

    saved = client.post(f"/api/workbook-import/save/{body['session_id']}")
    assert saved.status_code == 200
    result = saved.json()
    assert result["success"] is True
    assert result["message"] == "All data saved successfully!"
    assert "Transactions: 1" in result["added_records"]

    job = client.get(f"/api/workbook-import/jobs/{result['job_id']}").json()
    assert job["status"] == "completed"
    assert job["next_step"] is None


def test_preview_edit_changes_saved_quantity(client, acme_upload):
    session_id = _upload(client, acme_upload).json()["session_id"]
    preview = client.get(f"/api/workbook-import/preview/{session_id}").json()
    row = dict(preview["batch"]["transactions"][0], share_quantity="2,500")

    updated = client.post(
        f"/api/workbook-import/update/{session_id}",
        json={"section": "transactions", "rows": [row]},
    )
    assert updated.status_code == 200
    assert updated.json()["batch"]["transactions"][0]["share_quantity"] == 2500

    rejected = client.post(
        f"/api/workbook-import/update/{session_id}",
        json={"section": "transactions", "rows": [dict(row, share_quantity=-1)]},
    )
    assert rejected.status_code == 400


def test_ledger_views_after_import(client, acme_upload):
    issuer_id = _import(client, acme_upload)["issuer_id"]

    book = client.get(f"/api/issuers/{issuer_id}/control-book", params={"cusip": "123456789"})
    assert book.status_code == 200
    groups = book.json()["groups"]
    assert [(g["transaction_date"], g["transaction_type"], g["running_total"]) for g in groups] == [
        ("2024-01-01", "IPO", 1000),
    ]

    csv_response = client.get(f"/api/issuers/{issuer_id}/control-book.csv", params={"cusip": "123456789"})
    assert csv_response.status_code == 200
    assert csv_response.headers["content-type"].startswith("text/csv")
    assert "Acme Corp" in csv_response.text

    recordkeeping = client.get(f"/api/issuers/{issuer_id}/recordkeeping").json()
    assert recordkeeping["summary"][0]["total_outstanding_shares"] == 1000
    assert recordkeeping["totals"]["net_shares"] == 1000

    holders = client.get(f"/api/issuers/{issuer_id}/shareholders").json()["shareholders"]
    statement = client.get(f"/api/issuers/{issuer_id}/statements/{holders[0]['id']}").json()
    assert statement["total_shares"] == 1000
    assert statement["holdings"][0]["cusip"] == "123456789"


def test_reimport_conflicts_until_overridden(client, acme_upload):
    first = _import(client, acme_upload)

    session_id = _upload(client, acme_upload).json()["session_id"]
    conflict = client.post(f"/api/workbook-import/save/{session_id}")
    assert conflict.status_code == 409
    detail = conflict.json()["detail"]
    assert detail["existing_issuer"]["id"] == first["issuer_id"]

    resumed = client.post(f"/api/workbook-import/jobs/{detail['job_id']}/resume", params={"override": "true"})
    assert resumed.status_code == 200
    assert resumed.json()["issuer_id"] == first["issuer_id"]
    assert len(client.get("/api/issuers").json()["issuers"]) == 1


def test_bad_uploads_and_unknown_ids(client):
    assert _upload(client, b"hello", filename="notes.txt").status_code == 400
    assert _upload(client, b"not really excel", filename="broken.xlsx").status_code == 400
    assert client.get("/api/workbook-import/preview/nope").status_code == 404
    assert client.post("/api/workbook-import/save/nope").status_code == 404
    assert client.get("/api/workbook-import/jobs/nope").status_code == 404
    assert client.get("/api/issuers/999").status_code == 404


def test_manual_entry_endpoints(client):
    issuer = client.post("/api/issuers", json={"issuer_name": "Beta Holdings"})
    assert issuer.status_code == 201
    issuer_id = issuer.json()["id"]

    security = client.post(f"/api/issuers/{issuer_id}/securities", json={"cusip": "555", "issue_name": "Beta Units"})
    assert security.status_code == 201
    holder = client.post(f"/api/issuers/{issuer_id}/shareholders", json={"account_number": "B-1"})
    assert holder.status_code == 201
    holder_id = holder.json()["id"]

    negative = client.post(
        f"/api/issuers/{issuer_id}/transactions",
        json={"transaction_type": "IPO", "cusip": "555", "share_quantity": -10, "shareholder_id": holder_id},
    )
    assert negative.status_code == 400

    created = client.post(
        f"/api/issuers/{issuer_id}/transactions",
        json={"transaction_type": "Transfer Debit", "cusip": "555", "share_quantity": 10,
              "shareholder_id": holder_id, "transaction_date": "02/01/2024"},
    )
    assert created.status_code == 201
    assert created.json()["credit_debit"] == "Debit"

    template = client.post(
        f"/api/issuers/{issuer_id}/restriction-templates",
        json={"code": "R144", "legend": "Rule 144 restricted"},
    )
    assert template.status_code == 201
    assert template.json()["restriction_type"] == "R144"
    assert template.json()["description"] == "Rule 144 restricted"


def test_split_ratio_update_is_validated(client):
    issuer_id = client.post("/api/issuers", json={"issuer_name": "Gamma"}).json()["id"]

    bad = client.put(f"/api/issuers/{issuer_id}/split-ratio", json={"class_a_ratio": "abc", "rights_ratio": "1/2"})
    assert bad.status_code == 400

    good = client.put(f"/api/issuers/{issuer_id}/split-ratio", json={"class_a_ratio": "1", "rights_ratio": "1/2"})
    assert good.status_code == 200
    current = client.get(f"/api/issuers/{issuer_id}/split-ratio").json()
    assert (current["class_a_ratio"], current["rights_ratio"]) == (1.0, 0.5)
