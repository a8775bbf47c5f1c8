"""
Tests for the HTTP API: the full upload-to-rollback flow and error mapping.
"""

import pytest
from fastapi.testclient import TestClient

from customer_import.domain.imports.fields import FIELDS
from customer_import.main import create_app
from conftest import CUSTOMER_MAPPING, three_row_csv

HEADERS = {"X-Organization-Id": "1", "X-User-Id": "10"}
OTHER_TENANT = {"X-Organization-Id": "2", "X-User-Id": "20"}


@pytest.fixture
def client(pipeline):
    return TestClient(create_app(pipeline))


def _upload(client, content=None, file_name="kunder.csv", headers=HEADERS):
    return client.post(
        "/imports/upload",
        files={"file": (file_name, content or three_row_csv(), "text/csv")},
        headers=headers,
    )


def _validated_batch(client):
    batch_id = _upload(client).json()["batch"]["id"]
    assert client.post(f"/imports/batches/{batch_id}/mapping", json={"mapping": CUSTOMER_MAPPING},
                       headers=HEADERS).status_code == 200
    assert client.post(f"/imports/batches/{batch_id}/validate", headers=HEADERS).status_code == 200
    return batch_id


class TestServiceEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["message"] == "Customer Import API"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_tenant_header(self, client):
        response = client.get("/imports/batches")
        assert response.status_code == 401


class TestImportFlow:
    def test_upload(self, client):
        response = _upload(client)
        assert response.status_code == 200
        data = response.json()
        assert data["batch"]["status"] == "uploaded"
        assert data["batch"]["row_count"] == 3
        assert data["preview"]["total"] == 3
        assert len(data["columns"]) == 7
        assert len(data["suggestions"]) == len(FIELDS)
        assert data["cleaning"]["total_rows_flagged"] == 0
        assert {rule["rule_id"] for rule in data["cleaning"]["rules"]} >= {"standardize_empty", "remove_summary_rows"}

    def test_upload_rejections(self, client):
        response = _upload(client, file_name="kunder.pdf")
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_format"

        response = _upload(client, content=b"x" * (1024 * 1024 + 10))
        assert response.status_code == 413
        assert response.json()["detail"]["code"] == "too_large"

    def test_full_flow(self, client):
        batch_id = _upload(client).json()["batch"]["id"]

        suggestions = client.post(f"/imports/batches/{batch_id}/suggest-mapping", headers=HEADERS).json()
        by_field = {s["field"]: s["source_column"] for s in suggestions["suggestions"]}
        assert by_field["name"] == "Kundenavn"

        mapped = client.post(f"/imports/batches/{batch_id}/mapping", json={"mapping": CUSTOMER_MAPPING},
                             headers=HEADERS)
        assert mapped.status_code == 200
        assert mapped.json()["batch"]["status"] == "mapped"

        validated = client.post(f"/imports/batches/{batch_id}/validate", headers=HEADERS).json()
        assert (validated["valid_count"], validated["error_count"]) == (2, 1)

        errors = client.get(f"/imports/batches/{batch_id}/preview", params={"errors_only": True},
                            headers=HEADERS).json()
        assert errors["total"] == 1
        assert errors["rows"][0]["issues"][0]["code"] == "required_field_missing"

        dry = client.post(f"/imports/batches/{batch_id}/commit", json={"dry_run": True}, headers=HEADERS).json()
        assert (dry["dry_run"], dry["created_count"]) == (True, 2)

        committed = client.post(f"/imports/batches/{batch_id}/commit", json={}, headers=HEADERS)
        assert committed.status_code == 200
        assert (committed.json()["created_count"], committed.json()["skipped_count"]) == (2, 1)

        again = client.post(f"/imports/batches/{batch_id}/commit", json={}, headers=HEADERS)
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "invalid_state"

        rolled_back = client.post(f"/imports/batches/{batch_id}/rollback", json={"reason": "Feil fil"},
                                  headers=HEADERS)
        assert rolled_back.status_code == 200
        assert rolled_back.json()["records_deleted"] == 2

        again = client.post(f"/imports/batches/{batch_id}/rollback", json={"reason": "Feil fil"}, headers=HEADERS)
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "already_rolled_back"

        detail = client.get(f"/imports/batches/{batch_id}", headers=HEADERS).json()
        assert detail["batch"]["status"] == "rolled_back"
        assert detail["batch"]["rollback_reason"] == "Feil fil"

    def test_commit_with_row_edits(self, client):
        batch_id = _validated_batch(client)
        rows = client.get(f"/imports/batches/{batch_id}/preview", headers=HEADERS).json()["rows"]
        invalid_id = rows[0]["row_id"]

        response = client.post(
            f"/imports/batches/{batch_id}/commit",
            json={"row_edits": {str(invalid_id): {"name": "Nordlys Kontroll AS"}}},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["created_count"] == 3

    def test_commit_edit_with_unknown_field_rejected(self, client):
        batch_id = _validated_batch(client)
        response = client.post(
            f"/imports/batches/{batch_id}/commit",
            json={"row_edits": {"1": {"shoe_size": "44"}}},
            headers=HEADERS,
        )
        assert response.status_code == 422

    def test_mapping_request_needs_mapping_or_template(self, client):
        batch_id = _upload(client).json()["batch"]["id"]
        response = client.post(f"/imports/batches/{batch_id}/mapping", json={}, headers=HEADERS)
        assert response.status_code == 422

    def test_mapping_with_malformed_rule_rejected(self, client):
        batch_id = _upload(client).json()["batch"]["id"]
        mapping = {"mappings": [{
            "source_column": "Kundenavn", "target_field": "name",
            "validation_rules": [{"type": "range", "params": {"min": 5, "max": 1}}],
        }]}
        response = client.post(f"/imports/batches/{batch_id}/mapping", json={"mapping": mapping}, headers=HEADERS)
        assert response.status_code == 422

    def test_error_report_download(self, client):
        batch_id = _validated_batch(client)
        response = client.get(f"/imports/batches/{batch_id}/error-report", headers=HEADERS)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert f"import-{batch_id}-errors.csv" in response.headers["content-disposition"]
        lines = response.text.strip().split("\n")
        assert lines[0] == "row_number;field;severity;code;message;value;suggestion"
        assert lines[1].startswith("2;name;error;required_field_missing;")


class TestBatchEndpoints:
    def test_other_tenant_gets_404(self, client):
        batch_id = _upload(client).json()["batch"]["id"]
        response = client.get(f"/imports/batches/{batch_id}", headers=OTHER_TENANT)
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "not_found"

    def test_list_batches(self, client):
        _upload(client)
        data = client.get("/imports/batches", headers=HEADERS).json()
        assert data["total"] == 1
        assert client.get("/imports/batches", params={"status": "bogus"}, headers=HEADERS).status_code == 400

    def test_cancel(self, client):
        batch_id = _upload(client).json()["batch"]["id"]
        response = client.delete(f"/imports/batches/{batch_id}", headers=HEADERS)
        assert response.status_code == 200
        assert response.json() == {"batch_id": batch_id, "status": "cancelled", "cancelled": True}
        assert client.delete(f"/imports/batches/{batch_id}", headers=HEADERS).status_code == 409


class TestTemplateEndpoints:
    def test_template_lifecycle(self, client):
        batch_id = _upload(client).json()["batch"]["id"]
        mapped = client.post(
            f"/imports/batches/{batch_id}/mapping",
            json={"mapping": CUSTOMER_MAPPING, "save_as_template": True, "template_name": "Standard"},
            headers=HEADERS,
        ).json()
        template_id = mapped["template_id"]

        templates = client.get("/imports/templates", headers=HEADERS).json()
        assert [t["name"] for t in templates] == ["Standard"]
        assert client.get(f"/imports/templates/{template_id}", headers=OTHER_TENANT).status_code == 404

        second = _upload(client).json()
        assert second["matching_template_id"] == template_id
        duplicate = client.post(
            f"/imports/batches/{second['batch']['id']}/mapping",
            json={"mapping": CUSTOMER_MAPPING, "save_as_template": True, "template_name": "STANDARD"},
            headers=HEADERS,
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["code"] == "duplicate_template"

        deleted = client.delete(f"/imports/templates/{template_id}", headers=HEADERS)
        assert deleted.json() == {"success": True, "template_id": template_id}
        assert client.get(f"/imports/templates/{template_id}", headers=HEADERS).status_code == 404
