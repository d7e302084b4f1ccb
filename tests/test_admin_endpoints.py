"""
Tests for admin endpoints.

Tests account opening, reconciliation and stale-job recovery behind the
X-Admin-Key header.
"""

import pytest

from magicstage.models.staging import StagingRequest


class TestAdminAuth:
    """X-Admin-Key enforcement."""

    def test_missing_key(self, client):
        response = client.post("/admin/accounts", json={"organizationId": "org-a"})

        assert response.status_code == 401

    def test_wrong_key(self, client):
        response = client.get(
            "/admin/reconciliation", headers={"X-Admin-Key": "not-the-admin-key-at-all-0000000000"}
        )

        assert response.status_code == 401

    def test_disabled_without_configured_key(self, client, api_settings, admin_headers):
        api_settings.admin_api_key = None

        response = client.get("/admin/reconciliation", headers=admin_headers)

        assert response.status_code == 503


class TestOpenAccount:
    """POST /admin/accounts"""

    def test_open_with_default_bonus(self, client, admin_headers):
        response = client.post(
            "/admin/accounts", json={"organizationId": "org-a"}, headers=admin_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["organizationId"] == "org-a"
        assert data["balance"] == 3
        assert "createdAt" in data

    def test_reopen_does_not_grant_again(self, client, admin_headers):
        client.post("/admin/accounts", json={"organizationId": "org-a"}, headers=admin_headers)
        response = client.post(
            "/admin/accounts",
            json={"organizationId": "org-a", "signupBonus": 50},
            headers=admin_headers,
        )

        assert response.status_code == 201
        assert response.json()["balance"] == 3

    @pytest.mark.parametrize("organization_id", ["", "org with spaces", "x" * 65])
    def test_invalid_organization_id(self, client, admin_headers, organization_id):
        response = client.post(
            "/admin/accounts", json={"organizationId": organization_id}, headers=admin_headers
        )

        assert response.status_code == 400


class TestReconciliation:
    """GET /admin/accounts/{id}/reconciliation and /admin/reconciliation"""

    def test_reconcile_account(self, client, admin_headers, room_image_ref, drain_jobs):
        client.post("/admin/accounts", json={"organizationId": "org-a"}, headers=admin_headers)
        client.post(
            "/staging-jobs", json={"organizationId": "org-a", "roomImageRef": room_image_ref}
        )
        drain_jobs()

        response = client.get("/admin/accounts/org-a/reconciliation", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["balance"] == 2
        assert data["entriesTotal"] == 2
        assert data["entryCount"] == 3
        assert data["heldReservations"] == 0
        assert data["consistent"] is True
        assert data["drift"] == 0

    def test_reconcile_unknown_account(self, client, admin_headers):
        response = client.get("/admin/accounts/org-nobody/reconciliation", headers=admin_headers)

        assert response.status_code == 404

    def test_reconcile_all(self, client, admin_headers):
        for org in ("org-a", "org-b"):
            client.post("/admin/accounts", json={"organizationId": org}, headers=admin_headers)

        response = client.get("/admin/reconciliation", headers=admin_headers)

        assert response.status_code == 200
        reports = response.json()
        assert [r["organizationId"] for r in reports] == ["org-a", "org-b"]
        assert all(r["consistent"] for r in reports)


class TestRecoverStaleJobs:
    """POST /admin/staging-jobs/recover"""

    def test_nothing_to_recover(self, client, admin_headers):
        response = client.post("/admin/staging-jobs/recover", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"recovered": 0, "jobIds": []}

    def test_recovers_abandoned_job(self, client, admin_headers, room_image_ref):
        client.post("/admin/accounts", json={"organizationId": "org-a"}, headers=admin_headers)

        # Reserve without running: simulates a crash after submission
        job = client.portal.call(
            client.app.state.orchestrator.submit,
            _staging_request("org-a", room_image_ref),
        )
        client.portal.call(_age_job, client.app.state.ledger_db, job.job_id)

        response = client.post(
            "/admin/staging-jobs/recover", json={"olderThanMinutes": 30}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json() == {"recovered": 1, "jobIds": [job.job_id]}

        detail = client.get(f"/staging-jobs/{job.job_id}").json()
        assert detail["status"] == "failed"
        assert client.get("/organizations/org-a/credits").json()["balance"] == 3


def _staging_request(organization_id: str, room_image_ref: str) -> StagingRequest:
    return StagingRequest(organization_id=organization_id, room_image_ref=room_image_ref)


async def _age_job(ledger_db, job_id: str) -> None:
    """Move a job's last transition an hour into the past."""

    def age(conn):
        conn.execute(
            """
            UPDATE staging_jobs
            SET updated_at = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now', '-1 hour')
            WHERE job_id = ?
            """,
            (job_id,),
        )

    await ledger_db.run_in_transaction(age)
