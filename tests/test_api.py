"""Tests for the HTTP surface."""
from decimal import Decimal

from treasury.models.enums import Role
from treasury.services.storage import StoragePath


def auth(user):
    return {"X-User-Id": user.id}


LUNCH = {
    "title": "Team lunch",
    "date_of_purchase": "2024-03-01",
    "payment_method": "Personal card",
    "department": "events",
    "business_purpose": "Lunch for the hackathon volunteers",
    "vendor": "Panera",
    "line_items": [
        {"description": "Sandwiches", "category": "Food", "amount": "30.00"},
        {"description": "Drinks", "category": "Food", "amount": "12.50"},
    ],
}

DEPOSIT = {
    "title": "Bake sale proceeds",
    "amount": "150.00",
    "deposit_date": "2024-03-04",
    "deposit_method": "cash",
    "purpose": "Fundraiser income",
}


class TestUsers:
    def test_first_user_must_be_admin(self, client):
        response = client.post("/api/users", json={"name": "Mia", "email": "mia@ucsd.edu"})
        assert response.status_code == 422

        response = client.post("/api/users", json={"name": "Ada", "email": "ada@ucsd.edu", "role": "Administrator"})
        assert response.status_code == 201
        admin_id = response.json()["id"]

        response = client.post("/api/users", json={"name": "Mia", "email": "mia@ucsd.edu"})
        assert response.status_code == 401

        response = client.post(
            "/api/users", json={"name": "Mia", "email": "mia@ucsd.edu"}, headers={"X-User-Id": admin_id}
        )
        assert response.status_code == 201
        assert response.json()["role"] == "Member"

    def test_member_cannot_create_users(self, client, admin, member):
        response = client.post("/api/users", json={"name": "Eve", "email": "eve@ucsd.edu"}, headers=auth(member))
        assert response.status_code == 403

    def test_me(self, client, member):
        response = client.get("/api/users/me", headers=auth(member))
        assert response.status_code == 200
        assert response.json()["email"] == "alice.member@ucsd.edu"

    def test_unknown_user_is_unauthenticated(self, client):
        assert client.get("/api/reimbursements").status_code == 401
        assert client.get("/api/reimbursements", headers={"X-User-Id": "nobody"}).status_code == 401


class TestReimbursementFlow:
    def test_lunch_reimbursement(self, client, member, officer, admin, sent_notifications):
        response = client.post("/api/reimbursements", json=LUNCH, headers=auth(member))
        assert response.status_code == 201
        body = response.json()
        reimbursement_id = body["id"]
        assert Decimal(body["total_amount"]) == Decimal("42.50")
        assert body["status"] == "submitted"

        response = client.post(
            f"/api/reimbursements/{reimbursement_id}/status",
            json={"status": "approved", "expected_status": "submitted"},
            headers=auth(officer),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "approved"

        response = client.post(
            f"/api/reimbursements/{reimbursement_id}/status",
            json={"status": "paid", "payment_confirmation": "ZELLE-1234"},
            headers=auth(officer),
        )
        assert response.status_code == 200

        body = client.get(f"/api/reimbursements/{reimbursement_id}", headers=auth(member)).json()
        assert body["status"] == "paid"
        assert body["payment_confirmation"] == "ZELLE-1234"
        assert [e["action"] for e in body["audit_log"]] == ["submitted", "approved", "paid"]

        stats = client.get("/api/reimbursements/stats", headers=auth(admin)).json()
        assert stats["total"] == 1
        assert stats["by_status"]["paid"] == 1
        assert Decimal(stats["settled_amount"]) == Decimal("42.50")

        assert [n["type"] for n in sent_notifications] == ["submission", "status_change", "status_change"]
        assert sent_notifications[1] == {
            "type": "status_change",
            "recordId": reimbursement_id,
            "previousStatus": "submitted",
            "newStatus": "approved",
            "changedByUserId": officer.id,
        }

    def test_self_approval_refused(self, client, officer, sent_notifications):
        reimbursement_id = client.post("/api/reimbursements", json=LUNCH, headers=auth(officer)).json()["id"]

        response = client.post(
            f"/api/reimbursements/{reimbursement_id}/status", json={"status": "approved"}, headers=auth(officer)
        )

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["code"] == "PERMISSION_DENIED"
        assert detail["message"].startswith("REFUSAL")
        assert [n["type"] for n in sent_notifications] == ["submission"]

    def test_stale_expected_status_conflicts(self, client, member, officer, admin):
        reimbursement_id = client.post("/api/reimbursements", json=LUNCH, headers=auth(member)).json()["id"]
        client.post(f"/api/reimbursements/{reimbursement_id}/status", json={"status": "approved"}, headers=auth(officer))

        response = client.post(
            f"/api/reimbursements/{reimbursement_id}/status",
            json={"status": "paid", "expected_status": "submitted"},
            headers=auth(admin),
        )

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "CONFLICT"

    def test_invalid_amount_rejected(self, client, member):
        payload = dict(LUNCH, line_items=[{"description": "Refund", "category": "Food", "amount": "-3"}])
        assert client.post("/api/reimbursements", json=payload, headers=auth(member)).status_code == 422

    def test_edit_and_audit_note(self, client, member):
        reimbursement_id = client.post("/api/reimbursements", json=LUNCH, headers=auth(member)).json()["id"]

        response = client.patch(
            f"/api/reimbursements/{reimbursement_id}", json={"title": "Team dinner"}, headers=auth(member)
        )

        assert response.status_code == 200
        assert response.json()["title"] == "Team dinner"
        assert response.json()["audit_log"][-1]["note"] == 'Changes: Title: "Team lunch" → "Team dinner"'

    def test_audit_request_and_notes(self, client, member, officer, admin, sent_notifications):
        reimbursement_id = client.post("/api/reimbursements", json=LUNCH, headers=auth(member)).json()["id"]

        response = client.post(
            f"/api/reimbursements/{reimbursement_id}/audit-request",
            json={"auditor_id": admin.id},
            headers=auth(officer),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "under_review"
        assert response.json()["requested_auditor_id"] == admin.id

        response = client.post(
            f"/api/reimbursements/{reimbursement_id}/notes", json={"note": "Receipt checked"}, headers=auth(admin)
        )
        assert response.status_code == 201
        assert response.json()["action"] == "note_added"

        response = client.post(
            f"/api/reimbursements/{reimbursement_id}/notes", json={"note": "Me too"}, headers=auth(member)
        )
        assert response.status_code == 403

        assert [n["type"] for n in sent_notifications] == ["submission", "audit_request", "comment"]


class TestVisibility:
    def test_members_see_only_their_own(self, client, member, officer, make_user):
        other = make_user("Bob Member", Role.MEMBER)
        client.post("/api/reimbursements", json=LUNCH, headers=auth(member))
        reimbursement_id = client.post(
            "/api/reimbursements", json=dict(LUNCH, title="Pizza"), headers=auth(other)
        ).json()["id"]

        mine = client.get("/api/reimbursements", headers=auth(member)).json()
        assert [r["title"] for r in mine] == ["Team lunch"]
        assert client.get(f"/api/reimbursements/{reimbursement_id}", headers=auth(member)).status_code == 403

        everything = client.get("/api/reimbursements", headers=auth(officer)).json()
        assert len(everything) == 2

        searched = client.get("/api/reimbursements", params={"search": "pizza"}, headers=auth(officer)).json()
        assert [r["title"] for r in searched] == ["Pizza"]

    def test_missing_record(self, client, member):
        response = client.get("/api/reimbursements/does-not-exist", headers=auth(member))
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"


class TestDeposits:
    def test_verify_and_reject(self, client, member, admin, second_admin):
        deposit_id = client.post("/api/deposits", json=DEPOSIT, headers=auth(admin)).json()["id"]

        response = client.post(f"/api/deposits/{deposit_id}/status", json={"status": "verified"}, headers=auth(admin))
        assert response.status_code == 403

        response = client.post(f"/api/deposits/{deposit_id}/status", json={"status": "rejected"}, headers=auth(second_admin))
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_FAILED"

        response = client.post(
            f"/api/deposits/{deposit_id}/status",
            json={"status": "rejected", "rejection_reason": "Not on the bank statement"},
            headers=auth(second_admin),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "rejected"
        assert body["rejection_reason"] == "Not on the bank statement"
        assert body["reviewed_by"] == second_admin.id

        stats = client.get("/api/deposits/stats", headers=auth(admin)).json()
        assert stats["by_status"] == {"pending": 0, "verified": 0, "rejected": 1}
        assert Decimal(stats["settled_amount"]) == Decimal("0")

    def test_member_deposit_verified(self, client, member, admin, sent_notifications):
        deposit_id = client.post("/api/deposits", json=DEPOSIT, headers=auth(member)).json()["id"]

        response = client.post(f"/api/deposits/{deposit_id}/status", json={"status": "verified"}, headers=auth(admin))

        assert response.status_code == 200
        assert [n["type"] for n in sent_notifications] == ["deposit_submission", "deposit_status_change"]
        stats = client.get("/api/deposits/stats", headers=auth(member)).json()
        assert Decimal(stats["settled_amount"]) == Decimal("150.00")


class TestAttachmentsAndDelete:
    def test_upload_remove_and_delete(self, client, member, admin, blob_store):
        reimbursement_id = client.post("/api/reimbursements", json=LUNCH, headers=auth(member)).json()["id"]

        response = client.post(
            f"/api/reimbursements/{reimbursement_id}/attachments",
            files={"file": ("receipt.pdf", b"%PDF-1.4", "application/pdf")},
            data={"category": "receipt", "line_item": "1"},
            headers=auth(member),
        )
        assert response.status_code == 201
        attachment = response.json()
        assert StoragePath.is_valid(attachment["path"])
        assert blob_store.exists(attachment["path"])

        body = client.get(f"/api/reimbursements/{reimbursement_id}", headers=auth(member)).json()
        assert body["line_items"][0]["receipt"] == attachment["path"]

        response = client.delete(f"/api/attachments/{attachment['id']}", headers=auth(member))
        assert response.status_code == 204
        assert not blob_store.exists(attachment["path"])

        assert client.delete(f"/api/reimbursements/{reimbursement_id}", headers=auth(member)).status_code == 403
        assert client.delete(f"/api/reimbursements/{reimbursement_id}", headers=auth(admin)).status_code == 204
        assert client.get(f"/api/reimbursements/{reimbursement_id}", headers=auth(admin)).status_code == 404


class TestMigrationEndpoints:
    def test_admin_only(self, client, member, admin):
        assert client.post("/api/migration/preview", headers=auth(member)).status_code == 403
        assert client.post("/api/migration/preview", headers=auth(admin)).json() == []

        result = client.post("/api/migration/migrate", headers=auth(admin)).json()
        assert result == {
            "success": True, "migrated_files": 0, "skipped_files": 0, "updated_records": 0, "errors": [],
        }


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
