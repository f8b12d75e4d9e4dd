"""Tests for suggestion, audit and administration API endpoints."""
from kingate import suggestions


def _propose(c, target_id, field="bio", value="Loves boats"):
    return c.post("/api/suggestions", json={"target_id": target_id, "field": field, "value": value})


class TestSuggestionFlow:
    def test_propose_and_approve(self, make_client, admin_client, stranger, family):
        uma = make_client(stranger, "uma@test.com")
        resp = _propose(uma, family["C"].id)
        assert resp.status_code == 200
        suggestion = resp.json()
        assert suggestion["status"] == "pending"

        pending = admin_client.get("/api/suggestions/pending").json()
        assert [s["id"] for s in pending] == [suggestion["id"]]

        resp = admin_client.post(f"/api/suggestions/{suggestion['id']}/approve")
        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"
        assert resp.json()["audit_id"]

        person = admin_client.get(f"/api/people/{family['C'].id}").json()
        assert person["bio"] == "Loves boats"
        assert person["version"] == 2

    def test_reject_then_approve_conflicts(self, make_client, admin_client, stranger, family):
        uma = make_client(stranger, "uma@test.com")
        suggestion_id = _propose(uma, family["C"].id).json()["id"]
        resp = admin_client.post(f"/api/suggestions/{suggestion_id}/reject", json={"reason": "no"})
        assert resp.status_code == 200
        assert resp.json()["rejection_reason"] == "no"
        resp = admin_client.post(f"/api/suggestions/{suggestion_id}/approve")
        assert resp.status_code == 409
        assert resp.json()["error"] == "AlreadyProcessed"

    def test_non_suggestible_field(self, make_client, stranger, family):
        uma = make_client(stranger, "uma@test.com")
        resp = _propose(uma, family["C"].id, field="mother_id", value=stranger.id)
        assert resp.status_code == 422

    def test_blocked(self, make_client, admin_client, stranger, family):
        admin_client.post("/api/blocks", json={"person_id": stranger.id, "reason": "spam"})
        uma = make_client(stranger, "uma@test.com")
        assert _propose(uma, family["C"].id).status_code == 403
        resp = admin_client.delete(f"/api/blocks/{stranger.id}")
        assert resp.json()["lifted"] is True
        assert _propose(uma, family["C"].id).status_code == 200

    def test_cancel_and_mine(self, make_client, stranger, family):
        uma = make_client(stranger, "uma@test.com")
        suggestion_id = _propose(uma, family["C"].id).json()["id"]
        resp = uma.post(f"/api/suggestions/{suggestion_id}/cancel")
        assert resp.json()["status"] == "cancelled"
        mine = uma.get("/api/suggestions/mine").json()
        assert [s["status"] for s in mine] == ["cancelled"]

    def test_proposer_cannot_approve(self, admin_client, family):
        suggestion_id = _propose(admin_client, family["C"].id).json()["id"]
        resp = admin_client.post(f"/api/suggestions/{suggestion_id}/approve")
        assert resp.status_code == 403

    def test_branch_moderator_approves(self, make_client, admin_client, stranger, family):
        admin_client.post("/api/moderators", json={"user_id": family["D"].id, "root_id": family["B"].id})
        uma = make_client(stranger, "uma.com")
        suggestion_id = _propose(uma, family["C"].id).json()["id"]
        dan = make_client(family["D"], "dan.com")
        assert [s["id"] for s in dan.get("/api/suggestions/pending").json()] == [suggestion_id]
        resp = dan.post(f"/api/suggestions/{suggestion_id}/approve")
        assert resp.status_code == 200
        assert resp.json()["reviewed_by"] == family["D"].id

    def test_daily_limit(self, make_client, admin_client, stranger, family, monkeypatch):
        monkeypatch.setattr(suggestions, "REVIEW_DAILY_LIMIT", 1)
        uma = make_client(stranger, "uma.com")
        first = _propose(uma, family["C"].id).json()["id"]
        second = _propose(uma, family["D"].id).json()["id"]
        assert admin_client.post(f"/api/suggestions/{first}/approve").status_code == 200
        resp = admin_client.post(f"/api/suggestions/{second}/approve")
        assert resp.status_code == 429
        assert resp.json()["error"] == "RateLimited"


class TestAuditApi:
    def test_record_history(self, make_client, family):
        abe = make_client(family["A"], "abe@test.com")
        abe.patch(f"/api/people/{family['C'].id}", json={"expected_version": 1,
                                                         "changes": {"bio": "x"}})
        resp = abe.get("/api/audit", params={"record_id": family["C"].id})
        assert resp.status_code == 200
        assert [e["action"] for e in resp.json()] == ["person_update", "person_create"]

    def test_single_entry(self, make_client, family):
        abe = make_client(family["A"], "abe.com")
        abe.patch(f"/api/people/{family['C'].id}", json={"expected_version": 1,
                                                         "changes": {"bio": "x"}})
        entry_id = abe.get("/api/audit", params={"record_id": family["C"].id}).json()[0]["id"]
        resp = abe.get(f"/api/audit/{entry_id}")
        assert resp.status_code == 200
        assert resp.json()["action"] == "person_update"
        assert resp.json()["changed_fields"] == ["bio"]
        assert abe.get("/api/audit/ghost").status_code == 404

    def test_full_log_is_admin_only(self, make_client, admin_client, family):
        abe = make_client(family["A"], "abe@test.com")
        assert abe.get("/api/audit").status_code == 403
        assert admin_client.get("/api/audit").status_code == 200

    def test_revert(self, make_client, family):
        abe = make_client(family["A"], "abe@test.com")
        url = f"/api/people/{family['C'].id}"
        abe.patch(url, json={"expected_version": 1, "changes": {"bio": "oops"}})
        entry_id = abe.get("/api/audit", params={"record_id": family["C"].id}).json()[0]["id"]

        resp = abe.post(f"/api/audit/{entry_id}/revert", json={"reason": "typo"})
        assert resp.status_code == 200
        assert resp.json()["bio"] is None
        assert resp.json()["version"] == 3

        again = abe.post(f"/api/audit/{entry_id}/revert", json={})
        assert again.status_code == 409
        assert again.json()["error"] == "AlreadyReverted"

    def test_revert_conflict(self, make_client, family):
        abe = make_client(family["A"], "abe@test.com")
        url = f"/api/people/{family['C'].id}"
        abe.patch(url, json={"expected_version": 1, "changes": {"bio": "one"}})
        entry_id = abe.get("/api/audit", params={"record_id": family["C"].id}).json()[0]["id"]
        abe.patch(url, json={"expected_version": 2, "changes": {"bio": "two"}})
        resp = abe.post(f"/api/audit/{entry_id}/revert", json={})
        assert resp.status_code == 409
        assert resp.json()["expected"] == 2
        assert resp.json()["actual"] == 3


class TestAdminApi:
    def test_moderator_grant_and_revoke(self, make_client, admin_client, stranger, family):
        resp = admin_client.post("/api/moderators", json={
            "user_id": stranger.id, "root_id": family["B"].id,
        })
        assert resp.status_code == 200
        uma = make_client(stranger, "uma@test.com")
        assert uma.get(f"/api/people/{family['C'].id}/permission").json()["level"] == "full"

        resp = admin_client.delete("/api/moderators", params={
            "user_id": stranger.id, "root_id": family["B"].id,
        })
        assert resp.status_code == 200
        assert uma.get(f"/api/people/{family['C'].id}/permission").json()["level"] == "suggest"

    def test_grant_requires_admin(self, make_client, stranger, family):
        uma = make_client(stranger, "uma@test.com")
        resp = uma.post("/api/moderators", json={"user_id": stranger.id, "root_id": family["A"].id})
        assert resp.status_code == 403

    def test_set_role(self, make_client, super_admin, stranger):
        sam = make_client(super_admin, "sam@test.com")
        resp = sam.put(f"/api/people/{stranger.id}/role", json={"role": "moderator"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "moderator"
        assert sam.put(f"/api/people/{super_admin.id}/role", json={"role": "admin"}).status_code == 403

    def test_integrity_cycles(self, admin_client, family, force_parent):
        assert admin_client.get("/api/admin/integrity/cycles").json() == {"cycles": []}
        force_parent(family["A"].id, father_id=family["A"].id)
        resp = admin_client.get("/api/admin/integrity/cycles")
        assert resp.status_code == 409
        assert resp.json()["cycles"][0]["kind"] == "self"
