"""
Tests: Workflow and Notification blueprints over HTTP.

Checks that engine errors surface with stable status codes and error
codes, that the acting role comes from the role provider, and that
expected_version is honoured from body or If-Match.
"""

from lifecycle_engine.models.entity import EntityKind


# ── Helpers ──────────────────────────────────────────────────────────────


def _as(user):
    return {"X-User": user}


def _decide(client, kind, entity_id, user, decision="approved", headers=None, **body):
    body["decision"] = decision
    return client.post(
        f"/api/v1/entities/{kind}/{entity_id}/decisions",
        json=body,
        headers={**_as(user), **(headers or {})},
    )


# ═════════════════════════════════════════════════════════════════════════
# Basics
# ═════════════════════════════════════════════════════════════════════════


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_get_entity_returns_version_and_etag(client, rd_project):
    res = client.get(f"/api/v1/entities/rd_project/{rd_project.id}")

    assert res.status_code == 200
    data = res.get_json()
    assert data["version"] == 1
    assert data["trl_current"] == 5
    assert res.headers["ETag"] == '"1"'


def test_unknown_entity_is_404(client):
    res = client.get("/api/v1/entities/pilot/nope")
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_unknown_kind_is_422(client):
    res = client.get("/api/v1/entities/spaceship/abc")
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"


def test_unknown_route_is_json_404(client):
    res = client.get("/api/v1/does-not-exist")
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_roles_cannot_be_assigned_over_http(client, rd_project):
    res = client.put("/api/v1/user-roles/mallory", json={"role": "rd_reviewer"},
                     headers=_as("mallory"))

    assert res.status_code == 404
    assert _decide(client, "rd_project", rd_project.id, "mallory").status_code == 403


# ═════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════


class TestDecisionEndpoint:

    def test_user_without_role_is_forbidden(self, client, rd_project):
        res = _decide(client, "rd_project", rd_project.id, "mallory")

        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["details"]["required_role"] == "rd_reviewer"

    def test_user_with_role_can_decide(self, client, grant_role, rd_project):
        grant_role("alice", "rd_reviewer")

        res = _decide(client, "rd_project", rd_project.id, "alice", comment="Looks solid")

        assert res.status_code == 200
        data = res.get_json()
        assert data["entity"]["status"] == "under_review"
        assert data["record"]["approver_name"] == "alice"
        assert data["record"]["approver_role"] == "rd_reviewer"
        assert data["next_step"] == 2

    def test_role_in_body_is_ignored(self, client, rd_project):
        res = _decide(client, "rd_project", rd_project.id, "mallory", actor_role="rd_reviewer")
        assert res.status_code == 403

    def test_wrong_step_is_409(self, client, grant_role, rd_project):
        grant_role("alice", "rd_reviewer")

        res = _decide(client, "rd_project", rd_project.id, "alice", step=2)

        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["current_step"] == 1

    def test_stale_if_match_is_409(self, client, grant_role, rd_project):
        grant_role("alice", "rd_reviewer")
        grant_role("bob", "expert_reviewer")
        etag = client.get(f"/api/v1/entities/rd_project/{rd_project.id}").headers["ETag"]
        assert _decide(client, "rd_project", rd_project.id, "alice", headers={"If-Match": etag}).status_code == 200

        res = _decide(client, "rd_project", rd_project.id, "bob", headers={"If-Match": etag})

        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STALE"
        assert body["details"]["actual_version"] == 2

    def test_non_integer_expected_version_is_422(self, client, grant_role, rd_project):
        grant_role("alice", "rd_reviewer")
        res = _decide(client, "rd_project", rd_project.id, "alice", expected_version="latest")
        assert res.status_code == 422

    def test_approval_status(self, client, rd_project):
        res = client.get(f"/api/v1/entities/rd_project/{rd_project.id}/approval-status")
        assert res.status_code == 200
        assert res.get_json()["pending_step"]["role"] == "rd_reviewer"

    def test_next_role_is_notified(self, client, grant_role, rd_project):
        grant_role("alice", "rd_reviewer")
        _decide(client, "rd_project", rd_project.id, "alice")

        res = client.get("/api/v1/notifications", query_string={"recipient": "role:expert_reviewer"})

        data = res.get_json()
        assert data["total"] == 1
        assert data["unread_count"] == 1
        assert data["items"][0]["title"].startswith("Approval required")


# ═════════════════════════════════════════════════════════════════════════
# Gates
# ═════════════════════════════════════════════════════════════════════════


class TestGateEndpoints:

    def test_conversion_gate_is_422_with_threshold(self, client, rd_project):
        res = client.post(
            f"/api/v1/entities/rd_project/{rd_project.id}/conversions",
            json={"conversion_type": "to_pilot", "payload": {"title": "P", "objective": "O"}},
            headers=_as("pm"),
        )

        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "GATE_BLOCKED"
        assert body["details"]["required"] == 6
        assert body["details"]["actual"] == 5

    def test_conversion_created_then_replayed(self, client, make_entity):
        project = make_entity(EntityKind.RD_PROJECT, trl_current=7)
        url = f"/api/v1/entities/rd_project/{project.id}/conversions"
        body = {"conversion_type": "to_pilot", "payload": {"title": "P", "objective": "O"}}
        headers = {**_as("pm"), "Idempotency-Key": "req-1"}

        first = client.post(url, json=body, headers=headers)
        second = client.post(url, json=body, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["target"]["id"] == first.get_json()["target"]["id"]

    def test_milestone_without_evidence_is_422(self, client, make_entity):
        pilot = make_entity(EntityKind.PILOT, status="active")
        planned = client.post(
            f"/api/v1/entities/pilot/{pilot.id}/milestones",
            json={"milestones": [{"name": "Go-live", "requires_approval": True}]},
            headers=_as("pm"),
        )
        assert planned.status_code == 201
        mid = planned.get_json()[0]["id"]

        res = client.post(
            f"/api/v1/entities/pilot/{pilot.id}/milestones/{mid}/approve",
            json={"evidence": []},
            headers=_as("approver"),
        )

        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_trl_assessment_over_http(self, client, rd_project):
        res = client.post(
            f"/api/v1/entities/rd_project/{rd_project.id}/trl-assessments",
            json={"level": 6, "confidence": 90, "evidence_text": "Field trial"},
            headers=_as("assessor"),
        )
        assert res.status_code == 201
        assert res.get_json()["pilot_ready"] is True

        history = client.get(f"/api/v1/entities/rd_project/{rd_project.id}/trl-assessments").get_json()
        assert [h["level"] for h in history] == [6]

    def test_integration_gate_message_names_threshold(self, client, scaling_plan):
        base = f"/api/v1/scaling-plans/{scaling_plan.id}"
        assert client.post(f"{base}/budget-decision", json={"decision": "approved"},
                           headers=_as("finance")).status_code == 200
        for unit in ("riyadh", "jeddah"):
            res = client.post(f"{base}/units/{unit}/progress",
                              json={"progress": 45, "kpi_status": "on_track"}, headers=_as("ops"))
            assert res.status_code == 200

        res = client.post(f"{base}/integration-decision", json={"checklist": {}}, headers=_as("exec"))

        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "GATE_BLOCKED"
        assert "80%" in body["error"]

    def test_activities_trail(self, client, grant_role, rd_project):
        grant_role("alice", "rd_reviewer")
        _decide(client, "rd_project", rd_project.id, "alice")

        res = client.get(f"/api/v1/entities/rd_project/{rd_project.id}/activities")

        assert [a["activity_type"] for a in res.get_json()] == ["submitted"]
