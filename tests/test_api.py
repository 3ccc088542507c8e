"""End-to-end tests of the HTTP surface over an in-memory runtime."""

from conftest import OTHER_COMPANY


def _create_instance(api, **payload):
    body = {"template_id": "tpl-pulse-check", "name": "Weekly pulse", **payload}
    response = api.client.post("/api/agents/instances", json=body, headers=api.admin())
    assert response.status_code == 201, response.text
    return response.json()


def _open_conversation(api, employee_id="emp-1"):
    instance = _create_instance(api)
    response = api.client.post(
        f"/api/agents/instances/{instance['id']}/trigger",
        json={"employee_ids": [employee_id]},
        headers=api.admin(),
    )
    assert response.status_code == 200, response.text
    listing = api.client.get("/api/conversations", headers=api.employee(employee_id)).json()
    return instance, listing["items"][0]


def test_health_version_and_metrics_are_public(api):
    assert api.client.get("/api/health").json() == {"status": "ok"}
    version = api.client.get("/api/version").json()
    assert set(version) == {"version", "build_date", "commit_sha"}
    assert api.client.get("/api/metrics").status_code == 200


def test_missing_token_is_rejected(api):
    response = api.client.get("/api/agents/templates")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_list_templates(api):
    response = api.client.get("/api/agents/templates", headers=api.employee())

    body = response.json()
    assert response.status_code == 200
    assert body["total"] == 4
    assert "tpl-onboarding" in {t["id"] for t in body["items"]}


def test_employee_cannot_create_instance(api):
    response = api.client.post(
        "/api/agents/instances",
        json={"template_id": "tpl-pulse-check", "name": "x"},
        headers=api.employee(),
    )

    assert response.status_code == 403


def test_create_instance_validation_errors(api):
    missing = api.client.post("/api/agents/instances", json={"name": "x"}, headers=api.admin())
    unknown = api.client.post(
        "/api/agents/instances",
        json={"template_id": "tpl-nope", "name": "x"},
        headers=api.admin(),
    )

    assert missing.status_code == 422
    assert unknown.status_code == 400
    assert "tpl-nope" in unknown.json()["detail"]


def test_instance_lifecycle(api):
    instance = _create_instance(api, schedule={"cadence": "daily", "timezone": "UTC"})

    fetched = api.client.get(f"/api/agents/instances/{instance['id']}", headers=api.employee())
    renamed = api.client.patch(
        f"/api/agents/instances/{instance['id']}", json={"name": "Renamed"}, headers=api.admin()
    )
    schedule = api.client.put(
        f"/api/agents/instances/{instance['id']}/schedule",
        json={"is_active": False},
        headers=api.admin(),
    )
    archived = api.client.delete(f"/api/agents/instances/{instance['id']}", headers=api.admin())
    listing = api.client.get("/api/agents/instances", headers=api.admin())

    assert fetched.json()["schedule"]["cadence"] == "daily"
    assert renamed.json()["name"] == "Renamed"
    assert schedule.json()["next_run_at"] is None
    assert archived.json()["status"] == "archived"
    assert listing.json()["total"] == 1


def test_trigger_archived_instance_conflicts(api):
    instance = _create_instance(api)
    api.client.delete(f"/api/agents/instances/{instance['id']}", headers=api.admin())

    response = api.client.post(f"/api/agents/instances/{instance['id']}/trigger", headers=api.admin())

    assert response.status_code == 409


def test_company_wide_trigger_and_runs(api):
    instance = _create_instance(api)

    response = api.client.post(f"/api/agents/instances/{instance['id']}/trigger", headers=api.admin())
    runs = api.client.get(f"/api/agents/instances/{instance['id']}/runs", headers=api.admin())

    assert response.status_code == 200
    assert response.json()["messages_sent"] == 2
    assert response.json()["failures"] == []
    assert runs.json()["items"][0]["status"] == "completed"
    assert runs.json()["items"][0]["trigger_kind"] == "manual"


def test_trigger_reports_unknown_employees(api):
    instance = _create_instance(api)

    response = api.client.post(
        f"/api/agents/instances/{instance['id']}/trigger",
        json={"employee_ids": ["emp-1", "ghost"]},
        headers=api.admin(),
    )

    body = response.json()
    assert body["messages_sent"] == 1
    assert body["failures"] == [{"employee_id": "ghost", "reason": "unknown_employee"}]


def test_conversation_round_trip(api):
    _, conversation = _open_conversation(api)
    path = f"/api/conversations/{conversation['id']}"

    reply = api.client.post(f"{path}/messages", json={"content": "Busy week"}, headers=api.employee())
    respond = api.client.post(
        "/api/agents/respond",
        json={"conversation_id": conversation["id"], "message_content": "Still busy"},
        headers=api.employee(),
    )
    read = api.client.post(f"{path}/read", headers=api.employee())
    detail = api.client.get(path, headers=api.admin())

    assert reply.status_code == 200
    assert reply.json()["employee_message"]["content"] == "Busy week"
    assert reply.json()["message"]["sender_type"] == "agent"
    assert respond.json()["message"]["seq"] == 5
    assert read.json()["unread_count"] == 0
    assert [m["seq"] for m in detail.json()["messages"]] == [1, 2, 3, 4, 5]


def test_closed_conversation_rejects_messages(api):
    _, conversation = _open_conversation(api)
    path = f"/api/conversations/{conversation['id']}"

    employee_close = api.client.post(f"{path}/close", headers=api.employee())
    closed = api.client.post(f"{path}/close", headers=api.admin())
    again = api.client.post(f"{path}/close", headers=api.admin())
    reply = api.client.post(f"{path}/messages", json={"content": "hello?"}, headers=api.employee())

    assert employee_close.status_code == 403
    assert closed.json()["status"] == "closed"
    assert again.status_code == 409
    assert reply.status_code == 409


def test_flagged_reply_escalates_and_blocks_followups(api):
    _, conversation = _open_conversation(api)
    path = f"/api/conversations/{conversation['id']}"

    flagged = api.client.post(
        f"{path}/messages", json={"content": "I am being harassed by my lead"}, headers=api.employee()
    )
    followup = api.client.post(f"{path}/messages", json={"content": "hello?"}, headers=api.employee())
    detail = api.client.get(path, headers=api.admin()).json()

    assert flagged.json()["escalated"] is True
    assert followup.status_code == 409
    assert detail["status"] == "escalated"
    assert detail["escalation"]["escalation_type"] == "harassment"


def test_reply_validation_and_visibility(api):
    _, conversation = _open_conversation(api)
    path = f"/api/conversations/{conversation['id']}"

    empty = api.client.post(f"{path}/messages", json={"content": "  "}, headers=api.employee())
    other_employee = api.client.post(
        f"{path}/messages", json={"content": "hi"}, headers=api.employee("emp-2")
    )
    hidden = api.client.get(path, headers=api.employee("emp-2"))
    foreign = api.client.get(path, headers=api.admin(OTHER_COMPANY))
    unknown = api.client.get("/api/conversations/missing", headers=api.admin())

    assert empty.status_code == 400
    assert other_employee.status_code == 403
    assert hidden.status_code == 404
    assert foreign.status_code == 404
    assert unknown.status_code == 404


def test_foreign_company_cannot_reach_instance(api):
    instance = _create_instance(api)

    fetched = api.client.get(f"/api/agents/instances/{instance['id']}", headers=api.admin(OTHER_COMPANY))
    triggered = api.client.post(
        f"/api/agents/instances/{instance['id']}/trigger", headers=api.admin(OTHER_COMPANY)
    )

    assert fetched.status_code == 404
    assert triggered.status_code == 404


def test_busy_conversation_returns_503(api):
    from app.core.locks import conversation_key
    from app.core.settings import OrchestratorSettings
    from app.runtime import Runtime, set_runtime

    _, conversation = _open_conversation(api)
    harness = api.harness
    set_runtime(
        Runtime(
            OrchestratorSettings(lock_timeout_seconds=0.05),
            harness.generator,
            locks=harness.locks,
            directory=harness.directory,
            instance_repository=harness.instances,
            conversation_repository=harness.conversations,
            audit=harness.audit,
            clock=harness.clock,
        )
    )

    with harness.locks.hold(conversation_key(conversation["id"])):
        response = api.client.post(
            f"/api/conversations/{conversation['id']}/messages",
            json={"content": "Anyone there?"},
            headers=api.employee(),
        )

    assert response.status_code == 503
    assert response.json()["detail"] == "Conversation is busy, retry shortly."
    assert harness.conversations.get(conversation["id"]).message_count == 1
