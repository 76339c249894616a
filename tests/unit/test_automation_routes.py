"""
Tests for the automation rule and triage API routes.
"""

from fastapi.testclient import TestClient

from inbox_triage.main import app

client = TestClient(app)

INVOICE_RULE = {
    "name": "Invoices",
    "trigger_type": "subject_contains",
    "trigger_value": "invoice",
    "action_type": "add_label",
    "action_value": "finance",
    "priority": 2,
}


def test_create_and_list_rules(runtime, authed_app):
    response = client.post("/automation/rules", json=INVOICE_RULE)
    assert response.status_code == 201
    created = response.json()
    assert created["trigger_operator"] == "contains"
    assert created["execution_count"] == 0

    response = client.get("/automation/rules")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["rules"][0]["id"] == created["id"]


def test_create_invalid_rule_is_400(runtime, authed_app):
    body = {**INVOICE_RULE, "trigger_type": "subject_regex", "trigger_value": "(["}

    response = client.post("/automation/rules", json=body)

    assert response.status_code == 400


def test_create_unknown_action_is_422(runtime, authed_app):
    body = {**INVOICE_RULE, "action_type": "delete_forever"}

    response = client.post("/automation/rules", json=body)

    assert response.status_code == 422


def test_update_and_delete_rule(runtime, authed_app):
    rule_id = client.post("/automation/rules", json=INVOICE_RULE).json()["id"]

    response = client.patch(f"/automation/rules/{rule_id}", json={"enabled": False})
    assert response.status_code == 200
    assert response.json()["enabled"] is False

    response = client.patch(f"/automation/rules/{rule_id}", json={"action_value": ""})
    assert response.status_code == 400

    assert client.delete(f"/automation/rules/{rule_id}").status_code == 200
    assert client.delete(f"/automation/rules/{rule_id}").status_code == 404


def test_rules_are_scoped_to_caller(runtime, authed_app):
    runtime.store.rules["foreign"] = {
        "id": "foreign",
        "user_id": "user-999",
        "name": "not yours",
        "trigger_type": "is_unread",
        "trigger_value": True,
        "action_type": "mark_read",
    }

    assert client.get("/automation/rules").json()["total"] == 0
    assert client.patch("/automation/rules/foreign", json={"name": "mine"}).status_code == 404
    assert client.delete("/automation/rules/foreign").status_code == 404


def test_templates(runtime, authed_app):
    response = client.get("/automation/templates")

    assert response.status_code == 200
    names = [t["name"] for t in response.json()["templates"]]
    assert "Archive Marketing Emails" in names


def test_rules_without_runtime_is_503(authed_app):
    assert client.get("/automation/rules").status_code == 503


def test_processing_config_roundtrip(runtime, authed_app):
    defaults = client.get("/triage/config").json()
    assert defaults["ai_threshold"] == runtime.config_service.defaults.ai_threshold

    response = client.put("/triage/config", json={"ai_threshold": 150})
    assert response.status_code == 200
    assert response.json()["ai_threshold"] == 100

    assert client.put("/triage/config", json={"colour": "blue"}).status_code == 400

    assert client.delete("/triage/config").json() == defaults


def test_processing_preset(runtime, authed_app):
    assert client.post("/triage/config/preset/economical").status_code == 200
    assert client.post("/triage/config/preset/reckless").status_code == 400


def test_reprocess_and_stats(runtime, authed_app, store, email_factory):
    store.add_email(email_factory("e1", is_important=True))
    store.add_email(email_factory("e2"))

    response = client.post("/triage/reprocess", json={"email_ids": ["e1", "e2", "missing"]})
    assert response.status_code == 200
    data = response.json()
    assert data["processed"] == 2
    assert data["ai_calls"] == 0

    stats = client.get("/triage/stats", params={"days": 1}).json()
    assert stats["total_processed"] == 2
    assert stats["ai_processed"] == 0


def test_ingest_emails_processes_full_batch(runtime, authed_app, store, email_factory):
    store.add_email(email_factory("e1"))
    store.add_email(email_factory("e2"))
    assert client.put("/triage/config", json={"max_batch_size": 2}).status_code == 200

    response = client.post("/triage/emails", json={"email_ids": ["e1", "e2", "e1"]})

    assert response.status_code == 202
    assert response.json() == {"accepted": 2, "processed": 2, "buffered": 0}
    assert set(store.scores) == {"e1", "e2"}
    assert set(store.feed_items) == {"e1", "e2"}


def test_ingest_rejects_emails_of_other_users(runtime, authed_app, store, email_factory):
    store.add_email(email_factory("mine"))
    store.add_email(email_factory("theirs", "user-999"))

    response = client.post("/triage/emails", json={"email_ids": ["mine", "theirs"]})

    assert response.status_code == 400
    assert "theirs" in response.json()["detail"]
    assert runtime.pipeline.pending_count == 0
    assert client.post("/triage/emails", json={"email_ids": []}).status_code == 422


def test_ingest_without_runtime_is_503(authed_app):
    assert client.post("/triage/emails", json={"email_ids": ["e1"]}).status_code == 503
