"""
HTTP surface: routing, diff, health and the policy admin API.
"""
import pytest
from fastapi.testclient import TestClient

from stop_engine.main import app
from stop_engine.policy.registry import PolicyRegistry, get_policy_registry


def _make_request(**overrides) -> dict:
    """Build a routing request with sensible defaults."""
    payload = {
        "context": {
            "amount": 64.5,
            "merchant": "Blue Bottle Coffee",
            "mcc": 5814,
            "category": "dining",
        },
        "user": {
            "id": "user_42",
            "name": "Sample User",
            "days_to_paycheck": 6,
            "credentials": [
                {
                    "id": "card_sapphire",
                    "name": "Sapphire Preferred",
                    "dpan": "**** 4821",
                    "type": "credit",
                    "network": "visa",
                    "limit": 12000,
                    "balance": 1800,
                    "rewards_by_category": {"dining": 3, "default": 1},
                },
                {
                    "id": "debit_checking",
                    "name": "Checking Debit",
                    "dpan": "**** 0093",
                    "type": "debit",
                    "network": "mastercard",
                    "balance": 2400,
                },
            ],
        },
        "seed": 42,
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(payload.get(key), dict):
            payload[key].update(value)
        else:
            payload[key] = value
    return payload


def _new_rule(**overrides) -> dict:
    rule = {
        "id": "rule_coffee_boost",
        "label": "Coffee Boost",
        "type": "SOFT",
        "priority": 20,
        "condition": {
            "field": "merchant",
            "operator": "contains",
            "value": "coffee",
            "and": [{"field": "amount", "operator": "lt", "value": 100}],
        },
        "action": {"type": "BOOST", "boost_amount": 4, "reason": "Coffee shop"},
    }
    rule.update(overrides)
    return rule


@pytest.fixture
def client():
    registry = PolicyRegistry()
    app.dependency_overrides[get_policy_registry] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestRouting:
    def test_route(self, client):
        resp = client.post("/v1/stop/route", json=_make_request())
        assert resp.status_code == 200
        body = resp.json()
        assert body["audit_record"]["replay_seed"] == 42
        assert body["audit_record"]["selected_route"] in ("card_sapphire", "debit_checking")
        assert len(body["trace"]["stage_results"]) == 13
        assert len(body["sensitivity"]) == 8

    def test_same_seed_replays(self, client):
        first = client.post("/v1/stop/route", json=_make_request()).json()
        second = client.post("/v1/stop/route", json=_make_request()).json()
        assert first["audit_record"]["correlation_id"] == second["audit_record"]["correlation_id"]
        assert first["audit_record"]["selected_route"] == second["audit_record"]["selected_route"]
        assert first["trace"]["total_duration_ms"] == second["trace"]["total_duration_ms"]

    def test_random_seed_when_omitted(self, client):
        resp = client.post("/v1/stop/route", json=_make_request(seed=None))
        assert resp.status_code == 200
        assert resp.json()["audit_record"]["replay_seed"] >= 0

    def test_rejects_negative_amount(self, client):
        resp = client.post("/v1/stop/route", json=_make_request(context={"amount": -5}))
        assert resp.status_code == 422

    def test_diff_same_record(self, client):
        record = client.post("/v1/stop/route", json=_make_request()).json()["audit_record"]
        resp = client.post("/v1/stop/diff", json={"previous": record, "current": record})
        assert resp.status_code == 200
        assert resp.json() is None

    def test_health(self, client):
        resp = client.get("/v1/stop/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestPolicyAdmin:
    def test_versions(self, client):
        resp = client.get("/v1/admin/policy/versions")
        assert resp.status_code == 200
        assert [v["version"] for v in resp.json()] == ["1.0.0", "1.1.0", "2.0.0"]

    def test_active(self, client):
        body = client.get("/v1/admin/policy/active").json()
        assert body["current_version"] == "2.0.0"
        assert body["pinned_version"] is None
        assert len(body["policy"]["rules"]) == 10

    def test_add_rule_changes_routing_input(self, client):
        resp = client.post("/v1/admin/policy/rules", json=_new_rule())
        assert resp.status_code == 201
        assert resp.json()["rules"][-1]["id"] == "rule_coffee_boost"

        routed = client.post("/v1/stop/route", json=_make_request()).json()
        matched = [r["rule_id"] for r in routed["audit_record"]["matched_rules"]]
        assert "rule_coffee_boost" in matched

    def test_add_invalid_rule(self, client):
        rule = _new_rule(condition={"field": "merchant_mood", "operator": "eq", "value": "calm"})
        resp = client.post("/v1/admin/policy/rules", json=rule)
        assert resp.status_code == 422
        assert resp.json()["detail"]["errors"] == ["Unknown condition field: merchant_mood"]

    def test_update_and_remove(self, client):
        resp = client.patch("/v1/admin/policy/rules/rule_high_apr", json={"enabled": False})
        assert resp.status_code == 200
        rule = next(r for r in resp.json()["rules"] if r["id"] == "rule_high_apr")
        assert rule["enabled"] is False

        resp = client.delete("/v1/admin/policy/rules/rule_high_apr")
        assert resp.status_code == 200
        assert "rule_high_apr" not in [r["id"] for r in resp.json()["rules"]]

    def test_update_unknown_rule(self, client):
        resp = client.patch("/v1/admin/policy/rules/rule_missing", json={"enabled": False})
        assert resp.status_code == 404

    def test_update_bad_type(self, client):
        resp = client.patch("/v1/admin/policy/rules/rule_high_apr", json={"type": "MAYBE"})
        assert resp.status_code == 422

    def test_reorder(self, client):
        resp = client.put("/v1/admin/policy/rules/order", json={"rule_ids": ["rule_prepaid_cap"]})
        assert resp.status_code == 200
        assert resp.json()["rules"][0]["id"] == "rule_prepaid_cap"

    def test_validate(self, client):
        resp = client.post("/v1/admin/policy/rules/validate", json=_new_rule())
        body = resp.json()
        assert body["valid"] is True
        assert body["dsl"] == (
            'IF (merchant CONTAINS "coffee" AND amount < 100) THEN BOOST score +4'
        )

    def test_pin_flow(self, client):
        assert client.put("/v1/admin/policy/pin", json={"version": "1.0.0"}).status_code == 200
        routed = client.post("/v1/stop/route", json=_make_request()).json()["audit_record"]
        assert routed["policy_version"] == "1.0.0"
        assert routed["pinned_policy"] is True

        assert client.delete("/v1/admin/policy/pin").json() == {"pinned_version": None}

    def test_pin_unknown(self, client):
        assert client.put("/v1/admin/policy/pin", json={"version": "9.9.9"}).status_code == 404

    def test_cache_flag_and_fetch(self, client):
        resp = client.put("/v1/admin/policy/versions/2.0.0/cache", json={"is_cached": False})
        assert resp.status_code == 200
        fetched = client.post("/v1/admin/policy/fetch", json={"seed": 7}).json()
        assert fetched["is_cached"] is False
        assert 14 <= fetched["latency_ms"] <= 30
        assert fetched["seed"] == 7

    def test_reset(self, client):
        client.delete("/v1/admin/policy/rules/rule_util_guard")
        resp = client.post("/v1/admin/policy/reset")
        assert resp.status_code == 200
        assert len(client.get("/v1/admin/policy/active").json()["policy"]["rules"]) == 10


class TestAuth:
    def test_missing_role_forbidden(self, client):
        from stop_engine.core.auth import verify_token

        app.dependency_overrides[verify_token] = lambda: {"sub": "viewer", "roles": ["reader"]}
        resp = client.get("/v1/admin/policy/versions")
        assert resp.status_code == 403

    def test_realm_roles_accepted(self, client):
        from stop_engine.core.auth import verify_token
        from stop_engine.core.config import get_settings

        role = get_settings().policy_admin_role
        app.dependency_overrides[verify_token] = lambda: {"sub": "admin", "realm_access": {"roles": [role]}}
        assert client.get("/v1/admin/policy/versions").status_code == 200

    def test_missing_header_when_auth_enabled(self, client):
        from stop_engine.core.config import Settings, get_settings

        app.dependency_overrides[get_settings] = lambda: Settings(auth_enabled=True)
        resp = client.get("/v1/admin/policy/versions")
        assert resp.status_code == 401

    def test_token_roles_merges_claims(self):
        from stop_engine.core.auth import token_roles

        payload = {"roles": ["a"], "realm_access": {"roles": ["b"]}}
        assert token_roles(payload) == {"a", "b"}
        assert token_roles({}) == set()
