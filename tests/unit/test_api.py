"""Tests for the REST API adapter."""

import base64
import json
import time

import pytest
from fastapi.testclient import TestClient

from trustgate.api import server
from trustgate.config import EndpointPolicy, GatewayConfig
from trustgate.security.anti_flood import solve_challenge

PAY_TO = "0x9263c9114a3c9192fac7890067369a656075a114"
NEW_AGENT_PRICE = 62_500

OPERATOR = {"X-API-Key": "operator-key"}
WALLET = {"X-API-Key": "wallet-key"}
AGENT = {"X-API-Key": "agent-key"}
MALLORY = {"X-API-Key": "mallory-key"}


@pytest.fixture
def client():
    server.app.state.config = GatewayConfig(
        session_secret="api-test-secret-0123456789abcdef",
        suspicious_hours=None,
        pay_to=PAY_TO,
        api_keys={
            "operator-key": "trustgate-operator",
            "wallet-key": "wallet-1",
            "agent-key": "agent-1",
            "mallory-key": "mallory",
        },
        endpoints={
            "search": EndpointPolicy(base_price=0.05),
            "guarded": EndpointPolicy(base_price=0.05, pow_difficulty=8),
            "premium": EndpointPolicy(base_price=0.05, block_unregistered=True),
        },
    )
    with TestClient(server.app) as c:
        yield c
    server.app.state.config = None


def _payment(amount=NEW_AGENT_PRICE, to=PAY_TO) -> str:
    return base64.b64encode(json.dumps({"amount": str(amount), "to": to}).encode()).decode()


def _wait_for_write(client, write_id, timeout=2.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/v1/ledger/writes/{write_id}").json()
        if body["status"] != "pending" or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


# ── Health ──────────────────────────────────────────────────────


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_stats(self, client):
        data = client.get("/api/v1/stats").json()
        assert data["registered_agents"] == 0
        assert data["admissions"]["total"] == 0
        assert data["total_staked"] == "0"


# ── Admission ───────────────────────────────────────────────────


class TestAdmission:
    def test_payment_required(self, client):
        resp = client.post("/api/v1/admit/search", headers={"X-Agent-Id": "agent-1"})
        assert resp.status_code == 402
        body = resp.json()
        assert body["code"] == "PAYMENT_REQUIRED"
        assert body["x402Version"] == "1"
        accepts = body["accepts"][0]
        assert accepts["maxAmountRequired"] == str(NEW_AGENT_PRICE)
        assert accepts["payTo"] == PAY_TO
        assert body["pricing"]["final_price"] == pytest.approx(0.0625)
        assert body["agentInfo"]["is_new"] is True

    def test_paid_then_resumed(self, client):
        resp = client.post(
            "/api/v1/admit/search",
            headers={"X-Agent-Id": "agent-1", "X-Payment": _payment()},
        )
        assert resp.status_code == 200
        token = resp.headers["X-Session-Token"]
        assert resp.headers["X-Trust-Score"] == "50"
        assert resp.json()["resumed"] is False

        resp = client.post(
            "/api/v1/admit/search",
            headers={"X-Agent-Id": "agent-1", "X-Payment": _payment(), "X-Session-Token": token},
        )
        assert resp.status_code == 200
        assert resp.json()["resumed"] is True
        assert resp.headers["X-Session-Token"] == token

    def test_underpayment_reason(self, client):
        resp = client.post(
            "/api/v1/admit/search",
            headers={"X-Agent-Id": "agent-1", "X-Payment": _payment(amount=1)},
        )
        assert resp.status_code == 402
        assert "below the required" in resp.json()["reason"]

    def test_bad_payment_header(self, client):
        resp = client.post(
            "/api/v1/admit/search",
            headers={"X-Agent-Id": "agent-1", "X-Payment": "not base64!"},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_PAYMENT"

    def test_blocked(self, client):
        resp = client.post("/api/v1/admit/premium", headers={"X-Agent-Id": "agent-1"})
        assert resp.status_code == 403
        body = resp.json()
        assert body["code"] == "NOT_REGISTERED"
        assert body["unmet"][0]["required"] is True

    def test_missing_agent_id(self, client):
        resp = client.post("/api/v1/admit/search")
        assert resp.status_code == 403
        assert resp.json()["code"] == "INVALID_INPUT"

    def test_challenge_flow(self, client):
        resp = client.post("/api/v1/admit/guarded", headers={"X-Agent-Id": "agent-1"})
        assert resp.status_code == 429
        body = resp.json()
        assert body["code"] == "POW_REQUIRED"
        assert body["difficulty"] == 8

        answer = solve_challenge(body["challenge"], 8)
        resp = client.post(
            "/api/v1/admit/guarded",
            headers={
                "X-Agent-Id": "agent-1",
                "X-PoW-Challenge": body["challenge"],
                "X-PoW-Nonce": answer,
                "X-Payment": _payment(),
            },
        )
        assert resp.status_code == 200

    def test_pricing_quote(self, client):
        resp = client.get("/api/v1/pricing/search", params={"agent_id": "agent-1"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["max_amount_required"] == str(NEW_AGENT_PRICE)
        assert body["pricing"]["breakdown"]["new_agent"] == 1.25

    def test_pricing_quote_bad_agent(self, client):
        resp = client.get("/api/v1/pricing/search", params={"agent_id": "bad id"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_INPUT"


# ── Agents ──────────────────────────────────────────────────────


class TestAgents:
    def test_register_and_get(self, client):
        resp = client.post("/api/v1/agents", json={"agent_id": "agent-1", "metadata": "ipfs://card"})
        assert resp.status_code == 201
        assert resp.json()["controller"] == "agent-1"

        detail = client.get("/api/v1/agents/agent-1").json()
        assert detail["registered"] is True
        assert detail["reputation"] == 50
        assert detail["tier"] == "basic"
        assert detail["stake"] == "0"

    def test_duplicate_registration(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        resp = client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        assert resp.status_code == 409

    def test_unknown_agent(self, client):
        assert client.get("/api/v1/agents/ghost").status_code == 404

    def test_list_agents(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        client.post("/api/v1/agents", json={"agent_id": "agent-2"})
        client.post("/api/v1/agents/agent-2/deactivate", headers=OPERATOR)

        assert [a["agent_id"] for a in client.get("/api/v1/agents").json()] == ["agent-1", "agent-2"]
        active = client.get("/api/v1/agents", params={"active": True}).json()
        assert [a["agent_id"] for a in active] == ["agent-1"]

    def test_deactivate_and_reactivate(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1", "controller": "wallet-1"})
        resp = client.post("/api/v1/agents/agent-1/deactivate", headers=MALLORY)
        assert resp.status_code == 403
        resp = client.post("/api/v1/agents/agent-1/deactivate", headers=WALLET)
        assert resp.json()["is_active"] is False

        resp = client.post(
            "/api/v1/admit/search", headers={"X-Agent-Id": "agent-1", "X-Payment": _payment()}
        )
        assert resp.json()["code"] == "AGENT_INACTIVE"

        resp = client.post("/api/v1/agents/agent-1/reactivate", headers=WALLET)
        assert resp.json()["is_active"] is True

    def test_status_change_needs_an_api_key(self, client):
        client.post("/api/v1/agents", json={"agent_id": "victim"})
        resp = client.post(
            "/api/v1/agents/victim/deactivate", json={"caller": "trustgate-operator"}
        )
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "UNAUTHENTICATED"
        resp = client.post("/api/v1/agents/victim/deactivate", headers={"X-API-Key": "guess"})
        assert resp.status_code == 401
        assert client.get("/api/v1/agents/victim").json()["active"] is True

    def test_administrator_may_deactivate(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        resp = client.post("/api/v1/agents/agent-1/deactivate", headers=OPERATOR)
        assert resp.json()["is_active"] is False

    def test_deactivate_unregistered(self, client):
        resp = client.post("/api/v1/agents/ghost/deactivate", headers=OPERATOR)
        assert resp.status_code == 404


# ── Ledger writes ───────────────────────────────────────────────


class TestLedgerWrites:
    def test_feedback_is_applied(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        resp = client.post(
            "/api/v1/agents/agent-1/feedback",
            json={"rater_id": "client-1", "rating": 4, "payment_amount": 100, "job_id": "job-1"},
            headers=OPERATOR,
        )
        assert resp.status_code == 202
        write = _wait_for_write(client, resp.json()["write_id"])
        assert write["status"] == "applied"
        assert client.get("/api/v1/agents/agent-1").json()["reputation"] == 80

    def test_feedback_needs_an_api_key(self, client):
        resp = client.post(
            "/api/v1/agents/agent-1/feedback",
            json={"rater_id": "client-1", "rating": 5, "payment_amount": 100, "job_id": "job-1"},
        )
        assert resp.status_code == 401

    def test_feedback_from_unauthorized_submitter_is_rejected(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        resp = client.post(
            "/api/v1/agents/agent-1/feedback",
            json={"rater_id": "client-1", "rating": 1, "payment_amount": 100, "job_id": "job-1"},
            headers=MALLORY,
        )
        write = _wait_for_write(client, resp.json()["write_id"])
        assert write["status"] == "rejected"
        assert write["error"].startswith("POLICY_VIOLATION")
        assert client.get("/api/v1/agents/agent-1").json()["reputation"] == 50

    def test_feedback_validation(self, client):
        resp = client.post(
            "/api/v1/agents/agent-1/feedback",
            json={"rater_id": "client-1", "rating": 6, "payment_amount": 100, "job_id": "job-1"},
            headers=OPERATOR,
        )
        assert resp.status_code == 422

    def test_self_rating_is_rejected(self, client):
        resp = client.post(
            "/api/v1/agents/agent-1/feedback",
            json={"rater_id": "agent-1", "rating": 5, "payment_amount": 100, "job_id": "job-1"},
            headers=OPERATOR,
        )
        write = _wait_for_write(client, resp.json()["write_id"])
        assert write["status"] == "rejected"
        assert write["error"].startswith("INVALID_INPUT")

    def test_job_with_feedback(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        resp = client.post(
            "/api/v1/agents/agent-1/jobs",
            json={"job_id": "job-1", "success": True, "rater_id": "client-1", "rating": 5, "payment_amount": 10},
            headers=OPERATOR,
        )
        assert resp.status_code == 202
        writes = resp.json()
        assert [w["kind"] for w in writes] == ["job_outcome", "feedback"]
        for w in writes:
            assert _wait_for_write(client, w["write_id"])["status"] == "applied"
        detail = client.get("/api/v1/agents/agent-1").json()
        assert detail["successful_jobs"] == 1
        assert detail["reputation"] == 100

    def test_stake_unstake_and_slash(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        stake = client.post("/api/v1/agents/agent-1/stake", json={"amount": 100}, headers=AGENT)
        assert _wait_for_write(client, stake.json()["write_id"])["status"] == "applied"

        unstake = client.post("/api/v1/agents/agent-1/unstake", json={"amount": 40}, headers=AGENT)
        assert _wait_for_write(client, unstake.json()["write_id"])["status"] == "applied"

        complete = client.post("/api/v1/agents/agent-1/unstake/complete", headers=AGENT)
        # Still inside the unbonding period
        assert _wait_for_write(client, complete.json()["write_id"])["status"] == "rejected"

        cancel = client.post("/api/v1/agents/agent-1/unstake/cancel", headers=AGENT)
        assert _wait_for_write(client, cancel.json()["write_id"])["status"] == "applied"

        slash = client.post(
            "/api/v1/agents/agent-1/slash", json={"amount": 30, "reason": "spam"}, headers=OPERATOR
        )
        assert _wait_for_write(client, slash.json()["write_id"])["status"] == "applied"

        detail = client.get("/api/v1/agents/agent-1").json()
        assert detail["stake"] == "70"
        assert detail["slashed_total"] == "30"
        assert client.get("/api/v1/stats").json()["treasury_balance"] == "30"

    def test_slash_needs_an_api_key(self, client):
        client.post("/api/v1/agents", json={"agent_id": "victim"})
        client.post("/api/v1/agents/victim/stake", json={"amount": 100}, headers=OPERATOR)
        resp = client.post("/api/v1/agents/victim/slash", json={"amount": 100, "reason": "x"})
        assert resp.status_code == 401

    def test_slash_by_unauthorized_caller_is_rejected(self, client):
        client.post("/api/v1/agents", json={"agent_id": "victim"})
        stake = client.post("/api/v1/agents/victim/stake", json={"amount": 100}, headers=MALLORY)
        assert _wait_for_write(client, stake.json()["write_id"])["status"] == "applied"

        slash = client.post(
            "/api/v1/agents/victim/slash", json={"amount": 100, "reason": "x"}, headers=MALLORY
        )
        write = _wait_for_write(client, slash.json()["write_id"])
        assert write["status"] == "rejected"
        assert write["error"].startswith("POLICY_VIOLATION")
        detail = client.get("/api/v1/agents/victim").json()
        assert detail["stake"] == "100"
        assert detail["slashed_total"] == "0"

    def test_unstake_by_someone_else_is_rejected(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1", "controller": "wallet-1"})
        client.post("/api/v1/agents/agent-1/stake", json={"amount": 100}, headers=AGENT)
        for headers in (MALLORY, AGENT):
            resp = client.post("/api/v1/agents/agent-1/unstake", json={"amount": 10}, headers=headers)
            assert _wait_for_write(client, resp.json()["write_id"])["status"] == "rejected"
        resp = client.post("/api/v1/agents/agent-1/unstake", json={"amount": 10}, headers=WALLET)
        assert _wait_for_write(client, resp.json()["write_id"])["status"] == "applied"

    def test_unknown_write(self, client):
        assert client.get("/api/v1/ledger/writes/lw:missing").status_code == 404


# ── Sessions and events ─────────────────────────────────────────


class TestSessionsAndEvents:
    def test_revoke_session(self, client):
        resp = client.post(
            "/api/v1/admit/search", headers={"X-Agent-Id": "agent-1", "X-Payment": _payment()}
        )
        token = resp.headers["X-Session-Token"]
        token_id = server._gw().sessions.decode_unverified(token)["id"]

        first = client.post(f"/api/v1/sessions/{token_id}/revoke").json()
        second = client.post(f"/api/v1/sessions/{token_id}/revoke").json()
        assert first["newly_revoked"] is True
        assert second["newly_revoked"] is False
        assert second["revoked"] is True

        resp = client.post(
            "/api/v1/admit/search",
            headers={"X-Agent-Id": "agent-1", "X-Payment": _payment(), "X-Session-Token": token},
        )
        assert resp.status_code == 200
        assert resp.json()["resumed"] is False

    def test_query_events(self, client):
        client.post("/api/v1/agents", json={"agent_id": "agent-1"})
        client.post("/api/v1/admit/search", headers={"X-Agent-Id": "agent-1"})
        events = client.get(
            "/api/v1/events", params={"event_type": "registry.agent_registered"}
        ).json()
        assert len(events) == 1
        assert events[0]["agent_id"] == "agent-1"

        by_endpoint = client.get("/api/v1/events", params={"endpoint": "search"}).json()
        assert by_endpoint[0]["event_type"] == "admission.payment_required"

        stats = client.get("/api/v1/events/stats").json()
        assert stats["by_type"]["registry.agent_registered"] == 1

    def test_unknown_event_type(self, client):
        assert client.get("/api/v1/events", params={"event_type": "nope"}).status_code == 400
