from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from credit_ledger.app import create_app
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.logging.audit_logger import AuditLogger
from credit_ledger.services.credit_service import CreditService


PAID_ROUTES = {
    "/api/bfl/generate": ("bfl", "generate"),
    "/api/bfl/broken": ("bfl", "generate"),
    "/api/bfl/drain": ("bfl", "generate"),
}


def _make_client(tmp_path, **kwargs):
    db = InMemoryDBManager()
    service = CreditService(db=db, audit=AuditLogger(db=db, file_path=tmp_path / "audit.log"), **kwargs)
    app = create_app(credit_service=service, paid_routes=PAID_ROUTES)
    calls = []

    @app.post("/api/bfl/generate")
    async def generate(body: dict):
        calls.append(body)
        return {"historyId": f"h-{len(calls)}", "images": []}

    @app.post("/api/bfl/broken")
    async def broken(body: dict):
        calls.append(body)
        return JSONResponse(status_code=502, content={"detail": "provider failed"})

    @app.post("/api/bfl/drain")
    async def drain(body: dict, request: Request):
        # Another charge lands while this request is in flight
        uid = request.headers["X-User-Id"]
        balance = (await service.get_state(uid)).credit_balance
        await service.confirm_debit(uid, "concurrent-job", balance - 10, "other.generate")
        return {"historyId": "h-drain", "images": []}

    return TestClient(app), service, calls


def test_plan_and_balance_routes(tmp_path):
    client, _, _ = _make_client(tmp_path)
    with client:
        plans = client.get("/credits/plans").json()
        assert [p["code"] for p in plans][:2] == ["FREE", "PLAN_A"]

        state = client.get("/credits/u1").json()
        assert state == {"user_id": "u1", "credit_balance": 4120, "plan_code": "FREE"}

        switched = client.post("/credits/u1/plan", json={"planCode": "PLAN_B"})
        assert switched.status_code == 200
        assert switched.json()["credit_balance"] == 50000

        ledgers = client.get("/credits/u1/ledgers", params={"limit": 5}).json()
        assert [e["id"] for e in ledgers["entries"]] == ["PLAN_SWITCH_PLAN_B", "ACCOUNT_OPEN"]

        assert client.post("/credits/u1/plan", json={"planCode": "NOPE"}).status_code == 404


def test_reroll_and_reconcile_routes(tmp_path):
    client, _, _ = _make_client(tmp_path)
    with client:
        reroll = client.post("/credits/u1/reroll").json()
        assert reroll["credit_balance"] == 4120
        assert reroll["skipped_reason"] is None

        reconcile = client.post("/credits/u1/reconcile").json()
        assert reconcile["calculated_balance"] == 4120
        assert reconcile["corrected"] is False


def test_paid_request_is_charged_after_success(tmp_path):
    client, service, calls = _make_client(tmp_path)
    with client:
        response = client.post(
            "/api/bfl/generate",
            json={"model": "flux-dev", "n": 2},
            headers={"X-User-Id": "u1"},
        )
        assert response.status_code == 200
        assert response.json()["historyId"] == "h-1"
        assert response.headers["X-Credits-Deducted"] == "120"
        assert len(calls) == 1

        assert client.get("/credits/u1").json()["credit_balance"] == 4000
        debit = client.get("/credits/u1/ledgers", params={"limit": 1}).json()["entries"][0]
        assert debit["type"] == "DEBIT"
        assert debit["reason"] == "bfl.generate"
        assert debit["meta"]["historyId"] == "h-1"


def test_short_balance_answers_402_without_calling_endpoint(tmp_path):
    client, _, calls = _make_client(tmp_path, free_plan_credits=100)
    with client:
        response = client.post(
            "/api/bfl/generate",
            json={"model": "flux-dev", "n": 2},
            headers={"X-User-Id": "u1"},
        )
        assert response.status_code == 402
        assert response.json() == {
            "responseStatus": "error",
            "message": "Payment Required",
            "data": {"requiredCredits": 120, "currentBalance": 100, "suggestion": "Buy plan or reduce n/size"},
        }
        assert calls == []
        assert client.get("/credits/u1").json()["credit_balance"] == 100


def test_failed_endpoint_is_not_charged(tmp_path):
    client, _, calls = _make_client(tmp_path)
    with client:
        response = client.post(
            "/api/bfl/broken", json={"model": "flux-dev"}, headers={"X-User-Id": "u1"}
        )
        assert response.status_code == 502
        assert "X-Credits-Deducted" not in response.headers
        assert len(calls) == 1
        assert client.get("/credits/u1").json()["credit_balance"] == 4120


def test_missing_user_and_unknown_model(tmp_path):
    client, _, calls = _make_client(tmp_path)
    with client:
        assert client.post("/api/bfl/generate", json={"model": "flux-dev"}).status_code == 401

        response = client.post(
            "/api/bfl/generate", json={"model": "flux-none"}, headers={"X-User-Id": "u1"}
        )
        assert response.status_code == 400
        assert calls == []


def test_body_that_is_not_utf8_is_rejected(tmp_path):
    client, _, calls = _make_client(tmp_path)
    with client:
        response = client.post(
            "/api/bfl/generate",
            content=b"\xff\xfe\xfd",
            headers={"content-type": "application/json", "X-User-Id": "u1"},
        )
        assert response.status_code == 400
        assert response.json() == {"detail": "Request body must be JSON."}
        assert calls == []


def test_success_is_returned_unbilled_when_balance_drained_mid_request(tmp_path):
    client, _, _ = _make_client(tmp_path)
    with client:
        response = client.post(
            "/api/bfl/drain", json={"model": "flux-dev"}, headers={"X-User-Id": "u1"}
        )
        assert response.status_code == 200
        assert response.json() == {"historyId": "h-drain", "images": []}
        assert response.headers["X-Credits-Unbilled"] == "60"
        assert "X-Credits-Deducted" not in response.headers
        assert client.get("/credits/u1").json()["credit_balance"] == 10

        debits = [e for e in client.get("/credits/u1/ledgers").json()["entries"] if e["type"] == "DEBIT"]
        assert [e["id"] for e in debits] == ["concurrent-job"]
