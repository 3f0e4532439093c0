from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from sqlsteward.apps.api.main import create_app
from sqlsteward.services.runtime import build_services
from sqlsteward.tests.utils.audit import FailingAuditSink
from sqlsteward.tests.utils.db import scalar


PROCEDURE = {"path": "/database/stored_procedures/dbo/GetCustomerOrders.sql"}
DEFINITION = "SELECT * FROM Orders WHERE CustomerId = @CustomerId"


def _client(services, *, session_id: str | None = "agent-session") -> AsyncClient:
    headers = {"X-Actor": "agent-7"}
    if session_id:
        headers["X-Session-Id"] = session_id
    transport = ASGITransport(app=create_app(services))
    return AsyncClient(transport=transport, base_url="http://test", headers=headers)


@pytest.mark.asyncio
async def test_transaction_tools_round_trip(services, engine, audit_sink) -> None:
    async with _client(services) as client:
        begin = await client.post("/v1/tools/begin_transaction", json={"isolation_level": "SERIALIZABLE"})
        assert begin.status_code == 200
        transaction = begin.json()["data"]
        assert transaction["state"] == "active"
        assert begin.json()["meta"]["audit_degraded"] is False

        write = await client.post(
            "/v1/tools/execute_query_write",
            json={
                "sql": "UPDATE Orders SET Status = :status WHERE CustomerId = :customer_id",
                "params": {"status": "closed", "customer_id": 123},
            },
        )
        assert write.status_code == 200
        assert write.json()["data"]["rows_affected"] == 5
        assert write.json()["data"]["transaction_id"] == transaction["id"]

        commit = await client.post("/v1/tools/commit_transaction", json={"transaction_id": transaction["id"]})
        assert commit.status_code == 200
        assert commit.json()["data"]["end_reason"] == "committed"

    assert await scalar(engine, "SELECT COUNT(*) FROM Orders WHERE Status = 'closed'") == 5
    assert audit_sink.matching("sql.execute")[0].actor == "agent-7"


@pytest.mark.asyncio
async def test_procedure_tools_audit_unusable_targets(services, audit_sink) -> None:
    async with _client(services) as client:
        response = await client.post(
            "/v1/tools/create_sp_draft",
            json={"path": "/database/views/dbo/Recent.sql", "definition": DEFINITION},
        )
    assert response.status_code == 400
    assert response.json()["error"]["details"]["rule"] == "path"
    [event] = audit_sink.matching("sp.draft.create")
    assert event.outcome == "failure"
    assert event.target == "/database/views/dbo/Recent.sql"
    assert event.actor == "agent-7"


@pytest.mark.asyncio
async def test_errors_use_envelope_and_stable_codes(services) -> None:
    async with _client(services) as client:
        blocked = await client.post("/v1/tools/execute_query_write", json={"sql": "DROP TABLE Orders"})
        assert blocked.status_code == 400
        body = blocked.json()
        assert body["error"]["code"] == "VALIDATION_FAILED"
        assert body["error"]["details"]["rule"] == "denylist"
        assert "request_id" in body["meta"]

        unbound = await client.post(
            "/v1/tools/execute_query_write",
            json={"sql": "DELETE FROM Orders WHERE Id = :id", "params": {"id": 1}},
        )
        assert unbound.status_code == 428
        assert unbound.json()["error"]["code"] == "TRANSACTION_REQUIRED"

        begin = await client.post("/v1/tools/begin_transaction", json={})
        again = await client.post("/v1/tools/begin_transaction", json={})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "TRANSACTION_ALREADY_ACTIVE"

        rollback = await client.post(
            "/v1/tools/rollback_transaction", json={"transaction_id": begin.json()["data"]["id"]}
        )
        repeat = await client.post(
            "/v1/tools/rollback_transaction", json={"transaction_id": begin.json()["data"]["id"]}
        )
        assert rollback.status_code == repeat.status_code == 200
        assert repeat.json()["data"]["state"] == "rolled_back"

        missing = await client.post("/v1/tools/commit_transaction", json={"transaction_id": "nope"})
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "TRANSACTION_NOT_FOUND"

        unknown = await client.post("/v1/tools/drop_everything", json={})
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "TOOL_NOT_FOUND"

        invalid = await client.post("/v1/tools/deploy_sp", json={"path": PROCEDURE["path"], "force": True})
        assert invalid.status_code == 422
        assert invalid.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_transaction_tools_require_session_header(services) -> None:
    async with _client(services, session_id=None) as client:
        response = await client.post("/v1/tools/begin_transaction", json={})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "SESSION_REQUIRED"


@pytest.mark.asyncio
async def test_sessions_cannot_finish_each_others_transactions(services) -> None:
    async with _client(services, session_id="owner") as owner, _client(services, session_id="other") as other:
        begin = await owner.post("/v1/tools/begin_transaction", json={})
        response = await other.post(
            "/v1/tools/rollback_transaction", json={"transaction_id": begin.json()["data"]["id"]}
        )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "TRANSACTION_INVALID_STATE"


@pytest.mark.asyncio
async def test_procedure_lifecycle_over_tools(services) -> None:
    async with _client(services) as client:
        created = await client.post("/v1/tools/create_sp_draft", json={**PROCEDURE, "definition": DEFINITION})
        assert created.status_code == 200
        assert created.json()["data"]["status"] == "drafted"
        assert created.json()["data"]["path"] == PROCEDURE["path"]

        early = await client.post("/v1/tools/deploy_sp", json=PROCEDURE)
        assert early.status_code == 409
        assert early.json()["error"]["code"] == "DRAFT_NOT_TESTED"

        tested = await client.post("/v1/tools/test_sp_draft", json={**PROCEDURE, "params": {"CustomerId": 123}})
        assert tested.status_code == 200
        assert len(tested.json()["data"]["rows"]) == 5

        deployed = await client.post("/v1/tools/deploy_sp", json=PROCEDURE)
        assert deployed.status_code == 200
        assert deployed.json()["data"]["version_number"] == 1

        listed = await client.post(
            "/v1/tools/list_sp_versions",
            json={"schema_name": "dbo", "procedure_name": "GetCustomerOrders"},
        )
        data = listed.json()["data"]
        assert [(item["version_number"], item["is_active"]) for item in data["versions"]] == [(1, True)]
        assert data["draft"] is None

        content = await client.get("/v1/paths", params={"path": PROCEDURE["path"]})
        assert content.status_code == 200
        assert content.json()["data"]["definition_text"] == DEFINITION
        assert content.json()["data"]["version_number"] == 1

        no_previous = await client.post("/v1/tools/rollback_sp", json=PROCEDURE)
        assert no_previous.status_code == 404
        assert no_previous.json()["error"]["code"] == "VERSION_NOT_FOUND"

        bad_path = await client.post("/v1/tools/deploy_sp", json={"path": "/database/tables/dbo/Orders"})
        assert bad_path.status_code == 400
        assert bad_path.json()["error"]["details"]["rule"] == "path"


@pytest.mark.asyncio
async def test_paths_endpoint_not_found_and_invalid(services) -> None:
    async with _client(services) as client:
        missing = await client.get("/v1/paths", params={"path": PROCEDURE["path"]})
        invalid = await client.get("/v1/paths", params={"path": "/etc/passwd"})
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "PATH_NOT_FOUND"
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "INVALID_PATH"


@pytest.mark.asyncio
async def test_health_and_degraded_audit_signal(settings, engine) -> None:
    sink = FailingAuditSink()
    services = build_services(settings, engine=engine, audit_sink=sink)
    try:
        async with _client(services) as client:
            healthy = await client.get("/health")
            assert healthy.json()["status"] == "ok"
            assert set(healthy.json()["database"]) == {"size", "checked_out", "checked_in", "overflow"}

            await client.post("/v1/tools/begin_transaction", json={})
            write = await client.post(
                "/v1/tools/execute_query_write",
                json={"sql": "UPDATE Orders SET Status = :status WHERE Id = :id", "params": {"status": "x", "id": 1}},
            )
            assert write.status_code == 200
            assert write.json()["meta"]["audit_degraded"] is True

            degraded = await client.get("/v1/health")
            assert degraded.json()["data"]["status"] == "degraded"
            assert degraded.json()["data"]["audit"]["failures"] >= 1
    finally:
        await services.close()


@pytest.mark.asyncio
async def test_tool_catalog_lists_every_tool(services) -> None:
    async with _client(services) as client:
        response = await client.get("/v1/tools")
    names = {tool["name"] for tool in response.json()["data"]["tools"]}
    assert names == {
        "create_sp_draft",
        "test_sp_draft",
        "deploy_sp",
        "rollback_sp",
        "list_sp_versions",
        "discard_sp_draft",
        "execute_query_write",
        "begin_transaction",
        "commit_transaction",
        "rollback_transaction",
    }
