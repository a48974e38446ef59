import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from harvey.errors import CollaboratorError
from tests.fakes import NOT_PRICING_YAML, PRICING_YAML, FakeModelClient, call, reply


async def new_session(client) -> str:
    res = await client.post("/api/chat/session")
    assert res.status_code == 201
    return res.json()["data"]["sessionId"]


@pytest.mark.asyncio
async def test_session_lifecycle(client):
    session_id = await new_session(client)

    res = await client.get(f"/api/chat/session/{session_id}")
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["data"]["sessionId"] == session_id
    assert body["data"]["messageCount"] == 0
    assert body["data"]["hasPricingContext"] is False

    res = await client.delete(f"/api/chat/session/{session_id}")
    assert res.json()["data"] == {"sessionId": session_id, "deleted": True}

    res = await client.get(f"/api/chat/session/{session_id}")
    assert res.status_code == 404
    assert res.json()["success"] is False
    assert res.json()["error"] == "Session not found"


@pytest.mark.asyncio
async def test_unknown_session_everywhere_is_404(client):
    for method, path in (
        ("GET", "/api/chat/session/ghost/messages"),
        ("GET", "/api/chat/session/ghost/files"),
        ("GET", "/api/chat/session/ghost/pricing-context"),
        ("DELETE", "/api/chat/session/ghost/pricing-context"),
        ("DELETE", "/api/chat/session/ghost"),
    ):
        res = await client.request(method, path)
        assert res.status_code == 404, path
        assert res.json()["error"] == "Session not found"

    res = await client.post("/api/chat/session/ghost/message", data={"message": "hi"})
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_upload_rejects_non_yaml(client):
    session_id = await new_session(client)
    files = {"file": ("pricing.json", b"{}", "application/json")}
    res = await client.post(f"/api/chat/session/{session_id}/upload", files=files)
    assert res.status_code == 400
    assert res.json()["error"] == "Only YAML files (.yaml, .yml) are allowed."


@pytest.mark.asyncio
async def test_upload_rejects_path_traversal_names(client):
    session_id = await new_session(client)
    files = {"file": ("../evil.yaml", PRICING_YAML.encode(), "application/x-yaml")}
    res = await client.post(f"/api/chat/session/{session_id}/upload", files=files)
    assert res.status_code == 400
    assert "Invalid filename" in res.text


@pytest.mark.asyncio
async def test_upload_rejects_oversize(app_factory):
    app, _, _, _ = app_factory(upload_max_mb=0)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            session_id = await new_session(client)
            files = {"file": ("pricing.yaml", b"x", "application/x-yaml")}
            res = await client.post(f"/api/chat/session/{session_id}/upload", files=files)
            assert res.status_code == 400
            assert "File too large" in res.text


@pytest.mark.asyncio
async def test_pricing_upload_sets_context(client):
    session_id = await new_session(client)
    files = {"file": ("pricing.yaml", PRICING_YAML.encode(), "application/x-yaml")}
    res = await client.post(f"/api/chat/session/{session_id}/upload", files=files)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["file"]["status"] == "uploaded"
    assert "storage_path" not in data["file"]
    assert data["pricingContext"]["hasContext"] is True
    assert data["pricingContext"]["fileId"] == data["file"]["fileId"]

    res = await client.get(f"/api/chat/session/{session_id}/files")
    assert res.json()["data"]["count"] == 1


@pytest.mark.asyncio
async def test_non_pricing_upload_is_listed_as_invalid(client):
    session_id = await new_session(client)
    files = {"file": ("deploy.yaml", NOT_PRICING_YAML.encode(), "application/x-yaml")}
    res = await client.post(f"/api/chat/session/{session_id}/upload", files=files)
    data = res.json()["data"]
    assert data["file"]["status"] == "invalid"
    assert data["pricingContext"]["hasContext"] is False


@pytest.mark.asyncio
async def test_pricing_context_endpoints(client):
    session_id = await new_session(client)
    files = {"file": ("tiny.yaml", b"saasName: Tiny\nplans: {}\n", "application/x-yaml")}
    res = await client.post(f"/api/chat/session/{session_id}/upload", files=files)
    file_id = res.json()["data"]["file"]["fileId"]
    assert res.json()["data"]["pricingContext"]["hasContext"] is False

    res = await client.put(f"/api/chat/session/{session_id}/pricing-context", json={"fileId": file_id})
    assert res.status_code == 200
    assert res.json()["data"]["fileName"] == "tiny.yaml"
    assert res.json()["data"]["source"] == "manual"

    res = await client.get(f"/api/chat/session/{session_id}/pricing-context")
    assert res.json()["data"]["hasContext"] is True

    res = await client.delete(f"/api/chat/session/{session_id}/pricing-context")
    assert res.json()["data"]["hasContext"] is False

    res = await client.put(f"/api/chat/session/{session_id}/pricing-context", json={"fileId": "nope"})
    assert res.status_code == 404

    res = await client.put(f"/api/chat/session/{session_id}/pricing-context", json={})
    assert res.status_code == 400
    assert res.json()["success"] is False


@pytest.mark.asyncio
async def test_delete_file_clears_context(client):
    session_id = await new_session(client)
    files = {"file": ("pricing.yaml", PRICING_YAML.encode(), "application/x-yaml")}
    res = await client.post(f"/api/chat/session/{session_id}/upload", files=files)
    file_id = res.json()["data"]["file"]["fileId"]

    res = await client.delete(f"/api/chat/session/{session_id}/files/{file_id}")
    assert res.json()["data"] == {"fileId": file_id, "deleted": True}
    res = await client.get(f"/api/chat/session/{session_id}/pricing-context")
    assert res.json()["data"]["hasContext"] is False

    res = await client.delete(f"/api/chat/session/{session_id}/files/{file_id}")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_message_requires_text(client):
    session_id = await new_session(client)
    res = await client.post(f"/api/chat/session/{session_id}/message", data={"message": "   "})
    assert res.status_code == 400
    assert res.json()["error"] == "Message is required."


@pytest.mark.asyncio
async def test_message_with_upload_then_summary(app_factory):
    model = FakeModelClient()
    app, model, analysis, _ = app_factory(fake_model=model)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            session_id = await new_session(client)
            files = [("files", ("pricing.yaml", PRICING_YAML.encode(), "application/x-yaml"))]
            res = await client.post(
                f"/api/chat/session/{session_id}/message", data={"message": "Here is my pricing"}, files=files
            )
            assert res.status_code == 200
            first = res.json()["data"]
            assert first["content"] == "Test answer."
            assert first["context_updated"] is True
            file_id = first["attached_files"][0]["fileId"]

            model.queue(
                reply("", call("getPricingSummary", pricingFileId=file_id)),
                reply("Acme Cloud has 2 plans and 1 feature."),
            )
            res = await client.post(f"/api/chat/session/{session_id}/message", data={"message": "summarize this"})
            second = res.json()["data"]
            assert second["content"] == "Acme Cloud has 2 plans and 1 feature."
            assert second["tool_call"]["name"] == "getPricingSummary"
            assert second["tool_result"]["outcome"]["status"] == "success"
            assert len(analysis.summary_calls) == 1

            res = await client.get(f"/api/chat/session/{session_id}/messages")
            data = res.json()["data"]
            assert data["count"] == 6
            assert [m["role"] for m in data["messages"]] == ["user", "model", "user", "model", "tool", "model"]


@pytest.mark.asyncio
async def test_model_failure_is_502_and_log_untouched(app_factory):
    model = FakeModelClient([CollaboratorError("model", "Model request timed out")])
    app, _, _, _ = app_factory(fake_model=model)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            session_id = await new_session(client)
            res = await client.post(f"/api/chat/session/{session_id}/message", data={"message": "hello"})
            assert res.status_code == 502
            assert res.json() == {
                "success": False,
                "error": "Model request timed out",
                "detail": {"service": "model", "status": None},
            }
            res = await client.get(f"/api/chat/session/{session_id}/messages")
            assert res.json()["data"]["count"] == 0


@pytest.mark.asyncio
async def test_health_reports_services(client):
    await new_session(client)
    client.fake_analysis.healthy = False
    res = await client.get("/api/health")
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "ok"
    assert data["sessions"] == 1
    assert data["services"] == {"analysis": False, "transformation": True}
