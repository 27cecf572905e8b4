import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from eigen.main import sse_format
from tests.fakes import FailingStreamClient, install_model, make_catalog


@pytest.mark.asyncio
async def test_status_starts_not_ready(client):
    res = await client.get("/api/status")
    assert res.status_code == 200
    assert res.json() == {"ready": False, "current_model_id": None, "downloads": {}}


@pytest.mark.asyncio
async def test_chat_lifecycle(client):
    res = await client.post("/api/chats")
    chat_id = res.json()["chat_id"]

    res = await client.post(f"/api/chats/{chat_id}/messages", json={"prompt": "hello"})
    assert res.status_code == 200
    body = res.json()
    assert body["chat_id"] == chat_id
    assert body["visible_text"] == "ok"
    assert body["cancelled"] is False

    res = await client.get(f"/api/chats/{chat_id}/messages")
    assert [(m["role"], m["content"]) for m in res.json()["messages"]] == [("user", "hello"), ("assistant", "ok")]

    res = await client.patch(f"/api/chats/{chat_id}", json={"title": "  Greetings  "})
    assert res.status_code == 200
    chats = (await client.get("/api/chats")).json()["chats"]
    assert chats[0]["title"] == "Greetings"
    assert chats[0]["preview"] == "ok"

    assert (await client.delete(f"/api/chats/{chat_id}")).status_code == 200
    assert (await client.get(f"/api/chats/{chat_id}/messages")).status_code == 404


@pytest.mark.asyncio
async def test_send_message_validation(client):
    res = await client.post("/api/chats/missing/messages", json={"prompt": "hi"})
    assert res.status_code == 404
    chat_id = (await client.post("/api/chats")).json()["chat_id"]
    res = await client.post(f"/api/chats/{chat_id}/messages", json={"prompt": "   "})
    assert res.status_code == 400
    res = await client.patch(f"/api/chats/{chat_id}", json={"title": ""})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_send_message_transport_failure_maps_to_502(app_factory):
    app, _, _ = app_factory(fake_llm=FailingStreamClient())
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            chat_id = (await http_client.post("/api/chats")).json()["chat_id"]
            res = await http_client.post(f"/api/chats/{chat_id}/messages", json={"prompt": "hi"})
            assert res.status_code == 502
            messages = (await http_client.get(f"/api/chats/{chat_id}/messages")).json()["messages"]
            assert [m["role"] for m in messages] == ["user"]


@pytest.mark.asyncio
async def test_title_is_skipped_until_model_ready(client):
    chat_id = (await client.post("/api/chats")).json()["chat_id"]
    await client.post(f"/api/chats/{chat_id}/messages", json={"prompt": "What is 2+2?"})
    res = await client.post(f"/api/chats/{chat_id}/title")
    assert res.json() == {"title": None}

    client.app.state.runtime.mark_ready()
    res = await client.post(f"/api/chats/{chat_id}/title")
    assert res.json() == {"title": "Quick Math Question"}


@pytest.mark.asyncio
async def test_generation_cancel_routes(client):
    runtime = client.app.state.runtime
    res = await client.post("/api/generation/cancel")
    assert res.json() == {"cancelled": 0}

    token = await runtime.begin_generation("chat-a")
    other = await runtime.begin_generation("chat-b")
    res = await client.post("/api/chats/chat-a/cancel")
    assert res.json() == {"cancelled": 1}
    assert token.cancelled is True
    assert other.cancelled is False

    res = await client.post("/api/generation/cancel", json={"chat_id": None})
    assert res.json() == {"cancelled": 2}
    assert other.cancelled is True


@pytest.mark.asyncio
async def test_models_listing_and_current(client):
    client.app.state.catalog = make_catalog()
    install_model(client.config.models_dir, client.app.state.catalog, "beta")

    models = {m["id"]: m for m in (await client.get("/api/models")).json()["models"]}
    assert models["alpha"]["download_status"] == "not_downloaded"
    assert models["beta"]["download_status"] == "downloaded"

    res = await client.get("/api/models/current")
    assert res.json() == {"model_id": None, "model_path": None, "mmproj_path": None, "ready": False}


@pytest.mark.asyncio
async def test_switch_unknown_model_is_404(client):
    client.app.state.catalog = make_catalog()
    res = await client.post("/api/models/alpha/switch")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_switch_with_missing_binary_reports_spawn_error(client):
    client.app.state.catalog = make_catalog()
    install_model(client.config.models_dir, client.app.state.catalog, "beta")
    res = await client.post("/api/models/beta/switch")
    assert res.status_code == 500
    assert res.json()["detail"].startswith("Failed to spawn llama-server")
    assert (await client.get("/api/status")).json()["ready"] is False


@pytest.mark.asyncio
async def test_download_route_rejects_unknown_and_duplicate(client):
    client.app.state.catalog = make_catalog()
    assert (await client.post("/api/models/gamma/download")).status_code == 404

    await client.app.state.runtime.register_download("beta")
    res = await client.post("/api/models/beta/download")
    assert res.status_code == 409

    res = await client.post("/api/models/beta/download/cancel")
    assert res.json() == {"cancelled": True}
    res = await client.post("/api/models/alpha/download/cancel")
    assert res.json() == {"cancelled": False}


@pytest.mark.asyncio
async def test_delete_model_policies(client):
    catalog = make_catalog()
    client.app.state.catalog = catalog
    models_dir = client.config.models_dir
    install_model(models_dir, catalog, "alpha")
    install_model(models_dir, catalog, "beta")
    await client.app.state.runtime.set_selection("alpha", models_dir / "alpha" / "alpha.gguf", None)

    assert (await client.delete("/api/models/alpha")).status_code == 409
    assert (await client.delete("/api/models/legacy")).status_code == 409
    assert (await client.delete("/api/models/beta")).status_code == 200
    assert not (models_dir / "beta").exists()


@pytest.mark.asyncio
async def test_delete_model_rejects_path_traversal(client):
    data_dir = client.config.models_dir.parent
    keep = data_dir / "keep.txt"
    keep.write_text("keep")

    res = await client.delete("/api/models/%2E%2E")
    assert res.status_code == 409
    assert res.json()["detail"].startswith("Invalid model id")
    assert keep.exists()
    assert client.config.db_path.exists()
    assert client.config.models_dir.is_dir()


@pytest.mark.asyncio
async def test_download_route_refuses_installed_model(client):
    catalog = make_catalog()
    client.app.state.catalog = catalog
    install_model(client.config.models_dir, catalog, "beta")
    res = await client.post("/api/models/beta/download")
    assert res.status_code == 409
    assert res.json()["detail"] == "Model is already downloaded"
    assert (client.config.models_dir / "beta" / "beta.gguf").exists()


@pytest.mark.asyncio
async def test_models_watcher_runs_during_lifespan(app_factory):
    app, config, _ = app_factory(models_watch_interval_s=0.01)
    changed = asyncio.Event()

    def on_event(event):
        if event["event_type"] == "models:changed":
            changed.set()

    async with LifespanManager(app):
        app.state.bus.add_listener(on_event)
        assert "models-watcher" in app.state.background_tasks
        await asyncio.sleep(0.05)
        (config.models_dir / "manual.gguf").write_bytes(b"gguf")
        await asyncio.wait_for(changed.wait(), timeout=2)


@pytest.mark.asyncio
async def test_tools_listing_marks_enabled(client):
    tools = {t["id"]: t for t in (await client.get("/api/tools")).json()["tools"]}
    assert tools["calculator"]["enabled"] is True
    assert tools["shell"]["enabled"] is False
    assert tools["shell"]["requires_confirmation"] is True


def test_sse_format():
    frame = sse_format({"seq": 1, "event_type": "chat:end", "payload": {"chatId": "c"}})
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):])["payload"] == {"chatId": "c"}
