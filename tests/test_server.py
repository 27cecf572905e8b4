import asyncio
import logging
from pathlib import Path

import pytest
import respx
from httpx import ConnectError, Response

from eigen.errors import ServerSpawnError, ServerStartupTimeout, UnknownModel
from eigen.server import build_server_args
from tests.fakes import SERVER_URL, FakeServerManager, install_model, make_catalog

HEALTH_URL = f"{SERVER_URL}/health"


def _manager(runtime, bus, **kwargs):
    return FakeServerManager(
        runtime,
        bus,
        port=8080,
        readiness_timeout_s=kwargs.pop("readiness_timeout_s", 2),
        poll_interval_s=0.01,
        **kwargs,
    )


def _switching(events):
    return [(e["payload"]["modelId"], e["payload"]["status"]) for e in events if e["event_type"] == "model:switching"]


def test_build_server_args_includes_mmproj_only_when_present():
    args = build_server_args(
        "llama-server",
        Path("/m/model.gguf"),
        None,
        host="127.0.0.1",
        port=8080,
        ctx_size=8192,
        max_tokens=4096,
    )
    assert args == [
        "llama-server",
        "-m",
        "/m/model.gguf",
        "--host",
        "127.0.0.1",
        "--port",
        "8080",
        "--ctx-size",
        "8192",
        "--n-predict",
        "4096",
    ]
    with_proj = build_server_args(
        "llama-server",
        Path("/m/model.gguf"),
        Path("/m/mmproj.gguf"),
        host="127.0.0.1",
        port=8080,
        ctx_size=8192,
        max_tokens=4096,
    )
    assert with_proj[-2:] == ["--mmproj", "/m/mmproj.gguf"]


@pytest.mark.asyncio
async def test_wait_until_ready_retries_until_health_ok(runtime, bus, recorded):
    manager = _manager(runtime, bus)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(HEALTH_URL).mock(
                side_effect=[ConnectError("refused"), Response(503), Response(200, json={"status": "ok"})]
            )
            await manager.wait_until_ready()
        assert runtime.ready is True
        assert [e["event_type"] for e in recorded] == ["model:ready"]
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_wait_until_ready_times_out(runtime, bus):
    manager = _manager(runtime, bus)
    try:
        with respx.mock() as respx_mock:
            respx_mock.get(HEALTH_URL).mock(return_value=Response(503))
            with pytest.raises(ServerStartupTimeout, match="Server startup timeout"):
                await manager.wait_until_ready(timeout_s=0.05)
        assert runtime.ready is False
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_switch_model_spawns_and_reports_ready(runtime, bus, recorded, models_dir):
    catalog = make_catalog()
    install_model(models_dir, catalog, "alpha")
    manager = _manager(runtime, bus)
    try:
        with respx.mock() as respx_mock:
            respx_mock.get(HEALTH_URL).mock(return_value=Response(200))
            await manager.switch_model("alpha", catalog)
        assert runtime.ready is True
        assert await runtime.current_model_id() == "alpha"
        assert await runtime.get_process() is manager.spawned[0]
        args = manager.spawn_args[0]
        assert args[args.index("-m") + 1] == str(models_dir / "alpha" / "alpha.gguf")
        assert args[args.index("--mmproj") + 1] == str(models_dir / "alpha" / "mmproj-alpha.gguf")
        assert args[args.index("--ctx-size") + 1] == "8192"
        assert _switching(recorded) == [("alpha", "stopping"), ("alpha", "starting"), ("alpha", "ready")]
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_switch_kills_previous_process(runtime, bus, models_dir):
    catalog = make_catalog()
    install_model(models_dir, catalog, "alpha")
    install_model(models_dir, catalog, "beta")
    manager = _manager(runtime, bus)
    try:
        with respx.mock() as respx_mock:
            respx_mock.get(HEALTH_URL).mock(return_value=Response(200))
            await manager.switch_model("alpha", catalog)
            await manager.switch_model("beta", catalog)
        first, second = manager.spawned
        assert first.kill_calls == 1
        assert second.kill_calls == 0
        assert await runtime.current_model_id() == "beta"
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_spawn_failure_is_reported_not_raised_as_crash(runtime, bus, recorded, models_dir):
    catalog = make_catalog()
    install_model(models_dir, catalog, "beta")
    manager = _manager(runtime, bus, fail_spawn=True)
    try:
        with pytest.raises(ServerSpawnError, match="Failed to spawn llama-server"):
            await manager.switch_model("beta", catalog)
        assert runtime.ready is False
        assert await runtime.get_process() is None
        errors = [e for e in recorded if e["event_type"] == "model:switching" and e["payload"]["status"] == "error"]
        assert len(errors) == 1
        assert errors[0]["payload"]["error"].startswith("Failed to spawn llama-server")
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_failed_switch_then_switch_back_restores_ready(runtime, bus, models_dir):
    catalog = make_catalog()
    install_model(models_dir, catalog, "alpha")
    install_model(models_dir, catalog, "beta")
    manager = _manager(runtime, bus)
    try:
        with respx.mock() as respx_mock:
            respx_mock.get(HEALTH_URL).mock(return_value=Response(200))
            await manager.switch_model("alpha", catalog)
            assert runtime.ready is True

            manager.fail_spawn = True
            with pytest.raises(ServerSpawnError):
                await manager.switch_model("beta", catalog)
            assert runtime.ready is False
            assert manager.spawned[0].kill_calls == 1

            manager.fail_spawn = False
            await manager.switch_model("alpha", catalog)
        assert runtime.ready is True
        assert await runtime.current_model_id() == "alpha"
        assert await runtime.get_process() is manager.spawned[-1]
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_startup_timeout_during_switch_emits_error(runtime, bus, recorded, models_dir):
    catalog = make_catalog()
    install_model(models_dir, catalog, "beta")
    manager = _manager(runtime, bus, readiness_timeout_s=0.05)
    try:
        with respx.mock() as respx_mock:
            respx_mock.get(HEALTH_URL).mock(side_effect=ConnectError("refused"))
            with pytest.raises(ServerStartupTimeout):
                await manager.switch_model("beta", catalog)
        assert runtime.ready is False
        assert _switching(recorded)[-1] == ("beta", "error")
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_switch_to_unknown_model_has_no_side_effects(runtime, bus, recorded):
    manager = _manager(runtime, bus)
    try:
        with pytest.raises(UnknownModel):
            await manager.switch_model("gamma", make_catalog())
        assert manager.spawn_args == []
        assert recorded == []
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_stop_is_idempotent(runtime, bus, models_dir):
    catalog = make_catalog()
    install_model(models_dir, catalog, "beta")
    manager = _manager(runtime, bus)
    try:
        with respx.mock() as respx_mock:
            respx_mock.get(HEALTH_URL).mock(return_value=Response(200))
            await manager.switch_model("beta", catalog)
        await manager.stop()
        await manager.stop()
        assert runtime.ready is False
        assert manager.spawned[0].kill_calls == 1
        assert await runtime.get_process() is None
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_stop_without_process_is_a_no_op(runtime, bus):
    manager = _manager(runtime, bus)
    try:
        await manager.stop()
        assert runtime.ready is False
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_start_default_model_without_models_emits_no_model(runtime, bus, recorded):
    manager = _manager(runtime, bus)
    try:
        assert await manager.start_default_model(make_catalog()) is None
        assert [e["event_type"] for e in recorded] == ["model:no_model"]
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_start_default_model_prefers_configured_model(runtime, bus, recorded, models_dir):
    catalog = make_catalog()
    install_model(models_dir, catalog, "alpha")
    install_model(models_dir, catalog, "beta")
    settings = await runtime.get_settings()
    settings.defaults.model_id = "beta"
    await runtime.replace_settings(settings)
    manager = _manager(runtime, bus)
    try:
        with respx.mock() as respx_mock:
            respx_mock.get(HEALTH_URL).mock(return_value=Response(200))
            assert await manager.start_default_model(catalog) == "beta"
        assert recorded[0]["event_type"] == "model:loading"
        assert recorded[0]["payload"] == {"modelId": "beta"}
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_start_default_model_failure_emits_model_error(runtime, bus, recorded, models_dir):
    catalog = make_catalog()
    install_model(models_dir, catalog, "alpha")
    manager = _manager(runtime, bus, fail_spawn=True)
    try:
        assert await manager.start_default_model(catalog) is None
        assert recorded[-1]["event_type"] == "model:error"
        assert "Failed to spawn" in recorded[-1]["payload"]["error"]
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_output_drain_logs_lines(runtime, bus, caplog):
    manager = _manager(runtime, bus)
    reader = asyncio.StreamReader()
    reader.feed_data(b"llama_model_load: loaded\n\nserver listening\n")
    reader.feed_eof()
    try:
        with caplog.at_level(logging.INFO, logger="uvicorn.error"):
            await manager._drain(reader, "stdout")
        assert "[llama-server] llama_model_load: loaded" in caplog.text
        assert "[llama-server] server listening" in caplog.text
    finally:
        await manager.close()
