import json

import pytest

from eigen.config import AppSettings, load_runtime_config, load_settings, save_settings


def test_load_settings_creates_defaults_when_missing(tmp_path):
    path = tmp_path / "nested" / "settings.json"
    settings = load_settings(path)
    assert path.exists()
    assert settings.behavior.context_length == 8192
    assert settings.behavior.max_tokens == 8192
    assert settings.tools.enabled_tools == []
    assert json.loads(path.read_text())["version"] == 1


def test_load_settings_falls_back_on_corrupt_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{not json")
    settings = load_settings(path)
    assert settings == AppSettings()
    assert path.read_text() == "{not json"


def test_save_then_load_preserves_values(tmp_path):
    path = tmp_path / "settings.json"
    settings = AppSettings()
    settings.defaults.system_prompt = "Be terse."
    settings.tools.enabled_tools = ["calculator", "wikipedia"]
    save_settings(settings, path)
    loaded = load_settings(path)
    assert loaded.defaults.system_prompt == "Be terse."
    assert loaded.tools.enabled_tools == ["calculator", "wikipedia"]


def test_partial_settings_file_fills_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"behavior": {"max_tokens": 512}}))
    loaded = load_settings(path)
    assert loaded.behavior.max_tokens == 512
    assert loaded.behavior.context_length == 8192


def test_runtime_config_reads_environment(tmp_path, monkeypatch):
    monkeypatch.delenv("EIGEN_SETTINGS_PATH", raising=False)
    monkeypatch.setenv("EIGEN_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("EIGEN_SERVER_PORT", "9090")
    monkeypatch.setenv("EIGEN_READINESS_TIMEOUT", "30")
    monkeypatch.setenv("EIGEN_AUTOSTART_MODEL", "off")
    monkeypatch.setenv("EIGEN_MODELS_WATCH_INTERVAL", "2.5")
    config = load_runtime_config()
    assert config.server_url == "http://127.0.0.1:9090"
    assert config.readiness_timeout_s == 30
    assert config.autostart_model is False
    assert config.models_watch_interval_s == 2.5
    assert config.models_dir == tmp_path / "models"
    assert config.resolved_settings_path() == tmp_path / "settings.json"


def test_runtime_config_overrides_win_over_environment(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.setenv("EIGEN_SERVER_BINARY", "/opt/env/llama-server")
    config = load_runtime_config(server_binary="/usr/local/bin/llama-server", port=None)
    assert config.server_binary == "/usr/local/bin/llama-server"
    assert config.port == 8000


@pytest.mark.asyncio
async def test_settings_routes_save_and_reset(client):
    res = await client.get("/api/settings")
    assert res.status_code == 200
    body = res.json()
    body["behavior"]["max_tokens"] = 1024
    res = await client.put("/api/settings", json=body)
    assert res.status_code == 200
    saved = json.loads(client.config.resolved_settings_path().read_text())
    assert saved["behavior"]["max_tokens"] == 1024
    assert (await client.app.state.runtime.get_settings()).behavior.max_tokens == 1024

    res = await client.post("/api/settings/reset")
    assert res.status_code == 200
    assert res.json()["settings"]["behavior"]["max_tokens"] == 8192


@pytest.mark.asyncio
async def test_invalid_settings_payload_is_rejected(client):
    res = await client.put("/api/settings", json={"behavior": {"max_tokens": "lots"}})
    assert res.status_code == 400
