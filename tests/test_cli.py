import json

import respx
from httpx import ConnectError, Response

import eigen_cli

BASE = "http://api.test"


def _run(*argv):
    return eigen_cli.main(["--base-url", BASE, *argv])


def test_status_prints_model_and_downloads(capsys):
    with respx.mock() as respx_mock:
        respx_mock.get(f"{BASE}/api/status").mock(
            return_value=Response(200, json={"ready": True, "current_model_id": "alpha", "downloads": {"beta": 12.5}})
        )
        assert _run("status") == 0
    out = capsys.readouterr().out
    assert "Server ready; model: alpha" in out
    assert "Downloading beta: 12.5%" in out


def test_models_list_marks_current(capsys):
    models = [
        {"id": "alpha", "name": "Alpha 4B", "download_status": "downloaded", "is_current": True},
        {"id": "beta", "name": "Beta 8B", "download_status": "downloading", "download_percent": 40.0},
    ]
    with respx.mock() as respx_mock:
        respx_mock.get(f"{BASE}/api/models").mock(return_value=Response(200, json={"models": models}))
        assert _run("models", "list") == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("* alpha")
    assert "downloading 40.0%" in lines[1]


def test_delete_failure_shows_detail(capsys):
    with respx.mock() as respx_mock:
        respx_mock.delete(f"{BASE}/api/models/alpha").mock(
            return_value=Response(409, json={"detail": "Cannot delete the currently active model"})
        )
        assert _run("models", "delete", "alpha") == 1
    assert "HTTP 409 Cannot delete the currently active model" in capsys.readouterr().out


def test_chat_send_creates_chat(capsys):
    with respx.mock() as respx_mock:
        respx_mock.post(f"{BASE}/api/chats").mock(return_value=Response(200, json={"chat_id": "c1"}))
        send = respx_mock.post(f"{BASE}/api/chats/c1/messages").mock(
            return_value=Response(200, json={"visible_text": "4", "reasoning_text": "2+2"})
        )
        assert _run("chat", "send", "What is 2+2?", "--show-reasoning") == 0
    assert json.loads(send.calls[0].request.content) == {"prompt": "What is 2+2?"}
    assert capsys.readouterr().out.splitlines() == ["Chat c1", "2+2", "---", "4"]


def test_connection_errors_are_reported(capsys):
    with respx.mock() as respx_mock:
        respx_mock.get(f"{BASE}/api/status").mock(side_effect=ConnectError("refused"))
        assert _run("status") == 1
    assert "Request failed: refused" in capsys.readouterr().out


def test_unknown_command_prints_help(capsys):
    assert eigen_cli.main([]) == 1
    assert "Eigen CLI" in capsys.readouterr().out
