import argparse

from fiqh_assistant.cli import cmd_serve


def test_cmd_serve_invokes_uvicorn(monkeypatch):
    called = {}

    def fake_run(app, host, port, reload):  # pragma: no cover
        called.update({"app": app, "host": host, "port": port, "reload": reload})

    monkeypatch.setattr("fiqh_assistant.cli.uvicorn.run", fake_run)

    args = argparse.Namespace(app="fiqh_assistant.agents.http_api:app", host="127.0.0.1", port=9000, reload=True)
    cmd_serve(args, {})

    assert called == {
        "app": "fiqh_assistant.agents.http_api:app",
        "host": "127.0.0.1",
        "port": 9000,
        "reload": True,
    }
