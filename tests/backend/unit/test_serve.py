import pytest

pytest.importorskip("uvicorn")

from marblegame.backend import serve
from marblegame.backend.config import BackendSettings


def _base() -> BackendSettings:
    return BackendSettings(
        host="127.0.0.1",
        port=8000,
        log_level="INFO",
        keepalive_seconds=5,
        sweep_interval_seconds=900,
        finished_ttl_seconds=3600,
        idle_ttl_seconds=14400,
        seed=None,
    )


def test_parse_args_defaults_come_from_settings() -> None:
    args = serve.parse_args([], defaults=_base())

    assert args.host == "127.0.0.1"
    assert args.port == 8000
    assert args.seed is None


def test_command_line_overrides_settings() -> None:
    base = _base()
    args = serve.parse_args(["--port", "9001", "--log-level", "debug", "--seed", "3"], defaults=base)

    settings = serve.settings_from_args(args, base)

    assert settings.port == 9001
    assert settings.log_level == "DEBUG"
    assert settings.seed == 3
    assert settings.keepalive_seconds == 5


def test_main_runs_uvicorn_with_configured_app(monkeypatch) -> None:
    calls = {}

    def fake_run(app, **kwargs) -> None:
        calls["app"] = app
        calls.update(kwargs)

    monkeypatch.setattr(serve.uvicorn, "run", fake_run)

    assert serve.main(["--host", "0.0.0.0", "--port", "9100"]) == 0
    assert calls["host"] == "0.0.0.0"
    assert calls["port"] == 9100
    assert calls["app"].state.settings.port == 9100
