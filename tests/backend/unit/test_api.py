import random

import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from marblegame.backend.api import create_app
from marblegame.backend.config import BackendSettings
from marblegame.backend.registry import SessionRegistry


def _settings(keepalive_seconds: float = 0.05) -> BackendSettings:
    return BackendSettings(
        host="127.0.0.1",
        port=8000,
        log_level="INFO",
        keepalive_seconds=keepalive_seconds,
        sweep_interval_seconds=900,
        finished_ttl_seconds=3600,
        idle_ttl_seconds=14400,
        seed=None,
    )


def _app(registry: SessionRegistry | None = None):
    registry = registry if registry is not None else SessionRegistry(rng=random.Random(7))
    return create_app(registry=registry, settings=_settings())


def _receive_state(websocket, predicate=lambda state: True, attempts: int = 50) -> dict:
    for _ in range(attempts):
        message = websocket.receive_json()
        if message["type"] == "state.full" and predicate(message["state"]):
            return message["state"]
    raise AssertionError("expected state message not received")


def _create_and_join(client: TestClient) -> tuple[str, str, str]:
    created = client.post("/api/sessions", json={"name": "Alice", "lang": "de-DE"}).json()
    session_id = created["session_id"]
    joined = client.post(f"/api/sessions/{session_id}/join", json={"name": "Bob"}).json()
    return session_id, created["token"], joined["token"]


def test_post_sessions_returns_code_token_and_host_state() -> None:
    with TestClient(_app()) as client:
        response = client.post("/api/sessions", json={"name": "  Alice  "})

    assert response.status_code == 200
    data = response.json()
    assert len(data["session_id"]) == 8
    assert data["token"]
    assert data["state"]["phase"] == "waiting"
    assert data["state"]["you"]["isHost"] is True
    assert data["state"]["participants"][0]["name"] == "Alice"


def test_join_defaults_blank_name_and_seats_player() -> None:
    with TestClient(_app()) as client:
        created = client.post("/api/sessions", json={"name": "Alice"}).json()
        response = client.post(f"/api/sessions/{created['session_id']}/join", json={"name": ""})

    assert response.status_code == 200
    state = response.json()["state"]
    assert [entry["name"] for entry in state["participants"]] == ["Alice", "Player"]
    assert state["you"]["isHost"] is False


def test_unknown_session_and_token_are_rejected() -> None:
    with TestClient(_app()) as client:
        created = client.post("/api/sessions", json={"name": "Alice"}).json()

        missing = client.get("/api/sessions/ffffffff", params={"token": created["token"]})
        forbidden = client.get(f"/api/sessions/{created['session_id']}", params={"token": "invalid"})
        join_missing = client.post("/api/sessions/ffffffff/join", json={"name": "Bob"})

    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"
    assert forbidden.status_code == 403
    assert join_missing.status_code == 404


def test_start_is_host_only_and_needs_connected_players() -> None:
    with TestClient(_app()) as client:
        session_id, host_token, guest_token = _create_and_join(client)

        by_guest = client.post(f"/api/sessions/{session_id}/start", json={"token": guest_token})
        not_connected = client.post(f"/api/sessions/{session_id}/start", json={"token": host_token})

    assert by_guest.status_code == 403
    assert by_guest.json()["detail"]["code"] == "UNAUTHORIZED"
    assert not_connected.status_code == 400
    assert not_connected.json()["detail"]["code"] == "WRONG_PHASE"


def test_health_reports_session_count() -> None:
    with TestClient(_app()) as client:
        client.post("/api/sessions", json={"name": "Alice"})
        response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "sessions": 1}


def test_websocket_sends_initial_state_then_keepalive() -> None:
    with TestClient(_app()) as client:
        created = client.post("/api/sessions", json={"name": "Alice"}).json()
        url = f"/ws/sessions/{created['session_id']}?token={created['token']}"

        with client.websocket_connect(url) as websocket:
            first = websocket.receive_json()
            second = websocket.receive_json()

    assert first["type"] == "state.full"
    assert first["state"]["participants"][0]["connected"] is True
    assert second == {"type": "ping"}


def test_websocket_rejects_invalid_token() -> None:
    with TestClient(_app()) as client:
        created = client.post("/api/sessions", json={"name": "Alice"}).json()

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/sessions/{created['session_id']}?token=invalid"):
                pass


def test_full_round_over_http_with_pushed_state() -> None:
    with TestClient(_app()) as client:
        session_id, host_token, guest_token = _create_and_join(client)
        base = f"/ws/sessions/{session_id}"

        with client.websocket_connect(f"{base}?token={host_token}") as ws_host:
            with client.websocket_connect(f"{base}?token={guest_token}") as ws_guest:
                _receive_state(ws_guest)
                _receive_state(ws_host, lambda state: all(entry["connected"] for entry in state["participants"]))

                started = client.post(f"/api/sessions/{session_id}/start", json={"token": host_token})
                assert started.status_code == 200
                bettor = started.json()["state"]["bettorToken"]
                guesser = guest_token if bettor == host_token else host_token

                wrong_turn = client.post(
                    f"/api/sessions/{session_id}/bet", json={"token": guesser, "amount": 2}
                )
                too_many = client.post(
                    f"/api/sessions/{session_id}/bet", json={"token": bettor, "amount": 11}
                )
                bet = client.post(f"/api/sessions/{session_id}/bet", json={"token": bettor, "amount": 4})
                early_advance = client.post(f"/api/sessions/{session_id}/advance", json={"token": bettor})
                guess = client.post(
                    f"/api/sessions/{session_id}/guess", json={"token": guesser, "guess": "even"}
                )

                pushed = _receive_state(ws_host, lambda state: state["phase"] == "result")

    assert wrong_turn.status_code == 400
    assert wrong_turn.json()["detail"]["code"] == "INVALID_TURN"
    assert too_many.json()["detail"]["code"] == "INVALID_AMOUNT"
    assert bet.status_code == 200
    assert bet.json()["state"]["currentBet"] == 4
    assert early_advance.json()["detail"]["code"] == "WRONG_PHASE"
    assert guess.status_code == 200
    marbles = {entry["token"]: entry["marbles"] for entry in guess.json()["state"]["participants"]}
    assert marbles == {guesser: 14, bettor: 6}
    assert pushed["lastResult"]["winners"][0]["token"] == guesser
    assert pushed["currentBet"] == 4


def test_invalid_guess_value_fails_validation() -> None:
    with TestClient(_app()) as client:
        session_id, host_token, _ = _create_and_join(client)
        response = client.post(f"/api/sessions/{session_id}/guess", json={"token": host_token, "guess": "maybe"})

    assert response.status_code == 422


def test_closing_stream_marks_participant_disconnected_for_others() -> None:
    with TestClient(_app()) as client:
        session_id, host_token, guest_token = _create_and_join(client)
        base = f"/ws/sessions/{session_id}"

        def guest_connected(connected: bool):
            return lambda state: any(
                entry["token"] == guest_token and entry["connected"] is connected for entry in state["participants"]
            )

        with client.websocket_connect(f"{base}?token={host_token}") as ws_host:
            initial = _receive_state(ws_host)
            with client.websocket_connect(f"{base}?token={guest_token}") as ws_guest:
                _receive_state(ws_guest)
                _receive_state(ws_host, guest_connected(True))
            state = _receive_state(ws_host, guest_connected(False))

    assert guest_connected(False)(initial)

    guest = next(entry for entry in state["participants"] if entry["token"] == guest_token)
    assert guest["gracePeriodRemaining"] > 0


def test_rematch_requires_finished_game() -> None:
    with TestClient(_app()) as client:
        session_id, host_token, guest_token = _create_and_join(client)

        by_guest = client.post(f"/api/sessions/{session_id}/rematch", json={"token": guest_token})
        too_early = client.post(f"/api/sessions/{session_id}/rematch", json={"token": host_token})

    assert by_guest.status_code == 403
    assert too_early.status_code == 400


def test_check_disconnects_returns_state() -> None:
    with TestClient(_app()) as client:
        session_id, host_token, _ = _create_and_join(client)
        response = client.post(f"/api/sessions/{session_id}/check-disconnects", json={"token": host_token})

    assert response.status_code == 200
    assert response.json()["state"]["phase"] == "waiting"
