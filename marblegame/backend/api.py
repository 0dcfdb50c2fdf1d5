"""FastAPI endpoints for session lifecycle, game moves and websocket push."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .config import BackendSettings, load_settings
from .models import ErrorCode, Guess, Phase
from .participant import CONNECTION_CHECK, STREAM_CLOSED, Participant
from .registry import SessionRegistry
from .security import generate_token, normalize_language_tag, sanitize_display_name
from .session import Session
from .state import build_state_view, render_state_message


logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.UNAUTHORIZED: 403,
}


class CreateSessionRequest(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    lang: str | None = Field(default=None, max_length=35)


class JoinSessionRequest(CreateSessionRequest):
    token: str | None = None


class JoinSessionResponse(BaseModel):
    session_id: str
    token: str
    state: dict[str, Any]


class SessionStateResponse(BaseModel):
    state: dict[str, Any]


class TokenEnvelope(BaseModel):
    token: str = Field(min_length=1)


class BetEnvelope(TokenEnvelope):
    amount: int


class GuessEnvelope(TokenEnvelope):
    guess: Guess


def rejection(code: ErrorCode, message: str) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(code, 400),
        detail={"code": code.value, "message": message},
    )


def find_session(registry: SessionRegistry, session_id: str, token: str) -> tuple[Session, Participant]:
    session = registry.get(session_id)
    if session is None:
        raise rejection(ErrorCode.NOT_FOUND, "Session not found")
    participant = session.participants.get(token)
    if participant is None:
        raise rejection(ErrorCode.UNAUTHORIZED, "Token is not a participant of this session")
    return session, participant


def publish_state(session: Session, exclude: str | None = None) -> int:
    return session.push_state_to_all_connected(render_state_message, exclude=exclude)


def _state_for(session: Session, participant: Participant) -> dict[str, Any]:
    return build_state_view(session, participant.token, participant.language_tag)


async def _forward_outbox(websocket: WebSocket, participant: Participant, epoch: int, keepalive: float) -> None:
    """Send queued payloads to one stream until it is closed or superseded."""
    while True:
        try:
            item = await asyncio.wait_for(participant.outbox.get(), timeout=keepalive)
        except asyncio.TimeoutError:
            item = {"type": "ping"}

        if participant.connection_epoch != epoch:
            # A newer stream owns the outbox now; hand the payload over.
            if item is not CONNECTION_CHECK and item is not STREAM_CLOSED and item.get("type") != "ping":
                participant.outbox.put_nowait(item)
            logger.debug("Stream %d for %s superseded", epoch, participant.display_name)
            await _close_quietly(websocket)
            return
        if item is CONNECTION_CHECK:
            continue
        if item is STREAM_CLOSED:
            await _close_quietly(websocket)
            return

        try:
            await websocket.send_json(item)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug("Send to %s failed: %s", participant.display_name, exc)
            return


async def _receive_until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def _close_quietly(websocket: WebSocket) -> None:
    try:
        await websocket.close()
    except (WebSocketDisconnect, RuntimeError, OSError) as exc:
        logger.debug("Websocket close failed: %s", exc)


def _default_registry(settings: BackendSettings) -> SessionRegistry:
    rng = random.Random(settings.seed) if settings.seed is not None else None
    return SessionRegistry(
        finished_ttl=settings.finished_ttl_seconds,
        idle_ttl=settings.idle_ttl_seconds,
        rng=rng,
    )


def create_app(registry: SessionRegistry | None = None, settings: BackendSettings | None = None) -> FastAPI:
    backend_settings = settings if settings is not None else load_settings()
    session_registry = registry if registry is not None else _default_registry(backend_settings)

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(session_registry.run_sweeper(backend_settings.sweep_interval_seconds))
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            session_registry.close()

    app = FastAPI(title="Marble Game API", version="0.1.0", lifespan=lifespan)
    app.state.registry = session_registry
    app.state.settings = backend_settings

    def get_registry() -> SessionRegistry:
        return session_registry

    @app.get("/api/health")
    async def health(local_registry: SessionRegistry = Depends(get_registry)) -> dict[str, Any]:
        return {"status": "ok", "sessions": len(local_registry)}

    @app.post("/api/sessions", response_model=JoinSessionResponse)
    async def create_session(
        payload: CreateSessionRequest,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> JoinSessionResponse:
        token = generate_token()
        session = local_registry.create(host_token=token)
        participant = session.add_participant(
            token,
            sanitize_display_name(payload.name),
            normalize_language_tag(payload.lang),
        )
        return JoinSessionResponse(session_id=session.id, token=token, state=_state_for(session, participant))

    @app.post("/api/sessions/{session_id}/join", response_model=JoinSessionResponse)
    async def join_session(
        session_id: str,
        payload: JoinSessionRequest,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> JoinSessionResponse:
        session = local_registry.get(session_id)
        if session is None:
            raise rejection(ErrorCode.NOT_FOUND, "Session not found")
        token = payload.token if payload.token and payload.token in session.participants else generate_token()
        participant = session.join(
            token,
            sanitize_display_name(payload.name),
            normalize_language_tag(payload.lang),
        )
        if participant is None:
            raise rejection(ErrorCode.WRONG_PHASE, "Session cannot be joined right now")
        logger.info("Participant %s joined session %s", participant.display_name, session.id)
        publish_state(session, exclude=token)
        return JoinSessionResponse(session_id=session.id, token=token, state=_state_for(session, participant))

    @app.get("/api/sessions/{session_id}", response_model=SessionStateResponse)
    async def get_session(
        session_id: str,
        token: str = Query(min_length=1),
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> SessionStateResponse:
        session, participant = find_session(local_registry, session_id, token)
        return SessionStateResponse(state=_state_for(session, participant))

    @app.post("/api/sessions/{session_id}/start", response_model=SessionStateResponse)
    async def start_session(
        session_id: str,
        payload: TokenEnvelope,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> SessionStateResponse:
        session, participant = find_session(local_registry, session_id, payload.token)
        with session.lock:
            if not session.is_host(payload.token):
                raise rejection(ErrorCode.UNAUTHORIZED, "Only the host can start the game")
            if session.phase is not Phase.WAITING:
                raise rejection(ErrorCode.WRONG_PHASE, "Game already started")
            if not session.start_game():
                raise rejection(ErrorCode.WRONG_PHASE, "At least two connected players are needed")
        publish_state(session)
        return SessionStateResponse(state=_state_for(session, participant))

    @app.post("/api/sessions/{session_id}/bet", response_model=SessionStateResponse)
    async def place_bet(
        session_id: str,
        payload: BetEnvelope,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> SessionStateResponse:
        session, participant = find_session(local_registry, session_id, payload.token)
        with session.lock:
            if not session.place_bet(payload.token, payload.amount):
                bettor = session.current_bettor
                if session.phase is not Phase.BETTING:
                    raise rejection(ErrorCode.WRONG_PHASE, "Bets are not being taken")
                if bettor is None or bettor.token != payload.token:
                    raise rejection(ErrorCode.INVALID_TURN, "It is not your turn to bet")
                raise rejection(ErrorCode.INVALID_AMOUNT, "Bet must be between 1 and your marble count")
            session.resolve_if_ready()
        publish_state(session)
        return SessionStateResponse(state=_state_for(session, participant))

    @app.post("/api/sessions/{session_id}/guess", response_model=SessionStateResponse)
    async def make_guess(
        session_id: str,
        payload: GuessEnvelope,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> SessionStateResponse:
        session, participant = find_session(local_registry, session_id, payload.token)
        with session.lock:
            if not session.make_guess(payload.token, payload.guess):
                if session.phase is not Phase.GUESSING:
                    raise rejection(ErrorCode.WRONG_PHASE, "Guesses are not being taken")
                raise rejection(ErrorCode.INVALID_TURN, "You cannot guess this round")
            session.resolve_if_ready()
        publish_state(session)
        return SessionStateResponse(state=_state_for(session, participant))

    @app.post("/api/sessions/{session_id}/advance", response_model=SessionStateResponse)
    async def advance_round(
        session_id: str,
        payload: TokenEnvelope,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> SessionStateResponse:
        session, participant = find_session(local_registry, session_id, payload.token)
        with session.lock:
            if session.phase is not Phase.RESULT:
                raise rejection(ErrorCode.WRONG_PHASE, "There is no result to advance from")
            session.advance()
        publish_state(session)
        return SessionStateResponse(state=_state_for(session, participant))

    @app.post("/api/sessions/{session_id}/rematch", response_model=SessionStateResponse)
    async def rematch(
        session_id: str,
        payload: TokenEnvelope,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> SessionStateResponse:
        session, participant = find_session(local_registry, session_id, payload.token)
        with session.lock:
            if not session.is_host(payload.token):
                raise rejection(ErrorCode.UNAUTHORIZED, "Only the host can start a rematch")
            if not session.reset_for_rematch():
                raise rejection(ErrorCode.WRONG_PHASE, "The game is not finished")
        publish_state(session)
        return SessionStateResponse(state=_state_for(session, participant))

    @app.post("/api/sessions/{session_id}/check-disconnects", response_model=SessionStateResponse)
    async def check_disconnects(
        session_id: str,
        payload: TokenEnvelope,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> SessionStateResponse:
        session, participant = find_session(local_registry, session_id, payload.token)
        if session.check_and_expire_grace_periods():
            publish_state(session)
        return SessionStateResponse(state=_state_for(session, participant))

    @app.websocket("/ws/sessions/{session_id}")
    async def session_ws(
        websocket: WebSocket,
        session_id: str,
        local_registry: SessionRegistry = Depends(get_registry),
    ) -> None:
        token = websocket.query_params.get("token")
        session = local_registry.get(session_id) if token else None
        participant = session.participants.get(token) if session is not None else None
        if session is None or participant is None:
            await websocket.close(code=1008)
            return

        await websocket.accept()
        with session.lock:
            participant.drain()
            epoch = participant.start_new_connection()
            # Wakes a previous stream of this participant so it notices it was superseded.
            participant.wake()
            if session.phase is Phase.WAITING:
                session.on_reconnect(token)
            initial = render_state_message(session, token, participant.language_tag)
        logger.debug("Stream %d opened for %s in session %s", epoch, participant.display_name, session.id)

        try:
            await websocket.send_json(initial)
            publish_state(session, exclude=token)
            receiver = asyncio.create_task(_receive_until_disconnect(websocket))
            sender = asyncio.create_task(
                _forward_outbox(websocket, participant, epoch, backend_settings.keepalive_seconds)
            )
            done, pending = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                task.result()
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug("Stream %d for %s ended: %s", epoch, participant.display_name, exc)
        finally:
            if participant.end_connection(epoch):
                logger.debug("Stream %d closed for %s in session %s", epoch, participant.display_name, session.id)
                if session.on_disconnect(token):
                    publish_state(session)

    return app


app = create_app()
