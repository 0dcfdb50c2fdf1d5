"""State builders for per-viewer session snapshots."""

from __future__ import annotations

from typing import Any

from .models import Phase, PlayerRef, RoundResult
from .session import MIN_PLAYERS, Session


def _ref_to_dict(ref: PlayerRef) -> dict[str, Any]:
    return {"token": ref.token, "name": ref.name}


def _result_to_dict(result: RoundResult) -> dict[str, Any]:
    return {
        "placer": _ref_to_dict(result.placer),
        "amount": result.amount,
        "wasEven": result.was_even,
        "winners": [_ref_to_dict(winner) for winner in result.winners],
        "losers": [_ref_to_dict(loser) for loser in result.losers],
        "marblesPerWinner": result.marbles_per_winner,
        "placerNetLoss": result.placer_net_loss,
    }


def build_state_view(session: Session, viewer_token: str, lang: str = "en") -> dict[str, Any]:
    """Return the snapshot one participant is allowed to see.

    The bet amount stays hidden from everyone but the bettor until the round
    is resolved.
    """
    with session.lock:
        phase = session.phase
        bettor = session.current_bettor
        bettor_token = bettor.token if bettor is not None else None
        viewer = session.participants.get(viewer_token)
        is_bettor = viewer is not None and viewer.token == bettor_token
        seated_tokens = set(session.turn_order)

        participants = [
            {
                "token": participant.token,
                "name": participant.display_name,
                "marbles": participant.marble_count,
                "connected": participant.connected,
                "gracePeriodRemaining": participant.grace_period_remaining(),
                "isHost": session.is_host(participant.token),
                "isBettor": participant.token == bettor_token and phase in (Phase.BETTING, Phase.GUESSING),
                "hasGuessed": participant.current_guess is not None,
                "isSpectator": participant.is_spectator,
            }
            for participant in session.seated
        ]
        pending = [{"token": participant.token, "name": participant.display_name} for participant in session.pending]

        reveal_bet = phase is Phase.RESULT or (is_bettor and phase is Phase.GUESSING)
        winner = session.get_winner()
        you: dict[str, Any] = {
            "token": viewer_token,
            "isHost": session.is_host(viewer_token),
            "isPending": viewer_token in session.pending_queue,
            "isSpectator": viewer is None or viewer.token not in seated_tokens or viewer.is_spectator,
            "canStart": (
                session.is_host(viewer_token)
                and phase is Phase.WAITING
                and len(session.connected_active) >= MIN_PLAYERS
            ),
            "canBet": phase is Phase.BETTING and is_bettor,
            "canGuess": (
                phase is Phase.GUESSING
                and viewer is not None
                and viewer.is_active
                and viewer.token in seated_tokens
                and not is_bettor
            ),
            "guess": viewer.current_guess.value if viewer is not None and viewer.current_guess else None,
            "marbles": viewer.marble_count if viewer is not None else 0,
        }

        return {
            "id": session.id,
            "lang": lang,
            "phase": phase.value,
            "hostToken": session.host_id,
            "turnIndex": session.turn_index,
            "bettorToken": bettor_token if phase in (Phase.BETTING, Phase.GUESSING) else None,
            "currentBet": session.current_bet if reveal_bet else None,
            "participants": participants,
            "pending": pending,
            "you": you,
            "lastResult": _result_to_dict(session.last_result) if session.last_result is not None else None,
            "resultCooldown": session.result_cooldown_remaining(),
            "winner": _ref_to_dict(PlayerRef(token=winner.token, name=winner.display_name)) if winner else None,
        }


def render_state_message(session: Session, viewer_token: str, lang: str = "en") -> dict[str, Any]:
    return {"type": "state.full", "state": build_state_view(session, viewer_token, lang)}
