"""Session state machine: turn order, betting, guessing, disconnects and push."""

from __future__ import annotations

import functools
import logging
import random
import threading
import time
from typing import Any, Callable

from .engine import next_eligible_index, settle_round, split_evenly
from .models import Guess, Phase, PlayerRef, RoundResult
from .participant import STARTING_MARBLES, Participant


logger = logging.getLogger(__name__)

MIN_PLAYERS = 2
RESULT_COOLDOWN_SECONDS = 5

RenderFn = Callable[["Session", str, str], Any]


def _serialized(method):
    """Run a session method while holding the session lock."""

    @functools.wraps(method)
    def wrapper(self: "Session", *args: Any, **kwargs: Any) -> Any:
        with self.lock:
            return method(self, *args, **kwargs)

    return wrapper


class Session:
    """One marble game shared by a handful of participants.

    Rule violations are reported through ``False``/``None`` return values and
    leave the session untouched. Every public mutator takes ``self.lock``
    (re-entrant), so concurrent request handlers and stream teardowns are
    serialized per session.
    """

    def __init__(
        self,
        session_id: str,
        host_id: str,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.id = session_id
        self.host_id = host_id
        self.phase = Phase.WAITING
        self.participants: dict[str, Participant] = {}
        self.turn_order: list[str] = []
        self.pending_queue: list[str] = []
        self.turn_index = 0
        self.current_bet = 0
        self.last_result: RoundResult | None = None
        self.result_started_at: float | None = None
        self.lock = threading.RLock()
        self._rng = rng if rng is not None else random.Random()
        self._clock = clock
        self.created_at = clock()
        self.last_activity_at = self.created_at

    # -- views ---------------------------------------------------------------

    @property
    def seated(self) -> list[Participant]:
        return [self.participants[token] for token in self.turn_order if token in self.participants]

    @property
    def pending(self) -> list[Participant]:
        return [self.participants[token] for token in self.pending_queue if token in self.participants]

    @property
    def connected_active(self) -> list[Participant]:
        return [participant for participant in self.seated if participant.is_active_and_connected]

    @property
    def available_active(self) -> list[Participant]:
        """Seated players with marbles who are connected or still within their grace period."""
        return [
            participant
            for participant in self.seated
            if participant.is_active and participant.is_within_grace_period()
        ]

    @property
    def current_bettor(self) -> Participant | None:
        if not 0 <= self.turn_index < len(self.turn_order):
            return None
        return self.participants.get(self.turn_order[self.turn_index])

    @property
    def required_guessers(self) -> list[Participant]:
        bettor = self.current_bettor
        return [
            participant
            for participant in self.connected_active
            if bettor is None or participant.token != bettor.token
        ]

    def is_host(self, token: str) -> bool:
        return token == self.host_id

    def touch(self) -> None:
        self.last_activity_at = self._clock()

    # -- membership ----------------------------------------------------------

    @_serialized
    def add_participant(self, token: str, name: str, lang: str = "en") -> Participant | None:
        if self.phase not in (Phase.WAITING, Phase.FINISHED):
            return None
        self.touch()
        participant = self._upsert(token, name, lang)
        if token in self.pending_queue:
            self.pending_queue.remove(token)
        if token not in self.turn_order:
            participant.marble_count = STARTING_MARBLES
            self.turn_order.append(token)
        return participant

    @_serialized
    def add_pending_participant(self, token: str, name: str, lang: str = "en") -> Participant:
        self.touch()
        participant = self._upsert(token, name, lang, marble_count=0)
        if token not in self.turn_order and token not in self.pending_queue:
            participant.marble_count = 0
            participant.current_guess = None
            self.pending_queue.append(token)
        return participant

    @_serialized
    def join(self, token: str, name: str, lang: str = "en") -> Participant | None:
        """Seat a newcomer in the lobby, or queue them as a spectator mid-game."""
        if self.phase in (Phase.WAITING, Phase.FINISHED):
            return self.add_participant(token, name, lang)
        return self.add_pending_participant(token, name, lang)

    def _upsert(self, token: str, name: str, lang: str, marble_count: int = STARTING_MARBLES) -> Participant:
        participant = self.participants.get(token)
        if participant is None:
            participant = Participant(
                token=token,
                display_name=name,
                marble_count=marble_count,
                language_tag=lang,
                clock=self._clock,
            )
            self.participants[token] = participant
        else:
            participant.display_name = name
            participant.language_tag = lang
        return participant

    # -- round flow ----------------------------------------------------------

    @_serialized
    def start_game(self) -> bool:
        if self.phase is not Phase.WAITING:
            return False
        eligible = self._eligible_positions()
        if len(eligible) < MIN_PLAYERS:
            return False
        self.touch()
        self._begin_first_round(eligible)
        logger.info("Session %s started with %d players", self.id, len(self.turn_order))
        return True

    @_serialized
    def place_bet(self, actor: str, amount: int) -> bool:
        bettor = self.current_bettor
        if self.phase is not Phase.BETTING or bettor is None or bettor.token != actor:
            return False
        if amount < 1 or amount > bettor.marble_count:
            return False
        self.touch()
        self._clear_guesses()
        self.current_bet = amount
        self.phase = Phase.GUESSING
        return True

    @_serialized
    def make_guess(self, actor: str, guess: Guess | str) -> bool:
        participant = self.participants.get(actor)
        if participant is None or self.phase is not Phase.GUESSING:
            return False
        bettor = self.current_bettor
        if bettor is not None and bettor.token == actor:
            return False
        if participant.is_spectator:
            return False
        try:
            choice = Guess(guess)
        except ValueError:
            return False
        self.touch()
        participant.current_guess = choice
        return True

    @_serialized
    def all_required_guesses_in(self) -> bool:
        return all(participant.current_guess is not None for participant in self.required_guessers)

    @_serialized
    def resolve(self) -> RoundResult | None:
        placer = self.current_bettor
        if self.phase is not Phase.GUESSING or placer is None:
            return None
        self.touch()

        amount = self.current_bet
        guessers = [participant for participant in self.required_guessers if participant.current_guess is not None]
        winners = [participant for participant in guessers if participant.current_guess.matches(amount)]
        losers = [participant for participant in guessers if not participant.current_guess.matches(amount)]

        settlement = settle_round(
            amount=amount,
            placer_marbles=placer.marble_count,
            winner_count=len(winners),
            loser_marbles=[loser.marble_count for loser in losers],
        )
        placer.marble_count -= settlement.paid_by_placer
        for winner in winners:
            winner.marble_count += settlement.paid_per_winner
        for loser, loss in zip(losers, settlement.losses):
            loser.marble_count -= loss
            placer.marble_count += loss

        self.last_result = RoundResult(
            placer=_ref(placer),
            amount=amount,
            was_even=amount % 2 == 0,
            winners=tuple(_ref(winner) for winner in winners),
            losers=tuple(_ref(loser) for loser in losers),
            marbles_per_winner=settlement.paid_per_winner,
            placer_net_loss=settlement.placer_net_loss,
        )
        self.result_started_at = self._clock()
        self.phase = Phase.RESULT
        return self.last_result

    @_serialized
    def resolve_if_ready(self) -> RoundResult | None:
        if self.phase is Phase.GUESSING and self.all_required_guesses_in():
            return self.resolve()
        return None

    @_serialized
    def advance(self) -> bool:
        """Leave RESULT; returns False when the game is over (or not in RESULT)."""
        if self.phase is not Phase.RESULT:
            return False
        self.touch()
        self._promote_pending()
        if len(self.connected_active) < MIN_PLAYERS:
            self._finish()
            return False
        self.turn_index = next_eligible_index(len(self.turn_order), self.turn_index + 1, self._is_eligible_position)
        self.current_bet = 0
        self.result_started_at = None
        self.phase = Phase.BETTING
        return True

    def result_cooldown_remaining(self) -> int:
        if self.phase is not Phase.RESULT or self.result_started_at is None:
            return 0
        remaining = RESULT_COOLDOWN_SECONDS - (self._clock() - self.result_started_at)
        return int(remaining) if remaining > 0 else 0

    @_serialized
    def reset_for_rematch(self) -> bool:
        if self.phase is not Phase.FINISHED:
            return False
        self.touch()
        self.turn_order = []
        self.pending_queue = []
        for participant in self.participants.values():
            participant.current_guess = None
            if participant.connected:
                participant.marble_count = STARTING_MARBLES
                self.turn_order.append(participant.token)
            else:
                participant.marble_count = 0
        self.turn_index = 0
        self.current_bet = 0
        self.last_result = None
        self.result_started_at = None
        self.phase = Phase.WAITING

        eligible = self._eligible_positions()
        if len(eligible) >= MIN_PLAYERS:
            self._begin_first_round(eligible)
        logger.info("Session %s reset with %d players, phase %s", self.id, len(self.turn_order), self.phase.value)
        return True

    def get_winner(self) -> Participant | None:
        if self.phase is not Phase.FINISHED:
            return None
        connected = self.connected_active
        if connected:
            return connected[0]
        return next((participant for participant in self.seated if participant.is_active), None)

    # -- disconnects ---------------------------------------------------------

    @_serialized
    def on_disconnect(self, token: str) -> bool:
        """Apply the consequences of a dropped stream; True means a push is warranted."""
        participant = self.participants.get(token)
        if participant is None:
            return False
        if participant.connected:
            participant.end_connection(participant.connection_epoch)

        if self.phase is Phase.BETTING:
            bettor = self.current_bettor
            if bettor is not None and bettor.token == token:
                self._skip_to_eligible_bettor()
            self._finish_if_unavailable()
        elif self.phase is Phase.GUESSING:
            if self.resolve_if_ready() is None:
                self._finish_if_unavailable()
        elif self.phase is Phase.RESULT:
            self._finish_if_unavailable()
        return True

    @_serialized
    def on_grace_period_expired(self, token: str) -> bool:
        participant = self.participants.get(token)
        if participant is None or participant.is_within_grace_period():
            return False
        # Lobby seats are kept for returning players.
        if self.phase is Phase.WAITING:
            return False

        changed = self._transfer_host_from(token)
        if self.phase is Phase.FINISHED:
            return changed
        if token in self.pending_queue:
            self.pending_queue.remove(token)
            changed = True
        if token not in self.turn_order:
            return changed

        self._redistribute_marbles_of(participant)
        was_current = self._remove_from_turn_order(token)
        logger.info("Session %s removed %s after grace period", self.id, participant.display_name)

        if self._finish_if_unavailable():
            return True
        if was_current:
            self._recover_from_departed_bettor()
        elif self.phase is Phase.GUESSING:
            self.resolve_if_ready()
        return True

    @_serialized
    def on_reconnect(self, token: str) -> bool:
        """Give a returning participant their lobby seat back."""
        participant = self.participants.get(token)
        if participant is None or self.phase is not Phase.WAITING:
            return False
        if token in self.turn_order:
            return False
        if token in self.pending_queue:
            self.pending_queue.remove(token)
        participant.marble_count = STARTING_MARBLES
        participant.current_guess = None
        self.turn_order.append(token)
        self.touch()
        return True

    @_serialized
    def check_and_expire_grace_periods(self) -> bool:
        expired = [token for token, participant in self.participants.items() if not participant.is_within_grace_period()]
        changed = False
        for token in expired:
            if self.on_grace_period_expired(token):
                changed = True
        return changed

    # -- push ----------------------------------------------------------------

    @_serialized
    def push_state_to_all_connected(self, render_fn: RenderFn, exclude: str | None = None) -> int:
        delivered = 0
        for participant in list(self.participants.values()):
            if not participant.connected or participant.token == exclude:
                continue
            payload = render_fn(self, participant.token, participant.language_tag)
            if participant.push(payload):
                delivered += 1
        return delivered

    @_serialized
    def close(self) -> None:
        for participant in self.participants.values():
            participant.close_stream()

    # -- internals -----------------------------------------------------------

    def _is_eligible_position(self, index: int) -> bool:
        participant = self.participants.get(self.turn_order[index])
        return participant is not None and participant.is_active_and_connected

    def _eligible_positions(self) -> list[int]:
        return [index for index in range(len(self.turn_order)) if self._is_eligible_position(index)]

    def _begin_first_round(self, eligible: list[int]) -> None:
        self._clear_guesses()
        self.turn_index = self._rng.choice(eligible)
        self.current_bet = 0
        self.last_result = None
        self.result_started_at = None
        self.phase = Phase.BETTING

    def _clear_guesses(self) -> None:
        for participant in self.participants.values():
            participant.current_guess = None

    def _skip_to_eligible_bettor(self) -> None:
        self.turn_index = next_eligible_index(len(self.turn_order), self.turn_index, self._is_eligible_position)

    def _promote_pending(self) -> None:
        for token in self.pending_queue:
            participant = self.participants.get(token)
            if participant is None:
                continue
            participant.marble_count = STARTING_MARBLES
            participant.current_guess = None
            if token not in self.turn_order:
                self.turn_order.append(token)
        self.pending_queue.clear()

    def _finish(self) -> None:
        self.phase = Phase.FINISHED
        self.current_bet = 0
        self.result_started_at = None
        winner = self.get_winner()
        logger.info("Session %s finished, winner %s", self.id, winner.display_name if winner else None)

    def _finish_if_unavailable(self) -> bool:
        if len(self.available_active) <= 1:
            self._finish()
            return True
        return False

    def _transfer_host_from(self, token: str) -> bool:
        if token != self.host_id:
            return False
        candidates = self.seated + list(self.participants.values())
        successor = next(
            (participant for participant in candidates if participant.connected and participant.token != token),
            None,
        )
        if successor is None:
            return False
        self.host_id = successor.token
        logger.info("Session %s host transferred to %s", self.id, successor.display_name)
        return True

    def _redistribute_marbles_of(self, departing: Participant) -> None:
        recipients = [participant for participant in self.connected_active if participant.token != departing.token]
        departing.current_guess = None
        # Nobody to hand them to: the departing record keeps its marbles.
        if not recipients:
            return
        for recipient, share in zip(recipients, split_evenly(departing.marble_count, len(recipients))):
            recipient.marble_count += share
        departing.marble_count = 0

    def _remove_from_turn_order(self, token: str) -> bool:
        removed_index = self.turn_order.index(token)
        was_current = removed_index == self.turn_index
        del self.turn_order[removed_index]
        if not self.turn_order:
            self.turn_index = 0
            return was_current
        if removed_index < self.turn_index:
            self.turn_index -= 1
        if self.turn_index >= len(self.turn_order):
            self.turn_index = 0
        return was_current

    def _recover_from_departed_bettor(self) -> None:
        if self.phase is Phase.RESULT:
            # advance() steps forward from here, landing on the departed bettor's successor.
            self.turn_index = (self.turn_index - 1) % len(self.turn_order)
            return
        if self.phase is Phase.GUESSING:
            self._clear_guesses()
            self.current_bet = 0
            self.phase = Phase.BETTING
        self._skip_to_eligible_bettor()


def _ref(participant: Participant) -> PlayerRef:
    return PlayerRef(token=participant.token, name=participant.display_name)
