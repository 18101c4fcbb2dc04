"""
Orchestration of the voting rounds: from requests to the game logic and the store (and the reverse direction).

Round lifecycle
----
OPEN (accepting votes) -> RESOLVING (turn executor running) -> OPEN (next round) or CLOSED (game over, permanent).

The round record in the store is the single source of truth. Resolution computes the next record entirely in memory
and persists it with one compare-and-set against the record it started from, so two ticks for the same round can
never both apply a move: the slower one loses the compare-and-set and leaves everything untouched.
"""

import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from src.api.models import (
    CreatePostRequest,
    GetRoundRequest,
    LegalDestinationsRequest,
    LegalDestinationsResponse,
    ResolutionResponse,
    RoundResponse,
    VoteCount,
    VoteRequest,
    VoteResponse,
)
from src.core.config import Settings
from src.core.exceptions import (
    GameNotFoundError,
    GameStateError,
    IllegalMoveError,
    InvalidRequestError,
    InvalidSquareError,
    RoundClosedError,
)
from src.core.models import RoundRecord
from src.core.shared_types import Color, MoveSource, Outcome, RoundPhase, TickResult
from src.db.keys import record_key
from src.db.schema import utc_now
from src.db.store import KeyValueStore
from src.db.vote_tally import VoteTally
from src.game.executor import TurnExecutor
from src.game.notation import Move, MoveKey
from src.game.opponent import OpponentEngine
from src.game.position import Position, TerminalStatus
from src.game.resolver import fallback_select, rank_votes, resolve
from src.game.square import Square

_log = logging.getLogger(__name__)

Clock = Callable[[], datetime]

MAX_SWAP_ATTEMPTS = 3


@dataclass(frozen=True)
class CommunityTurn:
    position: Position
    move_key: Optional[MoveKey]
    source: MoveSource


def format_time(seconds: int) -> str:
    """Countdown as shown next to the board, e.g. 4:05"""
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}:{secs:02d}"


class RoundService:
    """Round lifecycle controller for the voting game."""

    def __init__(
        self,
        store: KeyValueStore,
        opponent: OpponentEngine,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock
        self.rng = rng or random.Random()
        self.tally = VoteTally(store)
        self.opponent = opponent
        self.executor = TurnExecutor(opponent, self.rng)

    # -- Entry points ---
    def install_game(self, request: CreatePostRequest) -> RoundResponse:
        """
        A new post was created: start a game with round 1 open for votes.
        Installing twice is harmless: the record already stored wins.
        """
        position = (
            Position.from_fen(request.starting_fen)
            if request.starting_fen
            else Position.starting_position()
        )
        difficulty = (
            request.difficulty
            if request.difficulty is not None
            else self.settings.opponent_difficulty
        )
        now = self.clock()
        record = self._record_for(
            position,
            round_number=1,
            round_started_at=now,
            last_resolved_at=None,
            difficulty=difficulty,
        )
        if self.store.compare_and_set(
            record_key(request.instance_id), None, record.to_json()
        ):
            _log.info("Installed game %s (%s)", request.instance_id, record.phase)
        else:
            _log.info("Game %s already installed, keeping it", request.instance_id)
        return self._create_round_response(request.instance_id, self._fetch_record(request.instance_id))

    def cast_vote(self, request: VoteRequest) -> VoteResponse:
        """One vote for one move in the open round. Users may vote more than once; legality is settled at resolution."""
        record = self._fetch_record(request.instance_id)
        if record.phase == RoundPhase.CLOSED:
            raise RoundClosedError(
                f"Game {request.instance_id} is over ({record.outcome}), no more votes."
            )
        try:
            move = Move(
                Square.from_algebraic(request.from_square),
                Square.from_algebraic(request.to_square),
            )
        except InvalidSquareError as exc:
            raise InvalidRequestError(f"Cannot vote for this move: {exc}") from exc
        move_key = move.to_key()
        votes = self.tally.record_vote(request.instance_id, record.round_number, move_key)
        return VoteResponse(
            instance_id=request.instance_id,
            round_number=record.round_number,
            move_key=move_key,
            votes=votes,
        )

    def legal_destinations(
        self, request: LegalDestinationsRequest
    ) -> LegalDestinationsResponse:
        """Squares to highlight once a voter selected the piece on `origin`."""
        record = self._fetch_record(request.instance_id)
        position = self._position(record)
        destinations = (
            []
            if record.phase == RoundPhase.CLOSED
            else position.legal_destinations(Square.from_algebraic(request.origin))
        )
        return LegalDestinationsResponse(
            instance_id=request.instance_id,
            origin=request.origin,
            destinations=[square.to_algebraic() for square in destinations],
        )

    def get_round_state(self, request: GetRoundRequest) -> RoundResponse:
        """
        Retrieve the current game and round.
        ----
        Used in a polling loop by the rendering layer; its own copy is stale as soon as round_number changes.
        """
        record = self._fetch_record(request.instance_id)
        return self._create_round_response(request.instance_id, record)

    def is_stale(self, instance_id: str, seen_round: int) -> bool:
        """True if a copy rendered during `seen_round` has been overtaken by a resolution."""
        return self._fetch_record(instance_id).round_number != seen_round

    def tick(self, instance_id: str) -> ResolutionResponse:
        """
        Scheduled resolution entry point. Safe to call any number of times.
        ----

        1. CLOSED -> nothing to do, ever again (only start_new_game() replaces a finished game)
        2. deadline not reached yet -> nothing to do
        3. resolve: community move (vote or fallback), then the opponent's reply
        4. persist the next round with compare-and-set, then drop the old tally
        """
        record = self._fetch_record(instance_id)
        if record.phase == RoundPhase.CLOSED:
            return self._tick_response(instance_id, TickResult.CLOSED, record)

        now = self.clock()
        if self._seconds_remaining(record, now) > 0:
            return self._tick_response(instance_id, TickResult.NOT_DUE, record)

        _log.info("Resolving %s round %d", instance_id, record.round_number)
        position = self._position(record)

        community = CommunityTurn(position, None, MoveSource.NONE)
        if not self.executor.is_terminal(position).is_terminal:
            community = self._play_community_turn(instance_id, record, position)
        position = community.position

        # The opponent only moves after an actual community move that did not end the game.
        # A skipped community move holds the position, so the community keeps its colour.
        opponent_move, opponent_source = None, MoveSource.NONE
        if (
            community.source != MoveSource.SKIPPED
            and not self.executor.is_terminal(position).is_terminal
        ):
            reply = self.executor.play_opponent_turn(position, record.difficulty)
            position = reply.position
            opponent_move, opponent_source = reply.move_key, reply.source

        next_record = self._record_for(
            position,
            round_number=record.round_number + 1,
            round_started_at=now,
            last_resolved_at=now,
            difficulty=record.difficulty,
        )
        swapped = self.store.compare_and_set(
            record_key(instance_id), record.to_json(), next_record.to_json()
        )
        if not swapped:
            _log.info("Round %d of %s was already resolved", record.round_number, instance_id)
            current = self._fetch_record(instance_id)
            return self._tick_response(instance_id, TickResult.ALREADY_RESOLVED, current)

        self._drop_tallies(instance_id, record.round_number)
        status = self._status(next_record)
        if next_record.phase == RoundPhase.CLOSED:
            _log.info("Game %s is over: %s", instance_id, status.describe())

        return ResolutionResponse(
            instance_id=instance_id,
            result=TickResult.RESOLVED,
            round_number=next_record.round_number,
            phase=RoundPhase(next_record.phase),
            community_move=community.move_key,
            community_source=community.source,
            opponent_move=opponent_move,
            opponent_source=opponent_source,
            outcome=status.outcome,
            winner=status.winner,
        )

    def start_new_game(self, instance_id: str) -> RoundResponse:
        """
        Daily job: replace the game of a post with a fresh board from the standard starting position.
        ----
        Round numbers keep counting up across games, so votes for the old board can never land on the new one.
        The swap is a compare-and-set like tick(); if a resolution slips in between, read again and retry.
        """
        for _ in range(MAX_SWAP_ATTEMPTS):
            raw = self.store.get(record_key(instance_id))
            previous = RoundRecord.from_json(raw) if raw is not None else None
            record = self._record_for(
                Position.starting_position(),
                round_number=previous.round_number + 1 if previous else 1,
                round_started_at=self.clock(),
                last_resolved_at=None,
                difficulty=(
                    previous.difficulty if previous else self.settings.opponent_difficulty
                ),
            )
            if self.store.compare_and_set(record_key(instance_id), raw, record.to_json()):
                if previous:
                    self._drop_tallies(instance_id, previous.round_number)
                _log.info("Started a new game for %s (round %d)", instance_id, record.round_number)
                return self._create_round_response(instance_id, record)
            _log.info("Record of %s changed while starting a new game, retrying", instance_id)
        raise GameStateError(
            f"Could not start a new game for {instance_id}: the record kept changing."
        )

    def close(self) -> None:
        """Shut down the opponent (an external engine runs in its own process)."""
        self.opponent.close()

    def __enter__(self) -> "RoundService":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- Internal helpers --
    def _drop_tallies(self, instance_id: str, round_number: int) -> None:
        """Tally of the round that just ended, plus the one before it (late votes, a reset that failed)."""
        for number in range(max(1, round_number - 1), round_number + 1):
            self.tally.reset(instance_id, number)

    def _play_community_turn(
        self, instance_id: str, record: RoundRecord, position: Position
    ) -> CommunityTurn:
        """Winning vote, or any legal move if no valid vote came in. An illegal winner is skipped, not fatal."""
        legal_moves = position.legal_move_keys()
        votes = self.tally.read_all(instance_id, record.round_number)
        move_key = resolve(votes, legal_moves)
        source = MoveSource.VOTE
        if move_key is None:
            move_key = fallback_select(legal_moves, self.rng)
            source = MoveSource.FALLBACK
            _log.info(
                "No valid votes in %s round %d, playing %s",
                instance_id,
                record.round_number,
                move_key,
            )
        if move_key is None:
            return CommunityTurn(position, None, MoveSource.NONE)

        try:
            return CommunityTurn(
                self.executor.apply_community_move(position, move_key), move_key, source
            )
        except IllegalMoveError as exc:
            _log.warning("Skipping community move for %s: %s", instance_id, exc)
            return CommunityTurn(position, move_key, MoveSource.SKIPPED)

    def _record_for(
        self,
        position: Position,
        round_number: int,
        round_started_at: datetime,
        last_resolved_at: Optional[datetime],
        difficulty: int,
    ) -> RoundRecord:
        status = self.executor.is_terminal(position)
        return RoundRecord(
            starting_fen=position.starting_fen,
            moves_uci=position.moves_uci,
            current_fen=position.fen,
            round_number=round_number,
            round_started_at=round_started_at,
            last_resolved_at=last_resolved_at,
            phase=RoundPhase.CLOSED if status.is_terminal else RoundPhase.OPEN,
            outcome=status.outcome,
            winner=status.winner,
            difficulty=difficulty,
        )

    def _fetch_record(self, instance_id: str) -> RoundRecord:
        """Attempt to find the game in the store and raise error if it fails."""
        raw = self.store.get(record_key(instance_id))
        if raw is None:
            raise GameNotFoundError(f"Game with {instance_id=} not found.")
        return RoundRecord.from_json(raw)

    def _position(self, record: RoundRecord) -> Position:
        return Position.from_history(record.starting_fen, record.moves_uci)

    def _status(self, record: RoundRecord) -> TerminalStatus:
        return TerminalStatus(
            outcome=Outcome(record.outcome),
            winner=Color(record.winner) if record.winner else None,
        )

    def _seconds_remaining(self, record: RoundRecord, now: datetime) -> int:
        elapsed = (now - record.round_started_at).total_seconds()
        return max(0, math.ceil(self.settings.round_duration_seconds - elapsed))

    def _create_round_response(self, instance_id: str, record: RoundRecord) -> RoundResponse:
        position = self._position(record)
        status = position.status()
        votes = (
            {}
            if record.phase == RoundPhase.CLOSED
            else self.tally.read_all(instance_id, record.round_number)
        )
        seconds_remaining = (
            0
            if record.phase == RoundPhase.CLOSED
            else self._seconds_remaining(record, self.clock())
        )
        return RoundResponse(
            instance_id=instance_id,
            fen_state=position.fen,
            starting_state=position.starting_fen,
            move_history=position.history_keys(),
            san_history=position.san_history(),
            board=position.grid(),
            color_to_move=position.color_to_move,
            phase=RoundPhase(record.phase),
            outcome=status.outcome,
            winner=status.winner,
            result_text=status.describe(),
            round_number=record.round_number,
            round_started_at=record.round_started_at,
            last_resolved_at=record.last_resolved_at,
            seconds_remaining=seconds_remaining,
            time_left=format_time(seconds_remaining),
            top_moves=[
                VoteCount(move_key=key, votes=count)
                for key, count in rank_votes(votes, self.settings.top_moves_shown)
            ],
            total_votes=sum(votes.values()),
        )

    def _tick_response(
        self, instance_id: str, result: TickResult, record: RoundRecord
    ) -> ResolutionResponse:
        status = self._status(record)
        return ResolutionResponse(
            instance_id=instance_id,
            result=result,
            round_number=record.round_number,
            phase=RoundPhase(record.phase),
            outcome=status.outcome,
            winner=status.winner,
        )
