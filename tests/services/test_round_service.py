"""Unit tests for src/services/round_service.py"""

import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Optional

import chess
import pytest

from src.api.models import (
    CreatePostRequest,
    GetRoundRequest,
    LegalDestinationsRequest,
    RoundResponse,
    VoteRequest,
)
from src.core.config import Settings
from src.core.exceptions import (
    GameError,
    GameNotFoundError,
    GameStateError,
    IllegalMoveError,
    InvalidRequestError,
    OpponentMoveUnavailableError,
    RoundClosedError,
)
from src.core.models import RoundRecord
from src.core.shared_types import Color, MoveSource, Outcome, RoundPhase, TickResult
from src.db.keys import record_key, tally_key
from src.game.position import Position
from src.services.round_service import RoundService, format_time

# --- MOCK DEPENDENCIES ----
INSTANCE_ID = "t3_mockpost"
ROUND_SECONDS = 300
AFTER_E4_E5 = "rnbqkbnr/pppp1ppp/8/4p3/4P3/8/PPPP1PPP/RNBQKBNR w KQkq - 0 2"
# 1. f3 e5 played, white to move (and walk into fool's mate)
BEFORE_FOOLS_MATE = "rnbqkbnr/pppp1ppp/8/4p3/8/5P2/PPPPP1PP/RNBQKBNR w KQkq - 0 2"
BACK_RANK_MATE = "6k1/5ppp/8/8/8/8/8/R5K1 w - - 0 1"
STALEMATE = "7k/5Q2/6K1/8/8/8/8/8 b - - 0 1"


class MockStore:
    """Mock the KeyValueStore using dictionaries."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._hashes: dict[str, dict[str, int]] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        if self._values.get(key) != expected:
            return False
        self._values[key] = value
        return True

    def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._hashes.pop(key, None)

    def increment(self, key: str, field: str, delta: int = 1) -> int:
        fields = self._hashes.setdefault(key, {})
        fields[field] = fields.get(field, 0) + delta
        return fields[field]

    def read_hash(self, key: str) -> dict[str, int]:
        return dict(self._hashes.get(key, {}))

    def clear(self) -> None:
        """Clear the store (useful in between tests)"""
        self._values.clear()
        self._hashes.clear()


class RacingStore(MockStore):
    """Runs `before_swap` once, right before the next compare-and-set of an existing record: someone else got there first."""

    def __init__(self) -> None:
        super().__init__()
        self.before_swap: Optional[Callable[[], object]] = None

    def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        if expected is not None and self.before_swap is not None:
            before_swap, self.before_swap = self.before_swap, None
            before_swap()
        return super().compare_and_set(key, expected, value)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedOpponent:
    """Plays the scripted replies in order. Runs out -> no suggestion."""

    def __init__(self, *replies: str, fail: bool = False) -> None:
        self.replies = list(replies)
        self.fail = fail
        self.calls = 0
        self.closed = False

    def suggest_move(self, position: Position, difficulty: int) -> Optional[str]:
        self.calls += 1
        if self.fail:
            raise OpponentMoveUnavailableError("engine is down")
        return self.replies.pop(0) if self.replies else None

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def mock_store() -> Generator[MockStore, None, None]:
    """Ensures to clear the store between tests"""
    store = MockStore()
    try:
        yield store
    finally:
        store.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_service(
    store: MockStore, clock: FakeClock, opponent: Optional[ScriptedOpponent] = None
) -> RoundService:
    return RoundService(
        store,
        opponent or ScriptedOpponent(),
        Settings(round_duration_seconds=ROUND_SECONDS, top_moves_shown=3),
        clock=clock,
        rng=random.Random(1),
    )


def install(service: RoundService, starting_fen: Optional[str] = None) -> RoundResponse:
    return service.install_game(
        CreatePostRequest(instance_id=INSTANCE_ID, starting_fen=starting_fen)
    )


def vote(service: RoundService, move_key: str, times: int = 1) -> None:
    from_square, to_square = move_key.split("-")
    for _ in range(times):
        service.cast_vote(
            VoteRequest(instance_id=INSTANCE_ID, from_square=from_square, to_square=to_square)
        )


def stored_record(store: MockStore) -> RoundRecord:
    raw = store.get(record_key(INSTANCE_ID))
    assert raw is not None
    return RoundRecord.from_json(raw)


def state(service: RoundService) -> RoundResponse:
    return service.get_round_state(GetRoundRequest(instance_id=INSTANCE_ID))


# --- SERVICE - INSTALL GAME ----
def test_install_a_new_game(mock_store: MockStore, clock: FakeClock) -> None:
    """Round 1 is open for votes, from the standard starting position."""
    response = install(make_service(mock_store, clock))

    assert isinstance(response, RoundResponse)
    assert response.instance_id == INSTANCE_ID
    assert response.fen_state == chess.STARTING_FEN
    assert response.starting_state == chess.STARTING_FEN
    assert response.move_history == []
    assert response.round_number == 1
    assert response.phase == RoundPhase.OPEN
    assert response.outcome == Outcome.ONGOING
    assert response.color_to_move == Color.WHITE
    assert response.round_started_at == clock.now
    assert response.last_resolved_at is None
    assert response.seconds_remaining == ROUND_SECONDS
    assert response.time_left == "5:00"
    assert response.top_moves == []

    # Check persisted data
    record = stored_record(mock_store)
    assert record.round_number == 1
    assert record.moves_uci == []
    assert record.difficulty == 2


def test_install_from_a_custom_position(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock)
    response = service.install_game(
        CreatePostRequest(instance_id=INSTANCE_ID, starting_fen=BACK_RANK_MATE, difficulty=4)
    )
    assert response.fen_state == BACK_RANK_MATE
    assert stored_record(mock_store).difficulty == 4


def test_install_twice_keeps_the_running_game(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock)
    install(service)
    vote(service, "e2-e4")
    clock.advance(ROUND_SECONDS)
    service.tick(INSTANCE_ID)

    response = install(service, starting_fen=BACK_RANK_MATE)
    assert response.round_number == 2
    assert response.move_history[0] == "e2-e4"


def test_install_an_impossible_position(mock_store: MockStore, clock: FakeClock) -> None:
    """Make sure service propagates the exceptions."""
    with pytest.raises(GameError):
        install(make_service(mock_store, clock), starting_fen="8/8/8/8/8/8/8/8 w - - 0 1")
    assert mock_store.get(record_key(INSTANCE_ID)) is None


def test_install_a_finished_position(mock_store: MockStore, clock: FakeClock) -> None:
    """A position without legal moves is over before the first vote."""
    service = make_service(mock_store, clock)
    response = install(service, starting_fen=STALEMATE)
    assert response.phase == RoundPhase.CLOSED
    assert response.outcome == Outcome.STALEMATE
    assert response.seconds_remaining == 0

    clock.advance(ROUND_SECONDS)
    assert service.tick(INSTANCE_ID).result == TickResult.CLOSED


# --- SERVICE - VOTING ----
def test_cast_votes(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock)
    install(service)

    first = service.cast_vote(VoteRequest(instance_id=INSTANCE_ID, from_square="e2", to_square="e4"))
    second = service.cast_vote(VoteRequest(instance_id=INSTANCE_ID, from_square="e2", to_square="e4"))
    assert first.move_key == "e2-e4"
    assert first.round_number == 1
    assert (first.votes, second.votes) == (1, 2)
    assert mock_store.read_hash(tally_key(INSTANCE_ID, 1)) == {"e2-e4": 2}


def test_vote_for_unknown_game(mock_store: MockStore, clock: FakeClock) -> None:
    with pytest.raises(GameNotFoundError):
        vote(make_service(mock_store, clock), "e2-e4")


def test_vote_needs_two_different_squares(mock_store: MockStore, clock: FakeClock) -> None:
    """Even a request that skipped validation cannot put an undecodable key in the tally."""
    service = make_service(mock_store, clock)
    install(service)
    request = VoteRequest.model_construct(instance_id=INSTANCE_ID, from_square="e2", to_square="e2")

    with pytest.raises(InvalidRequestError):
        service.cast_vote(request)
    assert mock_store.read_hash(tally_key(INSTANCE_ID, 1)) == {}
    assert state(service).top_moves == []


def test_top_moves_and_countdown(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock)
    install(service)
    vote(service, "e2-e4", 3)
    vote(service, "d2-d4", 3)
    vote(service, "g1-f3", 2)
    vote(service, "a2-a3")
    clock.advance(65)

    response = state(service)
    assert [(top.move_key, top.votes) for top in response.top_moves] == [
        ("d2-d4", 3),
        ("e2-e4", 3),
        ("g1-f3", 2),
    ]
    assert response.total_votes == 9
    assert response.seconds_remaining == 235
    assert response.time_left == "3:55"


def test_legal_destinations(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock)
    install(service)
    response = service.legal_destinations(
        LegalDestinationsRequest(instance_id=INSTANCE_ID, origin="g1")
    )
    assert response.destinations == ["f3", "h3"]


def test_get_unknown_game(mock_store: MockStore, clock: FakeClock) -> None:
    with pytest.raises(GameNotFoundError):
        state(make_service(mock_store, clock))


# --- SERVICE - RESOLUTION ----
def test_nothing_happens_before_the_deadline(mock_store: MockStore, clock: FakeClock) -> None:
    opponent = ScriptedOpponent("e7e5")
    service = make_service(mock_store, clock, opponent)
    install(service)
    vote(service, "e2-e4")
    clock.advance(ROUND_SECONDS - 1)

    response = service.tick(INSTANCE_ID)
    assert response.result == TickResult.NOT_DUE
    assert response.round_number == 1
    assert opponent.calls == 0
    assert state(service).move_history == []


def test_winning_vote_and_reply_are_played(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent("e7e5"))
    install(service)
    vote(service, "e2-e4", 3)
    vote(service, "d2-d4")
    clock.advance(ROUND_SECONDS)

    response = service.tick(INSTANCE_ID)
    assert response.result == TickResult.RESOLVED
    assert response.round_number == 2
    assert response.phase == RoundPhase.OPEN
    assert response.community_move == "e2-e4"
    assert response.community_source == MoveSource.VOTE
    assert response.opponent_move == "e7-e5"
    assert response.opponent_source == MoveSource.ENGINE

    after = state(service)
    assert after.fen_state == AFTER_E4_E5
    assert after.move_history == ["e2-e4", "e7-e5"]
    assert after.san_history == ["e4", "e5"]
    assert after.round_started_at == clock.now
    assert after.last_resolved_at == clock.now
    assert after.seconds_remaining == ROUND_SECONDS
    # A fresh round starts without votes, and the old tally is gone
    assert after.top_moves == []
    assert mock_store.read_hash(tally_key(INSTANCE_ID, 1)) == {}


def test_tie_is_broken_by_move_key(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent("e7e5"))
    install(service)
    vote(service, "b2-b3", 4)
    vote(service, "a2-a3", 4)
    clock.advance(ROUND_SECONDS)

    assert service.tick(INSTANCE_ID).community_move == "a2-a3"


@pytest.mark.parametrize("votes", [[], ["e2-e5", "e7-e5", "a1-a8"]])
def test_no_valid_votes_plays_a_fallback(
    mock_store: MockStore, clock: FakeClock, votes: list[str]
) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent("e7e5"))
    install(service)
    for key in votes:
        vote(service, key)
    clock.advance(ROUND_SECONDS)

    response = service.tick(INSTANCE_ID)
    assert response.result == TickResult.RESOLVED
    assert response.community_source == MoveSource.FALLBACK
    assert response.community_move in Position.starting_position().legal_move_keys()
    assert state(service).round_number == 2


def test_unavailable_opponent_plays_a_fallback(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent(fail=True))
    install(service)
    vote(service, "e2-e4")
    clock.advance(ROUND_SECONDS)

    response = service.tick(INSTANCE_ID)
    assert response.opponent_source == MoveSource.FALLBACK
    assert len(state(service).move_history) == 2


def test_illegal_community_move_is_skipped(
    mock_store: MockStore, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The round advances, but the position is held: the opponent must not move the community's pieces."""
    opponent = ScriptedOpponent("e2e4")
    service = make_service(mock_store, clock, opponent)
    install(service)
    vote(service, "e2-e4")

    def reject(position: Position, move_key: str) -> Position:
        raise IllegalMoveError(f"Move not allowed: {move_key}")

    monkeypatch.setattr(service.executor, "apply_community_move", reject)
    clock.advance(ROUND_SECONDS)

    response = service.tick(INSTANCE_ID)
    assert response.result == TickResult.RESOLVED
    assert response.community_source == MoveSource.SKIPPED
    assert response.opponent_source == MoveSource.NONE
    assert response.opponent_move is None
    assert opponent.calls == 0

    after = state(service)
    assert after.round_number == 2
    assert after.color_to_move == Color.WHITE
    assert after.move_history == []


def test_votes_of_an_old_round_do_not_count(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent("e7e5", "b8c6"))
    install(service)
    vote(service, "e2-e4")
    clock.advance(ROUND_SECONDS)
    service.tick(INSTANCE_ID)

    assert service.is_stale(INSTANCE_ID, seen_round=1)
    assert not service.is_stale(INSTANCE_ID, seen_round=2)

    # g1-f3 is legal in round 2 and has the only vote
    vote(service, "g1-f3")
    assert state(service).total_votes == 1
    clock.advance(ROUND_SECONDS)
    assert service.tick(INSTANCE_ID).community_move == "g1-f3"


# --- SERVICE - IDEMPOTENCY ----
def test_second_tick_right_after_resolution(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent("e7e5", "b8c6"))
    install(service)
    vote(service, "e2-e4")
    clock.advance(ROUND_SECONDS)

    assert service.tick(INSTANCE_ID).result == TickResult.RESOLVED
    assert service.tick(INSTANCE_ID).result == TickResult.NOT_DUE
    assert state(service).move_history == ["e2-e4", "e7-e5"]


def test_concurrent_ticks_resolve_once(clock: FakeClock) -> None:
    """Two schedulers read the same round. The one that persists second must not apply another move."""
    store = RacingStore()
    first = make_service(store, clock, ScriptedOpponent("e7e5"))
    second = make_service(store, clock, ScriptedOpponent("c7c5"))
    install(first)
    vote(first, "e2-e4")
    clock.advance(ROUND_SECONDS)

    results = []
    store.before_swap = lambda: results.append(second.tick(INSTANCE_ID))
    results.append(first.tick(INSTANCE_ID))

    assert [response.result for response in results] == [
        TickResult.RESOLVED,
        TickResult.ALREADY_RESOLVED,
    ]
    assert results[1].round_number == 2
    after = state(first)
    assert after.round_number == 2
    assert after.move_history == ["e2-e4", "c7-c5"]


# --- SERVICE - GAME OVER ----
def test_community_delivers_mate(mock_store: MockStore, clock: FakeClock) -> None:
    opponent = ScriptedOpponent("g8h8")
    service = make_service(mock_store, clock, opponent)
    install(service, starting_fen=BACK_RANK_MATE)
    vote(service, "a1-a8")
    clock.advance(ROUND_SECONDS)

    response = service.tick(INSTANCE_ID)
    assert response.result == TickResult.RESOLVED
    assert response.phase == RoundPhase.CLOSED
    assert response.outcome == Outcome.CHECKMATE
    assert response.winner == Color.WHITE
    assert response.opponent_source == MoveSource.NONE
    assert opponent.calls == 0


def test_opponent_delivers_mate(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent("d8h4"))
    install(service, starting_fen=BEFORE_FOOLS_MATE)
    vote(service, "g2-g4")
    clock.advance(ROUND_SECONDS)

    response = service.tick(INSTANCE_ID)
    assert response.phase == RoundPhase.CLOSED
    assert response.winner == Color.BLACK

    final = state(service)
    assert final.result_text == "Checkmate, black wins"
    assert final.san_history == ["g4", "Qh4#"]
    assert final.seconds_remaining == 0
    assert final.time_left == "0:00"


def test_closed_game_stays_closed(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent("d8h4"))
    install(service, starting_fen=BEFORE_FOOLS_MATE)
    vote(service, "g2-g4")
    clock.advance(ROUND_SECONDS)
    service.tick(INSTANCE_ID)
    closed = stored_record(mock_store)

    with pytest.raises(RoundClosedError):
        vote(service, "e2-e4")

    for _ in range(3):
        clock.advance(ROUND_SECONDS)
        response = service.tick(INSTANCE_ID)
        assert response.result == TickResult.CLOSED
        assert response.winner == Color.BLACK
    assert stored_record(mock_store) == closed

    destinations = service.legal_destinations(
        LegalDestinationsRequest(instance_id=INSTANCE_ID, origin="e2")
    )
    assert destinations.destinations == []


@pytest.mark.parametrize(
    "seconds, text", [(0, "0:00"), (5, "0:05"), (60, "1:00"), (299, "4:59"), (300, "5:00")]
)
def test_format_time(seconds: int, text: str) -> None:
    assert format_time(seconds) == text


# --- SERVICE - CLEANING UP TALLIES ----
def test_late_votes_of_a_finished_round_are_dropped(mock_store: MockStore, clock: FakeClock) -> None:
    """A vote that read round 1 just before it was resolved lands in round 1's tally after the reset."""
    service = make_service(mock_store, clock, ScriptedOpponent("e7e5", "b8c6"))
    install(service)
    vote(service, "e2-e4")
    clock.advance(ROUND_SECONDS)
    service.tick(INSTANCE_ID)

    service.tally.record_vote(INSTANCE_ID, 1, "d2-d4")
    assert mock_store.read_hash(tally_key(INSTANCE_ID, 1)) == {"d2-d4": 1}

    vote(service, "g1-f3")
    clock.advance(ROUND_SECONDS)
    service.tick(INSTANCE_ID)
    assert mock_store.read_hash(tally_key(INSTANCE_ID, 1)) == {}
    assert mock_store.read_hash(tally_key(INSTANCE_ID, 2)) == {}


# --- SERVICE - DAILY NEW GAME ----
def test_new_game_replaces_a_finished_one(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock, ScriptedOpponent("d8h4"))
    service.install_game(
        CreatePostRequest(instance_id=INSTANCE_ID, starting_fen=BEFORE_FOOLS_MATE, difficulty=3)
    )
    vote(service, "g2-g4")
    clock.advance(ROUND_SECONDS)
    service.tick(INSTANCE_ID)
    assert stored_record(mock_store).phase == RoundPhase.CLOSED

    clock.advance(3600)
    response = service.start_new_game(INSTANCE_ID)
    assert response.phase == RoundPhase.OPEN
    assert response.fen_state == chess.STARTING_FEN
    assert response.starting_state == chess.STARTING_FEN
    assert response.move_history == []
    assert response.round_number == 3
    assert response.round_started_at == clock.now
    assert response.last_resolved_at is None
    assert stored_record(mock_store).difficulty == 3

    # Voting is open again, in the new round
    vote(service, "e2-e4")
    assert mock_store.read_hash(tally_key(INSTANCE_ID, 3)) == {"e2-e4": 1}


def test_new_game_drops_the_open_tally(mock_store: MockStore, clock: FakeClock) -> None:
    service = make_service(mock_store, clock)
    install(service)
    vote(service, "e2-e4", 2)

    response = service.start_new_game(INSTANCE_ID)
    assert response.round_number == 2
    assert response.total_votes == 0
    assert mock_store.read_hash(tally_key(INSTANCE_ID, 1)) == {}
    assert service.is_stale(INSTANCE_ID, seen_round=1)


def test_new_game_for_a_post_without_one(mock_store: MockStore, clock: FakeClock) -> None:
    response = make_service(mock_store, clock).start_new_game(INSTANCE_ID)
    assert response.round_number == 1
    assert stored_record(mock_store).difficulty == 2


def test_new_game_retries_after_a_concurrent_resolution(clock: FakeClock) -> None:
    store = RacingStore()
    daily = make_service(store, clock)
    resolver = make_service(store, clock, ScriptedOpponent("e7e5"))
    install(daily)
    vote(daily, "e2-e4")
    clock.advance(ROUND_SECONDS)

    store.before_swap = lambda: resolver.tick(INSTANCE_ID)
    response = daily.start_new_game(INSTANCE_ID)
    assert response.round_number == 3
    assert response.move_history == []
    assert stored_record(store).round_number == 3


def test_new_game_gives_up_when_the_record_keeps_changing(
    mock_store: MockStore, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    service = make_service(mock_store, clock)
    install(service)
    before = stored_record(mock_store)
    monkeypatch.setattr(mock_store, "compare_and_set", lambda key, expected, value: False)

    with pytest.raises(GameStateError):
        service.start_new_game(INSTANCE_ID)
    assert stored_record(mock_store) == before


# --- SERVICE - SHUTDOWN ----
def test_closing_the_service_closes_the_opponent(mock_store: MockStore, clock: FakeClock) -> None:
    opponent = ScriptedOpponent()
    with make_service(mock_store, clock, opponent) as service:
        install(service)
        assert not opponent.closed
    assert opponent.closed
