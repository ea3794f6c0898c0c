from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from deuce.config import RatingParameters
from deuce.exceptions import OutOfOrderApply
from deuce.models import GameType, MatchOutcome, RatingChangeReason, Sport
from deuce.services.rating_engine import RatedMatch, RatingEngine, RatingState

PARAMS = RatingParameters()
MATCH_DATE = datetime(2024, 5, 1, 18, 0)


def state(player_id, rating=1500.0, rd=350.0, *, played=0, last=None, last_id=None) -> RatingState:
    return replace(
        RatingState.initial(player_id, PARAMS),
        rating=rating,
        rd=rd,
        matches_played=played,
        is_provisional=played < PARAMS.provisional_threshold,
        peak_rating=rating,
        lowest_rating=rating,
        last_match_date=last,
        last_match_id=last_id,
    )


def singles(outcome=MatchOutcome.A, *, walkover=False, score=(2, 0), points=(12, 7), **kw):
    return RatedMatch(
        match_id=kw.pop("match_id", "m1"),
        match_date=kw.pop("match_date", MATCH_DATE),
        season_id="s1",
        division_id="d1",
        sport=Sport.TENNIS,
        game_type=GameType.SINGLES,
        side_a=("a",),
        side_b=("b",),
        outcome=outcome,
        is_walkover=walkover,
        side_a_score=score[0],
        side_b_score=score[1],
        side_a_points=None if walkover else points[0],
        side_b_points=None if walkover else points[1],
    )


@pytest.fixture
def engine() -> RatingEngine:
    return RatingEngine(params=PARAMS)


def test_favourite_wins_in_straight_sets(engine) -> None:
    current = {
        "a": state("a", 1500, 50, played=20),
        "b": state("b", 1400, 80, played=20),
    }
    application = engine.compute(singles(), current)

    a, b = application.updated["a"], application.updated["b"]
    assert a.rating > 1500
    assert b.rating < 1400
    assert a.rd < 50
    assert b.rd < 80
    assert a.matches_played == b.matches_played == 21
    assert a.last_match_id == "m1" and a.last_match_date == MATCH_DATE

    drafts = {d.player_id: d for d in application.history}
    assert len(application.history) == 2
    assert drafts["a"].reason == RatingChangeReason.MATCH_WIN
    assert drafts["b"].reason == RatingChangeReason.MATCH_LOSS
    for pid, draft in drafts.items():
        assert draft.rating_before == current[pid].rating
        assert draft.rating_after == application.updated[pid].rating
        assert draft.rd_after == application.updated[pid].rd
        assert draft.delta == pytest.approx(draft.rating_after - draft.rating_before)
        assert draft.effective_at == MATCH_DATE


def test_delta_is_capped_by_deviation(engine) -> None:
    current = {"a": state("a", 1500, 50), "b": state("b", 1900, 50)}
    application = engine.compute(singles(), current)
    cap = PARAMS.cap_fraction_of_rd * 50
    for draft in application.history:
        assert abs(draft.delta) <= cap + 1e-9


def test_walkover_loss_is_smaller_than_competitive_loss(engine) -> None:
    current = {"a": state("a", 1500, 200), "b": state("b", 1500, 200)}
    played = engine.compute(singles(), current)
    walkover = engine.compute(singles(walkover=True), current)

    played_loss = {d.player_id: d for d in played.history}["b"]
    walkover_loss = {d.player_id: d for d in walkover.history}["b"]
    assert walkover_loss.reason == RatingChangeReason.WALKOVER_LOSS
    assert walkover_loss.delta < 0
    assert abs(walkover_loss.delta) < abs(played_loss.delta)
    winner = {d.player_id: d for d in walkover.history}["a"]
    assert winner.reason == RatingChangeReason.WALKOVER_WIN
    assert winner.delta > 0


def test_margin_of_victory_increases_change(engine) -> None:
    current = {"a": state("a", 1500, 200), "b": state("b", 1500, 200)}
    close = engine.compute(
        singles(score=(2, 1), points=(16, 15)), current
    )
    rout = engine.compute(singles(score=(2, 0), points=(12, 0)), current)
    assert rout.score_factor > close.score_factor >= 1.0
    assert rout.updated["a"].rating >= close.updated["a"].rating


def test_tie_is_a_draw_for_both(engine) -> None:
    current = {"a": state("a", 1500, 200), "b": state("b", 1500, 200)}
    application = engine.compute(singles(MatchOutcome.TIE, score=(1, 1)), current)
    for draft in application.history:
        assert draft.reason == RatingChangeReason.MATCH_DRAW
        assert draft.delta == pytest.approx(0.0, abs=1e-9)


def test_out_of_order_match_is_refused(engine) -> None:
    current = {
        "a": state("a", last=MATCH_DATE + timedelta(days=2)),
        "b": state("b"),
    }
    with pytest.raises(OutOfOrderApply):
        engine.compute(singles(), current)


def test_same_day_match_is_in_order(engine) -> None:
    current = {"a": state("a", last=MATCH_DATE), "b": state("b", last=MATCH_DATE)}
    application = engine.compute(singles(), current)
    assert len(application.history) == 2


def test_same_instant_match_follows_match_id(engine) -> None:
    current = {"a": state("a", last=MATCH_DATE, last_id="m5"), "b": state("b")}
    with pytest.raises(OutOfOrderApply):
        engine.compute(singles(match_id="m1"), current)
    application = engine.compute(singles(match_id="m9"), current)
    assert application.updated["a"].last_match_id == "m9"


def test_doubles_split_follows_deviation(engine) -> None:
    match = RatedMatch(
        match_id="m2",
        match_date=MATCH_DATE,
        season_id="s1",
        division_id=None,
        sport=Sport.PADEL,
        game_type=GameType.DOUBLES,
        side_a=("a1", "a2"),
        side_b=("b1", "b2"),
        outcome=MatchOutcome.A,
        side_a_score=2,
        side_b_score=0,
    )
    current = {
        "a1": state("a1", 1500, 100),
        "a2": state("a2", 1500, 300),
        "b1": state("b1", 1500, 200),
        "b2": state("b2", 1500, 200),
    }
    application = engine.compute(match, current)
    deltas = {d.player_id: d.delta for d in application.history}
    assert 0 < deltas["a1"] < deltas["a2"]
    assert deltas["b1"] == pytest.approx(deltas["b2"])
    assert deltas["b1"] < 0
    assert len(application.history) == 4


def test_idle_periods_inflate_before_update(engine) -> None:
    last = MATCH_DATE - timedelta(days=95)
    assert engine.idle_periods(state("a", last=last), MATCH_DATE) == 3
    assert engine.idle_periods(state("a"), MATCH_DATE) == 0


def test_provisional_flag_clears_at_threshold(engine) -> None:
    threshold = PARAMS.provisional_threshold
    current = {
        "a": state("a", 1500, 200, played=threshold - 1),
        "b": state("b", 1500, 200, played=0),
    }
    application = engine.compute(singles(), current)
    assert application.updated["a"].is_provisional is False
    assert application.updated["b"].is_provisional is True


def test_rated_match_rejects_shared_player() -> None:
    with pytest.raises(ValueError):
        RatedMatch(
            match_id="m",
            match_date=MATCH_DATE,
            season_id="s1",
            division_id=None,
            sport=Sport.TENNIS,
            game_type=GameType.SINGLES,
            side_a=("a",),
            side_b=("a",),
            outcome=MatchOutcome.A,
        )
