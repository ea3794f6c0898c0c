import pytest

from deuce.exceptions import InvalidParticipants, InvalidScore
from deuce.models import FinalSetFormat, GameType, MatchOutcome, ScoreUnitKind, Sport
from deuce.services.validation import (
    normalize_units,
    validate_participants_for_format,
    validate_partial_result,
    validate_result,
)


def test_straight_sets_tennis() -> None:
    result = validate_result(
        Sport.TENNIS, set_scores=[{"A": 6, "B": 3}, {"A": 6, "B": 4}]
    )
    assert result.kind is ScoreUnitKind.SET
    assert result.outcome == MatchOutcome.A
    assert (result.side_a_score, result.side_b_score) == (2, 0)
    assert (result.side_a_points, result.side_b_points) == (12, 7)


def test_tiebreak_set_and_match_tiebreak_decider() -> None:
    result = validate_result(
        Sport.PADEL,
        set_scores=[
            {"A": 7, "B": 6, "tiebreakA": 7, "tiebreakB": 5},
            {"A": 3, "B": 6},
            {"A": 0, "B": 1, "tiebreakA": 8, "tiebreakB": 10},
        ],
    )
    assert result.outcome == MatchOutcome.B
    assert result.winners == ("A", "B", "B")


def test_full_final_set_at_six_all_needs_tiebreak() -> None:
    sets = [{"A": 6, "B": 4}, {"A": 4, "B": 6}, {"A": 6, "B": 6}]
    with pytest.raises(InvalidScore) as exc:
        validate_result(
            Sport.TENNIS, set_scores=sets, final_set_format=FinalSetFormat.FULL_SET
        )
    assert "10-point tiebreak" in str(exc.value)

    sets[2] = {"A": 6, "B": 6, "tiebreakA": 10, "tiebreakB": 8}
    result = validate_result(
        Sport.TENNIS, set_scores=sets, final_set_format=FinalSetFormat.FULL_SET
    )
    assert result.outcome == MatchOutcome.A


def test_pickleball_games() -> None:
    result = validate_result(
        Sport.PICKLEBALL, game_scores=[{"A": 15, "B": 10}, {"A": 17, "B": 15}]
    )
    assert result.kind is ScoreUnitKind.GAME
    assert result.outcome == MatchOutcome.A
    assert (result.side_a_points, result.side_b_points) == (32, 25)


@pytest.mark.parametrize(
    "sets, msg",
    [
        ([], "at least one set"),
        ([{"A": 6, "B": 5}, {"A": 6, "B": 0}], "6-5 is not a final score"),
        ([{"A": 7, "B": 6}, {"A": 6, "B": 0}], "requires tiebreak scores"),
        ([{"A": -1, "B": 6}], ">= 0"),
        ([{"A": True, "B": 6}], "not a boolean"),
        ([{"A": 6}], "include both A and B"),
        ([42], "must be an object"),
        ([{"A": 6, "B": 0}], "definitive winner"),
        ([{"A": 6, "B": 0}, {"A": 6, "B": 0}, {"A": 6, "B": 0}], "already decided"),
        ([{"A": 6, "B": 2, "tiebreakA": 7, "tiebreakB": 0}], "only allowed on 7-6"),
    ],
    ids=[
        "empty",
        "six-five",
        "missing-tiebreak",
        "negative",
        "boolean",
        "missing-key",
        "non-dict-entry",
        "undecided",
        "extra-set",
        "stray-tiebreak",
    ],
)
def test_rejects_invalid_sets(sets, msg) -> None:
    with pytest.raises(InvalidScore) as exc:
        validate_result(Sport.TENNIS, set_scores=sets)
    assert msg.lower() in str(exc.value).lower()


def test_rejects_wrong_unit_kind_for_sport() -> None:
    with pytest.raises(InvalidScore, match="use game scores"):
        validate_result(Sport.PICKLEBALL, set_scores=[{"A": 15, "B": 10}])
    with pytest.raises(InvalidScore, match="use set scores"):
        validate_result(Sport.TENNIS, game_scores=[{"A": 6, "B": 3}])
    with pytest.raises(InvalidScore, match="not both"):
        validate_result(
            Sport.TENNIS,
            set_scores=[{"A": 6, "B": 3}],
            game_scores=[{"A": 15, "B": 3}],
        )


def test_pickleball_requires_win_by_two() -> None:
    with pytest.raises(InvalidScore, match="won by 2"):
        validate_result(Sport.PICKLEBALL, game_scores=[{"A": 15, "B": 14}])


def test_open_format_allows_tie() -> None:
    result = validate_result(
        Sport.TENNIS,
        set_scores=[{"A": 6, "B": 3}, {"A": 2, "B": 6}],
        best_of=None,
    )
    assert result.outcome == MatchOutcome.TIE


def test_too_many_units() -> None:
    with pytest.raises(InvalidScore, match="Too many sets"):
        normalize_units([{"A": 6, "B": 0}] * 6, ScoreUnitKind.SET, max_units=5)


def test_partial_result_only_checks_shape() -> None:
    units = validate_partial_result(Sport.TENNIS, set_scores=[{"A": 6, "B": 5}])
    assert units == [{"A": 6, "B": 5, "tiebreakA": None, "tiebreakB": None}]


def test_participants_must_match_format() -> None:
    validate_participants_for_format(GameType.DOUBLES, {"A": ["p1", "p2"], "B": ["p3", "p4"]})
    with pytest.raises(InvalidParticipants, match="exactly 1"):
        validate_participants_for_format(GameType.SINGLES, {"A": ["p1", "p2"], "B": ["p3"]})
    with pytest.raises(InvalidParticipants, match="side B has 0"):
        validate_participants_for_format(GameType.SINGLES, {"A": ["p1"]})
