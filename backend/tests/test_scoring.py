import pytest

from deuce.scoring import padel, pickleball, rules_for, tennis


@pytest.mark.parametrize(
    "games, winner",
    [((6, 0), "A"), ((4, 6), "B"), ((7, 5), "A"), ((5, 7), "B")],
)
def test_regular_sets(games, winner):
    assert tennis.set_winner(*games) == winner


def test_tiebreak_set_needs_matching_winner():
    assert tennis.set_winner(7, 6, 7, 4) == "A"
    assert tennis.set_winner(6, 7, 12, 14) == "B"
    with pytest.raises(ValueError, match="must also win"):
        tennis.set_winner(7, 6, 3, 7)
    with pytest.raises(ValueError, match="invalid extended"):
        tennis.set_winner(7, 6, 12, 8)


def test_match_tiebreak_forms():
    assert tennis.match_tiebreak_winner(10, 8) == "A"
    assert tennis.match_tiebreak_winner(1, 0, 10, 7) == "A"
    assert tennis.match_tiebreak_winner(0, 0, 9, 11) == "B"
    with pytest.raises(ValueError, match="1-0 set"):
        tennis.match_tiebreak_winner(6, 4, 10, 7)
    with pytest.raises(ValueError, match="at least 10"):
        tennis.match_tiebreak_winner(7, 5)


def test_games_won_counts_tiebreak_decider_as_one_game():
    assert tennis.games_won({"A": 6, "B": 3}, "A") == {"A": 6, "B": 3}
    assert tennis.games_won({"A": 10, "B": 8}, "A") == {"A": 1, "B": 0}
    assert tennis.games_won({"A": 6, "B": 6}, "B") == {"B": 7, "A": 6}


def test_padel_follows_tennis_sets():
    assert padel.UNIT_KIND == tennis.UNIT_KIND
    unit = {"A": 7, "B": 6, "tiebreakA": 7, "tiebreakB": 5}
    assert padel.unit_winner(unit, deciding=False, final_set_format="FULL_SET") == "A"


def test_pickleball_games():
    assert pickleball.game_winner(15, 13) == "A"
    assert pickleball.game_winner(17, 19) == "B"
    with pytest.raises(ValueError, match="won by 2"):
        pickleball.game_winner(15, 14)
    with pytest.raises(ValueError, match="invalid extended"):
        pickleball.game_winner(20, 15)
    with pytest.raises(ValueError, match="do not have tiebreaks"):
        pickleball.unit_winner(
            {"A": 15, "B": 10, "tiebreakA": 1}, deciding=False, final_set_format=""
        )


def test_unknown_sport():
    assert rules_for("padel") is padel
    with pytest.raises(ValueError, match="unsupported sport"):
        rules_for("croquet")
