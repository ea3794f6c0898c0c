import pytest

from deuce.config import RatingParameters
from deuce.services.glicko import (
    Glicko,
    Glicko2Model,
    confidence_interval,
    win_probability,
)


@pytest.fixture
def model() -> Glicko2Model:
    return Glicko2Model(RatingParameters())


def test_expected_scores_are_complementary(model) -> None:
    a = Glicko(1600, 80, 0.06)
    b = Glicko(1450, 120, 0.06)
    # Each side's expectation uses the opponent's deviation, so the sum is
    # only exactly 1 when deviations match.
    assert model.expected_score(a, b) > 0.5
    assert model.expected_score(b, a) < 0.5

    c = Glicko(1450, 80, 0.06)
    assert model.expected_score(a, c) + model.expected_score(c, a) == pytest.approx(1.0)


def test_equal_players_are_even(model) -> None:
    p = Glicko(1500, 200, 0.06)
    assert win_probability(model, p, p) == pytest.approx(0.5)


def test_win_raises_rating_and_shrinks_deviation(model) -> None:
    player = Glicko(1500, 200, 0.06)
    opponent = Glicko(1400, 30, 0.06)
    after = model.update(player, opponent, 1.0)
    assert after.rating > player.rating
    assert after.rd < player.rd
    assert 0 < after.volatility < 0.1


def test_loss_lowers_rating(model) -> None:
    player = Glicko(1500, 200, 0.06)
    after = model.update(player, Glicko(1500, 200, 0.06), 0.0)
    assert after.rating < 1500


def test_draw_between_equals_keeps_rating(model) -> None:
    player = Glicko(1500, 200, 0.06)
    after = model.update(player, player, 0.5)
    assert after.rating == pytest.approx(1500)
    assert after.rd < 200


def test_upset_moves_more_than_expected_win(model) -> None:
    weak = Glicko(1300, 100, 0.06)
    strong = Glicko(1700, 100, 0.06)
    upset = model.update(weak, strong, 1.0).rating - weak.rating
    expected = model.update(strong, weak, 1.0).rating - strong.rating
    assert upset > expected > 0


def test_inactivity_inflates_deviation_up_to_cap(model) -> None:
    player = Glicko(1500, 50, 0.06)
    assert model.inflate(player, 0) == player
    one = model.inflate(player, 1)
    three = model.inflate(player, 3)
    assert player.rd < one.rd < three.rd
    assert model.inflate(player, 10_000).rd == 350


def test_deviation_never_drops_below_floor(model) -> None:
    player = Glicko(1500, 30, 0.06)
    after = model.update(player, Glicko(1500, 30, 0.06), 1.0)
    assert after.rd == 30


def test_confidence_interval() -> None:
    assert confidence_interval(1500, 50) == (1400, 1600)
