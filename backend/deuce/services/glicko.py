"""Glicko-2 skill model.

Every match is treated as its own instantaneous rating period: the pre-period
deviation is the current one, so a player's deviation shrinks with every match
they play. Idle time is accounted for separately through :meth:`inflate`,
which is driven by the gap between match dates and therefore replays
identically during recalculation.
"""

import math
from typing import NamedTuple, Protocol

from ..config import RatingParameters


class Glicko(NamedTuple):
    rating: float
    rd: float
    volatility: float


class SkillModel(Protocol):
    def expected_score(self, player: Glicko, opponent: Glicko) -> float:
        ...

    def inflate(self, player: Glicko, idle_periods: int) -> Glicko:
        ...

    def update(self, player: Glicko, opponent: Glicko, score: float) -> Glicko:
        ...


def _g(phi: float) -> float:
    return 1 / math.sqrt(1 + 3 * (phi**2) / (math.pi**2))


class Glicko2Model:
    """Single-opponent Glicko-2 update with Illinois volatility solving."""

    def __init__(self, params: RatingParameters | None = None) -> None:
        self.params = params or RatingParameters()

    def _to_internal(self, player: Glicko) -> tuple[float, float]:
        p = self.params
        mu = (player.rating - p.default_rating) / p.scale
        phi = max(player.rd / p.scale, 1e-6)
        return mu, phi

    def _clamp_rd(self, rd: float) -> float:
        return max(self.params.min_rd, min(self.params.max_rd, rd))

    def expected_score(self, player: Glicko, opponent: Glicko) -> float:
        mu, _ = self._to_internal(player)
        mu_j, phi_j = self._to_internal(opponent)
        return 1 / (1 + math.exp(-_g(phi_j) * (mu - mu_j)))

    def inflate(self, player: Glicko, idle_periods: int) -> Glicko:
        """Grow the deviation for ``idle_periods`` rating periods without play."""

        if idle_periods <= 0:
            return player
        _, phi = self._to_internal(player)
        phi_pre = math.sqrt(phi**2 + idle_periods * player.volatility**2)
        return player._replace(rd=self._clamp_rd(phi_pre * self.params.scale))

    def _solve_volatility(self, phi: float, sigma: float, v: float, delta: float) -> float:
        tau = self.params.tau
        epsilon = self.params.epsilon
        a = math.log(sigma**2)

        def f(x: float) -> float:
            ex = math.exp(x)
            return (ex * (delta**2 - phi**2 - v - ex)) / (
                2 * (phi**2 + v + ex) ** 2
            ) - (x - a) / (tau**2)

        big_a = a
        if delta**2 > phi**2 + v:
            big_b = math.log(delta**2 - phi**2 - v)
        else:
            k = 1
            while f(a - k * tau) < 0 and k < 100:
                k += 1
            big_b = a - k * tau

        f_a, f_b = f(big_a), f(big_b)
        for _ in range(100):
            if abs(big_b - big_a) <= epsilon:
                break
            big_c = big_a + (big_a - big_b) * f_a / (f_b - f_a)
            f_c = f(big_c)
            if f_c * f_b <= 0:
                big_a, f_a = big_b, f_b
            else:
                f_a /= 2
            big_b, f_b = big_c, f_c

        return math.exp(big_a / 2)

    def update(self, player: Glicko, opponent: Glicko, score: float) -> Glicko:
        """Return the player's state after one result against ``opponent``.

        Args:
            player: Current rating, deviation and volatility.
            opponent: The opposing side's (composite) state.
            score: ``1`` for a win, ``0`` for a loss and ``0.5`` for a draw.
        """

        p = self.params
        mu, phi = self._to_internal(player)
        mu_j, phi_j = self._to_internal(opponent)

        g = _g(phi_j)
        e = 1 / (1 + math.exp(-g * (mu - mu_j)))
        denom = (g**2) * e * (1 - e)
        if denom <= 0:
            return player._replace(rd=self._clamp_rd(player.rd))

        v = 1 / denom
        delta = v * g * (score - e)
        new_sigma = self._solve_volatility(phi, player.volatility, v, delta)

        phi_star = phi  # instantaneous rating period
        phi_prime = 1 / math.sqrt((1 / (phi_star**2)) + (1 / v))
        mu_prime = mu + (phi_prime**2) * g * (score - e)

        return Glicko(
            rating=(mu_prime * p.scale) + p.default_rating,
            rd=self._clamp_rd(phi_prime * p.scale),
            volatility=new_sigma,
        )


def win_probability(model: SkillModel, player: Glicko, opponent: Glicko) -> float:
    return model.expected_score(player, opponent)


def confidence_interval(rating: float, rd: float) -> tuple[float, float]:
    """95% interval around ``rating``."""
    return rating - 2 * rd, rating + 2 * rd
