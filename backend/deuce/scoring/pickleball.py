"""Pickleball game rules.

Rally-point games to a target number of points (default 15) with a win-by-2
requirement. Extended games (e.g. 17-15) are allowed.
"""
from typing import Dict

POINTS_TO = 15
WIN_BY = 2

UNIT_KIND = "GAME"


def game_winner(points_a: int, points_b: int, *, points_to: int = POINTS_TO) -> str:
    if points_a < 0 or points_b < 0:
        raise ValueError("point scores cannot be negative")
    if points_a == points_b:
        raise ValueError(f"{points_a}-{points_b} is not a completed game")
    high, low = max(points_a, points_b), min(points_a, points_b)
    if high < points_to:
        raise ValueError(f"game winner must reach at least {points_to} points")
    if high - low < WIN_BY:
        raise ValueError(f"games must be won by {WIN_BY} points")
    if high > points_to and high - low != WIN_BY:
        raise ValueError(f"invalid extended game score {points_a}-{points_b}")
    return "A" if points_a > points_b else "B"


def unit_winner(unit: Dict, *, deciding: bool, final_set_format: str) -> str:
    """Return the winner of one game; pickleball has no special decider."""
    if unit.get("tiebreakA") is not None or unit.get("tiebreakB") is not None:
        raise ValueError("pickleball games do not have tiebreaks")
    return game_winner(unit["A"], unit["B"])


def games_won(unit: Dict, winner: str) -> Dict[str, int]:
    return {"A": unit["A"], "B": unit["B"]}
