"""Tennis set rules.
Sets are played to six games with a two-game lead, 7-5, or 7-6 after a
seven-point tiebreak. The deciding set is either a full set or a ten-point
match tiebreak."""

from typing import Dict, Optional

SET_GAMES = 6
TIEBREAK_TO = 7
MATCH_TIEBREAK_TO = 10
WIN_BY = 2

UNIT_KIND = "SET"


def _other(side: str) -> str:
    return "B" if side == "A" else "A"


def tiebreak_winner(points_a: int, points_b: int, target: int = TIEBREAK_TO) -> str:
    """Return the winner of a tiebreak played to ``target`` points."""

    if points_a < 0 or points_b < 0:
        raise ValueError("tiebreak points cannot be negative")
    high, low = max(points_a, points_b), min(points_a, points_b)
    if high < target:
        raise ValueError(f"tiebreak winner must reach at least {target} points")
    if high - low < WIN_BY:
        raise ValueError(f"tiebreak must be won by {WIN_BY} points")
    # Past the target the tiebreak stops as soon as the lead is two.
    if high > target and high - low != WIN_BY:
        raise ValueError(f"invalid extended tiebreak score {points_a}-{points_b}")
    return "A" if points_a > points_b else "B"


def set_winner(
    games_a: int,
    games_b: int,
    tiebreak_a: Optional[int] = None,
    tiebreak_b: Optional[int] = None,
) -> str:
    """Return ``"A"`` or ``"B"`` for a completed regular set."""

    if games_a < 0 or games_b < 0:
        raise ValueError("game scores cannot be negative")
    if games_a == games_b:
        raise ValueError(f"{games_a}-{games_b} is not a completed set")

    winner = "A" if games_a > games_b else "B"
    high, low = max(games_a, games_b), min(games_a, games_b)
    has_tiebreak = tiebreak_a is not None or tiebreak_b is not None

    if high == SET_GAMES + 1 and low == SET_GAMES:
        if tiebreak_a is None or tiebreak_b is None:
            raise ValueError("a 7-6 set requires tiebreak scores")
        if tiebreak_winner(tiebreak_a, tiebreak_b) != winner:
            raise ValueError("tiebreak winner must also win the set")
        return winner

    if has_tiebreak:
        raise ValueError("tiebreak scores are only allowed on 7-6 sets")
    if high == SET_GAMES and low <= SET_GAMES - 2:
        return winner
    if high == SET_GAMES + 1 and low == SET_GAMES - 1:
        return winner
    if high == SET_GAMES and low == SET_GAMES - 1:
        raise ValueError("6-5 is not a final score; play on to 7-5 or a tiebreak")
    raise ValueError(f"invalid set score {games_a}-{games_b}")


def match_tiebreak_winner(
    games_a: int,
    games_b: int,
    tiebreak_a: Optional[int] = None,
    tiebreak_b: Optional[int] = None,
) -> str:
    """Decide a ten-point match tiebreak played instead of a final set.

    The points may be given in the tiebreak fields (games then record the
    set as 1-0 or 0-0) or directly in the games fields.
    """

    if tiebreak_a is None and tiebreak_b is None:
        return tiebreak_winner(games_a, games_b, MATCH_TIEBREAK_TO)
    if tiebreak_a is None or tiebreak_b is None:
        raise ValueError("match tiebreak requires points for both sides")

    winner = tiebreak_winner(tiebreak_a, tiebreak_b, MATCH_TIEBREAK_TO)
    if games_a != games_b:
        if max(games_a, games_b) != 1 or min(games_a, games_b) != 0:
            raise ValueError("a match tiebreak counts as a 1-0 set")
        if ("A" if games_a > games_b else "B") != winner:
            raise ValueError("match tiebreak winner must also win the set")
    return winner


def deciding_set_winner(
    games_a: int,
    games_b: int,
    tiebreak_a: Optional[int] = None,
    tiebreak_b: Optional[int] = None,
) -> str:
    """Full deciding set: 6-6 goes to a ten-point tiebreak."""

    if games_a == SET_GAMES and games_b == SET_GAMES:
        if tiebreak_a is None or tiebreak_b is None:
            raise ValueError("a deciding set at 6-6 requires a 10-point tiebreak")
        return tiebreak_winner(tiebreak_a, tiebreak_b, MATCH_TIEBREAK_TO)
    return set_winner(games_a, games_b, tiebreak_a, tiebreak_b)


def unit_winner(unit: Dict, *, deciding: bool, final_set_format: str) -> str:
    """Return the winner of one set given as ``{A, B, tiebreakA, tiebreakB}``."""

    args = (unit["A"], unit["B"], unit.get("tiebreakA"), unit.get("tiebreakB"))
    if not deciding:
        return set_winner(*args)
    if final_set_format == "MATCH_TIEBREAK":
        return match_tiebreak_winner(*args)
    return deciding_set_winner(*args)


def games_won(unit: Dict, winner: str) -> Dict[str, int]:
    """Games credited to each side for margin calculations."""

    a, b = unit["A"], unit["B"]
    if a == b or max(a, b) > SET_GAMES + 1:
        # Match tiebreaks and 6-6 deciders count as a single game to the winner.
        if a == b:
            return {winner: a + 1, _other(winner): b}
        return {winner: 1, _other(winner): 0}
    return {"A": a, "B": b}
