from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..exceptions import InvalidParticipants, InvalidScore
from ..models import FinalSetFormat, GameType, MatchOutcome, ScoreUnitKind, Sport
from ..scoring import rules_for

MAX_UNITS = 5

PLAYERS_PER_SIDE = {GameType.SINGLES: 1, GameType.DOUBLES: 2}


@dataclass(frozen=True)
class ValidatedResult:
    """Normalised outcome of a submitted score line."""

    kind: ScoreUnitKind
    units: tuple
    winners: tuple
    side_a_score: int
    side_b_score: int
    side_a_points: int
    side_b_points: int
    outcome: MatchOutcome

    def as_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "units": [dict(u) for u in self.units],
            "sideAScore": self.side_a_score,
            "sideBScore": self.side_b_score,
            "outcome": self.outcome.value,
        }


def _unit_label(kind: ScoreUnitKind) -> str:
    return "Set" if kind is ScoreUnitKind.SET else "Game"


def _coerce_count(value: Any, label: str, field: str) -> Optional[int]:
    if value is None:
        return None
    # Reject booleans explicitly (bool is a subclass of int in Python)
    if isinstance(value, bool):
        raise InvalidScore(f"{label} {field} must be an integer (not a boolean).")
    if isinstance(value, float) and not value.is_integer():
        raise InvalidScore(f"{label} {field} must be an integer.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidScore(f"{label} {field} must be an integer.")
    if number < 0:
        raise InvalidScore(f"{label} {field} must be >= 0.")
    return number


def normalize_units(
    units: Sequence[Mapping[str, Any]],
    kind: ScoreUnitKind,
    *,
    max_units: Optional[int] = MAX_UNITS,
) -> List[Dict[str, Optional[int]]]:
    """Check the shape of raw unit scores and return plain integer dicts.

    Each unit is ``{A, B}`` with optional ``tiebreakA``/``tiebreakB``.
    """

    name = _unit_label(kind).lower()
    if not isinstance(units, (list, tuple)) or len(units) == 0:
        raise InvalidScore(f"At least one {name} is required.")
    if max_units is not None and len(units) > max_units:
        raise InvalidScore(f"Too many {name}s. Max allowed is {max_units}.")

    normalized: List[Dict[str, Optional[int]]] = []
    for i, unit in enumerate(units, start=1):
        label = f"{_unit_label(kind)} #{i}"
        if not isinstance(unit, Mapping):
            raise InvalidScore(f"{label} must be an object with fields A and B.")
        if unit.get("A") is None or unit.get("B") is None:
            raise InvalidScore(f"{label} must include both A and B.")
        normalized.append(
            {
                "A": _coerce_count(unit["A"], label, "scores"),
                "B": _coerce_count(unit["B"], label, "scores"),
                "tiebreakA": _coerce_count(unit.get("tiebreakA"), label, "tiebreak"),
                "tiebreakB": _coerce_count(unit.get("tiebreakB"), label, "tiebreak"),
            }
        )
    return normalized


def unit_kind(sport: Sport) -> ScoreUnitKind:
    return ScoreUnitKind(rules_for(sport.value).UNIT_KIND)


def score_kwargs(sport: Sport, units: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Route raw units to the keyword :func:`validate_result` expects."""

    if unit_kind(sport) is ScoreUnitKind.SET:
        return {"set_scores": units}
    return {"game_scores": units}


def _select_units(
    sport: Sport,
    set_scores: Optional[Sequence[Mapping[str, Any]]],
    game_scores: Optional[Sequence[Mapping[str, Any]]],
) -> tuple[ScoreUnitKind, Sequence[Mapping[str, Any]]]:
    if set_scores and game_scores:
        raise InvalidScore("Provide set scores or game scores, not both.")

    kind = unit_kind(sport)
    if kind is ScoreUnitKind.SET:
        if game_scores:
            raise InvalidScore(f"{sport.value.title()} results use set scores.")
        return kind, set_scores or []
    if set_scores:
        raise InvalidScore(f"{sport.value.title()} results use game scores.")
    return kind, game_scores or []


def validate_result(
    sport: Sport,
    *,
    set_scores: Optional[Sequence[Mapping[str, Any]]] = None,
    game_scores: Optional[Sequence[Mapping[str, Any]]] = None,
    best_of: Optional[int] = 3,
    final_set_format: FinalSetFormat = FinalSetFormat.MATCH_TIEBREAK,
) -> ValidatedResult:
    """Validate a completed score line and derive side scores and outcome.

    Rules:
    - Exactly one of ``set_scores`` (tennis, padel) or ``game_scores``
      (pickleball) is supplied
    - Every unit is decided by the sport's rules; equal counts are only
      accepted where tiebreak points decide the unit
    - With ``best_of`` set, one side must win ``best_of // 2 + 1`` units and
      no unit may follow the deciding one
    - Without ``best_of`` any number of units up to five is accepted and
      equal unit counts produce a tie
    """

    kind, raw_units = _select_units(sport, set_scores, game_scores)
    rules = rules_for(sport.value)
    label = _unit_label(kind)
    max_units = best_of if best_of is not None else MAX_UNITS
    units = normalize_units(raw_units, kind, max_units=max_units)

    needed = best_of // 2 + 1 if best_of else None
    won = {"A": 0, "B": 0}
    points = {"A": 0, "B": 0}
    winners: List[str] = []

    for i, unit in enumerate(units, start=1):
        if needed is not None and max(won.values()) >= needed:
            raise InvalidScore(
                f"Cannot have {label.lower()} #{i}: the match was already decided."
            )
        deciding = best_of is not None and best_of > 1 and i == best_of
        try:
            winner = rules.unit_winner(
                unit, deciding=deciding, final_set_format=final_set_format.value
            )
        except ValueError as exc:
            raise InvalidScore(f"{label} #{i}: {exc}") from exc
        winners.append(winner)
        won[winner] += 1
        for side, value in rules.games_won(unit, winner).items():
            points[side] += value

    if needed is not None and max(won.values()) < needed:
        raise InvalidScore(
            f"Match must have a definitive winner (one side must win {needed} "
            f"{label.lower()}s)."
        )

    if won["A"] > won["B"]:
        outcome = MatchOutcome.A
    elif won["B"] > won["A"]:
        outcome = MatchOutcome.B
    else:
        outcome = MatchOutcome.TIE

    return ValidatedResult(
        kind=kind,
        units=tuple(units),
        winners=tuple(winners),
        side_a_score=won["A"],
        side_b_score=won["B"],
        side_a_points=points["A"],
        side_b_points=points["B"],
        outcome=outcome,
    )


def validate_partial_result(
    sport: Sport,
    *,
    set_scores: Optional[Sequence[Mapping[str, Any]]] = None,
    game_scores: Optional[Sequence[Mapping[str, Any]]] = None,
    best_of: Optional[int] = 3,
) -> List[Dict[str, Optional[int]]]:
    """Shape-check the units of an unfinished match; no outcome is derived."""

    kind, raw_units = _select_units(sport, set_scores, game_scores)
    max_units = best_of if best_of is not None else MAX_UNITS
    return normalize_units(raw_units, kind, max_units=max_units)


def validate_participants_for_format(
    game_type: GameType, side_players: Mapping[str, Sequence[str]]
) -> None:
    """Both sides must carry exactly the players the format requires."""

    required = PLAYERS_PER_SIDE[game_type]
    for side in ("A", "B"):
        players = side_players.get(side) or []
        if len(players) != required:
            raise InvalidParticipants(
                f"{game_type.value.title()} matches require exactly {required}"
                f" accepted player(s) per side; side {side} has {len(players)}."
            )
