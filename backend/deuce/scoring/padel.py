"""Padel set rules.
Padel shares tennis set scoring: sets to six games, a seven-point tiebreak
at 6-6 and a ten-point match tiebreak or full deciding set."""

from typing import Dict

from . import tennis

UNIT_KIND = tennis.UNIT_KIND


def unit_winner(unit: Dict, *, deciding: bool, final_set_format: str) -> str:
    return tennis.unit_winner(
        unit, deciding=deciding, final_set_format=final_set_format
    )


def games_won(unit: Dict, winner: str) -> Dict[str, int]:
    return tennis.games_won(unit, winner)
