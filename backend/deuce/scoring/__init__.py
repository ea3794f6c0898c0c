"""Per-sport rules for deciding set and game units."""

from . import padel, pickleball, tennis

RULES = {
    "tennis": tennis,
    "padel": padel,
    "pickleball": pickleball,
}


def rules_for(sport: str):
    try:
        return RULES[sport]
    except KeyError:
        raise ValueError(f"unsupported sport '{sport}'") from None


__all__ = [
    "RULES",
    "padel",
    "pickleball",
    "rules_for",
    "tennis",
]
