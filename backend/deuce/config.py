import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def _canon_prefix(val):
    """
    Normalize API prefix to always be exactly like '/api':
      - defaults to '/api' when unset/empty
      - ensures a single leading slash
      - removes any trailing slash (except for root)
    """
    val = (val or "/api").strip()
    if not val.startswith("/"):
        val = "/" + val
    if len(val) > 1 and val.endswith("/"):
        val = val[:-1]
    return val


def _parse_float(env_var: str, default: float, *, minimum: float = 0.0) -> float:
    raw_value = os.getenv(env_var)
    if raw_value is None or not raw_value.strip():
        return default

    try:
        value = float(raw_value)
    except ValueError:
        logger.warning(
            "%s is not a valid float (got %r); defaulting to %.2f",
            env_var,
            raw_value,
            default,
        )
        return default

    if value < minimum:
        logger.warning(
            "%s cannot be below %.2f; defaulting to %.2f", env_var, minimum, default
        )
        return default

    return value


def _parse_int(env_var: str, default: int, *, minimum: int = 0) -> int:
    raw_value = os.getenv(env_var)
    if raw_value is None or not raw_value.strip():
        return default

    try:
        value = int(raw_value)
    except ValueError:
        logger.warning(
            "%s is not a valid integer (got %r); defaulting to %d",
            env_var,
            raw_value,
            default,
        )
        return default

    if value < minimum:
        logger.warning(
            "%s cannot be below %d; defaulting to %d", env_var, minimum, default
        )
        return default

    return value


def _parse_bool(env_var: str, default: bool) -> bool:
    raw_value = os.getenv(env_var)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


API_PREFIX = _canon_prefix(os.getenv("API_PREFIX"))

ENABLE_BACKGROUND_WORKERS = _parse_bool("ENABLE_BACKGROUND_WORKERS", True)
RATING_WORKER_POLL_SECONDS = _parse_float("RATING_WORKER_POLL_SECONDS", 2.0)
OUTBOX_POLL_SECONDS = _parse_float("OUTBOX_POLL_SECONDS", 2.0)
RATING_TASK_MAX_ATTEMPTS = _parse_int("RATING_TASK_MAX_ATTEMPTS", 5, minimum=1)
RECALCULATION_PREVIEW_TIMEOUT_SECONDS = _parse_float(
    "RECALCULATION_PREVIEW_TIMEOUT_SECONDS", 300.0
)
AUTO_APPROVE_AFTER_HOURS = _parse_float("AUTO_APPROVE_AFTER_HOURS", 24.0)


@dataclass(frozen=True)
class RatingParameters:
    """Constants consumed by the skill model and the rating engine."""

    default_rating: float = 1500.0
    default_rd: float = 350.0
    default_volatility: float = 0.06
    min_rd: float = 30.0
    max_rd: float = 350.0
    tau: float = 0.5
    epsilon: float = 1e-6
    scale: float = 173.7178
    inactivity_days: int = 30

    set_weight: float = 0.7
    point_weight: float = 0.3
    dampening: float = 0.7
    cap_fraction_of_rd: float = 0.08
    max_delta: float = 75.0

    partner_rd_blend: float = 0.5
    partner_volatility_blend: float = 0.35

    provisional_threshold: int = 10
    walkover_loss_factor: float = 0.5
    walkover_win_factor: float = 1.0


def load_rating_parameters() -> RatingParameters:
    """Build :class:`RatingParameters` honouring environment overrides."""

    defaults = RatingParameters()
    loss_factor = _parse_float(
        "RATING_WALKOVER_LOSS_FACTOR", defaults.walkover_loss_factor
    )
    if loss_factor >= 1.0:
        logger.warning(
            "RATING_WALKOVER_LOSS_FACTOR must be below 1.0 (got %.2f); defaulting to %.2f",
            loss_factor,
            defaults.walkover_loss_factor,
        )
        loss_factor = defaults.walkover_loss_factor

    return RatingParameters(
        provisional_threshold=_parse_int(
            "RATING_PROVISIONAL_THRESHOLD", defaults.provisional_threshold
        ),
        walkover_loss_factor=loss_factor,
        walkover_win_factor=_parse_float(
            "RATING_WALKOVER_WIN_FACTOR", defaults.walkover_win_factor
        ),
    )
