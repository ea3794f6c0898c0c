import logging
import os
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from ..config import _parse_float

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        logger.info("SENTRY_DSN not provided; skipping Sentry initialization.")
        return False

    environment = (os.getenv("SENTRY_ENVIRONMENT") or "").strip() or None
    traces_sample_rate = _parse_float("SENTRY_TRACES_SAMPLE_RATE", 0.0)
    profiles_sample_rate = _parse_float("SENTRY_PROFILES_SAMPLE_RATE", 0.0)

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FastApiIntegration()],
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        profiles_sample_rate=profiles_sample_rate,
    )
    logger.info(
        "Initialized Sentry%s",
        f" (environment={environment})" if environment else "",
    )
    return True


def alert_operators(
    exc: BaseException, *, level: str = "error", **context: Any
) -> None:
    """Report ``exc`` to Sentry with ``context`` attached as tags/extras.

    A no-op when Sentry has not been initialised.
    """

    with sentry_sdk.new_scope() as scope:
        scope.set_level(level)
        for key, value in context.items():
            if value is None:
                continue
            if isinstance(value, (str, int)):
                scope.set_tag(key, value)
            else:
                scope.set_extra(key, value)
        sentry_sdk.capture_exception(exc)
