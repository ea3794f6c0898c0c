"""Explicit wiring of the long-lived service objects.

Built once per application (or per test) instead of relying on module-level
singletons, so every collaborator receives its dependencies directly.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from .config import (
    OUTBOX_POLL_SECONDS,
    RATING_TASK_MAX_ATTEMPTS,
    RATING_WORKER_POLL_SECONDS,
    RECALCULATION_PREVIEW_TIMEOUT_SECONDS,
    RatingParameters,
    load_rating_parameters,
)
from .services.glicko import Glicko2Model, SkillModel
from .services.outbox import NotificationSink, OutboxDispatcher
from .services.rating_engine import RatingEngine
from .services.rating_store import RatingStore
from .services.rating_worker import RatingWorker
from .services.recalculation import RecalculationOrchestrator


@dataclass
class Services:
    params: RatingParameters
    model: SkillModel
    store: RatingStore
    engine: RatingEngine
    worker: RatingWorker
    recalculations: RecalculationOrchestrator
    dispatcher: OutboxDispatcher


def build_services(
    session_factory: sessionmaker,
    params: Optional[RatingParameters] = None,
    *,
    model: Optional[SkillModel] = None,
    sink: Optional[NotificationSink] = None,
    preview_timeout: float = RECALCULATION_PREVIEW_TIMEOUT_SECONDS,
) -> Services:
    params = params or load_rating_parameters()
    model = model or Glicko2Model(params)
    store = RatingStore(params)
    engine = RatingEngine(model=model, params=params, store=store)
    return Services(
        params=params,
        model=model,
        store=store,
        engine=engine,
        worker=RatingWorker(
            session_factory,
            engine,
            max_attempts=RATING_TASK_MAX_ATTEMPTS,
            poll_interval=RATING_WORKER_POLL_SECONDS,
        ),
        recalculations=RecalculationOrchestrator(
            session_factory, engine, preview_timeout=preview_timeout
        ),
        dispatcher=OutboxDispatcher(
            session_factory, sink, poll_interval=OUTBOX_POLL_SECONDS
        ),
    )
