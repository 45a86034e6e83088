"""rq job functions. Each job opens and closes its own database session."""
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from examprep.core.database import SessionLocal
from examprep.core.storage import SqlStorage
from examprep.jobs.queue import queue
from examprep.services.attempts import AttemptService
from examprep.services.performance import PerformanceAggregator
from examprep.services.recommendations import RecommendationSynthesizer
from examprep.services.text_generation import get_text_generator

logger = logging.getLogger(__name__)


def refresh_performance_job(user_id: str, subject_ids: List[str]):
    db = SessionLocal()
    try:
        rows = PerformanceAggregator(SqlStorage(db)).refresh_many(user_id, subject_ids)
        return {"user_id": user_id, "refreshed": [r.subject_id for r in rows]}
    finally:
        db.close()


def generate_recommendations_job(user_id: str, target_exam: Optional[str] = None):
    db = SessionLocal()
    try:
        synthesizer = RecommendationSynthesizer(SqlStorage(db))
        recs = asyncio.run(synthesizer.generate(user_id, get_text_generator(), target_exam))
        return {"user_id": user_id, "created": len(recs)}
    finally:
        db.close()


def expire_overdue_attempts_job(reschedule_seconds: Optional[int] = None):
    """Expire overdue timed attempts; optionally re-enqueue itself for the next sweep."""
    db = SessionLocal()
    try:
        service = AttemptService(SqlStorage(db), get_text_generator())
        expired = asyncio.run(service.expire_overdue())
        logger.info("Expired %d overdue attempts", expired)
        return {"expired": expired}
    finally:
        db.close()
        # a failed sweep must not stop the next one
        if reschedule_seconds:
            queue.enqueue_in(timedelta(seconds=reschedule_seconds), expire_overdue_attempts_job, reschedule_seconds)
