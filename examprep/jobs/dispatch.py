"""
Triggers for the side effects of attempt completion.

With ``BACKGROUND_JOBS_ENABLED`` the work is enqueued on rq; otherwise, or if
Redis refuses the job, it runs inline. Neither path raises into the caller.
"""
import logging
from typing import Iterable, List, Optional

from redis.exceptions import RedisError

from examprep.core.config import settings
from examprep.core.storage import Storage
from examprep.jobs.queue import queue
from examprep.services.performance import PerformanceAggregator

logger = logging.getLogger(__name__)

REFRESH_JOB = "examprep.jobs.tasks.refresh_performance_job"
RECOMMENDATIONS_JOB = "examprep.jobs.tasks.generate_recommendations_job"


def _enqueue(func: str, *args) -> Optional[str]:
    try:
        job = queue.enqueue(func, *args, job_timeout=settings.JOB_TIMEOUT_SECONDS)
    except RedisError as e:
        logger.warning("Could not enqueue %s, running inline: %s", func, e)
        return None
    return job.get_id()


def schedule_performance_refresh(storage: Storage, user_id: str, subject_ids: Iterable[Optional[str]]) -> Optional[str]:
    """Refresh aggregates for the given subjects. Returns the rq job id when queued."""
    subjects: List[str] = sorted({s for s in subject_ids if s})
    if not subjects:
        return None
    if settings.BACKGROUND_JOBS_ENABLED:
        job_id = _enqueue(REFRESH_JOB, user_id, subjects)
        if job_id:
            return job_id
    PerformanceAggregator(storage).refresh_many(user_id, subjects)
    return None


def schedule_recommendations(user_id: str, target_exam: Optional[str] = None) -> Optional[str]:
    """Queue recommendation generation; None when background jobs are off or Redis is down."""
    if not settings.BACKGROUND_JOBS_ENABLED:
        return None
    return _enqueue(RECOMMENDATIONS_JOB, user_id, target_exam)
