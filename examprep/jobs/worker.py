import argparse
import logging
from datetime import timedelta
from rq import Worker
from examprep.jobs.queue import queue, redis
from examprep.core.config import settings

if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="examprep background worker")
    ap.add_argument("--expiry-sweep", action="store_true", help="seed the periodic sweep of overdue timed attempts")
    args = ap.parse_args()
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if args.expiry_sweep:
        queue.enqueue_in(timedelta(seconds=5), "examprep.jobs.tasks.expire_overdue_attempts_job",
                         settings.EXPIRY_SWEEP_SECONDS)
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
