# Celery worker: celery -A docflow.tasks worker -Q <WORKER_QUEUE>, plus beat for the sweep.

import logging

from celery import Celery
from celery.signals import worker_init

from . import effects
from .config import REDIS_URL, SWEEP_INTERVAL_SECONDS, WORKER_QUEUE
from .db import init_db, new_session

logger = logging.getLogger(__name__)

cel = Celery("docflow", broker=REDIS_URL, backend=REDIS_URL)
cel.conf.task_default_queue = WORKER_QUEUE
cel.conf.beat_schedule = {
    "docflow-sweep": {"task": "docflow.sweep", "schedule": float(SWEEP_INTERVAL_SECONDS)},
}


@worker_init.connect
def _setup(**kwargs):
    init_db()


@cel.task(name="docflow.run_document_jobs", queue=WORKER_QUEUE)
def run_document_jobs_task(document_kind: str, document_id: int):
    with new_session() as session:
        summary = effects.run_document_jobs(session, document_kind, document_id)
    logger.info("drained %s:%s %s", document_kind, document_id, summary)
    if summary["retry_in"]:
        effects.dispatch(document_kind, document_id, countdown=summary["retry_in"])
    return summary


@cel.task(name="docflow.sweep", queue=WORKER_QUEUE)
def sweep_task():
    with new_session() as session:
        return effects.sweep(session)
