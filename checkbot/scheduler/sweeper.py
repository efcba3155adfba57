"""Supervisory sweep: fail running jobs that outlived their deadline or a previous process."""
import logging
import time

from checkbot.core.errors import CheckbotError
from checkbot.memory.jobs import JobStatus

log = logging.getLogger(__name__)


def recover_interrupted(registry):
    """On startup, nothing can still be working on a running job; mark those failed."""
    failed = []
    for job in registry.list_jobs(JobStatus.RUNNING):
        if registry.update_job(job.id, status=JobStatus.FAILED, error="interrupted by restart"):
            failed.append(job.id)
    if failed:
        log.warning(f"[recover] {len(failed)} job(s) interrupted by restart: {', '.join(failed)}")
    return failed


def sweep_overdue(registry, deadline_seconds, now=None):
    now = time.time() if now is None else now
    failed = []
    for job in registry.list_jobs(JobStatus.RUNNING):
        started = job.started_at or job.created_at
        if now - started <= deadline_seconds:
            continue
        if registry.update_job(job.id, status=JobStatus.FAILED, error="deadline exceeded"):
            failed.append(job.id)
            log.warning(f"[sweep] job {job.id} failed after {int(now - started)}s")
    return failed


def sweep_loop(registry, deadline_seconds, interval, stop_event):
    while not stop_event.wait(interval):
        try:
            sweep_overdue(registry, deadline_seconds)
        except CheckbotError as e:
            log.warning(f"[sweep] skipped: {e}")
