"""Verification dispatch: feeds a job's numbers to the verifier and records each outcome.

One DispatchPool thread claims queued jobs; each claimed job gets its own
thread (run_job). Cancellation is cooperative: the job's status is re-read
before every number, and a number already handed to the verifier is never
interrupted.
"""
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from checkbot.core.errors import CheckbotError, LockTimeout, VerifierError
from checkbot.core.retry import with_retry
from checkbot.memory.jobs import JobStatus, Outcome
from checkbot.memory.store import write_json_atomic

log = logging.getLogger(__name__)


def results_path(results_dir, job_id):
    return os.path.join(results_dir, f"job_{job_id}.json")


def _retrying(fn):
    return with_retry(fn, retries=3, backoff_seconds=0.2, retry_on=(LockTimeout,))


def run_job(registry, verifier, job, results_dir, concurrency=1, deadline=None):
    """Verify every number of an already-claimed job. Blocks until done, cancelled or failed."""
    results = {}
    results_lock = threading.Lock()
    stop = threading.Event()

    def check_one(number):
        if stop.is_set():
            return
        if not _retrying(lambda: registry.is_active(job.id)):
            log.info(f"Job {job.id} no longer active, stopping")
            stop.set()
            return
        if deadline is not None and time.time() > deadline:
            stop.set()
            expired = _retrying(lambda: registry.update_job(job.id, status=JobStatus.FAILED, error="deadline exceeded"))
            if expired:
                log.warning(f"Job {job.id} failed: deadline exceeded")
            return

        try:
            outcome = Outcome(verifier.check(number))
        except VerifierError:
            stop.set()
            raise
        except Exception as e:
            log.warning(f"Job {job.id}: check of {number} failed: {e}")
            outcome = Outcome.ERROR

        with results_lock:
            results[number] = outcome.value
        _retrying(lambda: registry.record_progress(job.id, outcome))

    try:
        if concurrency <= 1:
            for number in job.numbers:
                check_one(number)
                if stop.is_set():
                    break
        else:
            with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=f"job-{job.id[:8]}") as pool:
                futures = [pool.submit(check_one, n) for n in job.numbers]
                for future in as_completed(futures):
                    future.result()
    except Exception as e:
        stop.set()
        log.exception(f"Job {job.id} dispatch failed")
        error = str(e) or type(e).__name__
        _retrying(lambda: registry.update_job(job.id, status=JobStatus.FAILED, error=error))
    finally:
        _write_results(registry, job, results, results_dir)


def _write_results(registry, job, results, results_dir):
    final = registry.get_job(job.id) or job
    write_json_atomic(results_path(results_dir, job.id), {
        "job_id": job.id,
        "status": final.status.value,
        "total": final.total,
        "processed": final.processed,
        "valid": final.valid,
        "invalid": final.invalid,
        "multi_account": final.multi_account,
        "errors": final.errors,
        "results": [
            {"number": n, "outcome": results[n]} for n in job.numbers if n in results
        ],
    })
    log.info(f"Job {job.id} results written ({len(results)}/{job.total}, {final.status.value})")


class DispatchPool:
    """Claims queued jobs and runs each one on its own thread."""

    def __init__(self, registry, verifier, results_dir, max_active=4, concurrency=1,
                 deadline_seconds=None, poll_interval=1.0):
        self.registry = registry
        self.verifier = verifier
        self.results_dir = results_dir
        self.max_active = max_active
        self.concurrency = concurrency
        self.deadline_seconds = deadline_seconds
        self.poll_interval = poll_interval
        self.active = {}

    def tick(self):
        """Reap finished units and start new ones. Returns the ids started."""
        self.active = {jid: t for jid, t in self.active.items() if t.is_alive()}
        started = []
        for queued in self.registry.list_jobs(JobStatus.QUEUED):
            if len(self.active) >= self.max_active:
                break
            job = self.registry.claim_job(queued.id)
            if job is None:
                continue
            deadline = job.started_at + self.deadline_seconds if self.deadline_seconds else None
            thread = threading.Thread(
                target=run_job,
                args=(self.registry, self.verifier, job, self.results_dir, self.concurrency, deadline),
                name=f"dispatch-{job.id[:8]}",
                daemon=True,
            )
            self.active[job.id] = thread
            thread.start()
            started.append(job.id)
        return started

    def run(self, stop_event):
        log.info(f"Dispatch pool started (max {self.max_active} jobs)")
        while not stop_event.is_set():
            try:
                self.tick()
            except CheckbotError as e:
                log.warning(f"Dispatch pool cycle skipped: {e}")
            stop_event.wait(self.poll_interval)

    def join(self, timeout=None):
        for thread in list(self.active.values()):
            thread.join(timeout)
