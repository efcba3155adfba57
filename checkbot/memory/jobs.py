"""Job records and the registry that owns every write to the "jobs" namespace.

A job's counters only move through record_progress(), one outcome per call,
each call a single acquire/read/mutate/save cycle so concurrent dispatch
threads never lose an increment. Terminal jobs are frozen.
"""
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import List, Optional

from checkbot.core.errors import InvalidTransition

log = logging.getLogger(__name__)

JOBS = "jobs"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self):
        return self in TERMINAL


TERMINAL = {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED}

TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED},
}


class Outcome(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    MULTI_ACCOUNT = "multi_account"
    ERROR = "error"


# outcome -> counter field on Job
COUNTERS = {
    Outcome.VALID: "valid",
    Outcome.INVALID: "invalid",
    Outcome.MULTI_ACCOUNT: "multi_account",
    Outcome.ERROR: "errors",
}

# fields update_job() may touch; everything else is fixed at creation or counter-managed
UPDATABLE = {"status", "error", "started_at", "finished_at"}


@dataclass
class Job:
    id: str
    owner: str
    numbers: List[str]
    status: JobStatus = JobStatus.QUEUED
    total: int = 0
    processed: int = 0
    valid: int = 0
    invalid: int = 0
    multi_account: int = 0
    errors: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["status"] = JobStatus(data["status"])
        return cls(**data)

    def to_dict(self):
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @property
    def percent(self):
        return round(self.processed / self.total * 100, 2) if self.total else 0


def _touch(job):
    # strictly increasing even if the wall clock stalls or steps back
    job.updated_at = max(time.time(), job.updated_at + 1e-6)


class JobRegistry:
    def __init__(self, store):
        self.store = store

    def create_job(self, owner, numbers) -> str:
        numbers = list(numbers)
        with self.store.acquire(JOBS) as h:
            job_id = uuid.uuid4().hex
            while h.get(job_id) is not None:
                job_id = uuid.uuid4().hex
            now = time.time()
            job = Job(
                id=job_id,
                owner=str(owner),
                numbers=numbers,
                total=len(numbers),
                created_at=now,
                updated_at=now,
            )
            h.set(job_id, job.to_dict())
            h.save()
        log.info(f"Job {job_id} created for user {owner} ({len(numbers)} numbers)")
        return job_id

    def get_job(self, job_id) -> Optional[Job]:
        if not job_id:
            return None
        with self.store.acquire(JOBS) as h:
            data = h.get(job_id)
        return Job.from_dict(data) if data else None

    def list_jobs(self, status=None) -> List[Job]:
        """All jobs, oldest first, optionally filtered by status."""
        with self.store.acquire(JOBS) as h:
            jobs = [Job.from_dict(data) for _, data in h.items()]
        if status is not None:
            jobs = [j for j in jobs if j.status == JobStatus(status)]
        return sorted(jobs, key=lambda j: j.created_at)

    def is_active(self, job_id) -> bool:
        job = self.get_job(job_id)
        return job is not None and not job.status.terminal

    def update_job(self, job_id, **fields) -> bool:
        """Merge fields into the job. Returns False when the update was ignored."""
        bad = set(fields) - UPDATABLE
        if bad:
            raise ValueError(f"Fields not updatable: {', '.join(sorted(bad))}")

        with self.store.acquire(JOBS) as h:
            data = h.get(job_id)
            if data is None:
                log.debug(f"update_job: job {job_id} not found")
                return False
            job = Job.from_dict(data)
            try:
                self._apply(job, fields)
            except InvalidTransition as e:
                log.info(f"Ignored update: {e}")
                return False
            h.set(job_id, job.to_dict())
            h.save()
        return True

    def _apply(self, job, fields):
        new = JobStatus(fields["status"]) if "status" in fields else None
        if job.status.terminal:
            raise InvalidTransition(job.id, job.status.value, new.value if new else "update")
        if new is not None:
            if new != job.status and new not in TRANSITIONS[job.status]:
                raise InvalidTransition(job.id, job.status.value, new.value)
            fields = dict(fields, status=new)
            if new.terminal and fields.get("finished_at") is None:
                fields["finished_at"] = time.time()
        for key, value in fields.items():
            setattr(job, key, value)
        _touch(job)

    def claim_job(self, job_id) -> Optional[Job]:
        """queued -> running. Returns the claimed job, or None if it was not queued."""
        with self.store.acquire(JOBS) as h:
            data = h.get(job_id)
            if data is None:
                return None
            job = Job.from_dict(data)
            if job.status != JobStatus.QUEUED:
                return None
            self._apply(job, {"status": JobStatus.RUNNING, "started_at": time.time()})
            h.set(job_id, job.to_dict())
            h.save()
        log.info(f"Job {job_id}: queued -> running")
        return job

    def record_progress(self, job_id, outcome) -> Optional[Job]:
        """Count one verified number. Returns the updated job, or None if ignored."""
        counter = COUNTERS[Outcome(outcome)]
        with self.store.acquire(JOBS) as h:
            data = h.get(job_id)
            if data is None:
                log.debug(f"record_progress: job {job_id} not found")
                return None
            job = Job.from_dict(data)
            if job.status.terminal:
                log.debug(f"record_progress: job {job_id} is {job.status.value}, outcome dropped")
                return None
            if job.processed >= job.total:
                log.warning(f"record_progress: job {job_id} already has {job.total} outcomes")
                return None

            setattr(job, counter, getattr(job, counter) + 1)
            job.processed += 1
            if job.status == JobStatus.QUEUED:
                job.status = JobStatus.RUNNING
                job.started_at = job.started_at or time.time()
            if job.processed == job.total:
                job.status = JobStatus.COMPLETED
                job.finished_at = time.time()
            _touch(job)
            h.set(job_id, job.to_dict())
            h.save()

        if job.status == JobStatus.COMPLETED:
            log.info(f"Job {job_id} completed ({job.valid} valid, {job.invalid} invalid, "
                     f"{job.multi_account} multi, {job.errors} errors)")
        return job
