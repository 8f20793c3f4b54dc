"""
Background job engine.

A durable queue of warm jobs lives in the ``warm_jobs`` table. A single
dispatcher thread claims due jobs (a conditional ``queued -> active`` UPDATE,
so no two dispatchers can own the same row) and hands them to a fixed-size
thread pool. At most ``concurrency`` jobs run at once.

Job lifecycle follows ``retry.next_state``: success ends at ``succeeded``;
a failure goes back to ``queued`` with exponential backoff until the retry
ceiling, then stops at ``failed`` and is logged for operators.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, delete, func, select, update

from .database import Database, WarmJob, utcnow
from .logger import get_logger
from .retry import BackoffPolicy, JobState, next_state
from .sitemap import chunk_count
from .storage import CandidateStore

logger = get_logger()

WARM_PROFILE = "warm-profile"
WARM_SITEMAP_CHUNK = "warm-sitemap-chunk"
JOB_KINDS = (WARM_PROFILE, WARM_SITEMAP_CHUNK)

PENDING_STATES = (JobState.QUEUED.value, JobState.ACTIVE.value)
ENQUEUE_BATCH = 1000
MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class ClaimedJob:
    """A job this process owns until it reports an outcome."""

    id: int
    kind: str
    target: str
    attempts: int


class JobQueue:
    """
    Durable warm-job queue backed by the relational store.

    Queue writes are serialized within the process; across processes the
    conditional UPDATE in ``claim`` decides ownership.
    """

    def __init__(self, db: Database, policy: Optional[BackoffPolicy] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.policy = policy or BackoffPolicy(max_attempts=5, base_delay=2.0, max_delay=300.0)
        self.clock = clock
        self._lock = threading.Lock()

    def enqueue(self, kind: str, target: str) -> Optional[int]:
        """Add one job; returns its id, or None if an equal job is already pending."""
        if kind not in JOB_KINDS:
            raise ValueError(f"Unknown job kind: {kind}")
        target = str(target)
        with self._lock, self.db.transaction() as session:
            pending = session.execute(
                select(WarmJob.id).where(
                    WarmJob.kind == kind,
                    WarmJob.target == target,
                    WarmJob.state.in_(PENDING_STATES),
                )
            ).first()
            if pending is not None:
                return None
            job = WarmJob(kind=kind, target=target, state=JobState.QUEUED.value,
                          attempts=0, available_at=self.clock())
            session.add(job)
            session.flush()
            return job.id

    def enqueue_many(self, items: Iterable[Tuple[str, str]]) -> int:
        """Add jobs in batches, skipping any that are already pending."""
        added = 0
        batch: List[Tuple[str, str]] = []
        for kind, target in items:
            if kind not in JOB_KINDS:
                raise ValueError(f"Unknown job kind: {kind}")
            batch.append((kind, str(target)))
            if len(batch) >= ENQUEUE_BATCH:
                added += self._enqueue_batch(batch)
                batch = []
        if batch:
            added += self._enqueue_batch(batch)
        return added

    def _enqueue_batch(self, batch: List[Tuple[str, str]]) -> int:
        now = self.clock()
        with self._lock, self.db.transaction() as session:
            pending = set()
            for kind in {k for k, _ in batch}:
                targets = [t for k, t in batch if k == kind]
                pending.update(
                    (kind, t) for t in session.execute(
                        select(WarmJob.target).where(
                            WarmJob.kind == kind,
                            WarmJob.target.in_(targets),
                            WarmJob.state.in_(PENDING_STATES),
                        )
                    ).scalars()
                )
            fresh = []
            for item in batch:
                if item not in pending:
                    pending.add(item)
                    fresh.append(item)
            session.add_all(
                WarmJob(kind=kind, target=target, state=JobState.QUEUED.value,
                        attempts=0, available_at=now)
                for kind, target in fresh
            )
            return len(fresh)

    def claim(self, limit: int) -> List[ClaimedJob]:
        """Atomically move up to ``limit`` due jobs from queued to active."""
        if limit < 1:
            return []
        now = self.clock()
        claimed: List[ClaimedJob] = []
        with self._lock, self.db.transaction() as session:
            candidates = session.execute(
                select(WarmJob.id, WarmJob.kind, WarmJob.target, WarmJob.attempts)
                .where(WarmJob.state == JobState.QUEUED.value, WarmJob.available_at <= now)
                .order_by(WarmJob.available_at.asc(), WarmJob.id.asc())
                .limit(limit)
            ).all()
            for job_id, kind, target, attempts in candidates:
                result = session.execute(
                    update(WarmJob)
                    .where(WarmJob.id == job_id, WarmJob.state == JobState.QUEUED.value)
                    .values(
                        state=JobState.ACTIVE.value,
                        attempts=WarmJob.attempts + 1,
                        started_at=now,
                        updated_at=now,
                    )
                )
                if result.rowcount == 1:
                    claimed.append(ClaimedJob(job_id, kind, target, attempts + 1))
        return claimed

    def mark_succeeded(self, job: ClaimedJob) -> None:
        self._finish(job, JobState.SUCCEEDED, 0.0, None)

    def mark_failed(self, job: ClaimedJob, error: str) -> JobState:
        """Record a failed attempt; returns QUEUED (will retry) or FAILED."""
        state, delay = next_state(JobState.ACTIVE, False, job.attempts, self.policy)
        self._finish(job, state, delay, error)
        return state

    def _finish(self, job: ClaimedJob, state: JobState, delay: float, error: Optional[str]) -> None:
        now = self.clock()
        values: Dict[str, Any] = {
            "state": state.value,
            "updated_at": now,
            "last_error": error[:MAX_ERROR_LENGTH] if error else None,
        }
        if state == JobState.QUEUED:
            values["available_at"] = now + timedelta(seconds=delay)
        else:
            values["finished_at"] = now
        with self._lock, self.db.transaction() as session:
            session.execute(
                update(WarmJob)
                .where(WarmJob.id == job.id, WarmJob.state == JobState.ACTIVE.value)
                .values(**values)
            )

    def counts(self) -> Dict[str, int]:
        with self.db.session() as session:
            rows = session.execute(
                select(WarmJob.state, func.count(WarmJob.id)).group_by(WarmJob.state)
            ).all()
        counts = {s.value: 0 for s in JobState}
        counts.update({state: n for state, n in rows})
        return counts

    def pending(self) -> int:
        """Jobs still waiting to run, including ones backing off before a retry."""
        return self.counts()[JobState.QUEUED.value]

    def failed_jobs(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self.db.session() as session:
            jobs = session.execute(
                select(WarmJob)
                .where(WarmJob.state == JobState.FAILED.value)
                .order_by(WarmJob.finished_at.desc())
                .limit(limit)
            ).scalars().all()
            return [
                {"id": j.id, "kind": j.kind, "target": j.target, "attempts": j.attempts,
                 "error": j.last_error, "finished_at": j.finished_at}
                for j in jobs
            ]

    def requeue_stale(self, active_for: float = 900) -> int:
        """Return jobs stuck in active (e.g. after a worker crash) to the queue."""
        now = self.clock()
        cutoff = now - timedelta(seconds=active_for)
        with self._lock, self.db.transaction() as session:
            result = session.execute(
                update(WarmJob)
                .where(and_(WarmJob.state == JobState.ACTIVE.value, WarmJob.started_at < cutoff))
                .values(state=JobState.QUEUED.value, available_at=now, updated_at=now)
            )
            return result.rowcount

    def retry_failed(self) -> int:
        """Operator action: put failed jobs back in the queue with fresh attempts."""
        now = self.clock()
        with self._lock, self.db.transaction() as session:
            result = session.execute(
                update(WarmJob)
                .where(WarmJob.state == JobState.FAILED.value)
                .values(state=JobState.QUEUED.value, attempts=0, available_at=now,
                        updated_at=now, finished_at=None)
            )
            return result.rowcount

    def purge_succeeded(self) -> int:
        with self._lock, self.db.transaction() as session:
            result = session.execute(delete(WarmJob).where(WarmJob.state == JobState.SUCCEEDED.value))
            return result.rowcount


@dataclass
class EngineStats:
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    max_active: int = 0
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    @property
    def processed(self) -> int:
        return self.succeeded + self.retried + self.failed

    def to_dict(self) -> Dict[str, Any]:
        elapsed = (self.finished_at or time.monotonic()) - self.started_at
        return {
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
            "max_active": self.max_active,
            "elapsed_seconds": round(elapsed, 2),
        }


class JobEngine:
    """
    Bounded worker pool draining a JobQueue.

    ``handlers`` maps a job kind to a callable taking the job target. A
    handler exception marks that job failed (with retry); it never stops the
    engine or affects other jobs.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: Dict[str, Callable[[str], Any]],
        concurrency: int = 25,
        poll_interval: float = 0.5,
        stop_event: Optional[threading.Event] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be positive")
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()
        self.stats = EngineStats()
        self._active = 0
        self._cond = threading.Condition()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> int:
        return self._active

    def _execute(self, job: ClaimedJob) -> None:
        outcome = None
        try:
            handler = self.handlers.get(job.kind)
            if handler is None:
                raise LookupError(f"No handler for job kind {job.kind!r}")
            handler(job.target)
        except Exception as e:  # any handler failure is a job failure
            error = f"{type(e).__name__}: {e}"
            state = self.queue.mark_failed(job, error)
            if state == JobState.FAILED:
                outcome = "failed"
                logger.error("Warm job failed permanently", job_id=job.id, kind=job.kind,
                             target=job.target, attempts=job.attempts, error=error)
            else:
                outcome = "retried"
                logger.warning("Warm job failed, will retry", job_id=job.id, kind=job.kind,
                               target=job.target, attempts=job.attempts, error=error)
            logger.record_error(type(e).__name__)
        else:
            self.queue.mark_succeeded(job)
            outcome = "succeeded"
        finally:
            with self._cond:
                if outcome is not None:
                    setattr(self.stats, outcome, getattr(self.stats, outcome) + 1)
                self._active -= 1
                self._cond.notify_all()
            if outcome is not None:
                logger.increment(f"jobs_{outcome}")

    def _dispatch_once(self) -> int:
        """Claim jobs for every free worker slot; returns how many were submitted."""
        with self._cond:
            while self._active >= self.concurrency and not self.stop_event.is_set():
                self._cond.wait(self.poll_interval)
            free = self.concurrency - self._active
        if self.stop_event.is_set() or free <= 0:
            return 0

        jobs = self.queue.claim(free)
        for job in jobs:
            with self._cond:
                self._active += 1
                self.stats.max_active = max(self.stats.max_active, self._active)
            self._pool.submit(self._execute, job)
        return len(jobs)

    def _wait_for_work(self) -> None:
        with self._cond:
            self._cond.wait(self.poll_interval)

    def _drain_inflight(self) -> None:
        with self._cond:
            while self._active > 0:
                self._cond.wait(self.poll_interval)

    def run_until_idle(self, timeout: Optional[float] = None) -> EngineStats:
        """
        Process jobs until nothing is queued and this engine has nothing in
        flight, then return stats.

        Jobs waiting out a retry backoff keep the engine running until they
        either succeed or fail permanently. Rows another worker holds active
        are not waited on; ``requeue_stale`` recovers them if that worker died.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        self.stats = EngineStats()
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="warm") as pool:
            self._pool = pool
            while not self.stop_event.is_set():
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning("Job engine drain timed out", queued=self.queue.pending())
                    break
                if self._dispatch_once():
                    continue
                with self._cond:
                    idle = self._active == 0
                if idle and self.queue.pending() == 0:
                    break
                self._wait_for_work()
            self._drain_inflight()
        self._pool = None
        self.stats.finished_at = time.monotonic()
        logger.info("Job engine idle", **self.stats.to_dict())
        return self.stats

    def _serve(self) -> None:
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="warm") as pool:
            self._pool = pool
            while not self.stop_event.is_set():
                if not self._dispatch_once():
                    self._wait_for_work()
            self._drain_inflight()
        self._pool = None

    def start(self) -> threading.Thread:
        """Run the engine in a background thread until stop() is called."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self.stats = EngineStats()
        self._thread = threading.Thread(target=self._serve, name="warm-dispatcher", daemon=True)
        self._thread.start()
        logger.info("Job engine started", concurrency=self.concurrency)
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop claiming new jobs and wait for in-flight ones to finish."""
        self.stop_event.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Job engine stopped", **self.stats.to_dict())


class WarmHandlers(dict):
    """Job handlers keyed by kind; each renders through the service and caches the result."""

    def __init__(self, service):
        super().__init__({
            WARM_PROFILE: self.warm_profile,
            WARM_SITEMAP_CHUNK: self.warm_sitemap_chunk,
        })
        self.service = service

    def warm_profile(self, slug: str):
        return self.service.warm("profile", slug)

    def warm_sitemap_chunk(self, n: str):
        return self.service.warm("sitemap-chunk", n)


def enqueue_warm_all(
    queue: JobQueue,
    store: CandidateStore,
    chunk_size: int,
    include_sitemaps: bool = True,
    cancel_event: Optional[threading.Event] = None,
) -> int:
    """
    Schedule one profile job per record plus one job per sitemap chunk.

    Walks the record set in slug order, a page at a time.
    """
    def items():
        for slug in store.iter_slugs():
            if cancel_event is not None and cancel_event.is_set():
                return
            yield WARM_PROFILE, slug
        if include_sitemaps:
            for n in range(chunk_count(store.count(), chunk_size)):
                yield WARM_SITEMAP_CHUNK, str(n)

    added = queue.enqueue_many(items())
    logger.info("Warm jobs enqueued", added=added)
    return added


def enqueue_ids(queue: JobQueue, slugs: Iterable[str]) -> int:
    """On-demand trigger for an explicit list of profiles."""
    return queue.enqueue_many((WARM_PROFILE, s) for s in slugs if s)


def schedule_pregeneration(delay: float, callback: Callable[[], Any]) -> threading.Timer:
    """Run ``callback`` once after ``delay`` seconds; cancel() the timer to abort."""
    timer = threading.Timer(delay, callback)
    timer.name = "pregen-trigger"
    timer.daemon = True
    timer.start()
    logger.info("Pre-generation scheduled", delay=delay)
    return timer
