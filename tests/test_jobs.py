"""
Tests for jobs.py - durable queue, bounded engine and warm handlers.
"""

import threading
import time
from datetime import datetime, timedelta

import pytest

from voterspheres import jobs
from voterspheres.database import WarmJob
from voterspheres.ingest import IngestionCoordinator
from voterspheres.jobs import (
    WARM_PROFILE,
    WARM_SITEMAP_CHUNK,
    JobEngine,
    JobQueue,
    WarmHandlers,
    enqueue_ids,
    enqueue_warm_all,
    schedule_pregeneration,
)
from voterspheres.retry import BackoffPolicy, JobState

from conftest import make_raws

FAST = BackoffPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05)


class FakeNow:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, 0)

    def __call__(self):
        return self.now


@pytest.fixture
def queue(db):
    return JobQueue(db, FAST)


@pytest.fixture
def clock():
    return FakeNow()


@pytest.fixture
def timed_queue(db, clock):
    return JobQueue(db, BackoffPolicy(max_attempts=2, base_delay=60), clock=clock)


class TestJobQueue:
    """Test enqueue, claim and outcome bookkeeping."""

    def test_enqueue_and_claim(self, queue):
        job_id = queue.enqueue(WARM_PROFILE, "jane")
        claimed = queue.claim(10)
        assert [(j.id, j.kind, j.target, j.attempts) for j in claimed] == [(job_id, WARM_PROFILE, "jane", 1)]
        assert queue.counts()["active"] == 1

    def test_duplicate_pending_job_skipped(self, queue):
        assert queue.enqueue(WARM_PROFILE, "jane") is not None
        assert queue.enqueue(WARM_PROFILE, "jane") is None
        assert queue.enqueue(WARM_SITEMAP_CHUNK, "jane") is not None

        queue.claim(10)
        assert queue.enqueue(WARM_PROFILE, "jane") is None

    def test_finished_job_can_be_enqueued_again(self, queue):
        queue.enqueue(WARM_PROFILE, "jane")
        queue.mark_succeeded(queue.claim(1)[0])
        assert queue.enqueue(WARM_PROFILE, "jane") is not None

    def test_unknown_kind(self, queue):
        with pytest.raises(ValueError):
            queue.enqueue("reindex", "x")

    def test_enqueue_many_dedupes(self, queue):
        queue.enqueue(WARM_PROFILE, "a")
        added = queue.enqueue_many([(WARM_PROFILE, "a"), (WARM_PROFILE, "b"), (WARM_PROFILE, "b"), (WARM_SITEMAP_CHUNK, 0)])
        assert added == 2
        assert queue.counts()["queued"] == 3

    def test_claim_respects_limit_and_order(self, queue):
        ids = [queue.enqueue(WARM_PROFILE, f"c{i}") for i in range(5)]
        assert [j.id for j in queue.claim(2)] == ids[:2]
        assert [j.id for j in queue.claim(10)] == ids[2:]
        assert queue.claim(10) == []
        assert queue.claim(0) == []

    def test_claim_is_exclusive_across_queues(self, db):
        """Two dispatchers never own the same job."""
        first, second = JobQueue(db, FAST), JobQueue(db, FAST)
        for i in range(6):
            first.enqueue(WARM_PROFILE, f"c{i}")
        a = {j.id for j in first.claim(4)}
        b = {j.id for j in second.claim(4)}
        assert len(a) == 4
        assert len(b) == 2
        assert a.isdisjoint(b)

    def test_failure_backs_off(self, timed_queue, clock):
        timed_queue.enqueue(WARM_PROFILE, "jane")
        job = timed_queue.claim(1)[0]

        assert timed_queue.mark_failed(job, "RuntimeError: boom") == JobState.QUEUED
        assert timed_queue.claim(1) == []

        clock.now += timedelta(seconds=61)
        retried = timed_queue.claim(1)
        assert retried[0].attempts == 2

    def test_failure_at_ceiling_is_terminal(self, timed_queue, clock):
        timed_queue.enqueue(WARM_PROFILE, "jane")
        timed_queue.mark_failed(timed_queue.claim(1)[0], "first")
        clock.now += timedelta(seconds=61)

        assert timed_queue.mark_failed(timed_queue.claim(1)[0], "second") == JobState.FAILED
        failed = timed_queue.failed_jobs()
        assert len(failed) == 1
        assert failed[0]["attempts"] == 2
        assert failed[0]["error"] == "second"

        clock.now += timedelta(days=1)
        assert timed_queue.claim(1) == []

    def test_long_errors_truncated(self, queue):
        queue.enqueue(WARM_PROFILE, "jane")
        job = queue.claim(1)[0]
        queue.mark_failed(job, "x" * 10_000)
        queue.mark_failed(job, "ignored, job is no longer active")
        with queue.db.session() as session:
            stored = session.get(WarmJob, job.id)
            assert len(stored.last_error) == jobs.MAX_ERROR_LENGTH

    def test_requeue_stale(self, timed_queue, clock):
        timed_queue.enqueue(WARM_PROFILE, "jane")
        timed_queue.claim(1)
        assert timed_queue.requeue_stale(active_for=900) == 0

        clock.now += timedelta(seconds=901)
        assert timed_queue.requeue_stale(active_for=900) == 1
        assert timed_queue.counts()["queued"] == 1

    def test_retry_failed_and_purge(self, timed_queue, clock):
        timed_queue.enqueue(WARM_PROFILE, "a")
        timed_queue.enqueue(WARM_PROFILE, "b")
        a, b = timed_queue.claim(2)
        timed_queue.mark_succeeded(a)
        timed_queue.mark_failed(b, "boom")
        clock.now += timedelta(seconds=61)
        timed_queue.mark_failed(timed_queue.claim(1)[0], "boom")

        assert timed_queue.retry_failed() == 1
        assert timed_queue.claim(1)[0].attempts == 1
        assert timed_queue.purge_succeeded() == 1
        assert timed_queue.counts()["succeeded"] == 0


class TestJobEngine:
    """Test the bounded worker pool."""

    def test_concurrency_bound(self, queue):
        """Ten times more jobs than workers never exceeds K active."""
        workers = 4
        lock = threading.Lock()
        active = [0]
        peak = [0]

        def handler(target):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.02)
            with lock:
                active[0] -= 1

        queue.enqueue_many((WARM_PROFILE, f"c{i}") for i in range(workers * 10))
        engine = JobEngine(queue, {WARM_PROFILE: handler}, concurrency=workers, poll_interval=0.01)

        stats = engine.run_until_idle(timeout=30)

        assert stats.succeeded == 40
        assert peak[0] <= workers
        assert stats.max_active <= workers
        assert queue.counts()["succeeded"] == 40

    def test_failures_retry_then_fail(self, queue):
        """A job that always fails ends in failed; others are unaffected."""
        calls = []

        def handler(target):
            calls.append(target)
            if target == "bad":
                raise RuntimeError("render failed")

        queue.enqueue(WARM_PROFILE, "bad")
        queue.enqueue(WARM_PROFILE, "good")
        engine = JobEngine(queue, {WARM_PROFILE: handler}, concurrency=2, poll_interval=0.01)

        stats = engine.run_until_idle(timeout=30)

        assert calls.count("bad") == FAST.max_attempts
        assert calls.count("good") == 1
        assert stats.succeeded == 1
        assert stats.retried == FAST.max_attempts - 1
        assert stats.failed == 1
        failed = queue.failed_jobs()
        assert failed[0]["target"] == "bad"
        assert failed[0]["error"] == "RuntimeError: render failed"

    def test_job_counters(self, queue):
        before = jobs.logger.get_metrics()
        queue.enqueue(WARM_PROFILE, "ok")
        JobEngine(queue, {WARM_PROFILE: lambda t: None}, concurrency=1, poll_interval=0.01).run_until_idle(timeout=10)
        assert jobs.logger.get_metrics()["jobs_succeeded"] == before["jobs_succeeded"] + 1

    def test_missing_handler_fails_job(self, queue):
        queue.enqueue(WARM_SITEMAP_CHUNK, "0")
        stats = JobEngine(queue, {}, concurrency=1, poll_interval=0.01).run_until_idle(timeout=30)
        assert stats.failed == 1
        assert "LookupError" in queue.failed_jobs()[0]["error"]

    def test_idle_queue_returns_immediately(self, queue):
        stats = JobEngine(queue, {}, poll_interval=0.01).run_until_idle(timeout=5)
        assert stats.processed == 0

    def test_orphaned_active_job_does_not_block_drain(self, db, queue):
        """A row left active by a dead worker is not this engine's work."""
        JobQueue(db, FAST).enqueue(WARM_PROFILE, "orphan")
        assert len(JobQueue(db, FAST).claim(1)) == 1
        queue.enqueue(WARM_PROFILE, "fresh")

        seen = []
        engine = JobEngine(queue, {WARM_PROFILE: seen.append}, concurrency=2, poll_interval=0.01)
        started = time.monotonic()
        stats = engine.run_until_idle(timeout=10)

        assert time.monotonic() - started < 5
        assert seen == ["fresh"]
        assert stats.succeeded == 1
        assert queue.counts()["active"] == 1
        assert queue.pending() == 0

    def test_invalid_concurrency(self, queue):
        with pytest.raises(ValueError):
            JobEngine(queue, {}, concurrency=0)

    def test_background_start_stop(self, queue):
        done = threading.Event()
        seen = []

        def handler(target):
            seen.append(target)
            if len(seen) == 3:
                done.set()

        engine = JobEngine(queue, {WARM_PROFILE: handler}, concurrency=2, poll_interval=0.01)
        thread = engine.start()
        for i in range(3):
            queue.enqueue(WARM_PROFILE, f"c{i}")

        assert done.wait(10)
        engine.stop(timeout=10)
        assert not thread.is_alive()
        assert sorted(seen) == ["c0", "c1", "c2"]
        assert queue.counts()["succeeded"] == 3


class TestWarming:
    """Test warm-all and on-demand warming through the service."""

    @pytest.fixture
    def loaded(self, db, store):
        IngestionCoordinator(db, store).upsert_batch(make_raws(7))
        return store

    def test_enqueue_warm_all(self, db, loaded):
        queue = JobQueue(db, FAST)
        added = enqueue_warm_all(queue, loaded, chunk_size=3)
        assert added == 7 + 3
        assert enqueue_warm_all(queue, loaded, chunk_size=3) == 0

    def test_enqueue_warm_all_profiles_only(self, db, loaded):
        queue = JobQueue(db, FAST)
        assert enqueue_warm_all(queue, loaded, chunk_size=3, include_sitemaps=False) == 7

    def test_warm_all_then_serve_from_cache(self, db, loaded, service):
        """After warming, serving a profile or chunk makes no store calls."""
        queue = JobQueue(db, FAST)
        enqueue_warm_all(queue, loaded, chunk_size=service.sitemaps.chunk_size)
        stats = JobEngine(queue, WarmHandlers(service), concurrency=4, poll_interval=0.01).run_until_idle(timeout=30)
        assert stats.failed == 0

        slug = next(loaded.iter_slugs())
        loaded.reads = 0
        doc = service.get_cached_or_render("profile", slug)
        chunk = service.sitemap_chunk(0)

        assert loaded.reads == 0
        assert slug in doc.body
        assert slug in chunk.body

    def test_enqueue_ids(self, db, loaded):
        queue = JobQueue(db, FAST)
        assert enqueue_ids(queue, ["a", "", "b", "a"]) == 2
        assert {j.target for j in queue.claim(10)} == {"a", "b"}

    def test_warm_missing_profile_fails(self, db, service):
        queue = JobQueue(db, FAST)
        enqueue_ids(queue, ["nobody"])
        stats = JobEngine(queue, WarmHandlers(service), concurrency=1, poll_interval=0.01).run_until_idle(timeout=30)
        assert stats.failed == 1
        assert "NotFoundError" in queue.failed_jobs()[0]["error"]


class TestPregeneration:
    """Test the delayed pre-generation trigger."""

    def test_fires_after_delay(self):
        fired = threading.Event()
        schedule_pregeneration(0.01, fired.set)
        assert fired.wait(5)

    def test_cancel(self):
        fired = threading.Event()
        timer = schedule_pregeneration(10, fired.set)
        timer.cancel()
        timer.join(5)
        assert not fired.is_set()
