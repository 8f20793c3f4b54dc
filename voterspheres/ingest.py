"""
Ingestion coordinator.

Pulls raw records from a source adapter, converts them at the edge into
CandidateRecord values, and upserts them batch by batch. One malformed or
rejected row is logged and skipped; it never aborts the rest of its batch.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError

from .database import Database, utcnow
from .errors import MalformedRecordError, SourceError
from .logger import get_logger
from .retry import BackoffPolicy, JobState, next_state
from .schema import CandidateRecord
from .sources import DelimitedFileSource, PagedApiSource
from .storage import CandidateStore

logger = get_logger()

DEFAULT_BATCH_SIZE = 500


@dataclass
class BatchResult:
    """Outcome of one upsert batch."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    skip_reasons: List[Dict[str, Any]] = field(default_factory=list)
    slugs: List[str] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated + self.unchanged


@dataclass
class ImportStats:
    """Totals for one import run."""

    source: str
    pages: int = 0
    batches: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    skip_reasons: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def imported(self) -> int:
        return self.inserted + self.updated + self.unchanged

    @property
    def exit_code(self) -> int:
        """0 when every record was written, 1 when some were skipped."""
        return 1 if self.skipped else 0

    def add(self, batch: BatchResult) -> None:
        self.batches += 1
        self.inserted += batch.inserted
        self.updated += batch.updated
        self.unchanged += batch.unchanged
        self.skipped += batch.skipped
        self.skip_reasons.extend(batch.skip_reasons)

    def summary(self) -> str:
        return (
            f"source={self.source} imported={self.imported} new={self.inserted} "
            f"updated={self.updated} no-change={self.unchanged} skipped={self.skipped} "
            f"pages={self.pages} batches={self.batches}"
        )


def _skip_context(raw: Any, index: int) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return {"index": index}
    context = {"index": index, "name": raw.get("name"), "source_id": raw.get("source_id")}
    if raw.get("_line") is not None:
        context["line"] = raw["_line"]
    return context


class IngestionCoordinator:
    """
    Batches records from a source and upserts them into the candidates table.

    Pages and batches are processed strictly in order. Each batch is one
    transaction, so an interrupted run never leaves half a batch behind.
    """

    def __init__(
        self,
        db: Database,
        store: Optional[CandidateStore] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        cancel_event: Optional[threading.Event] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.db = db
        self.store = store or CandidateStore(db)
        self.batch_size = batch_size
        self.cancel_event = cancel_event or threading.Event()

    def upsert_batch(self, records: Iterable[Dict[str, Any]], source: str = "import") -> BatchResult:
        """
        Convert and upsert one batch inside a single transaction.

        Each row runs in its own savepoint; a row that fails validation or
        is rejected by the store is skipped and logged.
        """
        result = BatchResult()
        now = utcnow()

        with self.db.transaction() as session:
            for index, raw in enumerate(records):
                context = _skip_context(raw, index)
                try:
                    if isinstance(raw, dict) and raw.get("_error"):
                        raise MalformedRecordError([raw["_error"]], raw=raw)
                    record = CandidateRecord.from_raw(raw, source=source)
                except MalformedRecordError as e:
                    result.skipped += 1
                    result.skip_reasons.append({**context, "reason": str(e)})
                    logger.warning("Skipping malformed record", source=source, errors=e.errors, **context)
                    logger.record_error("MalformedRecord")
                    continue

                try:
                    with session.begin_nested():
                        status = self.store.upsert(session, record, now=now)
                except (IntegrityError, DataError, ValueError) as e:
                    result.skipped += 1
                    result.skip_reasons.append({**context, "reason": f"{type(e).__name__}: {e}"})
                    logger.error("Store rejected record", source=source, error=str(e), **context)
                    logger.record_error(type(e).__name__)
                    continue

                result.slugs.append(record.slug)
                if status == "inserted":
                    result.inserted += 1
                elif status == "updated":
                    result.updated += 1
                else:
                    result.unchanged += 1

        logger.increment("records_imported", result.written)
        logger.increment("records_skipped", result.skipped)
        logger.debug(
            "Batch written",
            source=source,
            inserted=result.inserted,
            updated=result.updated,
            unchanged=result.unchanged,
            skipped=result.skipped,
        )
        return result

    def _consume(self, rows: Iterable[Dict[str, Any]], stats: ImportStats) -> None:
        batch: List[Dict[str, Any]] = []
        for row in rows:
            batch.append(row)
            if len(batch) >= self.batch_size:
                if self.cancel_event.is_set():
                    stats.cancelled = True
                    return
                stats.add(self.upsert_batch(batch, source=stats.source))
                batch = []

        if batch and not self.cancel_event.is_set():
            stats.add(self.upsert_batch(batch, source=stats.source))
        elif batch:
            stats.cancelled = True

    def import_from_paged_source(self, source: PagedApiSource, start_page: int = 1) -> ImportStats:
        """
        Import every page of a paged source, in order.

        Raises:
            SourceUnavailableError: If a page keeps failing after retries
            SourceError: On a non-retryable source failure
        """
        stats = ImportStats(source=source.name)
        logger.info("Starting paged import", source=source.name, batch_size=self.batch_size)

        def rows():
            for page in source.iter_pages(start=start_page):
                stats.pages += 1
                yield from page.records

        self._consume(rows(), stats)
        stats.finished_at = utcnow()
        logger.info(f"Import complete: {stats.summary()}", cancelled=stats.cancelled)
        return stats

    def import_from_file(self, path: Path, delimiter: str = ",", source: str = "csv") -> ImportStats:
        """
        Stream a delimited file and import it with the same batching.

        Raises:
            SourceUnavailableError: If the file does not exist
            SourceError: If required columns are missing
        """
        file_source = DelimitedFileSource(Path(path), delimiter=delimiter, name=source)
        stats = ImportStats(source=source)
        logger.info("Starting file import", source=source, path=str(path), batch_size=self.batch_size)

        self._consume(file_source, stats)
        stats.finished_at = utcnow()
        logger.info(f"Import complete: {stats.summary()}", cancelled=stats.cancelled)
        return stats


class ResyncScheduler:
    """
    Re-runs a paged import on a fixed interval in a background thread.

    A failed run goes through the same queued/active/failed lifecycle as
    warm jobs: it is retried with backoff until the policy's ceiling, then
    given up until the next interval. Upserts are idempotent, so retrying a
    partial run is safe.
    """

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        source_factory: Callable[[], PagedApiSource],
        interval: float = 86400,
        policy: Optional[BackoffPolicy] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.coordinator = coordinator
        self.source_factory = source_factory
        self.interval = interval
        self.policy = policy or BackoffPolicy(max_attempts=3, base_delay=60.0, max_delay=900.0)
        self.stop_event = stop_event or coordinator.cancel_event
        self.state = JobState.QUEUED
        self.last_stats: Optional[ImportStats] = None
        self.last_error: Optional[str] = None
        self.runs = 0
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Optional[ImportStats]:
        """Run one resync with retries; returns stats, or None if it gave up."""
        attempts = 0
        while not self.stop_event.is_set():
            attempts += 1
            self.state = JobState.ACTIVE
            try:
                stats = self.coordinator.import_from_paged_source(self.source_factory())
            except (SourceError, SQLAlchemyError) as e:
                self.last_error = str(e)
                self.state, delay = next_state(JobState.ACTIVE, False, attempts, self.policy)
                logger.error(
                    "Resync attempt failed",
                    attempt=attempts, state=self.state.value, retry_in=delay, error=str(e),
                )
                logger.record_error(type(e).__name__)
                if self.state == JobState.FAILED:
                    return None
                self.stop_event.wait(delay)
                continue

            self.state, _ = next_state(JobState.ACTIVE, True, attempts, self.policy)
            self.last_stats = stats
            self.last_error = None
            return stats
        return None

    def _loop(self):
        while not self.stop_event.is_set():
            self.runs += 1
            self.run_once()
            self.stop_event.wait(self.interval)

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._thread = threading.Thread(target=self._loop, name="resync", daemon=True)
        self._thread.start()
        logger.info("Resync scheduler started", interval=self.interval)
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown; the current import stops before its next batch."""
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
