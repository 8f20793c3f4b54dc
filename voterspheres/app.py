import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from . import __version__
from .cache import CacheFacade, LocalCache, RedisBackend, TTLPolicy
from .config import Settings
from .database import Database
from .env import load_env
from .errors import ConfigError, NotFoundError, SourceError
from .ingest import ImportStats, IngestionCoordinator, ResyncScheduler
from .jobs import JobEngine, JobQueue, WarmHandlers, enqueue_ids, enqueue_warm_all, schedule_pregeneration
from .logger import configure_logger, get_logger
from .render import DocumentRenderer
from .retry import BackoffPolicy
from .service import DirectoryService
from .sitemap import SitemapBuilder
from .sources import PagedApiSource
from .storage import OPTION_FIELDS, CandidateStore

logger = get_logger()

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


@dataclass
class Services:
    """Everything a command needs, built once per process."""

    settings: Settings
    db: Database
    store: CandidateStore
    cache: CacheFacade
    renderer: DocumentRenderer
    sitemaps: SitemapBuilder
    directory: DirectoryService
    queue: JobQueue
    coordinator: IngestionCoordinator

    def source(self) -> PagedApiSource:
        return PagedApiSource(
            self.settings.require_source(),
            api_key=self.settings.source_api_key,
            per_page=self.settings.per_page,
            name=self.settings.source_name,
        )

    def engine(self, concurrency: Optional[int] = None) -> JobEngine:
        return JobEngine(self.queue, WarmHandlers(self.directory),
                         concurrency=concurrency or self.settings.concurrency)


def build_services(settings: Settings) -> Services:
    db = Database(settings.database_url)
    store = CandidateStore(db)
    primary = RedisBackend.from_url(settings.redis_url) if settings.redis_url else None
    cache = CacheFacade(
        primary=primary,
        local=LocalCache(max_size=settings.local_cache_size),
        ttls=TTLPolicy(settings.ttls),
    )
    renderer = DocumentRenderer(settings.site_base_url)
    sitemaps = SitemapBuilder(store, renderer, chunk_size=settings.chunk_size)
    directory = DirectoryService(db, store, cache, renderer, sitemaps)
    queue = JobQueue(db, BackoffPolicy(max_attempts=settings.max_attempts, base_delay=2.0, max_delay=300.0))
    coordinator = IngestionCoordinator(db, store, batch_size=settings.batch_size)
    return Services(settings, db, store, cache, renderer, sitemaps, directory, queue, coordinator)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _report_import(stats: ImportStats) -> int:
    print(f"Imported: {stats.imported} (new {stats.inserted}, updated {stats.updated}, "
          f"no change {stats.unchanged})")
    if stats.skipped:
        print(f"Skipped: {stats.skipped}")
        for reason in stats.skip_reasons:
            where = f"line {reason['line']}" if "line" in reason else f"record {reason['index']}"
            print(f" - {where}: {reason['reason']}")
    if stats.cancelled:
        print("Import cancelled before completion")
    return stats.exit_code


def cmd_init_db(args: argparse.Namespace, services: Services) -> int:
    services.db.create_all()
    print(f"Database ready ({services.db.dialect})")
    return EXIT_OK


def cmd_import_api(args: argparse.Namespace, services: Services) -> int:
    services.db.create_all()
    try:
        stats = services.coordinator.import_from_paged_source(services.source(), start_page=args.start_page)
    except SourceError as e:
        print(f"Source failed: {e}", file=sys.stderr)
        return EXIT_FATAL
    return _report_import(stats)


def cmd_import_file(args: argparse.Namespace, services: Services) -> int:
    services.db.create_all()
    delimiter = "\t" if args.delimiter == "\\t" else args.delimiter
    try:
        stats = services.coordinator.import_from_file(Path(args.input), delimiter=delimiter, source=args.source)
    except SourceError as e:
        print(f"Source failed: {e}", file=sys.stderr)
        return EXIT_FATAL
    return _report_import(stats)


def cmd_resync(args: argparse.Namespace, services: Services) -> int:
    services.db.create_all()
    services.settings.require_source()
    scheduler = ResyncScheduler(services.coordinator, services.source,
                                interval=services.settings.resync_interval)
    if args.once:
        stats = scheduler.run_once()
        if stats is None:
            print(f"Resync failed: {scheduler.last_error}", file=sys.stderr)
            return EXIT_FATAL
        return _report_import(stats)

    thread = scheduler.start()
    try:
        while thread.is_alive():
            thread.join(1.0)
    except KeyboardInterrupt:
        print("Stopping resync after the current batch...")
        scheduler.stop()
    return EXIT_OK


def cmd_warm_all(args: argparse.Namespace, services: Services) -> int:
    services.db.create_all()
    added = enqueue_warm_all(services.queue, services.store, services.settings.chunk_size,
                             include_sitemaps=not args.profiles_only)
    print(f"Enqueued {added} warm jobs")
    if args.run:
        return _drain(services, args.concurrency)
    return EXIT_OK


def cmd_enqueue(args: argparse.Namespace, services: Services) -> int:
    services.db.create_all()
    slugs: List[str] = list(args.slug or [])
    if args.input:
        path = Path(args.input)
        if not path.exists():
            print(f"Input file not found: {path}", file=sys.stderr)
            return EXIT_FATAL
        with path.open("r", encoding="utf-8") as f:
            slugs.extend(line.strip() for line in f if line.strip())
    if not slugs:
        print("Nothing to enqueue. Pass --slug or --input.", file=sys.stderr)
        return EXIT_FATAL
    added = enqueue_ids(services.queue, slugs)
    print(f"Enqueued {added} of {len(slugs)} profiles")
    return EXIT_OK


def _drain(services: Services, concurrency: Optional[int]) -> int:
    stats = services.engine(concurrency).run_until_idle()
    print(f"Jobs: {stats.succeeded} succeeded, {stats.retried} retried, {stats.failed} failed")
    for job in services.queue.failed_jobs(limit=20):
        print(f" - {job['kind']} {job['target']}: {job['error']}")
    return EXIT_PARTIAL if stats.failed else EXIT_OK


def cmd_worker(args: argparse.Namespace, services: Services) -> int:
    services.db.create_all()
    requeued = services.queue.requeue_stale(active_for=args.stale_after)
    if requeued:
        print(f"Requeued {requeued} stale jobs")
    if args.retry_failed:
        print(f"Requeued {services.queue.retry_failed()} failed jobs")
    if args.until_idle:
        return _drain(services, args.concurrency)

    timer = None
    if args.pregen:
        timer = schedule_pregeneration(
            services.settings.pregen_delay,
            lambda: enqueue_warm_all(services.queue, services.store, services.settings.chunk_size),
        )
    engine = services.engine(args.concurrency)
    thread = engine.start()
    try:
        while thread.is_alive():
            thread.join(1.0)
    except KeyboardInterrupt:
        print("Stopping worker, waiting for in-flight jobs...")
        if timer is not None:
            timer.cancel()
        engine.stop()
    return EXIT_OK


def cmd_sitemap(args: argparse.Namespace, services: Services) -> int:
    try:
        if args.chunk is not None:
            document = services.directory.sitemap_chunk(args.chunk)
        else:
            document = services.directory.sitemap_index()
    except NotFoundError as e:
        print(str(e), file=sys.stderr)
        return EXIT_PARTIAL
    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(document.body, encoding="utf-8")
        print(f"Wrote {out}")
    else:
        sys.stdout.write(document.body)
    return EXIT_OK


def cmd_lookup(args: argparse.Namespace, services: Services) -> int:
    record = services.directory.lookup_by_slug(args.slug)
    if record is None:
        print(f"Not found: {args.slug}", file=sys.stderr)
        return EXIT_PARTIAL
    _print_json(record.to_dict())
    return EXIT_OK


def cmd_search(args: argparse.Namespace, services: Services) -> int:
    filters = {"q": args.q, "state": args.state, "county": args.county,
               "office": args.office, "party": args.party}
    _print_json(services.directory.search(filters, page=args.page, limit=args.limit))
    return EXIT_OK


def cmd_options(args: argparse.Namespace, services: Services) -> int:
    for value in services.directory.dropdown_options(args.field):
        print(value)
    return EXIT_OK


def cmd_health(args: argparse.Namespace, services: Services) -> int:
    status = services.directory.health()
    _print_json(status)
    return EXIT_OK if status["ok"] else EXIT_FATAL


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voterspheres", description="VoterSpheres candidate directory admin CLI")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")
    init = subparsers.add_parser("init-db", help="Create tables in the configured database")
    init.set_defaults(func=cmd_init_db)

    api = subparsers.add_parser("import-api", help="Import every page of the configured candidate API")
    api.add_argument("--start-page", type=int, default=1, help="First page to fetch (default: 1)")
    api.set_defaults(func=cmd_import_api)

    imp = subparsers.add_parser("import-file", help="Import candidates from a delimited file")
    imp.add_argument("--input", required=True, help="Path to CSV/TSV file")
    imp.add_argument("--delimiter", default=",", help="Field delimiter (default: ','; use '\\t' for tabs)")
    imp.add_argument("--source", default="csv", help="Provenance label stored with each record (default: csv)")
    imp.set_defaults(func=cmd_import_file)

    rsy = subparsers.add_parser("resync", help="Re-import from the API on RESYNC_INTERVAL")
    rsy.add_argument("--once", action="store_true", help="Run a single resync and exit")
    rsy.set_defaults(func=cmd_resync)

    wrm = subparsers.add_parser("warm-all", help="Enqueue warm jobs for every profile and sitemap chunk")
    wrm.add_argument("--profiles-only", action="store_true", help="Skip sitemap chunk jobs")
    wrm.add_argument("--run", action="store_true", help="Process the queue until idle after enqueuing")
    wrm.add_argument("--concurrency", type=int, help="Worker count (default: CONCURRENCY)")
    wrm.set_defaults(func=cmd_warm_all)

    enq = subparsers.add_parser("enqueue", help="Enqueue warm jobs for specific profiles")
    enq.add_argument("--slug", action="append", help="Profile slug (repeatable)")
    enq.add_argument("--input", help="Text file with one slug per line")
    enq.set_defaults(func=cmd_enqueue)

    wrk = subparsers.add_parser("worker", help="Run the background job engine")
    wrk.add_argument("--until-idle", action="store_true", help="Exit once the queue is drained")
    wrk.add_argument("--concurrency", type=int, help="Worker count (default: CONCURRENCY)")
    wrk.add_argument("--pregen", action="store_true", help="Enqueue warm-all after PREGEN_DELAY seconds")
    wrk.add_argument("--retry-failed", action="store_true", help="Requeue failed jobs before starting")
    wrk.add_argument("--stale-after", type=float, default=900, help="Requeue jobs active longer than this (seconds)")
    wrk.set_defaults(func=cmd_worker)

    smp = subparsers.add_parser("sitemap", help="Print or write the sitemap index or one chunk")
    smp.add_argument("--chunk", type=int, help="Chunk number (default: the index)")
    smp.add_argument("--output", help="Write to this path instead of stdout")
    smp.set_defaults(func=cmd_sitemap)

    lkp = subparsers.add_parser("lookup", help="Show one candidate by slug")
    lkp.add_argument("slug", help="Candidate slug")
    lkp.set_defaults(func=cmd_lookup)

    src = subparsers.add_parser("search", help="Search candidates")
    src.add_argument("--q", help="Name substring")
    src.add_argument("--state", help="State code")
    src.add_argument("--county", help="County")
    src.add_argument("--office", help="Office")
    src.add_argument("--party", help="Party")
    src.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    src.add_argument("--limit", type=int, default=10, help="Results per page, 1-100 (default: 10)")
    src.set_defaults(func=cmd_search)

    opt = subparsers.add_parser("options", help="List distinct values for a filter dropdown")
    opt.add_argument("field", choices=OPTION_FIELDS, help="Field to list")
    opt.set_defaults(func=cmd_options)

    hlt = subparsers.add_parser("health", help="Check database and cache connectivity")
    hlt.set_defaults(func=cmd_health)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    # Load .env if present (DATABASE_URL, REDIS_URL, SOURCE_API_BASE, etc.)
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return EXIT_OK

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_OK

    try:
        settings = Settings.from_env()
        configure_logger(level=settings.log_level, log_dir=settings.log_dir)
        services = build_services(settings)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FATAL

    try:
        return args.func(args, services)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FATAL
    finally:
        logger.log_metrics_summary()
        services.db.dispose()


if __name__ == "__main__":
    sys.exit(main())
