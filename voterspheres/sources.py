"""Source adapters: a paginated JSON API and delimited flat files."""

import csv
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from .errors import SourceError, SourceUnavailableError
from .logger import get_logger
from .retry import RetryError, exponential_backoff, is_transient_error

logger = get_logger()

FILE_COLUMNS = ["name", "office", "state", "district", "party", "year", "website"]
OPTIONAL_FILE_COLUMNS = ["county", "email", "phone", "image_url", "source_id"]

FEC_OFFICES = {"H": "U.S. House", "S": "U.S. Senate", "P": "President"}


@dataclass
class Page:
    """One page of raw records from a paged source."""

    number: int
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: Optional[int] = None

    @property
    def has_more(self) -> bool:
        if not self.records:
            return False
        return self.pages is None or self.number < self.pages


def _first(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def is_transient_request_error(exc: Exception) -> bool:
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    return is_transient_error(exc)


def map_api_record(item: Dict[str, Any]) -> Dict[str, Any]:
    """Map a plain or FEC-shaped API result onto the record field names."""
    office = _first(item, "office_full", "office")
    if isinstance(office, str) and office in FEC_OFFICES:
        office = FEC_OFFICES[office]
    state = _first(item, "state", "jurisdiction")
    if state is None and office == "President":
        state = "US"
    source_id = _first(item, "candidate_id", "source_id", "id")
    return {
        "name": _first(item, "name", "full_name"),
        "office": office,
        "state": state,
        "county": _first(item, "county"),
        "district": _first(item, "district"),
        "party": _first(item, "party_full", "party"),
        "cycle": _first(item, "cycle", "year", "election_year", "election_years"),
        "website": _first(item, "website", "url"),
        "email": _first(item, "email"),
        "phone": _first(item, "phone"),
        "image_url": _first(item, "image_url", "photo_url"),
        "source_id": str(source_id) if source_id is not None else None,
    }


class PagedApiSource:
    """
    Reads ``GET {base}/candidates?page=N&per_page=M``.

    Responses look like ``{"results": [...], "pagination": {"pages": T}}``.
    Transient failures (timeouts, connection errors, 408/429/5xx) are retried
    with exponential backoff; a page that keeps failing raises
    SourceUnavailableError.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        per_page: int = 100,
        name: str = "api",
        path: str = "/candidates",
        timeout: float = 15,
        max_retries: int = 3,
        base_delay: float = 1.0,
        min_interval: float = 0.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.per_page = per_page
        self.name = name
        self.path = path
        self.timeout = timeout
        self.min_interval = min_interval
        self.session = session or requests.Session()
        self._sleep = sleep
        self._last_request = 0.0

        self._get_with_retry = exponential_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            exceptions=(requests.exceptions.RequestException,),
            retry_if=is_transient_request_error,
            on_retry=self._on_retry,
            sleep=sleep,
        )(self._get)

    def _on_retry(self, attempt: int, exc: Exception, delay: float):
        logger.warning(
            "Source request failed, retrying",
            source=self.name, attempt=attempt, delay=delay, error=str(exc),
        )
        logger.record_error(type(exc).__name__)

    def _throttle(self):
        if self.min_interval <= 0:
            return
        wait = self.min_interval - (time.monotonic() - self._last_request)
        if wait > 0:
            self._sleep(wait)

    def _get(self, page: int) -> requests.Response:
        self._throttle()
        params = {"page": page, "per_page": self.per_page}
        if self.api_key:
            params["api_key"] = self.api_key
        logger.record_api_call()
        self._last_request = time.monotonic()
        resp = self.session.get(f"{self.base_url}{self.path}", params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp

    def fetch_page(self, page: int) -> Page:
        """
        Fetch and map one page.

        Raises:
            SourceUnavailableError: After repeated transient failures
            SourceError: On a non-retryable HTTP error or an unreadable body
        """
        try:
            resp = self._get_with_retry(page)
        except RetryError as e:
            raise SourceUnavailableError(
                f"{self.name} page {page} failed after retries: {e.__cause__}", page=page
            ) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "HTTPError"
            raise SourceError(f"{self.name} request failed ({status}) on page {page}") from e
        except requests.exceptions.RequestException as e:
            raise SourceError(f"{self.name} request error on page {page}: {e}") from e

        try:
            body = resp.json()
        except ValueError as e:
            raise SourceError(f"{self.name} page {page} is not valid JSON") from e
        if not isinstance(body, dict):
            raise SourceError(f"{self.name} page {page} has an unexpected shape")

        results = body.get("results") or []
        pages = (body.get("pagination") or {}).get("pages")
        if pages is not None:
            try:
                pages = int(pages)
            except (TypeError, ValueError) as e:
                raise SourceError(f"{self.name} page {page} reports an invalid page count: {pages!r}") from e
        logger.increment("pages_fetched")
        return Page(
            number=page,
            records=[map_api_record(r) if isinstance(r, dict) else {"_raw": r} for r in results],
            pages=pages,
        )

    def iter_pages(self, start: int = 1) -> Iterator[Page]:
        """Yield pages in order until an empty page or the last reported page."""
        number = start
        while True:
            page = self.fetch_page(number)
            yield page
            if not page.has_more:
                return
            number += 1


class DelimitedFileSource:
    """
    Restartable lazy sequence of rows from a delimited file.

    Each iteration reopens the file, so a second pass starts from the top.
    Rows are yielded as dicts keyed by record field names; ``_line`` carries
    the 1-based line number for error reports.
    """

    def __init__(self, path: Path, delimiter: str = ",", encoding: str = "utf-8-sig", name: str = "csv"):
        self.path = Path(path)
        self.delimiter = delimiter
        self.encoding = encoding
        self.name = name

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        if not self.path.exists():
            raise SourceUnavailableError(f"Input file not found: {self.path}")

        with self.path.open("r", encoding=self.encoding, newline="") as f:
            reader = csv.DictReader(f, delimiter=self.delimiter)
            if reader.fieldnames is None:
                return
            header = {h: (h or "").strip().lower() for h in reader.fieldnames}
            missing = [c for c in ("name", "office", "state") if c not in header.values()]
            if missing:
                raise SourceError(f"{self.path} is missing columns: {', '.join(missing)}")

            for row in reader:
                mapped = {header[k]: v for k, v in row.items() if k in header}
                record = {c: mapped.get(c) for c in FILE_COLUMNS + OPTIONAL_FILE_COLUMNS}
                record["cycle"] = record.pop("year")
                if None in row:
                    # More values than header columns
                    record["_error"] = f"expected {len(header)} columns, got {len(header) + len(row[None])}"
                record["_line"] = reader.line_num
                yield record
