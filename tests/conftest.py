"""
Pytest configuration and shared fixtures.
"""

import pytest
from typing import Any, Dict, List, Optional

import redis
import requests

from voterspheres.cache import CacheFacade, LocalCache, RedisBackend
from voterspheres.database import init_database
from voterspheres.render import DocumentRenderer
from voterspheres.service import DirectoryService
from voterspheres.sitemap import SitemapBuilder
from voterspheres.storage import CandidateStore


def make_raw(**overrides) -> Dict[str, Any]:
    """Raw record as a source adapter would yield it."""
    data = {
        "name": "Jane Doe",
        "office": "Governor",
        "state": "Texas",
        "party": "dem",
        "cycle": 2024,
        "website": "janedoe.com",
        "source_id": "J-1",
    }
    data.update(overrides)
    return data


def make_raws(count: int, **overrides) -> List[Dict[str, Any]]:
    return [
        make_raw(name=f"Candidate {i:05d}", source_id=f"C-{i}", **overrides)
        for i in range(count)
    ]


class FakeRedis:
    """In-memory stand-in for redis.Redis; set ``down`` to simulate an outage."""

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, int] = {}
        self.down = False
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.down:
            raise redis.exceptions.ConnectionError("Connection refused")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value.encode("utf-8") if isinstance(value, str) else value
        self.ttls[key] = ttl
        return True

    def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    def ping(self):
        self._check()
        return True


class FakeResponse:
    def __init__(self, body: Any = None, status_code: int = 200, json_error: bool = False):
        self.body = body
        self.status_code = status_code
        self.json_error = json_error

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)

    def json(self):
        if self.json_error:
            raise ValueError("No JSON object could be decoded")
        return self.body


class FakeSession:
    """
    Scripted requests.Session.

    ``pages`` maps page number to a list of results; ``failures`` maps page
    number to a list of responses/exceptions consumed before the real page.
    """

    def __init__(self, pages: Dict[int, List[Dict[str, Any]]], failures: Optional[Dict[int, list]] = None):
        self.pages = pages
        self.failures = failures or {}
        self.requests: List[Dict[str, Any]] = []

    def get(self, url, params=None, timeout=None):
        self.requests.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        page = params["page"]
        pending = self.failures.get(page)
        if pending:
            outcome = pending.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return FakeResponse({
            "results": self.pages.get(page, []),
            "pagination": {"pages": len(self.pages)},
        })


class CountingStore(CandidateStore):
    """CandidateStore that counts read queries."""

    def __init__(self, db):
        super().__init__(db)
        self.reads = 0

    def get_by_slug(self, slug):
        self.reads += 1
        return super().get_by_slug(slug)

    def sitemap_rows(self, offset, limit):
        self.reads += 1
        return super().sitemap_rows(offset, limit)

    def count(self):
        self.reads += 1
        return super().count()

    def search(self, filters, page=1, limit=10):
        self.reads += 1
        return super().search(filters, page=page, limit=limit)


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database with tables created."""
    database = init_database(tmp_path / "test.db")
    yield database
    database.dispose()


@pytest.fixture
def store(db) -> CountingStore:
    return CountingStore(db)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache() -> CacheFacade:
    """Local-only cache (no Redis configured)."""
    return CacheFacade(local=LocalCache())


@pytest.fixture
def redis_cache(fake_redis) -> CacheFacade:
    return CacheFacade(primary=RedisBackend(fake_redis), local=LocalCache())


@pytest.fixture
def renderer() -> DocumentRenderer:
    return DocumentRenderer("https://example.org")


@pytest.fixture
def service(db, store, cache, renderer) -> DirectoryService:
    sitemaps = SitemapBuilder(store, renderer, chunk_size=3)
    return DirectoryService(db, store, cache, renderer, sitemaps)
