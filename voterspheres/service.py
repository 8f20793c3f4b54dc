"""
Read-side service used by the REST layer and the warm-job handlers.

Everything here returns something usable: a cached document, a freshly
rendered one, or NotFoundError for a slug that genuinely does not exist.
Cache faults never reach the caller.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .cache import CacheFacade, cache_key, search_key
from .database import Database
from .errors import ConfigError, NotFoundError
from .logger import get_logger
from .render import Document, DocumentRenderer
from .schema import CandidateRecord
from .sitemap import SitemapBuilder
from .storage import OPTION_FIELDS, SEARCH_FILTERS, CandidateStore

logger = get_logger()


def profile_key(slug: str) -> str:
    return cache_key("profile", slug)


def chunk_key(n: int) -> str:
    return cache_key("sitemap", "chunk", int(n))


INDEX_KEY = cache_key("sitemap", "index")
STATIC_KEY = cache_key("sitemap", "static")
TTL_KINDS = {
    "profile": "profile",
    "sitemap-chunk": "sitemap",
    "sitemap-index": "sitemap-index",
    "sitemap-static": "sitemap",
}


class DirectoryService:
    """Lookups, search and cached document access over the candidate store."""

    def __init__(
        self,
        db: Database,
        store: CandidateStore,
        cache: CacheFacade,
        renderer: DocumentRenderer,
        sitemaps: SitemapBuilder,
    ):
        self.db = db
        self.store = store
        self.cache = cache
        self.renderer = renderer
        self.sitemaps = sitemaps

    def lookup_by_slug(self, slug: str) -> Optional[CandidateRecord]:
        if not slug:
            return None
        return self.store.get_by_slug(slug)

    def search(self, filters: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """
        Filtered, paginated candidate search.

        Returns:
            {"results": [record dicts], "total": int}
        """
        filters = {
            k: v.strip() if isinstance(v, str) else v
            for k, v in (filters or {}).items() if k in SEARCH_FILTERS
        }
        filters = {k: v for k, v in filters.items() if v}

        def compute():
            records, total = self.store.search(filters, page=page, limit=limit)
            return {"results": [r.to_dict() for r in records], "total": total}

        return self.cache.get_or_compute(search_key(filters, page, limit), compute, kind="search")

    def dropdown_options(self, field: str) -> List[str]:
        """Distinct values for a filter dropdown; store errors degrade to []."""
        if field not in OPTION_FIELDS:
            raise ValueError(f"Unsupported option field: {field}")
        key = cache_key("options", field)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            values = self.store.distinct_values(field)
        except SQLAlchemyError as e:
            logger.error("Dropdown query failed", field=field, error=str(e))
            return []
        self.cache.set(key, values, kind="options")
        return values

    def _render(self, kind: str, key: str) -> Document:
        if kind == "profile":
            record = self.store.get_by_slug(key)
            if record is None:
                raise NotFoundError(f"No candidate with slug {key!r}")
            return self.renderer.render_profile(record)
        if kind == "sitemap-chunk":
            return self.sitemaps.build_chunk(_chunk_number(key))
        if kind == "sitemap-index":
            return self.sitemaps.build_index()
        if kind == "sitemap-static":
            return self.sitemaps.build_static()
        raise ValueError(f"Unknown document kind: {kind}")

    def _key_for(self, kind: str, key: str) -> str:
        if kind == "profile":
            return profile_key(key)
        if kind == "sitemap-chunk":
            return chunk_key(_chunk_number(key))
        if kind == "sitemap-index":
            return INDEX_KEY
        if kind == "sitemap-static":
            return STATIC_KEY
        raise ValueError(f"Unknown document kind: {kind}")

    def _ttl_kind(self, kind: str) -> str:
        return TTL_KINDS[kind]

    def get_cached_or_render(self, kind: str, key: str = "") -> Document:
        """
        Serve a document from cache, rendering and caching it on a miss.

        Raises:
            NotFoundError: If the slug or chunk does not exist
            ValueError: For an unknown document kind
        """
        cache_id = self._key_for(kind, key)
        cached = self.cache.get(cache_id)
        if cached is not None:
            try:
                return Document.from_dict(cached)
            except (KeyError, TypeError):
                logger.warning("Discarding malformed cached document", key=cache_id)
                self.cache.invalidate(cache_id)

        document = self._render(kind, key)
        self.cache.set(cache_id, document.to_dict(), kind=self._ttl_kind(kind))
        return document

    def warm(self, kind: str, key: str = "") -> Document:
        """Render and cache a document unconditionally."""
        document = self._render(kind, key)
        self.cache.set(self._key_for(kind, key), document.to_dict(), kind=self._ttl_kind(kind))
        return document

    def sitemap_index(self) -> Document:
        return self.get_cached_or_render("sitemap-index")

    def sitemap_chunk(self, n: int) -> Document:
        return self.get_cached_or_render("sitemap-chunk", str(n))

    def invalidate_profile(self, slug: str) -> None:
        self.cache.invalidate(profile_key(slug))

    def health(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {"cache": self.cache.status()}
        try:
            self.db.ping()
            status["database"] = "ok"
        except ConfigError as e:
            status["database"] = f"down: {e}"
        status["ok"] = status["database"] == "ok"
        return status


def _chunk_number(key: Any) -> int:
    try:
        n = int(key)
    except (TypeError, ValueError):
        raise NotFoundError(f"Sitemap chunk {key!r} does not exist")
    if n < 0:
        raise NotFoundError(f"Sitemap chunk {key!r} does not exist")
    return n
