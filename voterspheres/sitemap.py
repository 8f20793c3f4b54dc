"""
Sitemap builder.

The index is derived from the record count alone; each chunk is one
ordered LIMIT/OFFSET slice of the candidates table. Chunks never depend on
each other, so any chunk can be rebuilt or cached independently.
"""

import math
from typing import Sequence

from .database import utcnow
from .errors import NotFoundError
from .render import Document, DocumentRenderer
from .storage import CandidateStore

DEFAULT_CHUNK_SIZE = 50_000  # sitemap protocol limit per document
STATIC_SITEMAP = "sitemaps/static.xml"
STATIC_PAGES = ("", "search", "candidates", "about")


def chunk_count(total: int, chunk_size: int) -> int:
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    return math.ceil(total / chunk_size) if total > 0 else 0


class SitemapBuilder:
    def __init__(
        self,
        store: CandidateStore,
        renderer: DocumentRenderer,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        static_pages: Sequence[str] = STATIC_PAGES,
    ):
        if not 1 <= chunk_size <= DEFAULT_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be between 1 and {DEFAULT_CHUNK_SIZE}")
        self.store = store
        self.renderer = renderer
        self.chunk_size = chunk_size
        self.static_pages = tuple(static_pages)

    def chunk_count(self) -> int:
        return chunk_count(self.store.count(), self.chunk_size)

    def build_index(self) -> Document:
        """<sitemapindex> with one entry per record chunk plus the static sitemap."""
        extra = (STATIC_SITEMAP,) if self.static_pages else ()
        return self.renderer.render_sitemap_index(self.chunk_count(), extra, generated_at=utcnow())

    def build_chunk(self, n: int) -> Document:
        """
        <urlset> for records [n * chunk_size, (n + 1) * chunk_size) ordered by slug.

        Raises:
            NotFoundError: If chunk n is outside the current record set
        """
        if n < 0:
            raise NotFoundError(f"Sitemap chunk {n} does not exist")
        rows = self.store.sitemap_rows(offset=n * self.chunk_size, limit=self.chunk_size)
        if not rows and n > 0:
            raise NotFoundError(f"Sitemap chunk {n} does not exist")
        return self.renderer.render_sitemap_chunk(rows)

    def build_static(self) -> Document:
        return self.renderer.render_static_urlset(self.static_pages, generated_at=utcnow())
