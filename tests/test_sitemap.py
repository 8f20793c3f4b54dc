"""
Tests for sitemap.py - chunked sitemap coverage.
"""

import xml.etree.ElementTree as ET

import pytest

from voterspheres.errors import NotFoundError
from voterspheres.ingest import IngestionCoordinator
from voterspheres.render import SITEMAP_NS
from voterspheres.sitemap import DEFAULT_CHUNK_SIZE, SitemapBuilder, chunk_count

from conftest import make_raws

NS = {"sm": SITEMAP_NS}


def locs(document):
    root = ET.fromstring(document.body.encode("utf-8"))
    return [el.text for el in root.iter(f"{{{SITEMAP_NS}}}loc")]


class TestChunkCount:
    """Test chunk arithmetic."""

    @pytest.mark.parametrize("total,size,expected", [
        (0, 10, 0),
        (1, 10, 1),
        (10, 10, 1),
        (11, 10, 2),
        (100_001, 50_000, 3),
    ])
    def test_ceil(self, total, size, expected):
        assert chunk_count(total, size) == expected

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            chunk_count(10, 0)


class TestSitemapBuilder:
    """Test index and chunk generation over stored records."""

    @pytest.fixture
    def loaded(self, db, store):
        IngestionCoordinator(db, store).upsert_batch(make_raws(23))
        return store

    def test_every_record_in_exactly_one_chunk(self, loaded, renderer):
        builder = SitemapBuilder(loaded, renderer, chunk_size=5)
        assert builder.chunk_count() == 5

        urls = []
        for n in range(builder.chunk_count()):
            urls.extend(locs(builder.build_chunk(n)))

        assert len(urls) == 23
        assert len(set(urls)) == 23
        assert urls == sorted(urls)

    def test_last_chunk_partial(self, loaded, renderer):
        builder = SitemapBuilder(loaded, renderer, chunk_size=5)
        assert len(locs(builder.build_chunk(4))) == 3

    def test_index_lists_chunks_and_static(self, loaded, renderer):
        builder = SitemapBuilder(loaded, renderer, chunk_size=10)
        assert locs(builder.build_index()) == [
            "https://example.org/sitemaps/candidates-0.xml",
            "https://example.org/sitemaps/candidates-1.xml",
            "https://example.org/sitemaps/candidates-2.xml",
            "https://example.org/sitemaps/static.xml",
        ]

    def test_out_of_range_chunk(self, loaded, renderer):
        builder = SitemapBuilder(loaded, renderer, chunk_size=10)
        with pytest.raises(NotFoundError):
            builder.build_chunk(3)
        with pytest.raises(NotFoundError):
            builder.build_chunk(-1)

    def test_empty_store(self, store, renderer):
        builder = SitemapBuilder(store, renderer, chunk_size=10)
        assert builder.chunk_count() == 0
        assert locs(builder.build_chunk(0)) == []
        assert locs(builder.build_index()) == ["https://example.org/sitemaps/static.xml"]

    def test_static_pages(self, store, renderer):
        builder = SitemapBuilder(store, renderer, static_pages=("", "about"))
        assert locs(builder.build_static()) == ["https://example.org/", "https://example.org/about"]

    def test_no_static_pages(self, store, renderer):
        builder = SitemapBuilder(store, renderer, static_pages=())
        assert locs(builder.build_index()) == []

    @pytest.mark.parametrize("size", [0, DEFAULT_CHUNK_SIZE + 1])
    def test_chunk_size_bounds(self, store, renderer, size):
        with pytest.raises(ValueError):
            SitemapBuilder(store, renderer, chunk_size=size)
