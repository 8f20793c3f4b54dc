"""
Document renderer.

Builds profile pages and sitemap XML from records. Templates are rendered
with jinja2 autoescaping switched on for both HTML and XML, so record text
such as ``O'Brien & <Co>`` always comes out as entities.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence, Tuple
from urllib.parse import quote

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from .schema import CandidateRecord

HTML = "text/html; charset=utf-8"
XML = "application/xml; charset=utf-8"

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"

TEMPLATES = {
    "profile.html": """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{{ c.name }} for {{ c.office }} ({{ c.state }}) | VoterSpheres</title>
<meta name="description" content="{{ c.name }}, {% if c.party %}{{ c.party }} {% endif %}candidate for {{ c.office }} in {{ c.state }}.">
<link rel="canonical" href="{{ url }}">
</head>
<body>
<article class="candidate" data-slug="{{ c.slug }}">
<h1>{{ c.name }}</h1>
{% if c.image_url %}<img src="{{ c.image_url }}" alt="{{ c.name }}">
{% endif %}<dl>
<dt>Office</dt><dd>{{ c.office }}</dd>
<dt>State</dt><dd>{{ c.state }}</dd>
{% if c.county %}<dt>County</dt><dd>{{ c.county }}</dd>
{% endif %}{% if c.district %}<dt>District</dt><dd>{{ c.district }}</dd>
{% endif %}{% if c.party %}<dt>Party</dt><dd>{{ c.party }}</dd>
{% endif %}{% if c.cycle %}<dt>Election</dt><dd>{{ c.cycle }}</dd>
{% endif %}{% if c.website %}<dt>Website</dt><dd><a href="{{ c.website }}" rel="nofollow noopener">{{ c.website }}</a></dd>
{% endif %}{% if c.email %}<dt>Email</dt><dd>{{ c.email }}</dd>
{% endif %}{% if c.phone %}<dt>Phone</dt><dd>{{ c.phone }}</dd>
{% endif %}</dl>
{% if c.updated_at %}<p class="updated">Last updated <time datetime="{{ c.updated_at.isoformat() }}">{{ c.updated_at.strftime('%Y-%m-%d') }}</time></p>
{% endif %}</article>
</body>
</html>
""",
    "urlset.xml": """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="{{ ns }}">
{% for loc, lastmod in entries %}<url><loc>{{ loc }}</loc>{% if lastmod %}<lastmod>{{ lastmod }}</lastmod>{% endif %}</url>
{% endfor %}</urlset>
""",
    "sitemapindex.xml": """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="{{ ns }}">
{% for loc, lastmod in entries %}<sitemap><loc>{{ loc }}</loc>{% if lastmod %}<lastmod>{{ lastmod }}</lastmod>{% endif %}</sitemap>
{% endfor %}</sitemapindex>
""",
}


@dataclass
class Document:
    """A rendered, cacheable artifact."""

    content_type: str
    body: str

    def to_dict(self) -> Dict[str, Any]:
        return {"content_type": self.content_type, "body": self.body}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(content_type=data["content_type"], body=data["body"])


def lastmod(value: datetime | None) -> str | None:
    """W3C datetime for <lastmod>; stored timestamps are naive UTC."""
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat() + "+00:00"


class DocumentRenderer:
    """Renders profile HTML and sitemap XML for a site rooted at ``base_url``."""

    def __init__(self, base_url: str = "https://voterspheres.org"):
        self.base_url = base_url.rstrip("/")
        self.env = Environment(
            loader=DictLoader(TEMPLATES),
            autoescape=select_autoescape(enabled_extensions=("html", "xml"), default=True),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def profile_url(self, slug: str) -> str:
        return f"{self.base_url}/candidates/{quote(slug, safe='')}"

    def chunk_url(self, n: int) -> str:
        return f"{self.base_url}/sitemaps/candidates-{int(n)}.xml"

    def page_url(self, path: str) -> str:
        return f"{self.base_url}/{quote(path.lstrip('/'), safe='/')}"

    def render_profile(self, record: CandidateRecord) -> Document:
        if not record.slug:
            raise ValueError("Cannot render a profile for a record without a slug")
        body = self.env.get_template("profile.html").render(c=record, url=self.profile_url(record.slug))
        return Document(content_type=HTML, body=body)

    def render_sitemap_chunk(self, rows: Iterable[Tuple[str, datetime | None]]) -> Document:
        """One <url> per (slug, updated_at) row."""
        entries: List[Tuple[str, str | None]] = [
            (self.profile_url(slug), lastmod(updated_at)) for slug, updated_at in rows
        ]
        body = self.env.get_template("urlset.xml").render(ns=SITEMAP_NS, entries=entries)
        return Document(content_type=XML, body=body)

    def render_sitemap_index(self, chunk_count: int, static_pages: Sequence[str] = (),
                             generated_at: datetime | None = None) -> Document:
        """
        Top-level index: one <sitemap> per record chunk, plus static pages.

        Static pages are listed as their own sitemap locations, e.g.
        ``sitemaps/static.xml``.
        """
        stamp = lastmod(generated_at)
        entries = [(self.chunk_url(n), stamp) for n in range(chunk_count)]
        entries.extend((self.page_url(p), stamp) for p in static_pages)
        body = self.env.get_template("sitemapindex.xml").render(ns=SITEMAP_NS, entries=entries)
        return Document(content_type=XML, body=body)

    def render_static_urlset(self, paths: Sequence[str], generated_at: datetime | None = None) -> Document:
        stamp = lastmod(generated_at)
        entries = [(self.page_url(p), stamp) for p in paths]
        body = self.env.get_template("urlset.xml").render(ns=SITEMAP_NS, entries=entries)
        return Document(content_type=XML, body=body)
