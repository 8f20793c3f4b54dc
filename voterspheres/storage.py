"""
Candidate repository.

All reads and writes of the ``candidates`` table go through here. Writes are
keyed by slug; identifying fields are only ever set on insert.
"""

from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .database import Candidate, Database, utcnow
from .normalize import disambiguate_slug, normalize_party, normalize_state
from .schema import MUTABLE_FIELDS, CandidateRecord

SEARCH_FILTERS = ("q", "state", "county", "office", "party")
OPTION_FIELDS = ("state", "county", "office", "party")
MAX_PAGE_SIZE = 100


def _insert_for(dialect: str):
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ValueError(f"Unsupported database dialect for upsert: {dialect}")


def _same_individual_differs(existing: Candidate, record: CandidateRecord) -> bool:
    """True when provenance shows the stored row is a different person."""
    return (
        existing.source == record.source
        and bool(existing.source_id)
        and bool(record.source_id)
        and existing.source_id != record.source_id
    )


class CandidateStore:
    """Repository over the candidates table."""

    def __init__(self, db: Database):
        self.db = db
        self._insert = _insert_for(db.dialect)

    # Writes

    def resolve_slug(self, session: Session, record: CandidateRecord) -> Tuple[str, Optional[Candidate]]:
        """
        Pick the slug a record is stored under.

        Returns the slug and the existing row it maps to (None for a new row).
        A record whose base slug is held by a different individual from the
        same source gets the next free numeric suffix instead of being dropped.
        """
        base = record.compute_slug()
        if not base:
            raise ValueError("Record produces an empty slug")

        if record.source_id:
            known = session.execute(
                select(Candidate).where(
                    Candidate.source == record.source,
                    Candidate.source_id == record.source_id,
                    or_(Candidate.slug == base, Candidate.slug.like(f"{base}-%")),
                )
            ).scalars().first()
            if known is not None:
                return known.slug, known

        existing = session.execute(
            select(Candidate).where(Candidate.slug == base)
        ).scalar_one_or_none()
        if existing is None or not _same_individual_differs(existing, record):
            return base, existing

        taken = set(
            session.execute(
                select(Candidate.slug).where(Candidate.slug.like(f"{base}-%"))
            ).scalars()
        )
        taken.add(base)
        return disambiguate_slug(base, taken), None

    def upsert(self, session: Session, record: CandidateRecord, now: Optional[datetime] = None) -> str:
        """
        Insert a record or update its mutable fields, keyed by slug.

        Returns "inserted", "updated" or "unchanged". Sets ``record.slug``.
        """
        now = now or utcnow()
        slug, existing = self.resolve_slug(session, record)
        record.slug = slug

        values = record.column_values()
        stmt = self._insert(Candidate).values(slug=slug, created_at=now, updated_at=now, **values)
        # Missing values from a sparser source never erase stored contact data
        update_set = {
            field: func.coalesce(getattr(stmt.excluded, field), getattr(Candidate, field))
            for field in MUTABLE_FIELDS
        }
        changed = or_(*(
            and_(
                getattr(stmt.excluded, field).is_not(None),
                getattr(stmt.excluded, field).is_distinct_from(getattr(Candidate, field)),
            )
            for field in MUTABLE_FIELDS
        ))
        update_set["updated_at"] = case((changed, stmt.excluded.updated_at), else_=Candidate.updated_at)
        stmt = stmt.on_conflict_do_update(index_elements=[Candidate.slug], set_=update_set)
        session.execute(stmt)

        if existing is None:
            return "inserted"
        if any(
            values[field] is not None and values[field] != getattr(existing, field)
            for field in MUTABLE_FIELDS
        ):
            return "updated"
        return "unchanged"

    # Reads

    def get_by_slug(self, slug: str) -> Optional[CandidateRecord]:
        with self.db.session() as session:
            row = session.execute(
                select(Candidate).where(Candidate.slug == slug)
            ).scalar_one_or_none()
            return CandidateRecord.from_row(row) if row is not None else None

    def count(self) -> int:
        with self.db.session() as session:
            return session.execute(select(func.count(Candidate.id))).scalar_one()

    def search(self, filters: Optional[Dict[str, Any]], page: int = 1, limit: int = 10) -> Tuple[List[CandidateRecord], int]:
        """
        Filter candidates and return one page plus the total match count.

        Args:
            filters: Any of q (name substring), state, county, office, party
            page: 1-based page number
            limit: Page size, clamped to 1..100
        """
        filters = filters or {}
        page = max(1, int(page))
        limit = min(MAX_PAGE_SIZE, max(1, int(limit)))

        conditions = []
        q = (filters.get("q") or "").strip()
        if q:
            pattern = q.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            conditions.append(func.lower(Candidate.name).like(f"%{pattern}%", escape="\\"))
        state = normalize_state(filters.get("state"))
        if state:
            conditions.append(Candidate.state == state)
        party = normalize_party(filters.get("party"))
        if party:
            conditions.append(func.lower(Candidate.party) == party.lower())
        for field in ("county", "office"):
            value = (filters.get(field) or "").strip()
            if value:
                conditions.append(func.lower(getattr(Candidate, field)) == value.lower())

        with self.db.session() as session:
            total = session.execute(
                select(func.count(Candidate.id)).where(*conditions)
            ).scalar_one()
            rows = session.execute(
                select(Candidate)
                .where(*conditions)
                .order_by(Candidate.name.asc(), Candidate.slug.asc())
                .limit(limit)
                .offset((page - 1) * limit)
            ).scalars().all()
            return [CandidateRecord.from_row(r) for r in rows], total

    def sitemap_rows(self, offset: int, limit: int) -> List[Tuple[str, datetime]]:
        """(slug, updated_at) pairs ordered by slug, one sitemap chunk at a time."""
        with self.db.session() as session:
            return [
                (slug, updated_at)
                for slug, updated_at in session.execute(
                    select(Candidate.slug, Candidate.updated_at)
                    .order_by(Candidate.slug.asc())
                    .limit(limit)
                    .offset(offset)
                )
            ]

    def iter_slugs(self, page_size: int = 1000) -> Iterator[str]:
        """Walk every slug in order without holding the full set in memory."""
        last = None
        while True:
            with self.db.session() as session:
                stmt = select(Candidate.slug).order_by(Candidate.slug.asc()).limit(page_size)
                if last is not None:
                    stmt = stmt.where(Candidate.slug > last)
                slugs = session.execute(stmt).scalars().all()
            if not slugs:
                return
            yield from slugs
            last = slugs[-1]

    def distinct_values(self, field: str) -> List[str]:
        if field not in OPTION_FIELDS:
            raise ValueError(f"Unsupported option field: {field}")
        column = getattr(Candidate, field)
        with self.db.session() as session:
            return list(
                session.execute(
                    select(column).where(column.isnot(None)).distinct().order_by(column.asc())
                ).scalars()
            )
