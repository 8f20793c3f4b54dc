from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .errors import MalformedRecordError
from .normalize import canonical_url, clean_text, compute_slug, normalize_party, normalize_state

REQUIRED_STR_FIELDS = ["name", "office", "state"]
OPTIONAL_STR_FIELDS = [
    "county",
    "district",
    "party",
    "website",
    "email",
    "phone",
    "image_url",
    "source",
    "source_id",
]

IDENTIFYING_FIELDS = ("name", "office", "state", "county", "district", "party", "cycle")
MUTABLE_FIELDS = ("website", "email", "phone", "image_url")

MAX_FIELD_LENGTH = 512


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def _valid_url(v: str) -> bool:
    p = urlparse(canonical_url(v) or "")
    return bool(p.scheme in ("http", "https") and p.netloc and "." in p.netloc)


def _parse_cycle(v: Any) -> Optional[int]:
    if v is None or (isinstance(v, str) and not v.strip()):
        return None
    if isinstance(v, (list, tuple)):
        # FEC style election_years: keep the latest cycle
        years = [_parse_cycle(x) for x in v]
        years = [y for y in years if y is not None]
        return max(years) if years else None
    year = int(str(v).strip())
    if not 1780 <= year <= 2200:
        raise ValueError(f"year out of range: {year}")
    return year


def validate_record(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    """
    errors: List[str] = []

    if not isinstance(data, dict):
        return ["Record must be a mapping"]

    for f in REQUIRED_STR_FIELDS:
        if f not in data or data[f] is None:
            errors.append(f"Missing required field: {f}")
        elif not _is_non_empty_str(data[f]):
            errors.append(f"Field '{f}' must be a non-empty string")

    for f in OPTIONAL_STR_FIELDS:
        v = data.get(f)
        if v is not None and not isinstance(v, (str, int)):
            errors.append(f"Field '{f}' must be a string if provided")

    for f in REQUIRED_STR_FIELDS + OPTIONAL_STR_FIELDS:
        v = data.get(f)
        if isinstance(v, str) and len(v) > MAX_FIELD_LENGTH:
            errors.append(f"Field '{f}' exceeds {MAX_FIELD_LENGTH} characters")

    cycle = data.get("cycle", data.get("year"))
    try:
        _parse_cycle(cycle)
    except (TypeError, ValueError):
        errors.append(f"Field 'year' must be an election year, got {cycle!r}")

    if _is_non_empty_str(data.get("website")) and not _valid_url(data["website"]):
        errors.append("Field 'website' must be a valid http(s) URL")

    return errors


@dataclass
class CandidateRecord:
    """A directory record as it crosses the ingestion and rendering boundaries."""

    name: str
    office: str
    state: str
    county: Optional[str] = None
    district: Optional[str] = None
    party: Optional[str] = None
    cycle: Optional[int] = None
    website: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    image_url: Optional[str] = None
    source: str = "import"
    source_id: Optional[str] = None
    slug: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_raw(cls, data: Dict[str, Any], source: Optional[str] = None) -> "CandidateRecord":
        """
        Validate and normalize a raw record.

        Raises:
            MalformedRecordError: If the record fails validation
        """
        errors = validate_record(data)
        if errors:
            raise MalformedRecordError(errors, raw=data if isinstance(data, dict) else None)

        def opt(key: str) -> Optional[str]:
            v = data.get(key)
            return clean_text(str(v)) or None if v is not None else None

        return cls(
            name=clean_text(data["name"]),
            office=clean_text(data["office"]),
            state=normalize_state(data["state"]),
            county=opt("county"),
            district=opt("district"),
            party=normalize_party(data.get("party")),
            cycle=_parse_cycle(data.get("cycle", data.get("year"))),
            website=canonical_url(data.get("website")),
            email=opt("email"),
            phone=opt("phone"),
            image_url=canonical_url(data.get("image_url")),
            source=opt("source") or source or "import",
            source_id=opt("source_id"),
        )

    @classmethod
    def from_row(cls, row) -> "CandidateRecord":
        """Build a record from a stored ``Candidate`` row."""
        return cls(
            name=row.name,
            office=row.office,
            state=row.state,
            county=row.county,
            district=row.district,
            party=row.party,
            cycle=row.cycle,
            website=row.website,
            email=row.email,
            phone=row.phone,
            image_url=row.image_url,
            source=row.source,
            source_id=row.source_id,
            slug=row.slug,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def compute_slug(self) -> str:
        return compute_slug(self.name, self.state, self.office, self.cycle)

    def column_values(self) -> Dict[str, Any]:
        """Values for the candidates table, excluding slug and timestamps."""
        return {
            k: getattr(self, k)
            for k in IDENTIFYING_FIELDS + MUTABLE_FIELDS + ("source", "source_id")
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateRecord":
        """Inverse of to_dict, used for cached search results."""
        values = dict(data)
        for key in ("created_at", "updated_at"):
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)
