import re
import unicodedata
from typing import Container

_DROP_CHARS = re.compile(r"['’‘`.]")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

STATE_CODES = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE",
    "nevada": "NV", "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM",
    "new york": "NY", "north carolina": "NC", "north dakota": "ND", "ohio": "OH",
    "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
    "american samoa": "AS", "guam": "GU", "northern mariana islands": "MP",
    "puerto rico": "PR", "virgin islands": "VI", "united states": "US",
}
_KNOWN_CODES = set(STATE_CODES.values())

PARTY_SYNS = {
    "dem": "Democratic",
    "d": "Democratic",
    "democrat": "Democratic",
    "democratic": "Democratic",
    "democratic party": "Democratic",
    "rep": "Republican",
    "r": "Republican",
    "republican": "Republican",
    "republican party": "Republican",
    "gop": "Republican",
    "lib": "Libertarian",
    "libertarian": "Libertarian",
    "libertarian party": "Libertarian",
    "grn": "Green",
    "green": "Green",
    "green party": "Green",
    "ind": "Independent",
    "i": "Independent",
    "independent": "Independent",
    "npa": "No Party Affiliation",
    "nonpartisan": "Nonpartisan",
}


def normalize_text(s: str | None) -> str:
    if not s:
        return ""
    return " ".join(s.strip().lower().split())


def clean_text(s: str | None) -> str:
    """Trim and collapse whitespace, keeping case."""
    if not s:
        return ""
    return " ".join(str(s).split())


def slugify(s: str | None) -> str:
    """Fold to lowercase ASCII and join alphanumeric runs with '-'.

    Apostrophes and periods are dropped rather than split on, so
    "O'Brien" and "Jr." become "obrien" and "jr".
    """
    if not s:
        return ""
    folded = unicodedata.normalize("NFKD", s).encode("ascii", "ignore").decode("ascii")
    folded = _DROP_CHARS.sub("", folded.lower())
    return _NON_ALNUM.sub("-", folded).strip("-")


def compute_slug(name: str, jurisdiction: str | None, office: str | None, cycle: int | str | None = None) -> str:
    """Derive the canonical record key from identifying attributes."""
    parts = [slugify(name), slugify(jurisdiction), slugify(office)]
    if cycle not in (None, ""):
        parts.append(slugify(str(cycle)))
    return "-".join(p for p in parts if p)


def disambiguate_slug(base: str, taken: Container[str]) -> str:
    """Return base, or the first base-N (N >= 2) not already taken."""
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


def normalize_state(state: str | None) -> str | None:
    s = normalize_text(state)
    if not s:
        return None
    if s.upper() in _KNOWN_CODES:
        return s.upper()
    return STATE_CODES.get(s, clean_text(state))


def normalize_party(party: str | None) -> str | None:
    p = normalize_text(party)
    if not p:
        return None
    return PARTY_SYNS.get(p, clean_text(party))


def canonical_url(url: str | None) -> str | None:
    """Trim a website value and add a scheme when one is missing."""
    u = (url or "").strip()
    if not u:
        return None
    if "://" not in u:
        u = f"https://{u}"
    return u
