"""
Exception types shared across the directory core.
"""


class VoterSpheresError(Exception):
    """Base class for all directory errors."""
    pass


class ConfigError(VoterSpheresError):
    """Raised at startup when required configuration is missing or invalid."""
    pass


class SourceError(VoterSpheresError):
    """Raised when an upstream source returns an unusable response."""
    pass


class SourceUnavailableError(SourceError):
    """Raised when a source page keeps failing after all retries."""

    def __init__(self, message: str, page: int | None = None):
        super().__init__(message)
        self.page = page


class MalformedRecordError(VoterSpheresError):
    """Raised for a single record that cannot be converted or stored."""

    def __init__(self, errors: list[str], raw: dict | None = None):
        super().__init__("; ".join(errors))
        self.errors = errors
        self.raw = raw or {}


class NotFoundError(VoterSpheresError):
    """Raised when a slug or sitemap chunk does not exist."""
    pass
