from __future__ import annotations


class SchoolCalError(Exception):
    """Base class for errors raised by schoolcal."""


class ConfigurationError(SchoolCalError):
    pass


class SourceError(SchoolCalError):
    pass


class SourceUnavailableError(SourceError):
    """Transient failure talking to the source; the caller may retry."""


class SourceNotFoundError(SourceError):
    """The requested owner or feed does not exist; retrying will not help."""


class ArchiveCorruptError(SchoolCalError):
    pass
