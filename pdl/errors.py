"""Typed failures raised by the PDL core."""

from __future__ import annotations


class PDLError(Exception):
    """Base class for all PDL failures."""

    suggestion = ""

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": type(self).__name__,
            "message": str(self),
            "suggestion": self.suggestion,
        }


class NotFound(PDLError, LookupError):
    """A project, phase, sprint or task identifier does not exist."""

    suggestion = "Check the identifier with get_roadmap or list_projects"


class InvariantViolation(PDLError, ValueError):
    """The requested change would break numbering, date or reference invariants."""

    suggestion = "Adjust the request so every phase and sprint keeps a valid owner"


class StorageFailure(PDLError):
    """The active storage backend could not read or write a project."""

    suggestion = "Check that the data directory exists and is writable"


class MigrationFailure(PDLError):
    """Moving private projects into the shared store did not complete."""

    suggestion = "The private store stays active; inspect the migration ledger"


class ConfigurationError(PDLError):
    """A ``PDL_*`` environment variable holds a value that cannot be used."""

    suggestion = "Fix or unset the named PDL_* environment variables"
