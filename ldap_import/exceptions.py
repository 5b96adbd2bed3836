"""
Exceptions raised by the import engine.

Per-object errors are recorded in the import report and never abort a run.
Only DirectorySourceUnavailable is fatal to a run.
"""


class LdapImportError(Exception):
    """Base exception for import errors."""
    pass


class DirectorySourceUnavailable(LdapImportError):
    """Raised when the directory batch cannot be loaded."""
    pass


class MissingIdentifierError(LdapImportError):
    """Raised when a directory object has no resolvable GUID."""

    def __init__(self, rdn: str):
        self.rdn = rdn
        super().__init__(f"Directory object [{rdn}] has no resolvable GUID")


class HydrationError(LdapImportError):
    """Raised when a required mapped attribute is missing from a directory object."""

    def __init__(self, field: str, rdn: str, message: str = None):
        self.field = field
        self.rdn = rdn
        super().__init__(message or f"Required field '{field}' could not be hydrated for [{rdn}]")


class PersistenceError(LdapImportError):
    """Raised when the local store fails to persist a record."""
    pass


class UniquenessRaceError(PersistenceError):
    """Raised when an insert collides with an existing GUID."""
    pass
