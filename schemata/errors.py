"""Exception taxonomy. Everything raised on purpose derives from SchemataError."""


class SchemataError(Exception):
    """Base class for schemata errors."""


class ValidationError(SchemataError, ValueError):
    """Unsafe or malformed identifier, definition, value or impact request."""


class NotFoundError(SchemataError, KeyError):
    """Record or model absent."""

    def __str__(self):
        # KeyError repr()s its argument; keep the plain message
        return str(self.args[0]) if self.args else ''


class ConflictError(SchemataError):
    """A transaction is already active on this store."""


class UnsupportedOperationError(SchemataError):
    """Unknown impact action, or a schema change that needs a full rebuild."""


class StorageError(SchemataError):
    """The SQLite engine rejected a generated statement."""
