"""Storage layer exceptions."""


class DatabaseError(Exception):
    """Raised when a storage operation fails."""
    pass


class DatabaseSchemaError(DatabaseError):
    """Raised when the schema cannot be created or migrated."""
    pass


class DuplicateKeyError(DatabaseError):
    """Raised when an insert violates a unique constraint."""
    def __init__(self, message: str, constraint: str = None):
        self.constraint = constraint
        super().__init__(message)
