"""Account storage and registration exceptions.

Authentication failures are not exceptions -- they come back as AuthResult
values. These cover the cases a caller cannot recover from inline.
"""


class StorageError(Exception):
    """The account store failed (connection, SQL, disk). Not retried here."""


class AccountConflictError(StorageError):
    """A write would break handle or email uniqueness."""


class StaleAccountError(StorageError):
    """An update was based on an outdated Account version."""


class RegistrationError(ValueError):
    """User-correctable registration problem. str(exc) is safe to display."""
