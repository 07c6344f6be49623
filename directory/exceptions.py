"""Directory engine exceptions."""


class QueryValidationError(ValueError):
    """A ListingQuery was malformed. Raised before the store is queried."""


class SelfActionError(PermissionError):
    """An administrator tried to delete, deactivate or demote their own account."""
