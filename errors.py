"""Errors raised by the consolidation engine and its contact store."""


class ConsolidationError(Exception):
    """Base class. ``status_code`` is what the HTTP layer answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ConsolidationError):
    """Neither an email nor a phone number was supplied."""

    status_code = 400


class NotFoundError(ConsolidationError):
    """A referenced contact id does not exist, or linkage is chained/cyclic.

    Means the stored groups are inconsistent; never retried.
    """

    status_code = 500


class ConflictError(ConsolidationError):
    """A concurrent submission holds the rows this one needs."""

    status_code = 503


class StoreUnavailableError(ConsolidationError):
    """The contact store failed for a reason other than lock contention."""

    status_code = 503
