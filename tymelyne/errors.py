"""
TymeLyne - Error Taxonomy
Errors raised by the data client and caught at the service boundary.
"""

from typing import Optional


class TymeLyneError(Exception):
    """Base class for every error surfaced by the client core."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
        retryable: bool = False
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.retryable = retryable

    def __str__(self) -> str:
        return self.message


class AuthError(TymeLyneError):
    """Bad credentials, expired session or missing principal."""


class FetchError(TymeLyneError):
    """A read against the remote store failed."""


class MutationError(TymeLyneError):
    """An insert, update, upsert or delete failed."""


class NotFoundError(FetchError):
    """A single-row lookup matched no rows."""

    def __init__(self, message: str = "No rows found", **kwargs):
        kwargs.setdefault("code", "PGRST116")
        super().__init__(message, **kwargs)
