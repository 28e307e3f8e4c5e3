"""
Error Taxonomy

Every failure surfaced by the stores carries a human-readable message.
The HTTP layer maps each class to a status code.
"""

from typing import Optional


class TableOrderError(Exception):
    """Base class for all errors raised by the ordering stores."""

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        return self.message


class NotFound(TableOrderError):
    """A restaurant slug, menu item or order could not be resolved."""


class ValidationFailure(TableOrderError):
    """The request was rejected locally or by a store constraint."""


class TransientRemoteFailure(TableOrderError):
    """Network or service error while reading or writing the remote store."""


class SubscriptionFailure(TableOrderError):
    """The change feed lost its connection."""
