"""
Error taxonomy for the RBAC administration core.

Bulk partial failure and invalid dry-run outcomes are data
(``BulkAssignmentResult.errors`` and ``AssignmentValidationResult.is_valid``),
not exceptions.
"""
from typing import Optional


class RBACError(Exception):
    """Base class for errors raised by the RBAC core."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class FetchError(RBACError):
    """A read from the permission authority failed."""


class AssignmentError(RBACError):
    """The permission authority rejected a write."""


class InvalidTransition(RBACError):
    """A workflow operation was requested in a stage that does not allow it."""


class StaleResultIgnored(RBACError):
    """
    An in-flight call resolved after its caller lost interest.

    Only used to describe the dropped result in logs; never raised to callers.
    """
