"""
Typed domain errors for the dispatch services.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to JSON responses
without embedding business logic in the route handlers.

Expected business outcomes (no payment method on file, commission
skipped by policy) are *not* errors and never raise.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Malformed or out-of-range input (400)."""

    status_code = 400


class NotFoundError(DispatchError):
    """Resource not found (404)."""

    status_code = 404


class ConflictError(DispatchError):
    """Illegal state transition or competing bid acceptance (409)."""

    status_code = 409


class DependencyError(DispatchError):
    """Store unavailable or a required record is missing (503)."""

    status_code = 503
