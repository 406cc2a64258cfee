"""Exception types raised by the resolver.

Only `InvalidSelectionPath` and `InvalidTransition` are meant to escape the
package: they indicate a caller (or internal) bug. Everything else is caught
at the reconciler / engine boundary and turned into status information.
"""

from __future__ import annotations


class LocationError(Exception):
    """Base class for all resolver errors."""


class NoGpsData(LocationError):
    """The photo carries no usable GPS metadata (common, informational)."""


class GeocodingUnavailable(LocationError):
    """The geocoding provider failed, timed out, or found nothing."""

    def __init__(self, message: str, *, code: str = "GEOCODING_ERROR"):
        super().__init__(message)
        self.code = code


class ReferenceDataUnavailable(LocationError):
    """Administrative reference data could not be loaded."""


class InvalidSelectionPath(LocationError):
    """A child level was set without a valid parent selection."""


class InvalidTransition(LocationError):
    """The reconciliation state machine was asked for an illegal move."""
