"""Exception hierarchy for the ETWFE specification builder.

Every validation failure raised by :func:`etwfe.etwfe` derives from
:class:`ETWFEError`, itself a :class:`ValueError`, so callers can catch the
whole family or a single kind. Errors raised by the regression engine while
fitting are deliberately *not* part of this hierarchy; they propagate unchanged.
"""

from __future__ import annotations

__all__ = [
    "ETWFEError",
    "EmptyDataError",
    "InvalidFormulaError",
    "InvalidOptionError",
    "InvalidReferenceError",
    "ReferenceNotFoundError",
    "UnknownColumnError",
]


class ETWFEError(ValueError):
    """Base class for input validation errors raised before fitting."""


class InvalidFormulaError(ETWFEError):
    """The model formula cannot be parsed or has no outcome on the left."""


class UnknownColumnError(ETWFEError, KeyError):
    """A variable named in the call is not a column of the dataset."""

    def __str__(self) -> str:
        # KeyError quotes its message; keep the plain ValueError rendering.
        return str(self.args[0]) if self.args else ""


class InvalidReferenceError(ETWFEError):
    """A user supplied reference level is not observed in its column."""


class ReferenceNotFoundError(ETWFEError):
    """No group value exceeds the time horizon, so no reference can be chosen."""


class EmptyDataError(ETWFEError):
    """The dataset is empty or is not a DataFrame."""


class InvalidOptionError(ETWFEError):
    """An enumerated option (control group, FE mode) has an unknown value."""
