"""
PopDiff Errors Module

Exception types raised by the analysis modules and the marker used for
statistics that cannot be computed.
"""

import pandas as pd


# Statistics that are undefined (monomorphic loci, self comparisons) are
# reported with this marker instead of a number.
NOT_APPLICABLE = pd.NA


class PopDiffError(Exception):
    """Base class for all popdiff errors."""


class SchemaError(PopDiffError):
    """Malformed or inconsistent input (sequences, strata, distance matrices)."""


class UndefinedStatistic(PopDiffError):
    """A statistic has no numeric value for the supplied data."""


class InsufficientDataError(PopDiffError):
    """Fewer than two populations, or an empty population."""


def is_not_applicable(value) -> bool:
    """Return True if value is the not-applicable marker."""
    return value is NOT_APPLICABLE
