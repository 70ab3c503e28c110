"""
Error Taxonomy
==============

Fatal errors (DataError, configuration problems) are raised immediately.
Per-fit failures inside a hyperparameter search are captured as SearchError
records against their (fold, config) pair and never abort the search.
"""


class StrandedError(Exception):
    """Base class for all pipeline errors."""


class DataError(StrandedError, ValueError):
    """Missing/invalid columns, empty data or a degenerate split/fold setup."""


class FitError(StrandedError, RuntimeError):
    """A model or recipe could not be fit, or received incompatible features."""


class SearchError(StrandedError):
    """
    A single (fold, config) unit of a search failed.

    Parameters
    ----------
    fold_id : str
        Fold the unit was scored on.
    config : str
        Hyperparameter assignment identifier (e.g. 'Config3').
    cause : Exception
        Underlying failure.
    """

    def __init__(self, fold_id: str, config: str, cause: Exception):
        self.fold_id = fold_id
        self.config = config
        self.cause = cause
        super().__init__(
            f"{config} failed on {fold_id}: {type(cause).__name__}: {cause}"
        )


class SelectionError(StrandedError):
    """No eligible hyperparameter assignment (or ensemble member) remains."""
