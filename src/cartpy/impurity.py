"""
cartpy.impurity
===============

Label impurity measures used to score candidate splits.

Every measure works on a vector of weighted label counts.  ``impurity``
returns the measure on the normalised distribution; ``impurity_weighted``
rescales it by the total weight so that the two sides of a split can be added
together before dividing by the parent's weight.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np


class LabelImpurity(ABC):
    """Base class for impurity functions over weighted label counts."""

    name = "impurity"

    @abstractmethod
    def impurity(self, counts: np.ndarray) -> float:
        """Impurity of the label distribution described by ``counts``."""

    def impurity_weighted(self, counts: np.ndarray) -> float:
        counts = np.asarray(counts, dtype=float)
        return self.impurity(counts) * float(counts.sum())

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class GiniImpurity(LabelImpurity):
    """Gini impurity, ``1 - sum(p_i ** 2)``.  0 is pure."""

    name = "gini"

    def impurity(self, counts: np.ndarray) -> float:
        counts = np.asarray(counts, dtype=float)
        tot = counts.sum()
        if tot <= 0:
            return 0.0
        p = counts / tot
        return float(1.0 - np.sum(p * p))


class EntropyImpurity(LabelImpurity):
    """Shannon entropy in bits, ``-sum(p_i * log2(p_i))``.  0 is pure."""

    name = "entropy"

    def impurity(self, counts: np.ndarray) -> float:
        counts = np.asarray(counts, dtype=float)
        tot = counts.sum()
        if tot <= 0:
            return 0.0
        p = counts / tot
        p = p[p > 0]
        return float(-np.sum(p * np.log2(p)))


_CRITERIA = {
    "gini": GiniImpurity,
    "entropy": EntropyImpurity,
}


def get_impurity(criterion) -> LabelImpurity:
    """Resolve a criterion name (or pass through an instance).

    Raises
    ------
    ValueError
        If ``criterion`` is neither a known name nor a :class:`LabelImpurity`.
    """
    if isinstance(criterion, LabelImpurity):
        return criterion
    try:
        return _CRITERIA[str(criterion).lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown criterion {criterion!r}; expected one of {sorted(_CRITERIA)}"
        ) from None
