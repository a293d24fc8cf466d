"""
cartpy._inverted
================

Column-major (inverted) view of the training data for one feature.

A :class:`FeatureColumn` lists the distinct values a feature takes over the
examples routed to a node, in ascending order.  Each value is an
:class:`InvertedFeature` carrying the ascending example ids that hold it and
the weighted label histogram over those ids, so a split search can sweep the
sorted values while only touching histograms.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ._buffer import IndexBuffer
from .exceptions import InvariantViolationError


def _histogram(indices: np.ndarray, labels: np.ndarray, weights: np.ndarray,
               n_labels: int) -> np.ndarray:
    return np.bincount(labels[indices], weights=weights[indices],
                       minlength=n_labels).astype(float, copy=False)


@dataclass(eq=False)
class InvertedFeature:
    """One distinct value of a feature and the examples that hold it."""
    value: float
    indices: np.ndarray
    label_counts: np.ndarray

    def __len__(self) -> int:
        return int(self.indices.shape[0])

    def __repr__(self) -> str:
        return (f"InvertedFeature(value={self.value}, n={len(self)}, "
                f"counts={self.label_counts.tolist()})")


@dataclass(eq=False)
class FeatureColumn:
    """Inverted index of a single feature.

    Parameters
    ----------
    feature_id : int
        Id of the feature in the dataset's feature map.
    labels : ndarray of int
        Label id of every example in the dataset (shared, read-only).
    weights : ndarray of float
        Weight of every example in the dataset (shared, read-only).
    n_labels : int
        Number of classes; the length of every histogram.
    entries : list[InvertedFeature]
        Distinct values in strictly ascending order.  Empty until
        :meth:`sort_and_compact` runs for a column built by observation.
    """
    feature_id: int
    labels: np.ndarray = field(repr=False)
    weights: np.ndarray = field(repr=False)
    n_labels: int
    entries: list = field(default_factory=list)

    def __post_init__(self):
        self._values: list = []
        self._indices: list = []

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def num_examples(self) -> int:
        return sum(len(e) for e in self.entries)

    @property
    def label_counts(self) -> np.ndarray:
        """Weighted label histogram over every example in the column."""
        total = np.zeros(self.n_labels, dtype=float)
        for entry in self.entries:
            total += entry.label_counts
        return total

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    def observe(self, value: float, example_index: int) -> None:
        """Record that example ``example_index`` has ``value`` for this feature."""
        self._values.append(np.array([value], dtype=float))
        self._indices.append(np.array([example_index], dtype=np.intp))

    def observe_many(self, values, example_indices) -> None:
        values = np.array(values, dtype=float).ravel()
        example_indices = np.array(example_indices, dtype=np.intp).ravel()
        if values.shape != example_indices.shape:
            raise ValueError("values and example_indices differ in length")
        self._values.append(values)
        self._indices.append(example_indices)

    def sort_and_compact(self) -> None:
        """Turn the observations into ascending, de-duplicated entries.

        Observations are ordered by value (ties by example id), equal values
        are merged into a single :class:`InvertedFeature` and their weighted
        histograms summed.  The pending observations are cleared afterwards;
        with none pending the existing entries are kept.
        """
        if not self._values:
            return
        values = np.concatenate(self._values)
        indices = np.concatenate(self._indices)
        self._values, self._indices = [], []
        if values.size == 0:
            self.entries = []
            return
        if np.unique(indices).size != indices.size:
            raise InvariantViolationError(
                f"Feature {self.feature_id} observed the same example more than once")

        order = np.lexsort((indices, values))
        values = values[order]
        indices = indices[order]
        # start of every run of equal values
        starts = np.concatenate(([0], np.flatnonzero(values[1:] != values[:-1]) + 1))
        group = np.zeros(values.size, dtype=np.intp)
        group[starts[1:]] = 1
        np.cumsum(group, out=group)

        counts = np.zeros((starts.size, self.n_labels), dtype=float)
        np.add.at(counts, (group, self.labels[indices]), self.weights[indices])

        bounds = np.append(starts, values.size)
        self.entries = [
            InvertedFeature(float(values[s]), indices[s:e].copy(), counts[g])
            for g, (s, e) in enumerate(zip(bounds[:-1], bounds[1:]))
        ]

    # ------------------------------------------------------------------
    # Partitioning
    # ------------------------------------------------------------------
    def _with_entries(self, entries: list) -> "FeatureColumn":
        return FeatureColumn(self.feature_id, self.labels, self.weights,
                             self.n_labels, entries)

    def _subset(self, entry: InvertedFeature, indices: np.ndarray) -> InvertedFeature:
        return InvertedFeature(entry.value, indices,
                               _histogram(indices, self.labels, self.weights, self.n_labels))

    def split(self, below: IndexBuffer, gather: IndexBuffer,
              marks: IndexBuffer) -> tuple["FeatureColumn", "FeatureColumn"]:
        """Partition the column into the examples in ``below`` and the rest.

        Parameters
        ----------
        below : IndexBuffer
            Ascending example ids going to the left child.
        gather : IndexBuffer
            Scratch buffer; receives every index of the column.
        marks : IndexBuffer
            Scratch membership table indexed by example id.  Must be zero on
            entry and is zero again on return.

        Returns
        -------
        (FeatureColumn, FeatureColumn)
            Left and right columns.  Per-entry index order is preserved and
            entries that fall wholly on one side are shared with ``self``.

        Raises
        ------
        InvariantViolationError
            If ``below`` names examples that are not in this column.
        """
        chosen = below.view()
        n = self.num_examples
        flat = gather.reserve(n)
        if n:
            np.concatenate([e.indices for e in self.entries], out=flat)

        hi = 0
        if n:
            hi = int(flat.max()) + 1
        if chosen.shape[0]:
            hi = max(hi, int(chosen[-1]) + 1)
        if marks.capacity < hi:
            marks.grow(hi)
        table = marks.storage
        table[chosen] = 1
        hit = table[flat] == 1
        table[chosen] = 0

        n_hit = int(np.count_nonzero(hit))
        if n_hit != chosen.shape[0]:
            raise InvariantViolationError(
                f"Feature {self.feature_id}: {chosen.shape[0]} ids routed left but "
                f"only {n_hit} present in the column")

        left, right = [], []
        offset = 0
        for entry in self.entries:
            m = len(entry)
            mask = hit[offset:offset + m]
            offset += m
            k = int(np.count_nonzero(mask))
            if k == m:
                left.append(entry)
            elif k == 0:
                right.append(entry)
            else:
                left.append(self._subset(entry, entry.indices[mask]))
                right.append(self._subset(entry, entry.indices[~mask]))
        return self._with_entries(left), self._with_entries(right)
