"""
cartpy.dataset
==============

Sparse, weighted training examples and the immutable id mappings that go
with them.

Features and labels are referred to by integer ids everywhere inside the
training engine.  :class:`FeatureMap` and :class:`LabelMap` fix those ids
once, and each :class:`Example` stores only its non-zero features as
ascending ``(feature_id, value)`` pairs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

import numpy as np


class FeatureMap:
    """Immutable mapping between feature names and ids ``0..n-1``."""

    def __init__(self, names: Iterable[str]):
        self._names = tuple(str(n) for n in names)
        self._ids = {n: i for i, n in enumerate(self._names)}
        if len(self._ids) != len(self._names):
            raise ValueError("feature names must be unique")

    @property
    def names(self) -> tuple:
        return self._names

    def id_of(self, name: str) -> int:
        return self._ids[name]

    def name_of(self, feature_id: int) -> str:
        return self._names[feature_id]

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self):
        return iter(self._names)

    def __repr__(self) -> str:
        return f"FeatureMap(n_features={len(self)})"


class LabelMap:
    """Immutable mapping between label values and ids ``0..k-1``.

    The id order is the order in which labels are passed in.  It is also the
    tie-break order when a leaf picks its predicted label.
    """

    def __init__(self, labels: Iterable):
        self._labels = tuple(labels)
        self._ids = {lab: i for i, lab in enumerate(self._labels)}
        if len(self._ids) != len(self._labels):
            raise ValueError("labels must be unique")

    @classmethod
    def from_labels(cls, y) -> "LabelMap":
        """Build a map over the sorted distinct values of ``y``."""
        return cls(np.unique(np.asarray(y)).tolist())

    @property
    def labels(self) -> tuple:
        return self._labels

    def id_of(self, label) -> int:
        return self._ids[label]

    def label_of(self, label_id: int):
        return self._labels[label_id]

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self):
        return iter(self._labels)

    def __repr__(self) -> str:
        return f"LabelMap({list(self._labels)!r})"


@dataclass(frozen=True, eq=False)
class Example:
    """A weighted, sparse training example.

    ``feature_ids`` should be strictly ascending; the training engine checks
    this and aborts if it is not.
    """
    feature_ids: np.ndarray
    values: np.ndarray
    label_id: int
    weight: float = 1.0

    def __len__(self) -> int:
        return int(self.feature_ids.shape[0])


class Dataset:
    """An immutable sequence of :class:`Example` with its id mappings."""

    def __init__(self, feature_map: FeatureMap, label_map: LabelMap,
                 examples: Sequence[Example]):
        self.feature_map = feature_map
        self.label_map = label_map
        self.examples = tuple(examples)
        self.labels = np.fromiter((e.label_id for e in self.examples),
                                  count=len(self.examples), dtype=np.intp)
        self.weights = np.fromiter((e.weight for e in self.examples),
                                   count=len(self.examples), dtype=float)
        self.labels.setflags(write=False)
        self.weights.setflags(write=False)

    def __len__(self) -> int:
        return len(self.examples)

    def __iter__(self):
        return iter(self.examples)

    def __getitem__(self, i) -> Example:
        return self.examples[i]

    def __repr__(self) -> str:
        return (f"Dataset(n_examples={len(self)}, n_features={len(self.feature_map)}, "
                f"n_labels={len(self.label_map)})")

    @property
    def weight_sum(self) -> float:
        return float(self.weights.sum())

    def label_counts(self) -> np.ndarray:
        """Weighted count of each label id."""
        return np.bincount(self.labels, weights=self.weights,
                           minlength=len(self.label_map)).astype(float, copy=False)

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------
    @staticmethod
    def _weights(sample_weight, n: int) -> np.ndarray:
        if sample_weight is None:
            return np.ones(n, dtype=float)
        w = np.asarray(sample_weight, dtype=float)
        if w.shape != (n,):
            raise ValueError("sample_weight must have the same length as y")
        if np.any(w < 0):
            raise ValueError("sample_weight must be non-negative")
        return w

    @staticmethod
    def _label_ids(lmap: LabelMap, y) -> list:
        try:
            return [lmap.id_of(label) for label in y]
        except KeyError as exc:
            raise ValueError(f"label {exc.args[0]!r} is not in the label map") from None

    @classmethod
    def from_arrays(cls, X, y, sample_weight=None, feature_names=None,
                    label_map: LabelMap | None = None) -> "Dataset":
        """Build a dataset from a dense matrix, dropping zero entries.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Numeric inputs.
        y : array-like of shape (n_samples,)
            Class labels.
        sample_weight : array-like of shape (n_samples,), optional
            Per-example weights; defaults to 1.
        feature_names : list[str], optional
            Defaults to ``f0, f1, ...``.
        label_map : LabelMap, optional
            Defaults to the sorted distinct values of ``y``.
        """
        X = np.asarray(X, dtype=float)
        y = np.asarray(y)
        if X.ndim != 2:
            raise ValueError("X must be a 2D array")
        n, n_features = X.shape
        if y.shape != (n,):
            raise ValueError("X and y have inconsistent numbers of samples")
        if np.isnan(X).any():
            raise ValueError("X contains NaN; missing values are not supported")
        if feature_names is None:
            feature_names = [f"f{i}" for i in range(n_features)]
        elif len(feature_names) != n_features:
            raise ValueError("feature_names length must match X.shape[1]")
        w = cls._weights(sample_weight, n)
        fmap = FeatureMap(feature_names)
        lmap = label_map if label_map is not None else LabelMap.from_labels(y)

        examples = []
        for row, label_id, weight in zip(X, cls._label_ids(lmap, y.tolist()), w):
            ids = np.flatnonzero(row)
            examples.append(Example(ids, row[ids], label_id, float(weight)))
        return cls(fmap, lmap, examples)

    @classmethod
    def from_records(cls, records: Sequence[Mapping[str, float]], y,
                     sample_weight=None, label_map: LabelMap | None = None) -> "Dataset":
        """Build a dataset from sparse ``{feature_name: value}`` rows.

        Feature ids follow the sorted order of every name seen; features a
        row omits are implicitly zero.
        """
        y = np.asarray(y)
        if len(records) != y.shape[0]:
            raise ValueError("records and y have inconsistent numbers of samples")
        w = cls._weights(sample_weight, len(records))
        fmap = FeatureMap(sorted({name for rec in records for name in rec}))
        lmap = label_map if label_map is not None else LabelMap.from_labels(y)

        examples = []
        for rec, label_id, weight in zip(records, cls._label_ids(lmap, y.tolist()), w):
            pairs = sorted((fmap.id_of(k), float(v)) for k, v in rec.items() if v != 0)
            ids = np.array([p[0] for p in pairs], dtype=np.intp)
            vals = np.array([p[1] for p in pairs], dtype=float)
            examples.append(Example(ids, vals, label_id, float(weight)))
        return cls(fmap, lmap, examples)
