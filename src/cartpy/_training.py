"""
cartpy._training
================

Training-time engine for a single CART classification tree.

The training data is inverted once into one :class:`FeatureColumn` per
feature.  A :class:`TrainingNode` owns the columns for the examples routed to
it, searches them for the ``(feature, threshold)`` pair minimising the
weighted impurity of the two partitions, and on success hands a partitioned
copy of every column to two child nodes.  Nodes live in a
:class:`TrainingArena` that is finally converted into the immutable
:mod:`cartpy.nodes` tree.

Training nodes are scratch objects: they refuse to be pickled.
"""

from __future__ import annotations

import logging
import pickle

import numpy as np

from ._buffer import IndexBuffer, ScratchArena
from ._inverted import FeatureColumn
from .dataset import Dataset, LabelMap
from .exceptions import InvariantViolationError
from .impurity import LabelImpurity
from .nodes import LeafNode, Node, SplitNode

logger = logging.getLogger(__name__)

# Candidate partitions whose weighted impurity is not above this are ignored.
# Note this rejects pure partitions too, not only empty ones.
IMPURITY_FLOOR = 1e-10


# -----------------------------------------------------------------------------
# Inversion
# -----------------------------------------------------------------------------
def densify(feature_ids, values, num_features: int, out: np.ndarray | None = None) -> np.ndarray:
    """Merge a sparse example into the dense feature range ``0..num_features-1``.

    Ids absent from ``feature_ids`` are zero in the result.

    Raises
    ------
    InvariantViolationError
        If ``feature_ids`` is not strictly ascending or holds ids outside the
        feature range.
    """
    ids = np.asarray(feature_ids, dtype=np.intp)
    vals = np.asarray(values, dtype=float)
    if ids.shape != vals.shape:
        raise InvariantViolationError("feature ids and values differ in length")
    if ids.size > 1:
        step = np.diff(ids)
        if np.any(step < 0):
            pos = int(np.flatnonzero(step < 0)[0])
            raise InvariantViolationError(
                f"Features aren't ordered: id {ids[pos + 1]} follows {ids[pos]}")
        if np.any(step == 0):
            pos = int(np.flatnonzero(step == 0)[0])
            raise InvariantViolationError(f"Features are repeated: id {ids[pos]}")
    if ids.size and (ids[0] < 0 or ids[-1] >= num_features):
        raise InvariantViolationError(
            f"Feature ids must lie in [0, {num_features}), got {ids.tolist()}")
    if out is None:
        out = np.zeros(num_features, dtype=float)
    else:
        out[:] = 0.0
    out[ids] = vals
    return out


def invert_data(dataset: Dataset) -> list[FeatureColumn]:
    """Transform the row-major ``dataset`` into one sorted column per feature.

    This de-sparsifies the data (zeros are explicit in the columns), so
    memory grows with ``n_examples * n_features``.
    """
    n_features = len(dataset.feature_map)
    n_labels = len(dataset.label_map)
    n_examples = len(dataset)
    labels, weights = dataset.labels, dataset.weights

    logger.debug("Building initial columns for %d features and %d classes",
                 n_features, n_labels)
    dense = np.zeros((n_examples, n_features), dtype=float)
    for i, example in enumerate(dataset):
        try:
            densify(example.feature_ids, example.values, n_features, out=dense[i])
        except InvariantViolationError:
            logger.error("Example %d = %r", i, example)
            raise
        if i % 1000 == 0:
            logger.debug("Processed example %d", i)

    columns = []
    all_ids = np.arange(n_examples, dtype=np.intp)
    for j in range(n_features):
        column = FeatureColumn(j, labels, weights, n_labels)
        column.observe_many(dense[:, j], all_ids)
        columns.append(column)

    logger.debug("Sorting features")
    for column in columns:
        column.sort_and_compact()
    logger.debug("Built initial columns")
    return columns


# -----------------------------------------------------------------------------
# Training node
# -----------------------------------------------------------------------------
def sweep(column: FeatureColumn, total: np.ndarray):
    """Yield ``(j, less_than, greater_than)`` for each boundary of ``column``.

    Boundary ``j`` separates entries ``0..j`` from ``j+1..``.  Both
    histograms are updated in place and reused between steps.
    """
    less = np.zeros_like(total)
    greater = total.copy()
    entries = column.entries
    for j in range(len(entries) - 1):
        counts = entries[j].label_counts
        np.add(less, counts, out=less)
        np.subtract(greater, counts, out=greater)
        yield j, less, greater


class TrainingNode:
    """A node of the tree while it is being grown.

    Parameters
    ----------
    impurity : LabelImpurity
        Impurity function used to score splits.
    columns : list[FeatureColumn]
        One column per feature, covering exactly this node's examples.
    num_examples : int
        Number of examples routed to this node.
    depth : int
        Depth of the node; the root is 0.
    label_map : LabelMap
        Label ids used by the columns.
    label_counts : ndarray, optional
        Weighted label histogram of the node.  Computed from the first column
        when omitted.
    """

    def __init__(self, impurity: LabelImpurity, columns: list, num_examples: int,
                 depth: int, label_map: LabelMap, label_counts: np.ndarray | None = None):
        self.impurity = impurity
        self.columns = columns
        self.num_examples = int(num_examples)
        self.depth = int(depth)
        self.label_map = label_map
        if label_counts is None:
            label_counts = columns[0].label_counts
        self.weighted_label_counts = np.asarray(label_counts, dtype=float)
        self.impurity_score = impurity.impurity(self.weighted_label_counts)
        self.split_feature: int | None = None
        self.split_value: float | None = None

    @classmethod
    def from_dataset(cls, impurity: LabelImpurity, dataset: Dataset) -> "TrainingNode":
        """Root node: inverts ``dataset`` into its feature columns."""
        return cls(impurity, invert_data(dataset), len(dataset), 0,
                   dataset.label_map, dataset.label_counts())

    def __repr__(self) -> str:
        return (f"TrainingNode(depth={self.depth}, num_examples={self.num_examples}, "
                f"impurity={self.impurity_score:.4f}, split={self.is_split})")

    def __reduce_ex__(self, protocol):
        raise pickle.PicklingError(
            "TrainingNode is a runtime class only, and should not be serialized.")

    @property
    def is_split(self) -> bool:
        return self.split_feature is not None

    @property
    def weight_sum(self) -> float:
        return float(self.weighted_label_counts.sum())

    def release(self) -> None:
        """Drop the per-feature data; the node's statistics stay."""
        self.columns = None

    # ------------------------------------------------------------------
    # Split search
    # ------------------------------------------------------------------
    def build_tree(self, feature_ids, rng, use_random_split_points: bool,
                   scaled_min_impurity_decrease: float,
                   scratch: ScratchArena | None = None) -> list["TrainingNode"]:
        """Search ``feature_ids`` for the best split and apply it.

        Parameters
        ----------
        feature_ids : sequence of int
            Features to consider, in the order ties are broken.
        rng : numpy.random.RandomState
            Used only when ``use_random_split_points`` is true.
        use_random_split_points : bool
            Evaluate one random boundary per feature instead of all of them.
        scaled_min_impurity_decrease : float
            Minimum ``weight_sum * (impurity - best_score)`` for a split to be
            accepted, already scaled by the dataset's weight sum.
        scratch : ScratchArena, optional
            Buffers owned by the calling worker; a fresh arena is created when
            omitted.

        Returns
        -------
        list[TrainingNode]
            ``[left, right]`` if the node was split, otherwise ``[]``.  The
            node's columns are released in both cases.
        """
        if self.columns is None:
            raise RuntimeError("split search already ran on this node")
        if use_random_split_points:
            best_id, best_value, best_score = self._search_random(feature_ids, rng)
        else:
            best_id, best_value, best_score = self._search_greedy(feature_ids)

        decrease = self.weight_sum * (self.impurity_score - best_score)
        if best_id is not None and decrease >= scaled_min_impurity_decrease:
            output = self._split_at_best(best_id, best_value,
                                         scratch if scratch is not None else ScratchArena())
        else:
            output = []
        self.release()
        return output

    def _score(self, less: np.ndarray, greater: np.ndarray) -> float | None:
        # weighted impurities add up across partitions; divide once by the total
        less_score = self.impurity.impurity_weighted(less)
        greater_score = self.impurity.impurity_weighted(greater)
        if less_score > IMPURITY_FLOOR and greater_score > IMPURITY_FLOOR:
            return (less_score + greater_score) / self.weight_sum
        return None

    def _search_greedy(self, feature_ids):
        best_id, best_value = None, 0.0
        best_score = self.impurity_score
        for fid in feature_ids:
            column = self.columns[fid]
            entries = column.entries
            for j, less, greater in sweep(column, self.weighted_label_counts):
                score = self._score(less, greater)
                if score is not None and score < best_score:
                    best_id = int(fid)
                    best_score = score
                    best_value = (entries[j].value + entries[j + 1].value) / 2.0
        return best_id, best_value, best_score

    def _search_random(self, feature_ids, rng):
        best_id, best_value = None, 0.0
        best_score = self.impurity_score
        for fid in feature_ids:
            entries = self.columns[fid].entries
            # a single distinct value cannot be split
            if len(entries) < 2:
                continue
            split_idx = int(rng.randint(0, len(entries) - 1))
            less = np.zeros_like(self.weighted_label_counts)
            for entry in entries[:split_idx + 1]:
                less += entry.label_counts
            greater = self.weighted_label_counts - less
            score = self._score(less, greater)
            if score is not None and score < best_score:
                best_id = int(fid)
                best_score = score
                best_value = (entries[split_idx].value + entries[split_idx + 1].value) / 2.0
        return best_id, best_value, best_score

    # ------------------------------------------------------------------
    # Split materialisation
    # ------------------------------------------------------------------
    def _split_at_best(self, feature_id: int, split_value: float,
                       scratch: ScratchArena) -> list["TrainingNode"]:
        self.split_feature = feature_id
        self.split_value = float(split_value)

        scratch.reset()
        below, buffer = scratch.below, scratch.swap
        for entry in self.columns[feature_id]:
            if entry.value >= split_value:
                break
            IndexBuffer.merge(below, entry.indices, buffer)
            below, buffer = buffer, below

        logger.debug("Splitting on feature %d at %.6g, depth %d, %d examples (%d left)",
                     feature_id, split_value, self.depth, self.num_examples, below.size)

        left_columns, right_columns = [], []
        for column in self.columns:
            left, right = column.split(below, buffer, scratch.marks)
            left_columns.append(left)
            right_columns.append(right)

        n_left = below.size
        self.columns = None
        return [
            TrainingNode(self.impurity, left_columns, n_left, self.depth + 1, self.label_map),
            TrainingNode(self.impurity, right_columns, self.num_examples - n_left,
                         self.depth + 1, self.label_map),
        ]

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------
    def to_leaf(self) -> LeafNode:
        """Leaf carrying this node's normalised label distribution."""
        counts = self.weighted_label_counts
        tot = counts.sum()
        if tot > 0:
            dist = counts / tot
        else:
            dist = np.full(counts.shape[0], 1.0 / max(counts.shape[0], 1))
        best = 0
        for i in range(1, dist.shape[0]):
            if dist[i] > dist[best]:
                best = i
        return LeafNode(
            impurity=self.impurity_score,
            label_id=best,
            label=self.label_map.label_of(best),
            distribution=tuple(float(p) for p in dist),
            labels=self.label_map.labels,
        )


# -----------------------------------------------------------------------------
# Arena
# -----------------------------------------------------------------------------
class TrainingArena:
    """All training nodes of one tree, addressed by integer id.

    The root has id 0.  ``children[i]`` is ``(left_id, right_id)`` for a
    split node and ``None`` otherwise.
    """

    def __init__(self, root: TrainingNode):
        self.nodes: list[TrainingNode] = [root]
        self.children: list = [None]

    def __len__(self) -> int:
        return len(self.nodes)

    def __reduce_ex__(self, protocol):
        raise pickle.PicklingError(
            "TrainingArena holds TrainingNodes and should not be serialized.")

    def attach(self, parent_id: int, children: list) -> list[int]:
        """Register the children returned by a split and return their ids."""
        if not children:
            return []
        if len(children) != 2:
            raise ValueError("a split produces exactly two children")
        if self.children[parent_id] is not None:
            raise ValueError(f"node {parent_id} already has children")
        ids = []
        for child in children:
            ids.append(len(self.nodes))
            self.nodes.append(child)
            self.children.append(None)
        self.children[parent_id] = (ids[0], ids[1])
        return ids

    def convert_tree(self, node_id: int = 0) -> Node:
        """Build the immutable inference tree rooted at ``node_id``."""
        node = self.nodes[node_id]
        pair = self.children[node_id]
        if pair is None:
            return node.to_leaf()
        left = self.convert_tree(pair[0])
        right = self.convert_tree(pair[1])
        return SplitNode(node.split_value, node.split_feature, node.impurity_score, left, right)
