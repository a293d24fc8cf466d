"""
cartpy.nodes
============

Immutable inference tree produced once training has finished.

A fitted tree is made of two node types only: :class:`SplitNode` routes an
input on a single numeric threshold and :class:`LeafNode` holds the label
distribution of the training examples that reached it.  Neither keeps any
reference to training-time state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np


@dataclass(frozen=True, eq=False)
class LeafNode:
    """Terminal node.

    Attributes
    ----------
    impurity : float
        Impurity of the training examples in the leaf.
    label_id : int
        Id of the predicted label (first arg-max of ``distribution``).
    label : object
        The predicted label itself.
    distribution : tuple[float, ...]
        Normalised weighted label counts, in label-id order.
    labels : tuple
        Label values in label-id order.
    """
    impurity: float
    label_id: int
    label: object
    distribution: tuple
    labels: tuple

    is_leaf = True

    @property
    def score(self) -> float:
        return self.distribution[self.label_id]

    @property
    def scores(self) -> dict:
        """Mapping ``label -> probability``."""
        return dict(zip(self.labels, self.distribution))

    def proba(self) -> np.ndarray:
        return np.asarray(self.distribution, dtype=float)

    def __repr__(self) -> str:
        return f"LeafNode(label={self.label!r}, score={self.score:.4f}, impurity={self.impurity:.4f})"


@dataclass(frozen=True, eq=False)
class SplitNode:
    """Internal node; ``x[feature_id] <= threshold`` goes left."""
    threshold: float
    feature_id: int
    impurity: float
    left: "Node"
    right: "Node"

    is_leaf = False

    def next_node(self, x) -> "Node":
        if float(x[self.feature_id]) <= self.threshold:
            return self.left
        return self.right

    def __repr__(self) -> str:
        return (f"SplitNode(feature_id={self.feature_id}, threshold={self.threshold:.4f}, "
                f"impurity={self.impurity:.4f})")


Node = Union[LeafNode, SplitNode]


def find_leaf(node: Node, x) -> LeafNode:
    """Walk from ``node`` to the leaf reached by the dense input ``x``."""
    while not node.is_leaf:
        node = node.next_node(x)
    return node


def tree_depth(node: Node) -> int:
    if node.is_leaf:
        return 0
    return 1 + max(tree_depth(node.left), tree_depth(node.right))


def count_leaves(node: Node) -> int:
    if node.is_leaf:
        return 1
    return count_leaves(node.left) + count_leaves(node.right)
