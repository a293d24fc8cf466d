# -*- coding: utf-8 -*-
"""
cartpy.tree
===========

This module implements a CART decision tree classifier with a scikit‑learn
style API.  Numeric features are split on a single threshold chosen to
minimise the weighted Gini impurity (or entropy) of the two partitions, with
either a full greedy sweep over every boundary or one random boundary per
feature.  Sample weights, per-split feature subsampling and parallel splitting
of the growth frontier are supported.

Training runs on an inverted, column-major copy of the data (see
:mod:`cartpy._training`); the fitted model is a small immutable tree of
:class:`~cartpy.nodes.SplitNode` and :class:`~cartpy.nodes.LeafNode` objects.
The classifier also provides rule export, pretty printing and Graphviz export
of that tree.
"""

from __future__ import annotations

import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.utils import check_random_state

from ._buffer import ScratchArena
from ._training import TrainingArena, TrainingNode
from .dataset import Dataset
from .impurity import get_impurity
from .nodes import LeafNode, Node, count_leaves, find_leaf, tree_depth

logger = logging.getLogger(__name__)

_SEED_MAX = np.iinfo(np.int32).max


class CARTClassifier(ClassifierMixin, BaseEstimator):
    """
    Decision tree classifier following CART.

    The tree is grown breadth first.  Each frontier node is searched for the
    single ``(feature, threshold)`` split minimising the weighted impurity of
    its two children; a node becomes a leaf when it is too deep, too light,
    or when no split decreases the impurity by at least
    ``min_impurity_decrease``.

    Parameters
    ----------
    criterion : {"gini", "entropy"} or LabelImpurity, default="gini"
        Impurity measure used to score splits.
    splitter : {"best", "random"}, default="best"
        ``"best"`` evaluates every boundary between consecutive distinct values
        of each candidate feature; ``"random"`` evaluates one boundary per
        feature drawn uniformly at random.
    max_depth : int or None, default=None
        Maximum depth of the tree.  If ``None`` the depth is unbounded.
    min_child_weight : float, default=5.0
        Minimum total sample weight a node needs for its split to be searched.
    min_impurity_decrease : float, default=0.0
        A split is accepted only if it decreases the weighted impurity by at
        least this fraction of the total training weight.
    max_features : float, default=1.0
        Fraction of the features drawn (without replacement) for each split
        search.  At least one feature is always drawn.
    random_state : int, RandomState or None, default=None
        Seed for feature subsampling and random split points.
    n_jobs : int or None, default=1
        Number of threads splitting frontier nodes in parallel.  ``-1`` uses
        every CPU.  The fitted tree does not depend on this value.
    feature_names : list[str] or None, default=None
        Names used by the rule and graph exports.

    Attributes
    ----------
    tree_ : SplitNode or LeafNode
        Root of the fitted tree.
    classes_ : ndarray
        Class labels in label-id order.
    n_features_in_ : int
        Number of features seen during ``fit``.
    n_nodes_ : int
        Number of nodes grown.

    Notes
    -----
    Candidate partitions whose weighted impurity is at or below ``1e-10`` are
    ignored, which also rules out splits that isolate a pure subset.
    """

    def __init__(
        self,
        *,
        criterion="gini",
        splitter: str = "best",
        max_depth: int | None = None,
        min_child_weight: float = 5.0,
        min_impurity_decrease: float = 0.0,
        max_features: float = 1.0,
        random_state=None,
        n_jobs: int | None = 1,
        feature_names: list[str] | None = None,
    ):
        self.criterion = criterion
        self.splitter = splitter
        self.max_depth = max_depth
        self.min_child_weight = min_child_weight
        self.min_impurity_decrease = min_impurity_decrease
        self.max_features = max_features
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.feature_names = feature_names

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------
    def fit(self, X, y, sample_weight=None, feature_names=None):
        """
        Build the tree from dense training data.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Numeric training inputs.  Zero entries are treated as absent
            features, as in a sparse representation.
        y : array-like of shape (n_samples,)
            Class labels.
        sample_weight : array-like of shape (n_samples,), optional
            Non-negative example weights; defaults to 1.
        feature_names : list[str], optional
            Overrides the ``feature_names`` given at construction.

        Returns
        -------
        self
        """
        names = feature_names if feature_names is not None else self.feature_names
        dataset = Dataset.from_arrays(X, y, sample_weight=sample_weight,
                                      feature_names=names)
        return self.fit_dataset(dataset)

    def fit_dataset(self, dataset: Dataset):
        """Build the tree from an already assembled :class:`Dataset`."""
        self._validate_params()
        if len(dataset) == 0:
            raise ValueError("cannot fit a tree on an empty dataset")
        impurity = get_impurity(self.criterion)
        rng = check_random_state(self.random_state)
        n_features = len(dataset.feature_map)
        use_random = self.splitter == "random"
        scaled = float(self.min_impurity_decrease) * dataset.weight_sum
        n_workers = self._n_workers()

        root = TrainingNode.from_dataset(impurity, dataset)
        arena = TrainingArena(root)
        frontier = [0]
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            while frontier:
                tasks = []
                for node_id in frontier:
                    node = arena.nodes[node_id]
                    if self._can_split(node) and n_features > 0:
                        features = self._draw_features(rng, n_features)
                        node_rng = np.random.RandomState(rng.randint(_SEED_MAX))
                        tasks.append((node_id, node, features, node_rng))
                    else:
                        node.release()
                results = self._split_frontier(pool, n_workers, tasks, use_random, scaled)
                frontier = []
                for (node_id, *_), children in zip(tasks, results):
                    frontier.extend(arena.attach(node_id, children))

        self.tree_ = arena.convert_tree()
        self.n_nodes_ = len(arena)
        self.classes_ = np.asarray(dataset.label_map.labels)
        self.n_features_in_ = n_features
        self.feature_names_ = list(dataset.feature_map.names)
        self.feature_map_ = dataset.feature_map
        self.label_map_ = dataset.label_map
        logger.info("Fitted tree with %d nodes, %d leaves, depth %d",
                    self.n_nodes_, self.get_n_leaves(), self.get_depth())
        return self

    def _validate_params(self):
        if self.splitter not in ("best", "random"):
            raise ValueError(f"splitter must be 'best' or 'random', got {self.splitter!r}")
        if self.max_depth is not None and int(self.max_depth) < 0:
            raise ValueError("max_depth must be None or a non-negative integer")
        if float(self.min_child_weight) < 0:
            raise ValueError("min_child_weight must be non-negative")
        if float(self.min_impurity_decrease) < 0:
            raise ValueError("min_impurity_decrease must be non-negative")
        if not 0.0 < float(self.max_features) <= 1.0:
            raise ValueError("max_features must be a fraction in (0, 1]")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must not be 0")
        get_impurity(self.criterion)

    def _n_workers(self) -> int:
        if self.n_jobs is None:
            return 1
        if self.n_jobs < 0:
            return max(1, (os.cpu_count() or 1) + 1 + int(self.n_jobs))
        return int(self.n_jobs)

    def _can_split(self, node: TrainingNode) -> bool:
        if self.max_depth is not None and node.depth >= int(self.max_depth):
            return False
        return node.weight_sum >= float(self.min_child_weight)

    def _draw_features(self, rng, n_features: int) -> np.ndarray:
        k = min(n_features, max(1, math.ceil(float(self.max_features) * n_features)))
        if k == n_features:
            return np.arange(n_features)
        return rng.permutation(n_features)[:k]

    @staticmethod
    def _split_chunk(chunk, use_random: bool, scaled: float) -> list:
        # one arena per task; buffers never cross threads
        scratch = ScratchArena()
        return [node.build_tree(features, node_rng, use_random, scaled, scratch)
                for _, node, features, node_rng in chunk]

    def _split_frontier(self, pool, n_workers: int, tasks, use_random: bool,
                        scaled: float) -> list:
        if n_workers == 1 or len(tasks) < 2:
            return self._split_chunk(tasks, use_random, scaled)
        size = math.ceil(len(tasks) / n_workers)
        chunks = [tasks[i:i + size] for i in range(0, len(tasks), size)]
        futures = [pool.submit(self._split_chunk, chunk, use_random, scaled)
                   for chunk in chunks]
        results = []
        for fut in futures:
            results.extend(fut.result())
        return results

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------
    def _check_fitted(self):
        if getattr(self, "tree_", None) is None:
            raise ValueError("Estimator not fitted. Call fit(...) first.")

    def _check_X(self, X) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(1, -1)
        if X.shape[1] != self.n_features_in_:
            raise ValueError(
                f"X has {X.shape[1]} features, but the tree was fitted with {self.n_features_in_}")
        return X

    def apply_leaf(self, X) -> list[LeafNode]:
        """Return the leaf reached by each row of ``X``."""
        self._check_fitted()
        X = self._check_X(X)
        return [find_leaf(self.tree_, x) for x in X]

    def predict(self, X):
        """
        Predict class labels for the provided samples.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Input samples.

        Returns
        -------
        ndarray of shape (n_samples,)
            Label of the leaf reached by each sample.

        Raises
        ------
        ValueError
            If the estimator has not been fitted.
        """
        leaves = self.apply_leaf(X)
        return self.classes_[np.array([leaf.label_id for leaf in leaves], dtype=int)]

    def predict_proba(self, X):
        """
        Predict class probabilities for the provided samples.

        Returns
        -------
        ndarray of shape (n_samples, n_classes)
            Normalised weighted label distribution of the leaf reached by
            each sample, columns ordered like :attr:`classes_`.
        """
        leaves = self.apply_leaf(X)
        if not leaves:
            return np.zeros((0, len(self.classes_)))
        return np.vstack([leaf.proba() for leaf in leaves])

    def get_depth(self) -> int:
        self._check_fitted()
        return tree_depth(self.tree_)

    def get_n_leaves(self) -> int:
        self._check_fitted()
        return count_leaves(self.tree_)

    # ------------------------------------------------------------------
    # Rules / Graphviz / printing
    # ------------------------------------------------------------------
    def _feature_name(self, feature_id: int, fn=None) -> str:
        fn = fn if fn is not None else getattr(self, "feature_names_", None)
        if fn is not None and 0 <= feature_id < len(fn):
            return str(fn[feature_id])
        return f"X[{feature_id}]"

    @staticmethod
    def _class_name(leaf: LeafNode, cn=None) -> str:
        return str(cn[leaf.label_id]) if cn is not None else str(leaf.label)

    def export_rules(self, *, feature_names=None, class_names=None):
        """
        Export every root-to-leaf path as ``<antecedent> => <class>``.

        Parameters
        ----------
        feature_names : list[str], optional
            Names for the input features.  Defaults to those seen in ``fit``.
        class_names : list[str], optional
            Names for the classes, ordered like :attr:`classes_`.

        Returns
        -------
        list[str]
            One rule per leaf.
        """
        self._check_fitted()
        rules: list[str] = []
        self._collect_rules(self.tree_, [], rules, feature_names, class_names)
        return rules

    def _collect_rules(self, node: Node, parts, rules, fn, cn):
        if node.is_leaf:
            body = " AND ".join(parts) if parts else "<root>"
            rules.append(f"{body} => {self._class_name(node, cn)}")
            return
        name = self._feature_name(node.feature_id, fn)
        self._collect_rules(node.left, parts + [f"{name} <= {node.threshold:.4f}"], rules, fn, cn)
        self._collect_rules(node.right, parts + [f"{name} > {node.threshold:.4f}"], rules, fn, cn)

    def export_graphviz(self, filename: str | None = None, *, feature_names=None,
                        class_names=None, format: str = "png") -> str:
        """
        Export the tree structure in Graphviz format.

        Requires the optional ``graphviz`` package.  With ``format='dot'`` the
        DOT source is written directly and no Graphviz binary is needed; for
        other formats the ``dot`` executable is used and a ``.dot`` file is
        written instead if rendering fails.

        Parameters
        ----------
        filename : str or None, default=None
            Basename of the output file.  If None, the DOT source is returned
            and nothing is written.
        feature_names, class_names : list[str], optional
            Display names, as in :meth:`export_rules`.
        format : str, default="png"
            Graphviz output format.

        Returns
        -------
        str
            Path to the written file, or the DOT source if ``filename`` is None.
        """
        self._check_fitted()
        try:
            import graphviz
        except ImportError:
            raise RuntimeError("Graphviz is required for export_graphviz but not installed.")
        dot = graphviz.Digraph(format=format)
        self._add_graph_nodes(dot, self.tree_, "0", feature_names, class_names)

        if filename is None:
            return dot.source
        if format.lower() == "dot":
            path = f"{filename}.dot"
            dot.save(path)
            return path
        try:
            dot.render(filename, cleanup=True)
            return f"{filename}.{format}"
        except (graphviz.ExecutableNotFound, graphviz.CalledProcessError):
            logger.warning("Graphviz rendering failed; writing %s.dot instead", filename)
            fallback_path = f"{filename}.dot"
            dot.save(fallback_path)
            return fallback_path

    def _add_graph_nodes(self, dot, node: Node, name: str, fn, cn):
        if node.is_leaf:
            scores = {str(k): round(v, 4) for k, v in node.scores.items()}
            dot.node(name, f"class={self._class_name(node, cn)}\n{scores}",
                     shape="box", style="filled", color="lightgrey")
            return
        label = f"{self._feature_name(node.feature_id, fn)} <= {node.threshold:.4f}"
        dot.node(name, label, shape="ellipse", style="filled", color="lightblue")
        l_id, r_id = name + "L", name + "R"
        self._add_graph_nodes(dot, node.left, l_id, fn, cn)
        self._add_graph_nodes(dot, node.right, r_id, fn, cn)
        dot.edge(name, l_id, label="True")
        dot.edge(name, r_id, label="False")

    def print_tree(self, feature_names=None, class_names=None):
        """Pretty‑print the decision tree to ``stdout``."""
        self._check_fitted()
        self._print_node(self.tree_, "", feature_names, class_names)

    def _print_node(self, node: Node, indent="", fn=None, cn=None):
        if node.is_leaf:
            scores = {str(k): round(v, 4) for k, v in node.scores.items()}
            print(f"{indent}Predict {self._class_name(node, cn)} | dist={scores}")
            return
        print(f"{indent}if {self._feature_name(node.feature_id, fn)} <= {node.threshold:.4f}:")
        self._print_node(node.left, indent + "  ", fn, cn)
        print(f"{indent}else:")
        self._print_node(node.right, indent + "  ", fn, cn)
