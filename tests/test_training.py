import pickle

import numpy as np
import pytest
from cartpy import Dataset, EntropyImpurity, Example, FeatureMap, GiniImpurity, LabelMap
from cartpy._buffer import ScratchArena
from cartpy._training import TrainingArena, TrainingNode, densify, invert_data, sweep
from cartpy.exceptions import InvariantViolationError
from cartpy.nodes import LeafNode, SplitNode


def _root(X, y, w=None, impurity=None):
    ds = Dataset.from_arrays(np.asarray(X, dtype=float), y, sample_weight=w)
    return TrainingNode.from_dataset(impurity or GiniImpurity(), ds)


def _separable_root(extra=None):
    # A A A B | B B B A : the best boundary is 4.5 (gini 0.375 on each side)
    values = np.arange(1, 9, dtype=float)
    cols = [values] if extra is None else [values, extra]
    X = np.column_stack(cols)
    y = ["A", "A", "A", "B", "B", "B", "B", "A"]
    return _root(X, y)


class _RecordingRandom:
    def __init__(self, seed=0):
        self.rng = np.random.RandomState(seed)
        self.calls = []

    def randint(self, low, high):
        self.calls.append((low, high))
        return self.rng.randint(low, high)


# -----------------------------------------------------------------------------
# densify / invert_data
# -----------------------------------------------------------------------------
def test_densify_zero_fills_absent_ids():
    out = densify([1, 3], [2.0, 4.0], 5)
    assert out.tolist() == [0.0, 2.0, 0.0, 4.0, 0.0]


def test_densify_reuses_output_row():
    row = np.full(3, 9.0)
    densify([2], [1.5], 3, out=row)
    assert row.tolist() == [0.0, 0.0, 1.5]


@pytest.mark.parametrize("ids, message", [
    ([3, 1], "aren't ordered"),
    ([1, 1], "repeated"),
    ([0, 5], "must lie in"),
])
def test_densify_rejects_broken_examples(ids, message):
    with pytest.raises(InvariantViolationError, match=message):
        densify(ids, [1.0] * len(ids), 5)


def test_invert_data_builds_sorted_columns():
    ds = Dataset.from_records([{"a": 1.0}, {"b": 2.0}, {"a": 1.0, "b": 1.0}], [0, 1, 0])
    columns = invert_data(ds)
    a, b = columns
    assert [e.value for e in a] == [0.0, 1.0]
    assert a.entries[0].indices.tolist() == [1]
    assert a.entries[1].indices.tolist() == [0, 2]
    assert np.allclose(a.entries[1].label_counts, [2.0, 0.0])
    assert [e.value for e in b] == [0.0, 1.0, 2.0]
    for col in columns:
        assert np.allclose(col.label_counts, ds.label_counts())


def test_invert_data_rejects_unordered_features():
    ds = Dataset(FeatureMap(["a", "b"]), LabelMap(["x"]),
                 [Example(np.array([1, 0]), np.array([1.0, 2.0]), 0)])
    with pytest.raises(InvariantViolationError):
        invert_data(ds)


# -----------------------------------------------------------------------------
# Split search
# -----------------------------------------------------------------------------
def test_sweep_conserves_histograms():
    root = _separable_root()
    total = root.weighted_label_counts
    steps = 0
    for _, less, greater in sweep(root.columns[0], total):
        assert np.allclose(less + greater, total)
        steps += 1
    assert steps == len(root.columns[0]) - 1


def test_greedy_finds_best_boundary():
    root = _separable_root()
    children = root.build_tree([0], None, False, 0.0)
    assert root.split_feature == 0
    assert root.split_value == pytest.approx(4.5)
    left, right = children
    assert (left.num_examples, right.num_examples) == (4, 4)
    assert np.allclose(left.weighted_label_counts, [3.0, 1.0])
    assert np.allclose(right.weighted_label_counts, [1.0, 3.0])
    assert left.depth == right.depth == 1
    assert root.columns is None


def test_greedy_ties_go_to_first_feature():
    values = np.arange(1, 9, dtype=float)
    root = _separable_root(extra=values * 10)
    root.build_tree([0, 1], None, False, 0.0)
    assert root.split_feature == 0

    root = _separable_root(extra=values * 10)
    root.build_tree([1, 0], None, False, 0.0)
    assert root.split_feature == 1
    assert root.split_value == pytest.approx(45.0)


def test_split_partitions_all_columns():
    values = np.arange(1, 9, dtype=float)
    root = _separable_root(extra=values[::-1].copy())
    left, right = root.build_tree([0], None, False, 0.0)
    for lcol, rcol in zip(left.columns, right.columns):
        lids = np.concatenate([e.indices for e in lcol]).tolist()
        rids = np.concatenate([e.indices for e in rcol]).tolist()
        assert sorted(lids) == [0, 1, 2, 3]
        assert sorted(rids) == [4, 5, 6, 7]


def test_greedy_is_deterministic():
    rng = np.random.RandomState(3)
    X = rng.rand(40, 4)
    y = (X[:, 1] + 0.3 * rng.rand(40) > 0.6).astype(int)
    picks = []
    for _ in range(2):
        root = _root(X, y)
        root.build_tree([0, 1, 2, 3], None, False, 0.0)
        picks.append((root.split_feature, root.split_value))
    assert picks[0] == picks[1]


def test_pure_partition_is_rejected():
    # 1.0 | 2.0 mixes both labels on each side; 2.0 | 3.0 leaves a pure right
    # side, whose weighted impurity falls under the floor.
    root = _root([[1.0], [1.0], [2.0], [3.0]], ["A", "B", "A", "B"])
    assert root.build_tree([0], None, False, 0.0) == []
    leaf = root.to_leaf()
    assert leaf.label == "A"
    assert leaf.distribution == (0.5, 0.5)


def test_min_impurity_decrease_is_honoured():
    # the 4.5 split decreases weighted gini by 8 * (0.5 - 0.375) = 1.0
    assert len(_separable_root().build_tree([0], None, False, 1.0)) == 2
    assert _separable_root().build_tree([0], None, False, 1.0001) == []
    huge = _separable_root()
    assert huge.build_tree([0], None, False, 1e12) == []
    assert huge.columns is None
    assert not huge.is_split


def test_random_boundary_range_and_constant_features():
    values = np.arange(1, 9, dtype=float)
    constant = np.full(8, 5.0)
    for seed in range(20):
        root = _separable_root(extra=constant)
        rng = _RecordingRandom(seed)
        root.build_tree([1, 0], rng, True, 0.0)
        # only feature 0 has more than one value; 8 values -> boundary in [0, 6]
        assert rng.calls == [(0, len(values) - 1)]
        assert root.split_feature in (None, 0)


def test_random_split_threshold_is_a_midpoint():
    root = _separable_root()
    root.build_tree([0], np.random.RandomState(0), True, 0.0)
    if root.is_split:
        assert root.split_value - 0.5 == int(root.split_value - 0.5)


def test_entropy_impurity_splits_the_same_way():
    root = _separable_root()
    root.impurity = EntropyImpurity()
    root.impurity_score = root.impurity.impurity(root.weighted_label_counts)
    root.build_tree([0], None, False, 0.0)
    assert root.split_value == pytest.approx(4.5)


def test_search_runs_once():
    root = _separable_root()
    root.build_tree([0], None, False, 0.0, ScratchArena())
    with pytest.raises(RuntimeError):
        root.build_tree([0], None, False, 0.0)


def test_training_node_refuses_pickling():
    root = _separable_root()
    with pytest.raises(pickle.PicklingError):
        pickle.dumps(root)
    with pytest.raises(pickle.PicklingError):
        pickle.dumps(TrainingArena(root))


# -----------------------------------------------------------------------------
# Arena / conversion
# -----------------------------------------------------------------------------
def test_convert_tree_builds_split_and_leaves():
    root = _separable_root()
    arena = TrainingArena(root)
    ids = arena.attach(0, root.build_tree([0], None, False, 0.0))
    assert ids == [1, 2]
    tree = arena.convert_tree()
    assert isinstance(tree, SplitNode)
    assert tree.feature_id == 0
    assert tree.threshold == pytest.approx(4.5)
    assert tree.impurity == pytest.approx(0.5)
    assert isinstance(tree.left, LeafNode) and isinstance(tree.right, LeafNode)
    assert tree.left.label == "A"
    assert tree.right.label == "B"
    assert np.allclose(tree.left.distribution, [0.75, 0.25])
    assert sum(tree.right.scores.values()) == pytest.approx(1.0)


def test_attach_ignores_leaves_and_rejects_second_split():
    root = _separable_root()
    arena = TrainingArena(root)
    assert arena.attach(0, []) == []
    children = root.build_tree([0], None, False, 0.0)
    arena.attach(0, children)
    with pytest.raises(ValueError):
        arena.attach(0, children)


def test_leaf_tie_goes_to_first_label():
    root = _root([[1.0], [2.0]], ["x", "y"])
    leaf = root.to_leaf()
    assert leaf.label == "x"
    assert leaf.score == 0.5


class _FixedRandom:
    def __init__(self, index):
        self.index = index
        self.calls = []

    def randint(self, low, high):
        self.calls.append((low, high))
        return self.index


def test_random_split_uses_drawn_boundary():
    # boundary 4 puts 1..5 (A A A B B) left and 6..8 (B B A) right
    root = _separable_root()
    best_id, best_value, best_score = root._search_random([0], _FixedRandom(4))
    assert best_id == 0
    assert best_value == pytest.approx(5.5)
    assert best_score == pytest.approx((5 * 12 / 25 + 3 * 4 / 9) / 8)

    children = root.build_tree([0], _FixedRandom(4), True, 0.0)
    assert root.split_value == pytest.approx(5.5)
    assert [c.num_examples for c in children] == [5, 3]
    assert np.allclose(children[0].weighted_label_counts, [3.0, 2.0])


def test_random_split_on_pure_boundary_is_rejected():
    # boundary 2 leaves A A A on the left; greedy would still split at 4.5
    root = _separable_root()
    rng = _FixedRandom(2)
    assert root.build_tree([0], rng, True, 0.0) == []
    assert rng.calls == [(0, 7)]
    assert not root.is_split
