# cartpy/__init__.py
"""
cartpy: CART decision trees in Python (scikit-learn style).

Exports:
    - CARTClassifier
    - Dataset, Example, FeatureMap, LabelMap
    - GiniImpurity, EntropyImpurity, LabelImpurity
    - LeafNode, SplitNode
    - InvariantViolationError
"""
from .dataset import Dataset, Example, FeatureMap, LabelMap
from .exceptions import InvariantViolationError
from .impurity import EntropyImpurity, GiniImpurity, LabelImpurity
from .nodes import LeafNode, SplitNode
from .tree import CARTClassifier

__all__ = [
    "CARTClassifier",
    "Dataset",
    "Example",
    "FeatureMap",
    "LabelMap",
    "GiniImpurity",
    "EntropyImpurity",
    "LabelImpurity",
    "LeafNode",
    "SplitNode",
    "InvariantViolationError",
]
__version__ = "0.1.0"
