import logging
from time import perf_counter

from sklearn.datasets import load_iris
from sklearn.model_selection import train_test_split

from cartpy import CARTClassifier

logging.basicConfig(level=logging.INFO)

data = load_iris()
feats = list(data.feature_names)
X_train, X_test, y_train, y_test = train_test_split(
    data.data, data.target, test_size=0.3, random_state=42, stratify=data.target)

clf = CARTClassifier(
    criterion="gini", splitter="best", max_depth=5,
    min_child_weight=5, min_impurity_decrease=0.0,
    max_features=1.0, random_state=42, n_jobs=2,
)

t0 = perf_counter(); clf.fit(X_train, y_train, feature_names=feats); print(f"fit: {perf_counter()-t0:.3f} s")
print(f"test accuracy: {clf.score(X_test, y_test):.3f}")
clf.print_tree(class_names=list(data.target_names))
for rule in clf.export_rules(class_names=list(data.target_names)):
    print(rule)
try:
    clf.export_graphviz("iris_tree", class_names=list(data.target_names), format="dot")
except RuntimeError as e:
    print(f"Skipping Graphviz export: {e}")
