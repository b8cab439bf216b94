import numpy as np
from typing import Any, Dict, List, Optional, Sequence
from sklearn.pipeline import make_pipeline
from sklearn.svm import SVC
from sklearn.preprocessing import StandardScaler
import logging

from mcpa.base import ClassifierKind, TestHandle
from mcpa.utils import masked_pearson, nanmean, remove_nan_features

logger = logging.getLogger(__name__)


class MCPAClassifier(TestHandle):
    """
    Correlation-to-centroid classifier.

    Training rows are averaged per label; every test row is assigned the label
    of the centroid it correlates with most strongly.
    """
    kind = ClassifierKind.MCPA

    def __call__(self, group_data: np.ndarray, group_labels: Sequence,
                 subj_data: np.ndarray, opts: Optional[Dict[str, Any]] = None) -> List[Optional[str]]:
        group_data = np.asarray(group_data, dtype=float)
        subj_data = np.asarray(subj_data, dtype=float)
        group_labels = np.asarray(group_labels)

        classes = list(dict.fromkeys(group_labels.tolist()))
        centroids = np.vstack([nanmean(group_data[group_labels == cls], axis=0) for cls in classes])

        predicted = []
        for row in subj_data:
            r = masked_pearson(row, centroids)
            if not np.any(np.isfinite(r)):
                predicted.append(None)
                continue
            # nanargmax keeps the first maximum
            predicted.append(classes[int(np.nanargmax(r))])
        return predicted


class SVMClassifier(TestHandle):
    """Linear SVC on features standardized with the training rows' statistics"""
    kind = ClassifierKind.OTHER
    param_names = ('C', 'kernel', 'random_state')

    def __init__(self, C=1.0, kernel='linear', random_state=None):
        self.C = C
        self.kernel = kernel
        self.random_state = random_state
        self.pipeline = None

    def get_params(self, deep=True):
        return {name: getattr(self, name) for name in self.param_names}

    def set_params(self, **params):
        unknown = sorted(set(params) - set(self.param_names))
        if unknown:
            raise ValueError(f"Invalid parameter(s) {unknown} for {type(self).__name__}; "
                             f"valid parameters are {list(self.param_names)}")
        for key, value in params.items():
            setattr(self, key, value)
        # a new parameter set needs a new fit
        self.pipeline = None
        return self

    def fit(self, X, y):
        self.pipeline = make_pipeline(
            StandardScaler(),
            SVC(kernel=self.kernel, C=self.C, random_state=self.random_state)
        )
        self.pipeline.fit(X, y)
        return self

    def predict(self, X):
        if self.pipeline is None:
            raise ValueError(f"{type(self).__name__} is not fitted yet")
        return self.pipeline.predict(X)

    def __call__(self, group_data: np.ndarray, group_labels: Sequence,
                 subj_data: np.ndarray, opts: Optional[Dict[str, Any]] = None) -> List[str]:
        opts = opts or {}
        self.set_params(**{key: opts[key] for key in self.get_params() if key in opts})

        train, test = remove_nan_features(np.asarray(group_data, dtype=float),
                                          np.asarray(subj_data, dtype=float))
        if train.shape[1] == 0:
            raise ValueError("No finite features left to train on")
        self.fit(train, np.asarray(group_labels))
        return list(self.predict(test))


def classify_subset(test_handle, group_data: np.ndarray, group_labels: Sequence,
                    subj_data: np.ndarray, subj_labels: Sequence,
                    positions: Sequence[int], condition_labels: Sequence[str],
                    opts: Optional[Dict[str, Any]] = None) -> np.ndarray:
    """
    Run the injected classifier on one channel subset and score it per condition

    Parameters:
    -----------
    test_handle : callable
        (group_data, group_labels, subj_data, opts) -> predicted labels
    group_data, subj_data : np.ndarray
        (n_instances x n_features) training and held-out data
    group_labels, subj_labels : sequence
        Condition label of each row
    positions : sequence of int
        Feature columns making up the subset
    condition_labels : sequence of str
        Labels to score, one accuracy per label
    opts : dict
        Passed through to the classifier

    Returns:
    --------
    np.ndarray : accuracy per condition (NaN for a condition without test rows)
    """
    positions = np.asarray(positions, dtype=int)
    predicted = test_handle(np.asarray(group_data)[:, positions], np.asarray(group_labels),
                            np.asarray(subj_data)[:, positions], opts)
    predicted = np.array([str(label) if label is not None else None for label in predicted],
                         dtype=object)
    known = np.array([str(label) for label in subj_labels], dtype=object)
    if len(predicted) != len(known):
        raise ValueError(f"Classifier returned {len(predicted)} labels for {len(known)} test instances")

    accuracy = np.full(len(condition_labels), np.nan)
    for idx, label in enumerate(condition_labels):
        rows = known == label
        if np.any(rows):
            accuracy[idx] = np.mean(predicted[rows] == known[rows])
    return accuracy
