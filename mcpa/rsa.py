"""
Correlation-based classification in similarity space.

Condition-level patterns are abstracted into condition x condition similarity
(correlation) or dissimilarity (distance) structures, and the structure of a
held-out participant is aligned to a training or reference structure. Two
decision rules are available:

- n-way: every permutation of the test labels is scored by correlating the
  permuted test structure with the training structure, and the best one
  assigns the labels (Zinszer, Anderson, Kang, Wheatley & Raizada, 2016).
- pairwise: every pair of conditions is classified on its own by checking
  which orientation of the pair matches the training structure better
  (Zinszer, Bayet, Emberson, Raizada & Aslin, 2018).
"""
import itertools
import logging
import math
import numpy as np
import pandas as pd
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union
from scipy.spatial.distance import pdist, squareform

from mcpa.base import ClassifierKind, TestHandle
from mcpa.utils import masked_pearson, nanmean

logger = logging.getLogger(__name__)

SIMILARITY_METRICS = ('spearman', 'pearson', 'kendall')
DISSIMILARITY_METRICS = ('braycurtis', 'canberra', 'chebyshev', 'cityblock', 'correlation',
                         'cosine', 'euclidean', 'jensenshannon', 'mahalanobis', 'minkowski',
                         'seuclidean', 'sqeuclidean')

# n! permutations are scored; beyond this the search is infeasible
MAX_NWAY_CLASSES = 10
_PERMUTATION_CHUNK = 20000
# structures with this few defined cells are reported as near-empty
NEAR_EMPTY_CELLS = 8


@dataclass(frozen=True)
class RSAOptions:
    similarity_space: bool = True
    metric: str = 'spearman'
    pairwise: bool = False
    tiebreak: bool = True
    verbose: int = 0
    random_state: Optional[int] = None

    def __post_init__(self):
        if self.similarity_space and self.metric not in SIMILARITY_METRICS:
            raise ValueError(f"Metric '{self.metric}' is not a correlation type; similarity space "
                             f"supports {list(SIMILARITY_METRICS)}")
        if not self.similarity_space:
            if self.metric in SIMILARITY_METRICS:
                raise ValueError(f"Metric '{self.metric}' is a correlation type; use "
                                 f"similarity_space=True or a distance metric")
            if self.metric not in DISSIMILARITY_METRICS:
                raise ValueError(f"Unknown distance metric '{self.metric}'; dissimilarity space "
                                 f"supports {list(DISSIMILARITY_METRICS)}")

    @classmethod
    def from_dict(cls, opts: Optional[Dict[str, Any]] = None) -> 'RSAOptions':
        """Fill in defaults for a (possibly partial) options dict"""
        opts = dict(opts or {})

        if 'similarity_space' not in opts:
            if 'metric' in opts:
                opts['similarity_space'] = opts['metric'] in SIMILARITY_METRICS
                space = 'similarity' if opts['similarity_space'] else 'dissimilarity'
                logger.warning(f"Similarity or dissimilarity space has not been defined. Based on "
                               f"metric '{opts['metric']}', the data will be put in {space} space.")
            else:
                logger.warning("Similarity or dissimilarity space has not been defined. The data "
                               "will be put in similarity space with the Spearman correlation.")
                opts['similarity_space'] = True

        if 'metric' not in opts:
            opts['metric'] = 'spearman' if opts['similarity_space'] else 'euclidean'

        known = {f for f in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in opts.items() if key in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReferenceModel:
    """Precomputed condition x condition structure used in place of training data"""
    matrix: np.ndarray

    def __post_init__(self):
        self.matrix = np.asarray(self.matrix, dtype=float)
        if self.matrix.ndim != 2 or self.matrix.shape[0] != self.matrix.shape[1]:
            raise ValueError(f"Reference model must be a square matrix, got shape {self.matrix.shape}")

    @property
    def n_conditions(self) -> int:
        return self.matrix.shape[0]

    @classmethod
    def from_features(cls, features: np.ndarray, corr_stat: str = 'spearman') -> 'ReferenceModel':
        """
        Build a similarity model from (n_dimensions x n_conditions) data by
        correlating the condition columns
        """
        if corr_stat not in SIMILARITY_METRICS:
            raise ValueError(f"corr_stat must be one of {list(SIMILARITY_METRICS)}, got '{corr_stat}'")
        return cls(pd.DataFrame(np.asarray(features, dtype=float)).corr(method=corr_stat).to_numpy())

    @classmethod
    def from_array(cls, model: np.ndarray, corr_stat: str = 'spearman') -> 'ReferenceModel':
        """Use a square array as is; correlate the columns of anything else"""
        model = np.asarray(model, dtype=float)
        if model.ndim == 2 and model.shape[0] == model.shape[1]:
            return cls(model)
        return cls.from_features(model, corr_stat)


@dataclass
class PermutationResult:
    """n-way outcome: one predicted label per test instance"""
    predicted: List[Optional[str]]
    true_labels: List[str]
    rating: float  # correlation of the winning permutation with the training structure
    permutation: Tuple[int, ...]

    def scores(self) -> Iterator[Tuple[str, Optional[str], float]]:
        """(true label, None, correct) for every test instance; NaN if unclassified"""
        for true, predicted in zip(self.true_labels, self.predicted):
            yield true, None, np.nan if predicted is None else float(predicted == true)

    @property
    def accuracy(self) -> float:
        return float(nanmean(np.array([s for _, _, s in self.scores()], dtype=float), axis=0))


@dataclass
class PairwiseResult:
    """Pairwise outcome: one predicted orientation per pair of conditions"""
    predicted: List[Tuple[Optional[str], Optional[str]]]
    comparisons: List[Tuple[str, str]]

    def scores(self) -> Iterator[Tuple[str, Optional[str], float]]:
        """(first label, second label, correct) for every pair; NaN if indeterminate"""
        for (first, second), (pred_first, pred_second) in zip(self.comparisons, self.predicted):
            if pred_first is None or pred_second is None:
                yield first, second, np.nan
            else:
                yield first, second, float(np.mean([pred_first == first, pred_second == second]))

    @property
    def accuracy(self) -> float:
        return float(nanmean(np.array([s for _, _, s in self.scores()], dtype=float), axis=0))


RSAResult = Union[PermutationResult, PairwiseResult]


def _stable_unique(labels: Sequence) -> List:
    seen = []
    for label in labels:
        if label not in seen:
            seen.append(label)
    return seen


def _condition_means(data: np.ndarray, labels: Sequence, classes: Sequence) -> np.ndarray:
    """Average instances per class -> (n_classes x n_features x n_layers)"""
    data = np.asarray(data, dtype=float)
    if data.ndim < 2:
        raise ValueError("Pattern data must be at least (instance x feature)")
    if data.shape[0] != len(labels):
        raise ValueError(f"{data.shape[0]} instances but {len(labels)} labels")
    data = data.reshape(data.shape[0], data.shape[1], -1)

    labels = np.asarray(labels)
    means = np.full((len(classes),) + data.shape[1:], np.nan)
    for idx, cls in enumerate(classes):
        rows = labels == cls
        if np.any(rows):
            means[idx] = nanmean(data[rows], axis=0)
    return means


def _structure(means: np.ndarray, opts: RSAOptions) -> np.ndarray:
    """Similarity or dissimilarity matrix per layer, averaged across layers"""
    n_classes, _, n_layers = means.shape
    matrices = np.full((n_classes, n_classes, n_layers), np.nan)
    for layer in range(n_layers):
        layer_data = means[:, :, layer]
        if opts.similarity_space:
            matrices[:, :, layer] = pd.DataFrame(layer_data.T).corr(method=opts.metric).to_numpy()
        else:
            with np.errstate(invalid='ignore', divide='ignore'):
                matrices[:, :, layer] = squareform(pdist(layer_data, opts.metric), checks=False)

    matrix = nanmean(matrices, axis=2)
    if opts.similarity_space:
        # Fisher's r-to-z
        with np.errstate(divide='ignore', invalid='ignore'):
            matrix = np.arctanh(matrix)
    return matrix


def _check_structure(matrix: np.ndarray, name: str):
    """Warn when a structure is empty or has only a handful of defined cells"""
    off_diagonal = matrix[~np.eye(matrix.shape[0], dtype=bool)]
    defined = int(np.sum(~np.isnan(off_diagonal)))
    if defined == 0:
        logger.warning(f"The {name} similarity structure contains no defined values; "
                       f"this session or participant appears to be empty")
    elif defined < off_diagonal.size and defined <= NEAR_EMPTY_CELLS:
        logger.warning(f"The {name} similarity structure has only {defined} of {off_diagonal.size} "
                       f"off-diagonal values defined; some conditions appear to be empty")


def _nth_permutation(index: int, n: int) -> Tuple[int, ...]:
    """The `index`-th permutation of range(n) in lexicographic order"""
    pool = list(range(n))
    permutation = []
    for remaining in range(n, 0, -1):
        block = math.factorial(remaining - 1)
        position, index = divmod(index, block)
        permutation.append(pool.pop(position))
    return tuple(permutation)


def _permutation_ratings(training_matrix: np.ndarray, test_matrix: np.ndarray) -> np.ndarray:
    """Correlation of the training structure with every permuted test structure"""
    n = training_matrix.shape[0]
    rows, cols = np.tril_indices(n, -1)
    train_vec = training_matrix[rows, cols]

    ratings = []
    permutations = itertools.permutations(range(n))
    while True:
        chunk = np.array(list(itertools.islice(permutations, _PERMUTATION_CHUNK)), dtype=int)
        if chunk.size == 0:
            break
        permuted_vecs = test_matrix[chunk[:, rows], chunk[:, cols]]
        ratings.append(masked_pearson(train_vec, permuted_vecs))
    return np.concatenate(ratings)


def _break_ties(ratings: np.ndarray, random_state: Optional[int]) -> np.ndarray:
    """Jitter ratings by less than 1% of the smallest gap between distinct values"""
    finite = np.unique(ratings[np.isfinite(ratings)])
    gaps = np.diff(finite)
    scale = 0.01 * gaps.min() if gaps.size else 1e-6
    rng = np.random.default_rng(random_state)
    return ratings + rng.uniform(0, scale, size=ratings.shape)


def _nway_classify(training_matrix: np.ndarray, test_matrix: np.ndarray,
                   opts: RSAOptions) -> Tuple[Optional[Tuple[int, ...]], float]:
    """
    Find the relabelling of the test conditions that best matches training.

    Returns the winning permutation `perm` (test condition perm[i] is assigned
    class i) and its rating, or (None, nan) if no permutation can be rated.
    """
    ratings = _permutation_ratings(training_matrix, test_matrix)
    if not np.any(np.isfinite(ratings)):
        return None, np.nan

    compared = _break_ties(ratings, opts.random_state) if opts.tiebreak else ratings
    # argmax keeps the first maximum
    best = int(np.nanargmax(compared))
    return _nth_permutation(best, training_matrix.shape[0]), float(ratings[best])


def _pairwise_classify(training_matrix: np.ndarray, test_matrix: np.ndarray,
                       classes: Sequence, opts: RSAOptions) -> PairwiseResult:
    n = len(classes)
    predicted, comparisons = [], []
    for i, j in itertools.combinations(range(n), 2):
        others = [k for k in range(n) if k not in (i, j)]
        # a correlation needs two values; otherwise compare the values themselves
        correlate = opts.similarity_space and len(others) >= 2

        def score(a, b):
            test_row = test_matrix[a, others]
            train_row = training_matrix[b, others]
            if correlate:
                return masked_pearson(train_row, test_row[None, :])[0]
            return np.mean(np.abs(test_row - train_row)) if others else np.nan

        correct = score(i, i) + score(j, j)
        swapped = score(i, j) + score(j, i)

        if np.isnan(correct) or np.isnan(swapped) or correct == swapped:
            outcome = (None, None)
        elif (correct > swapped) == correlate:
            outcome = (classes[i], classes[j])
        else:
            outcome = (classes[j], classes[i])

        predicted.append(outcome)
        comparisons.append((classes[i], classes[j]))

    if predicted and all(first is None for first, _ in predicted):
        logger.warning(f"All {len(predicted)} pairwise comparisons are indeterminate")
    return PairwiseResult(predicted=predicted, comparisons=comparisons)


def rsa_classify(model_data: Union[np.ndarray, ReferenceModel], model_labels: Sequence,
                 test_data: np.ndarray, test_labels: Sequence,
                 opts: Optional[Union[Dict[str, Any], RSAOptions]] = None) -> RSAResult:
    """
    Classify held-out patterns by aligning similarity structures

    Parameters:
    -----------
    model_data : np.ndarray or ReferenceModel
        Training patterns (instance x feature [x session x subject ...]) or a
        precomputed condition x condition reference structure
    model_labels : sequence
        Label of each training instance (or of each reference model row)
    test_data : np.ndarray
        Held-out patterns (instance x feature [x session ...])
    test_labels : sequence
        Known label of each test instance
    opts : dict or RSAOptions
        similarity_space, metric, pairwise, tiebreak, verbose, random_state

    Returns:
    --------
    PermutationResult (n-way) or PairwiseResult (pairwise)
    """
    if not isinstance(opts, RSAOptions):
        opts = RSAOptions.from_dict(opts)

    classes = _stable_unique(list(model_labels))
    test_labels = list(test_labels)
    if np.shape(test_data)[0] != len(test_labels):
        raise ValueError(f"{np.shape(test_data)[0]} test instances but {len(test_labels)} labels")
    unknown = [label for label in _stable_unique(test_labels) if label not in classes]
    if unknown:
        raise ValueError(f"Test labels {unknown} do not occur in the training labels")
    if not opts.pairwise and len(classes) > MAX_NWAY_CLASSES:
        raise ValueError(f"n-way classification does not work for more than {MAX_NWAY_CLASSES} "
                         f"classes ({len(classes)} given). Use pairwise=True")

    # Canonical order: group test instances by class, in training registry order
    test_order = np.argsort([classes.index(label) for label in test_labels], kind='stable')
    sorted_labels = [test_labels[i] for i in test_order]
    sorted_data = np.asarray(test_data, dtype=float)[test_order]

    if isinstance(model_data, ReferenceModel):
        if model_data.n_conditions != len(classes):
            raise ValueError(f"Reference model has {model_data.n_conditions} conditions "
                             f"but {len(classes)} labels were given")
        training_matrix = model_data.matrix
    else:
        training_matrix = _structure(_condition_means(model_data, model_labels, classes), opts)
    test_matrix = _structure(_condition_means(sorted_data, sorted_labels, classes), opts)

    if opts.verbose:
        logger.debug(f"Training structure:\n{np.array2string(training_matrix, precision=2)}")
        logger.debug(f"Test structure:\n{np.array2string(test_matrix, precision=2)}")

    _check_structure(test_matrix, 'test')
    _check_structure(training_matrix, 'training')

    if opts.pairwise:
        return _pairwise_classify(training_matrix, test_matrix, classes, opts)

    permutation, rating = _nway_classify(training_matrix, test_matrix, opts)
    if permutation is None:
        sorted_predicted = [None] * len(sorted_labels)
    else:
        assigned = np.empty(len(classes), dtype=int)
        assigned[list(permutation)] = np.arange(len(classes))
        sorted_predicted = [classes[assigned[classes.index(label)]] for label in sorted_labels]

    # Undo the canonical ordering
    restore = np.argsort(test_order)
    return PermutationResult(
        predicted=[sorted_predicted[i] for i in restore],
        true_labels=test_labels,
        rating=rating,
        permutation=permutation if permutation is not None else ()
    )


class RSAClassifier(TestHandle):
    """Injectable wrapper around rsa_classify with default options"""
    kind = ClassifierKind.RSA

    def __init__(self, **defaults):
        self.defaults = defaults

    def __call__(self, model_data, model_labels, test_data, test_labels, opts=None) -> RSAResult:
        merged = dict(self.defaults)
        if isinstance(opts, RSAOptions):
            merged.update(opts.to_dict())
        elif opts:
            merged.update(opts)
        return rsa_classify(model_data, model_labels, test_data, test_labels, merged)
