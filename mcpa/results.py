import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging

from mcpa.config import Condition
from mcpa.loaders import MCPAPatterns
from mcpa.subsets import SubsetList
from mcpa.utils import nanmean

logger = logging.getLogger(__name__)


@dataclass
class ConditionAccuracy:
    """Binary-path accuracies of one condition"""
    subset_x_subj: np.ndarray  # (n_sets x n_subjects)
    subj_x_feature: np.ndarray  # (n_subjects x n_channels), averaged over the subsets holding each channel

    @classmethod
    def empty(cls, n_sets: int, n_subjects: int, n_channels: int) -> 'ConditionAccuracy':
        return cls(np.full((n_sets, n_subjects), np.nan),
                   np.full((n_subjects, n_channels), np.nan))

    @property
    def subsetXsubj(self) -> np.ndarray:
        return self.subset_x_subj

    @property
    def subjXchan(self) -> np.ndarray:
        return self.subj_x_feature

    @property
    def subjXfeature(self) -> np.ndarray:
        return self.subj_x_feature


@dataclass
class MCPAResults:
    """Accumulator for a cross-validation run, allocated once before the folds"""
    patterns: MCPAPatterns
    conditions: Tuple[Condition, ...]
    condition_labels: Tuple[str, ...]
    subsets: SubsetList
    summarize_dimensions: Tuple[str, ...]
    final_dimensions: Tuple[str, ...]
    test_type: str = 'between'

    accuracy: List[ConditionAccuracy] = field(default_factory=list)
    accuracy_matrix: Optional[np.ndarray] = None
    fold_durations: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.test_type not in ('between', 'model_based'):
            raise ValueError(f"Unknown test type: {self.test_type}")

        n_cond = len(self.conditions)
        if not self.accuracy:
            self.accuracy = [ConditionAccuracy.empty(self.n_sets, self.n_subjects, self.n_channels)
                             for _ in range(n_cond)]
        if self.accuracy_matrix is None:
            self.accuracy_matrix = np.full((n_cond, n_cond, self.n_sets, self.n_subjects), np.nan)
        if self.fold_durations is None:
            self.fold_durations = np.full(self.n_subjects, np.nan)

    @property
    def event_types(self) -> Tuple[str, ...]:
        return self.patterns.event_types

    @property
    def incl_subjects(self) -> np.ndarray:
        return self.patterns.incl_subjects

    @property
    def incl_channels(self) -> np.ndarray:
        return self.patterns.incl_channels

    @property
    def n_sets(self) -> int:
        return self.subsets.n_sets

    @property
    def n_subjects(self) -> int:
        return len(self.incl_subjects)

    @property
    def n_channels(self) -> int:
        return len(self.incl_channels)

    def record_binary_fold(self, s_idx: int, fold_accuracy: np.ndarray):
        """
        Store one participant's binary-path accuracies

        Parameters:
        -----------
        s_idx : int
            Held-out participant position
        fold_accuracy : np.ndarray
            (n_conditions x n_sets x n_channels), NaN for channels outside a subset
        """
        for idx, condition_accuracy in enumerate(self.accuracy):
            condition_accuracy.subset_x_subj[:, s_idx] = nanmean(fold_accuracy[idx], axis=1)
            condition_accuracy.subj_x_feature[s_idx, :] = nanmean(fold_accuracy[idx], axis=0)

    def record_rsa_fold(self, s_idx: int, set_idx: int, result):
        """Store the scores of one RSA result in the condition x condition matrix"""
        label_index = {label: idx for idx, label in enumerate(self.condition_labels)}
        for first, second, score in result.scores():
            i = label_index[first]
            if second is None:
                # n-way: the true condition's row
                self.accuracy_matrix[i, :, set_idx, s_idx] = score
            else:
                j = label_index[second]
                self.accuracy_matrix[i, j, set_idx, s_idx] = score
                self.accuracy_matrix[j, i, set_idx, s_idx] = score

    def to_dataframe(self) -> pd.DataFrame:
        """
        Long-format results

        Returns:
        --------
        pd.DataFrame : one row per (condition [x condition], subset, subject) with
        columns subject_id, subset_idx, channels, condition, [compared_to,] accuracy
        """
        channels = [','.join(str(c) for c in row) for row in self.subsets.channels]
        rows = []
        if len(self.conditions) == 2:
            for label, condition_accuracy in zip(self.condition_labels, self.accuracy):
                for set_idx in range(self.n_sets):
                    for s_idx, subject_id in enumerate(self.incl_subjects):
                        rows.append({
                            'subject_id': subject_id,
                            'subset_idx': set_idx,
                            'channels': channels[set_idx],
                            'condition': label,
                            'accuracy': condition_accuracy.subset_x_subj[set_idx, s_idx]
                        })
        else:
            for i, label in enumerate(self.condition_labels):
                for j, other in enumerate(self.condition_labels):
                    for set_idx in range(self.n_sets):
                        for s_idx, subject_id in enumerate(self.incl_subjects):
                            rows.append({
                                'subject_id': subject_id,
                                'subset_idx': set_idx,
                                'channels': channels[set_idx],
                                'condition': label,
                                'compared_to': other,
                                'accuracy': self.accuracy_matrix[i, j, set_idx, s_idx]
                            })

        results_df = pd.DataFrame(rows)
        results_df['test_type'] = self.test_type
        return results_df
