import numpy as np
import logging
from typing import List, Sequence, Tuple

from mcpa.config import Condition
from mcpa.loaders import MCPAPatterns
from mcpa.utils import nanmean

logger = logging.getLogger(__name__)

FOLD_AXES = ('condition', 'subject', 'feature')


def condition_identifiers(condition: Condition) -> List:
    """The trigger identifiers making up one condition"""
    if isinstance(condition, (str, int, np.integer)):
        return [condition]
    return list(condition)


def condition_label(condition: Condition) -> str:
    """Label shared by all instances of a condition, e.g. 'A+B' or '0'"""
    return '+'.join(str(identifier) for identifier in condition_identifiers(condition))


def resolve_condition(condition: Condition, event_types: Sequence) -> np.ndarray:
    """
    Indices into the event type registry selected by a condition.

    String identifiers are matched against the registry and come back in
    registry order. Integer identifiers are used directly as 0-based indices.
    """
    identifiers = condition_identifiers(condition)
    if not identifiers:
        raise ValueError("Empty condition")

    if all(isinstance(i, str) for i in identifiers):
        flags = [idx for idx, event_type in enumerate(event_types) if event_type in identifiers]
        if not flags:
            raise ValueError(f"Condition {identifiers} matches none of the event types "
                             f"{list(event_types)}")
    elif all(isinstance(i, (int, np.integer)) and not isinstance(i, bool) for i in identifiers):
        flags = [int(i) for i in identifiers]
        out_of_range = [i for i in flags if not 0 <= i < len(event_types)]
        if out_of_range:
            raise ValueError(f"Condition indices {out_of_range} out of range for "
                             f"{len(event_types)} event types")
    else:
        raise ValueError(f"Condition {identifiers} mixes names and indices")

    return np.array(flags, dtype=int)


def _check_fold_axes(patterns: MCPAPatterns):
    for name in FOLD_AXES:
        patterns.axis(name)


def split_test_and_train(s_idx: int, conditions: Sequence[Condition],
                         patterns: MCPAPatterns) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Split summarized patterns into group (training) and held-out subject data

    Axes other than condition, subject and feature are folded into instances.

    Parameters:
    -----------
    s_idx : int
        Position of the held-out participant along the subject axis
    conditions : sequence
        Condition identifiers (see resolve_condition)
    patterns : MCPAPatterns
        Summarized patterns with at least condition, subject and feature axes

    Returns:
    --------
    group_data : np.ndarray
        (n_instances x n_features) condition averages of every other participant
    group_labels : np.ndarray
        Condition label of each group_data row
    subj_data : np.ndarray
        (n_instances x n_features) individual event types of the held-out participant
    subj_labels : np.ndarray
        Condition label of each subj_data row
    """
    _check_fold_axes(patterns)
    n_subj = patterns.size('subject')
    if not 0 <= s_idx < n_subj:
        raise ValueError(f"Held-out subject {s_idx} out of range for {n_subj} subjects")

    others = [d for d in patterns.dimensions if d not in FOLD_AXES]
    ordered = patterns.reorder(['condition', 'subject'] + others + ['feature']).patterns
    n_features = ordered.shape[-1]
    group_subvec = [i for i in range(n_subj) if i != s_idx]

    group_data, group_labels, subj_data, subj_labels = [], [], [], []
    for condition in conditions:
        cond_flags = resolve_condition(condition, patterns.event_types)
        label = condition_label(condition)

        # Average across all matching triggers: one row per training subject (x other axes)
        group_tmp = nanmean(ordered[cond_flags], axis=0)[group_subvec].reshape(-1, n_features)
        group_data.append(group_tmp)
        group_labels.extend([label] * group_tmp.shape[0])

        subj_tmp = ordered[cond_flags][:, s_idx].reshape(-1, n_features)
        subj_data.append(subj_tmp)
        subj_labels.extend([label] * subj_tmp.shape[0])

    return (np.concatenate(group_data, axis=0), np.array(group_labels),
            np.concatenate(subj_data, axis=0), np.array(subj_labels))


def condition_patterns(patterns: MCPAPatterns, conditions: Sequence[Condition]) -> MCPAPatterns:
    """Collapse the condition axis to one entry per condition (mean over its event types)"""
    ax = patterns.axis('condition')
    collapsed = [nanmean(np.take(patterns.patterns, resolve_condition(condition, patterns.event_types), axis=ax),
                         axis=ax)
                 for condition in conditions]
    return MCPAPatterns(
        patterns=np.stack(collapsed, axis=ax),
        dimensions=patterns.dimensions,
        event_types=tuple(condition_label(condition) for condition in conditions),
        incl_subjects=patterns.incl_subjects,
        incl_channels=patterns.incl_channels
    )
