import numpy as np
import logging
import warnings
from typing import Tuple, Union
from sklearn.preprocessing import MinMaxScaler

from mcpa.loaders import MCPAPatterns

logger = logging.getLogger(__name__)


def nanmean(data: np.ndarray, axis: int) -> np.ndarray:
    """Mean along `axis` ignoring NaNs; all-NaN slices give NaN without a warning"""
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', category=RuntimeWarning)
        return np.nanmean(data, axis=axis)


def masked_pearson(x: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """Pearson r between x and every row of Y, using pairwise-complete finite values"""
    valid = np.isfinite(x)[None, :] & np.isfinite(Y)
    counts = valid.sum(axis=1)
    with np.errstate(invalid='ignore', divide='ignore'):
        x_mean = np.where(valid, x[None, :], 0).sum(axis=1) / counts
        y_mean = np.where(valid, Y, 0).sum(axis=1) / counts
        dx = np.where(valid, x[None, :] - x_mean[:, None], 0)
        dy = np.where(valid, Y - y_mean[:, None], 0)
        r = (dx * dy).sum(axis=1) / np.sqrt((dx ** 2).sum(axis=1) * (dy ** 2).sum(axis=1))
    r[counts < 2] = np.nan
    r[~np.isfinite(r)] = np.nan
    return r


def remove_nan_features(*arrays: np.ndarray) -> Union[np.ndarray, Tuple[np.ndarray, ...]]:
        """
        Remove feature columns with NaN values consistently across arrays.

        Parameters:
        -----------
        *arrays: np.ndarray
            Variable number of (n_samples x n_features) arrays sharing features

        Returns:
        -----------
        np.ndarray or Tuple[np.ndarray, ...]: Cleaned array(s)
        """

        valid_masks = [np.all(np.isfinite(arr), axis=0) for arr in arrays]
        valid_features = np.logical_and.reduce(valid_masks)

        n_removed = np.sum(~valid_features)
        if n_removed > 0:
            logger.info(f"Removing {n_removed} NaN features from {len(arrays)} arrays")

        cleaned = tuple(arr[:, valid_features] for arr in arrays)

        return cleaned[0] if len(arrays) == 1 else cleaned


def minmax_scale_patterns(patterns: MCPAPatterns,
                          feature_range: Tuple[float, float] = (0, 1),
                          within_sessions: bool = True) -> MCPAPatterns:
    """
    Scale each participant's data feature-wise into `feature_range`.

    Parameters:
    -----------
    patterns : MCPAPatterns
        Patterns with 'feature' and 'subject' axes
    feature_range : tuple
        Target (min, max)
    within_sessions : bool
        If True and a 'session' axis exists, every session of a participant is
        scaled on its own; otherwise all of a participant's sessions share one scale

    Returns:
    --------
    MCPAPatterns : scaled copy
    """
    split_axes = ['subject']
    if within_sessions and 'session' in patterns.dimensions:
        split_axes.append('session')
    rest = [d for d in patterns.dimensions if d not in split_axes and d != 'feature']

    # (split cells..., rest..., feature)
    ordered = patterns.reorder(split_axes + rest + ['feature'])
    data = ordered.patterns.copy()
    n_cells = int(np.prod(data.shape[:len(split_axes)]))
    cells = data.reshape(n_cells, -1, data.shape[-1])

    for cell in cells:
        if not np.any(np.isfinite(cell)):
            continue
        # MinMaxScaler ignores NaNs when fitting and keeps them in the output
        cell[:] = MinMaxScaler(feature_range=feature_range).fit_transform(cell)

    scaled = MCPAPatterns(
        patterns=cells.reshape(data.shape),
        dimensions=ordered.dimensions,
        event_types=ordered.event_types,
        incl_subjects=ordered.incl_subjects,
        incl_channels=ordered.incl_channels
    )
    return scaled.reorder(patterns.dimensions)
