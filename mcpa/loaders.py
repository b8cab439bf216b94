import numpy as np
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union
from dataclasses import dataclass
import logging

from mcpa.dimensions import parse_token, merged_name, recipe_names

logger = logging.getLogger(__name__)


@dataclass
class MCPAPatterns:
    # Core data
    patterns: np.ndarray  # one axis per entry in `dimensions`
    dimensions: Tuple[str, ...]  # axis labels, parallel to patterns.shape

    # Event type registry, in first-seen order (parallel to the 'condition' axis)
    event_types: Tuple[str, ...] = ()

    # Original identifiers along the 'subject' and 'feature' axes
    incl_subjects: Optional[np.ndarray] = None
    incl_channels: Optional[np.ndarray] = None

    def __post_init__(self):
        """Validate data consistency"""
        self.patterns = np.asarray(self.patterns, dtype=float)
        self.dimensions = tuple(self.dimensions)
        self.event_types = tuple(self.event_types)

        if len(self.dimensions) != self.patterns.ndim:
            raise ValueError(f"Got {len(self.dimensions)} dimension labels for a "
                             f"{self.patterns.ndim}-D pattern array")
        if len(set(self.dimensions)) != len(self.dimensions):
            raise ValueError(f"Duplicate dimension labels: {self.dimensions}")
        if len(set(self.event_types)) != len(self.event_types):
            raise ValueError(f"Duplicate event types: {self.event_types}")

        if 'condition' in self.dimensions and len(self.event_types) != self.size('condition'):
            raise ValueError(f"{len(self.event_types)} event types for a condition axis "
                             f"of length {self.size('condition')}")

        if 'subject' in self.dimensions:
            if self.incl_subjects is None:
                self.incl_subjects = np.arange(self.size('subject'))
            self.incl_subjects = np.asarray(self.incl_subjects)
            if len(self.incl_subjects) != self.size('subject'):
                raise ValueError("incl_subjects must have the same length as the subject axis")

        if 'feature' in self.dimensions:
            if self.incl_channels is None:
                self.incl_channels = np.arange(self.size('feature'))
            self.incl_channels = np.asarray(self.incl_channels)
            if len(self.incl_channels) != self.size('feature'):
                raise ValueError("incl_channels must have the same length as the feature axis")

    @property
    def shape(self):
        return self.patterns.shape

    @property
    def ndim(self):
        return self.patterns.ndim

    def axis(self, name: str) -> int:
        """Position of the axis labelled `name`"""
        try:
            return self.dimensions.index(name)
        except ValueError:
            raise ValueError(f"Unknown dimension '{name}'. "
                             f"Available dimensions: {list(self.dimensions)}") from None

    def size(self, name: str) -> int:
        return self.patterns.shape[self.axis(name)]

    def describe(self) -> str:
        """Human-readable 'dim x dim' and 'size x size' summary"""
        return (' x '.join(self.dimensions) + '\n' +
                ' x '.join(str(n) for n in self.patterns.shape))

    def _derive(self, patterns: np.ndarray, dimensions: Sequence[str], **changes) -> 'MCPAPatterns':
        """Return new patterns with metadata carried over"""
        metadata = {
            'event_types': self.event_types,
            'incl_subjects': self.incl_subjects if 'subject' in dimensions else None,
            'incl_channels': self.incl_channels if 'feature' in dimensions else None,
        }
        metadata.update(changes)
        return MCPAPatterns(patterns=patterns, dimensions=tuple(dimensions), **metadata)

    def reduce(self, summary_handle: Callable, name: str) -> 'MCPAPatterns':
        """
        Collapse one axis with a summary function

        Parameters:
        -----------
        summary_handle : callable
            Function with signature (array, axis) -> reduced array
        name : str
            Label of the axis to collapse
        """
        ax = self.axis(name)
        reduced = np.asarray(summary_handle(self.patterns, ax))
        if reduced.ndim != self.ndim - 1:
            raise ValueError(f"Summary function returned a {reduced.ndim}-D array when "
                             f"reducing '{name}' from {self.ndim}-D patterns")
        dims = [d for d in self.dimensions if d != name]
        return self._derive(reduced, dims)

    def merge(self, names: Sequence[str]) -> 'MCPAPatterns':
        """
        Merge several axes into one, named 'a+b+...'. The first name varies slowest.
        The merged axis takes the place of the first named axis.
        """
        names = list(names)
        if len(set(names)) != len(names):
            raise ValueError(f"Cannot merge an axis with itself: {names}")
        axes = [self.axis(n) for n in names]
        if len(names) == 1:
            return self

        # Everything before the first named axis stays in front of the merged axis
        leading = [d for d in self.dimensions[:axes[0]] if d not in names]
        trailing = [d for d in self.dimensions[axes[0]:] if d not in names]
        order = leading + names + trailing
        transposed = np.transpose(self.patterns, [self.axis(d) for d in order])

        merged_size = int(np.prod([self.size(n) for n in names]))
        new_shape = ([self.size(d) for d in leading] + [merged_size] +
                     [self.size(d) for d in trailing])
        dims = leading + [merged_name(names)] + trailing
        return self._derive(transposed.reshape(new_shape), dims)

    def reorder(self, names: Sequence[str]) -> 'MCPAPatterns':
        """Transpose the patterns so that the axes follow `names`"""
        names = list(names)
        if sorted(names) != sorted(self.dimensions):
            raise ValueError(f"Reordering {list(self.dimensions)} requires the same labels, "
                             f"got {names}")
        return self._derive(np.transpose(self.patterns, [self.axis(n) for n in names]), names)

    def rename(self, old: str, new: str) -> 'MCPAPatterns':
        ax = self.axis(old)
        if new in self.dimensions and new != old:
            raise ValueError(f"Dimension '{new}' already exists")
        dims = list(self.dimensions)
        dims[ax] = new
        return self._derive(self.patterns, dims)

    def select(self, name: str, indices: Union[Sequence[int], np.ndarray]) -> 'MCPAPatterns':
        """Return new patterns restricted to `indices` along axis `name`"""
        indices = np.atleast_1d(np.asarray(indices, dtype=int))
        ax = self.axis(name)
        selected = np.take(self.patterns, indices, axis=ax)

        changes = {}
        if name == 'condition':
            changes['event_types'] = tuple(self.event_types[i] for i in indices)
        elif name == 'subject':
            changes['incl_subjects'] = self.incl_subjects[indices]
        elif name == 'feature':
            changes['incl_channels'] = self.incl_channels[indices]
        return self._derive(selected, self.dimensions, **changes)

    def exclude(self, name: str, index: int) -> 'MCPAPatterns':
        """Return new patterns without one entry along axis `name`"""
        keep = [i for i in range(self.size(name)) if i != index]
        return self.select(name, keep)


def summarize_patterns(summary_handle: Callable, patterns: MCPAPatterns,
                       summarize_dimensions: Sequence[str]) -> MCPAPatterns:
    """
    Apply a summarize recipe to the patterns, token by token.

    Plain tokens ('time') collapse that axis with `summary_handle`. Merge tokens
    ('repetitionXsession') merge the named axes into a single axis
    ('repetition+session') which a later token may collapse.

    Parameters:
    -----------
    summary_handle : callable
        Reduction with signature (array, axis) -> array; should ignore NaNs
    patterns : MCPAPatterns
        Patterns to summarize
    summarize_dimensions : sequence of str
        Recipe, applied in the order given

    Returns:
    --------
    MCPAPatterns : summarized patterns
    """
    summarized = patterns
    for token in summarize_dimensions:
        names = parse_token(token)
        if len(names) > 1:
            summarized = summarized.merge(names)
        else:
            summarized = summarized.reduce(summary_handle, names[0])
    return summarized


def validate_final_dimensions(patterns: MCPAPatterns, final_dimensions: Sequence[str]):
    """Check that a final recipe names every remaining axis exactly once"""
    names = recipe_names(final_dimensions)
    for name in names:
        patterns.axis(name)
    if sorted(names) != sorted(patterns.dimensions):
        raise ValueError(f"Final dimensions {list(final_dimensions)} do not match the "
                         f"summarized dimensions {list(patterns.dimensions)}")


def finalize_patterns(patterns: MCPAPatterns, final_dimensions: Sequence[str]) -> MCPAPatterns:
    """Merge and reorder the summarized patterns into the final layout"""
    validate_final_dimensions(patterns, final_dimensions)
    finalized = patterns
    order = []
    for token in final_dimensions:
        names = parse_token(token)
        if len(names) > 1:
            finalized = finalized.merge(names)
        order.append(merged_name(names))
    return finalized.reorder(order)


@dataclass
class Recording:
    """One continuous recording session of a participant"""
    data: np.ndarray  # (n_timepoints, n_channels)
    sampling_rate: float
    onsets: Dict[str, Sequence[float]]  # event type -> onset times (s)
    subject_id: str

    def __post_init__(self):
        self.data = np.asarray(self.data, dtype=float)
        if self.data.ndim != 2:
            raise ValueError("Recording data must be a (time x channel) array")
        if self.sampling_rate <= 0:
            raise ValueError("sampling_rate must be positive")

    @property
    def n_channels(self):
        return self.data.shape[1]


def _samples(seconds: float, sampling_rate: float) -> int:
    return int(round(seconds * sampling_rate))


def build_patterns(recordings: Sequence[Recording],
                   time_window: Tuple[float, float] = (2, 6),
                   baseline_window: Tuple[float, float] = (-5, 0),
                   incl_channels: Optional[Sequence[int]] = None) -> MCPAPatterns:
    """
    Epoch continuous recordings into a raw pattern tensor.

    Each event onset yields one repetition: the `time_window` epoch after the
    onset, minus the channel means over `baseline_window`. Sessions of a
    participant are the participant's recordings in the order given. Missing
    repetitions and epochs that run off the recording stay NaN.

    Returns:
    --------
    MCPAPatterns with dimensions
        condition x repetition x time x feature x session x subject
    """
    if not recordings:
        raise ValueError("No recordings to epoch")

    sampling_rate = recordings[0].sampling_rate
    n_channels = recordings[0].n_channels
    for rec in recordings:
        if rec.sampling_rate != sampling_rate:
            raise ValueError("All recordings must share one sampling rate")
        if rec.n_channels != n_channels:
            raise ValueError("All recordings must have the same number of channels")

    channels = np.arange(n_channels) if incl_channels is None else np.asarray(incl_channels, dtype=int)
    if channels.size and (channels.min() < 0 or channels.max() >= n_channels):
        raise ValueError(f"incl_channels out of range for {n_channels} channels")

    # Registries in first-seen order
    subjects: List[str] = []
    sessions: Dict[str, List[Recording]] = {}
    event_types: List[str] = []
    for rec in recordings:
        if rec.subject_id not in sessions:
            subjects.append(rec.subject_id)
            sessions[rec.subject_id] = []
        sessions[rec.subject_id].append(rec)
        for event_type in rec.onsets:
            if event_type not in event_types:
                event_types.append(event_type)

    n_rep = max((len(times) for rec in recordings for times in rec.onsets.values()), default=0)
    n_sessions = max(len(recs) for recs in sessions.values())
    n_time = _samples(time_window[1] - time_window[0], sampling_rate)
    if n_time < 1:
        raise ValueError(f"time_window {time_window} is shorter than one sample")

    patterns = np.full((len(event_types), n_rep, n_time, len(channels), n_sessions, len(subjects)), np.nan)

    n_skipped = 0
    for subj_idx, subject_id in enumerate(subjects):
        for sess_idx, rec in enumerate(sessions[subject_id]):
            n_samples = rec.data.shape[0]
            for event_type, times in rec.onsets.items():
                cond_idx = event_types.index(event_type)
                for rep_idx, onset in enumerate(times):
                    start = _samples(onset + time_window[0], sampling_rate)
                    stop = start + n_time
                    b_start = _samples(onset + baseline_window[0], sampling_rate)
                    b_stop = _samples(onset + baseline_window[1], sampling_rate)
                    if start < 0 or stop > n_samples or b_start < 0 or b_stop > n_samples:
                        n_skipped += 1
                        continue

                    epoch = rec.data[start:stop][:, channels]
                    if b_stop > b_start:
                        epoch = epoch - np.nanmean(rec.data[b_start:b_stop][:, channels], axis=0)
                    patterns[cond_idx, rep_idx, :, :, sess_idx, subj_idx] = epoch

    if n_skipped:
        logger.info(f"Skipped {n_skipped} events whose epochs fall outside their recording")

    return MCPAPatterns(
        patterns=patterns,
        dimensions=('condition', 'repetition', 'time', 'feature', 'session', 'subject'),
        event_types=tuple(event_types),
        incl_subjects=np.array(subjects),
        incl_channels=channels
    )
