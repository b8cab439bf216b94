import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from mcpa.base import ClassifierKind
from mcpa.subsets import DEFAULT_MAX_SETS
from mcpa.utils import nanmean

logger = logging.getLogger(__name__)

Condition = Union[int, str, Sequence[int], Sequence[str]]


@dataclass(frozen=True)
class MCPAConfig:
    """Options for an MCPA cross-validation run"""
    # Analysis scope (None = everything available)
    incl_channels: Optional[Tuple[int, ...]] = None
    incl_subjects: Optional[Tuple[int, ...]] = None
    incl_sessions: Optional[Tuple[int, ...]] = None

    # Epoching windows in seconds
    baseline_window: Tuple[float, float] = (-5, 0)
    time_window: Tuple[float, float] = (2, 6)

    # Condition identifiers: event type names or 0-based event type indices
    conditions: Tuple[Condition, ...] = (0, 1)

    # Feature construction
    summary_handle: Callable = nanmean
    summarize_dimensions: Optional[Tuple[str, ...]] = None
    final_dimensions: Optional[Tuple[str, ...]] = None
    within_subjects: bool = False

    # Channel subsets
    setsize: Optional[int] = None
    max_sets: int = DEFAULT_MAX_SETS

    # Classifier
    test_handle: Optional[Callable] = None
    classifier_kind: Optional[ClassifierKind] = None
    opts_struct: Dict[str, Any] = field(default_factory=dict)
    tiebreak: bool = True

    # Feature scaling
    norm_data: bool = False
    norm_within_sessions: bool = True
    minmax: Tuple[float, float] = (0, 1)

    verbose: bool = True
    random_state: Optional[int] = None

    def __post_init__(self):
        # Sequences are stored as tuples
        for name in ('incl_channels', 'incl_subjects', 'incl_sessions',
                     'summarize_dimensions', 'final_dimensions'):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, tuple(value))
        object.__setattr__(self, 'conditions', tuple(self.conditions))
        object.__setattr__(self, 'baseline_window', tuple(self.baseline_window))
        object.__setattr__(self, 'time_window', tuple(self.time_window))
        object.__setattr__(self, 'minmax', tuple(self.minmax))
        if self.classifier_kind is not None:
            object.__setattr__(self, 'classifier_kind', ClassifierKind(self.classifier_kind))

    @property
    def kind(self) -> ClassifierKind:
        """Classifier family, from the explicit tag or the handle's own `kind`"""
        if self.classifier_kind is not None:
            return self.classifier_kind
        return getattr(self.test_handle, 'kind', ClassifierKind.OTHER)

    @property
    def n_conditions(self) -> int:
        return len(self.conditions)

    @property
    def classifier_options(self) -> Dict[str, Any]:
        """Options passed to the classifier, with config-level defaults filled in"""
        opts = {'tiebreak': self.tiebreak, 'random_state': self.random_state}
        opts.update(self.opts_struct)
        return opts

    def with_options(self, **changes) -> 'MCPAConfig':
        return replace(self, **changes)

    def validate(self, n_channels: int, n_subjects: int,
                 n_sessions: Optional[int] = None) -> 'MCPAConfig':
        """
        Check the options against the data and fill in data-dependent defaults.

        Parameters:
        -----------
        n_channels : int
            Channels (features) available in the patterns
        n_subjects : int
            Participants available in the patterns
        n_sessions : int, optional
            Sessions available in the patterns

        Returns:
        --------
        MCPAConfig : copy with incl_channels, incl_subjects, incl_sessions and setsize set
        """
        if self.test_handle is None:
            raise ValueError("test_handle is required")
        if not callable(self.test_handle):
            raise ValueError("test_handle must be callable")
        if not callable(self.summary_handle):
            raise ValueError("summary_handle must be callable")
        if self.n_conditions < 2:
            raise ValueError(f"At least 2 conditions are required, got {self.n_conditions}")

        incl_channels = self._check_indices('incl_channels', self.incl_channels, n_channels)
        incl_subjects = self._check_indices('incl_subjects', self.incl_subjects, n_subjects)
        incl_sessions = self.incl_sessions
        if n_sessions is not None:
            incl_sessions = self._check_indices('incl_sessions', self.incl_sessions, n_sessions)

        setsize = len(incl_channels) if self.setsize is None else self.setsize
        if not 1 <= setsize <= len(incl_channels):
            raise ValueError(f"setsize ({setsize}) must be between 1 and the number of "
                             f"included channels ({len(incl_channels)})")
        if self.max_sets < 1:
            raise ValueError(f"max_sets must be at least 1, got {self.max_sets}")

        for name in ('baseline_window', 'time_window', 'minmax'):
            window = getattr(self, name)
            if len(window) != 2 or window[0] > window[1]:
                raise ValueError(f"{name} must be (onset, offset) with onset <= offset, got {window}")

        return replace(self, incl_channels=incl_channels, incl_subjects=incl_subjects,
                       incl_sessions=incl_sessions, setsize=setsize)

    @staticmethod
    def _check_indices(name: str, indices: Optional[Tuple[int, ...]], n_available: int) -> Tuple[int, ...]:
        if indices is None:
            return tuple(range(n_available))
        if len(indices) == 0:
            raise ValueError(f"{name} cannot be empty")
        if len(set(indices)) != len(indices):
            raise ValueError(f"{name} contains duplicates: {indices}")
        out_of_range = [i for i in indices if not 0 <= i < n_available]
        if out_of_range:
            raise ValueError(f"{name} {out_of_range} out of range for {n_available} available")
        return tuple(int(i) for i in indices)
