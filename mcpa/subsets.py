import itertools
import logging
import math
import random
import sys
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_MAX_SETS = 1_000_000


@dataclass
class SubsetList:
    """Channel subsets to analyse, one row per subset"""
    positions: np.ndarray  # (n_sets, setsize) indices into the included channels
    channels: np.ndarray  # (n_sets, setsize) the same subsets as original channel ids
    n_possible: int  # C(N, k) before any subsampling

    def __post_init__(self):
        if self.positions.shape != self.channels.shape:
            raise ValueError("positions and channels must have the same shape")

    @property
    def n_sets(self) -> int:
        return self.positions.shape[0]

    @property
    def setsize(self) -> int:
        return self.positions.shape[1]

    @property
    def subsampled(self) -> bool:
        return self.n_sets < self.n_possible

    def __len__(self):
        return self.n_sets


def _unrank_combination(rank: int, n: int, k: int) -> List[int]:
    """The `rank`-th k-combination of range(n) in lexicographic order"""
    combination = []
    candidate = 0
    for remaining in range(k, 0, -1):
        # Skip candidates whose block of combinations lies before `rank`
        while True:
            block = math.comb(n - candidate - 1, remaining - 1)
            if rank < block:
                break
            rank -= block
            candidate += 1
        combination.append(candidate)
        candidate += 1
    return combination


def find_sets(n_channels: int, setsize: Optional[int] = None,
              max_sets: int = DEFAULT_MAX_SETS,
              random_state: Optional[int] = None) -> np.ndarray:
    """
    Enumerate the channel subsets to analyse, as positions 0..n_channels-1.

    If setsize equals the number of channels there is a single subset, the full
    set. If C(n_channels, setsize) exceeds max_sets, max_sets distinct subsets
    are drawn uniformly at random from all combinations instead.

    Parameters:
    -----------
    n_channels : int
        Number of included channels
    setsize : int, optional
        Channels per subset. Default: all channels
    max_sets : int
        Cap on the number of subsets
    random_state : int, optional
        Seed for subsampling

    Returns:
    --------
    np.ndarray : (n_sets, setsize) array of strictly increasing positions
    """
    if setsize is None:
        setsize = n_channels
    if setsize < 1:
        raise ValueError(f"setsize must be at least 1, got {setsize}")
    if setsize > n_channels:
        raise ValueError(f"setsize ({setsize}) cannot exceed the number of "
                         f"included channels ({n_channels})")
    if max_sets < 1:
        raise ValueError(f"max_sets must be at least 1, got {max_sets}")

    n_possible = math.comb(n_channels, setsize)
    if n_possible <= max_sets:
        sets = list(itertools.combinations(range(n_channels), setsize))
    else:
        logger.warning(f"{n_possible} possible subsets of {setsize} channels exceed "
                       f"max_sets={max_sets}; subsampling {max_sets} of them")
        rng = random.Random(random_state)
        if n_possible <= sys.maxsize:
            ranks = rng.sample(range(n_possible), max_sets)
        else:
            # range() has no len() this large; collisions are negligible here
            drawn = set()
            while len(drawn) < max_sets:
                drawn.add(rng.randrange(n_possible))
            ranks = list(drawn)
        ranks = sorted(ranks)
        sets = [_unrank_combination(rank, n_channels, setsize) for rank in ranks]

    return np.array(sets, dtype=int).reshape(len(sets), setsize)


def map_sets(unmapped_sets: np.ndarray, incl_channels: Sequence[int]) -> np.ndarray:
    """Translate subset positions into the original channel ids"""
    incl_channels = np.asarray(incl_channels)
    return incl_channels[unmapped_sets]


def build_subsets(incl_channels: Sequence[int], setsize: Optional[int] = None,
                  max_sets: int = DEFAULT_MAX_SETS,
                  random_state: Optional[int] = None) -> SubsetList:
    """Enumerate subsets of the included channels and keep both index spaces"""
    n_channels = len(incl_channels)
    if setsize is None:
        setsize = n_channels
    positions = find_sets(n_channels, setsize, max_sets, random_state)
    return SubsetList(
        positions=positions,
        channels=map_sets(positions, incl_channels),
        n_possible=math.comb(n_channels, setsize)
    )
