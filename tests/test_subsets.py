import math
import pytest

import numpy as np
from mcpa.subsets import build_subsets, find_sets, map_sets


class TestFindSets:
    def setup_method(self):
        self.n_channels = 6

    def test_full_set_is_single_subset(self):
        """ setsize equal to the channel count gives exactly the full sorted set. """
        sets = find_sets(self.n_channels)
        assert sets.shape == (1, self.n_channels), "Expected a single full-set row."
        assert np.array_equal(sets[0], np.arange(self.n_channels)), "Full set should be sorted positions."

    def test_all_combinations(self):
        """ rows are distinct, strictly increasing and count C(N, k). """
        sets = find_sets(self.n_channels, setsize=3)
        assert len(sets) == math.comb(self.n_channels, 3), "Wrong number of combinations."
        assert len({tuple(row) for row in sets}) == len(sets), "Duplicate subsets returned."
        assert np.all(np.diff(sets, axis=1) > 0), "Subsets must be strictly increasing."

    def test_subsampling_caps_count(self):
        """ more combinations than max_sets are subsampled to exactly max_sets distinct rows. """
        sets = find_sets(self.n_channels, setsize=3, max_sets=7, random_state=0)
        assert sets.shape == (7, 3), "Subsampled subsets should be capped at max_sets."
        assert len({tuple(row) for row in sets}) == 7, "Subsampled subsets must be distinct."
        assert np.all(np.diff(sets, axis=1) > 0), "Subsampled subsets must be strictly increasing."
        assert sets.min() >= 0 and sets.max() < self.n_channels, "Positions out of range."

    def test_subsampling_is_seeded(self):
        first = find_sets(self.n_channels, setsize=2, max_sets=5, random_state=3)
        second = find_sets(self.n_channels, setsize=2, max_sets=5, random_state=3)
        assert np.array_equal(first, second), "Same seed should give the same subsets."

    def test_setsize_too_large(self):
        with pytest.raises(ValueError, match="cannot exceed"):
            find_sets(self.n_channels, setsize=self.n_channels + 1)

    def test_setsize_too_small(self):
        with pytest.raises(ValueError, match="at least 1"):
            find_sets(self.n_channels, setsize=0)


class TestMapSets:
    def test_positions_map_to_channel_ids(self):
        """ positions index into the included channel list, not into all channels. """
        incl_channels = [2, 5, 9, 11]
        subsets = build_subsets(incl_channels, setsize=2)
        assert subsets.n_possible == 6, "C(4, 2) subsets expected."
        assert not subsets.subsampled, "Nothing should be subsampled here."
        assert np.array_equal(subsets.channels, map_sets(subsets.positions, incl_channels))
        assert np.array_equal(subsets.channels[0], [2, 5]), "First subset should map to channels 2 and 5."
        assert set(subsets.channels.ravel()) <= set(incl_channels), "Mapped ids must be included channels."
