import pytest

import numpy as np
import mcpa.decoders as decoders
from mcpa.classifiers import MCPAClassifier, SVMClassifier
from mcpa.config import MCPAConfig
from mcpa.decoders import DecoderState, ModelBasedDecoder, NFoldDecoder
from mcpa.dimensions import RAW_DIMENSIONS
from mcpa.loaders import MCPAPatterns
from mcpa.rsa import RSAClassifier


def make_prototypes(n_conditions, n_features, seed=0):
    """ condition patterns with distinct pairwise similarities. """
    rng = np.random.default_rng(seed)
    if n_conditions == 2:
        return rng.standard_normal((2, n_features)) * 3
    basis = np.linalg.qr(rng.standard_normal((n_features, 3)))[0].T * 10
    return np.vstack([basis[0],
                      basis[0] + 0.5 * basis[1],
                      0.5 * basis[0] - basis[1] + basis[2]])


def make_patterns(prototypes, n_subj=4, n_rep=3, n_time=4, n_sessions=2, noise=0.05, seed=1):
    """ raw condition x repetition x time x feature x session x subject patterns. """
    rng = np.random.default_rng(seed)
    n_cond, n_features = prototypes.shape
    data = np.broadcast_to(prototypes[:, None, None, :, None, None],
                           (n_cond, n_rep, n_time, n_features, n_sessions, n_subj)).copy()
    data += rng.normal(0, noise, data.shape)
    event_types = tuple(f'cond{i}' for i in range(n_cond))
    return MCPAPatterns(data, RAW_DIMENSIONS, event_types=event_types)


class TestBinaryDecoding:
    def setup_method(self):
        self.n_subj, self.n_features = 4, 6
        self.patterns = make_patterns(make_prototypes(2, self.n_features), n_subj=self.n_subj)

    def test_end_to_end_shapes(self):
        """ 4 participants, 2 conditions, one full subset -> (1, 4) subsetXsubj per condition. """
        decoder = NFoldDecoder(MCPAConfig(test_handle=MCPAClassifier(), verbose=False))
        assert decoder.state is DecoderState.INITIALIZED
        results = decoder.run(self.patterns)

        assert decoder.state is DecoderState.COMPLETE
        assert len(results.accuracy) == 2, "One accuracy entry per condition."
        for condition_accuracy in results.accuracy:
            assert condition_accuracy.subsetXsubj.shape == (1, self.n_subj)
            assert condition_accuracy.subjXchan.shape == (self.n_subj, self.n_features)
            assert np.allclose(condition_accuracy.subset_x_subj, 1.0), "Clean data should decode perfectly."
        assert results.condition_labels == ('0', '1')
        assert np.all(results.fold_durations >= 0)

    def test_held_out_subject_not_in_training(self):
        # feature 0 carries the participant index
        data = self.patterns.patterns.copy()
        data[:, :, :, 0] += 1000 * np.arange(self.n_subj)
        patterns = MCPAPatterns(data, RAW_DIMENSIONS, event_types=self.patterns.event_types)

        seen = []

        class Spy(MCPAClassifier):
            def __call__(self, group_data, group_labels, subj_data, opts=None):
                seen.append((set(np.round(group_data[:, 0] / 1000).astype(int)),
                             set(np.round(subj_data[:, 0] / 1000).astype(int))))
                return super().__call__(group_data, group_labels, subj_data, opts)

        NFoldDecoder(MCPAConfig(test_handle=Spy(), verbose=False)).run(patterns)
        assert len(seen) == self.n_subj, "One classifier call per fold with a single subset."
        for s_idx, (training, testing) in enumerate(seen):
            assert s_idx not in training, f"Participant {s_idx} leaked into its own training data."
            assert testing == {s_idx}

    def test_channel_subsets(self):
        config = MCPAConfig(test_handle=SVMClassifier(), setsize=2, incl_channels=[0, 2, 3, 5],
                            verbose=False, random_state=0)
        results = NFoldDecoder(config).run(self.patterns)
        assert results.n_sets == 6, "C(4, 2) channel subsets expected."
        assert results.accuracy[0].subset_x_subj.shape == (6, self.n_subj)
        assert results.accuracy[0].subj_x_feature.shape == (self.n_subj, 4)
        assert np.array_equal(results.incl_channels, [0, 2, 3, 5])
        assert len(results.to_dataframe()) == 2 * 6 * self.n_subj

    def test_normalized_data(self):
        config = MCPAConfig(test_handle=MCPAClassifier(), norm_data=True, verbose=False)
        results = NFoldDecoder(config).run(self.patterns)
        assert results.accuracy[0].subset_x_subj.shape == (1, self.n_subj)

    def test_classifier_failure_aborts_run(self):
        def broken(*args):
            raise RuntimeError("classifier crashed")

        decoder = NFoldDecoder(MCPAConfig(test_handle=broken, verbose=False))
        with pytest.raises(RuntimeError, match="classifier crashed"):
            decoder.run(self.patterns)
        assert decoder.state is DecoderState.FOLDING, "The run must stop in the fold that failed."

    def test_unknown_summarize_dimension(self):
        config = MCPAConfig(test_handle=MCPAClassifier(), summarize_dimensions=['trial'], verbose=False)
        with pytest.raises(ValueError, match="Unknown dimension 'trial'"):
            NFoldDecoder(config).run(self.patterns)

    def test_setsize_exceeds_channels(self):
        config = MCPAConfig(test_handle=MCPAClassifier(), setsize=self.n_features + 1, verbose=False)
        with pytest.raises(ValueError, match="setsize"):
            NFoldDecoder(config).run(self.patterns)


class TestDispatch:
    @pytest.mark.parametrize('handle', [MCPAClassifier(), SVMClassifier(), RSAClassifier(metric='pearson')])
    @pytest.mark.parametrize('pairwise', [False, True])
    @pytest.mark.parametrize('n_conditions', [2, 3])
    def test_binary_and_rsa_paths_never_mix(self, monkeypatch, handle, pairwise, n_conditions):
        calls = {'binary': 0, 'rsa': 0}

        def fake_classify_subset(*args, **kwargs):
            calls['binary'] += 1
            return np.ones(n_conditions)

        def fake_rsa_fold(self, s_idx, patterns, config):
            calls['rsa'] += 1

        monkeypatch.setattr(decoders, 'classify_subset', fake_classify_subset)
        monkeypatch.setattr(NFoldDecoder, '_run_rsa_fold', fake_rsa_fold)

        patterns = make_patterns(make_prototypes(n_conditions, 6), n_subj=3)
        config = MCPAConfig(test_handle=handle, conditions=tuple(range(n_conditions)),
                            opts_struct={'pairwise': pairwise}, verbose=False)
        NFoldDecoder(config).run(patterns)

        if n_conditions == 2:
            assert calls['rsa'] == 0, "Two conditions must never take the RSA path."
            assert calls['binary'] == 3
        else:
            assert calls['binary'] == 0, "Three or more conditions must never take the binary path."
            assert calls['rsa'] == 3


class TestRSADecoding:
    def setup_method(self):
        self.n_subj, self.n_features = 4, 12
        self.prototypes = make_prototypes(3, self.n_features)
        self.patterns = make_patterns(self.prototypes, n_subj=self.n_subj, noise=0.01)

    def test_nway(self):
        config = MCPAConfig(test_handle=RSAClassifier(), conditions=(0, 1, 2),
                            opts_struct={'similarity_space': True, 'metric': 'pearson'},
                            verbose=False, random_state=0)
        results = NFoldDecoder(config).run(self.patterns)
        assert results.accuracy_matrix.shape == (3, 3, 1, self.n_subj)
        assert np.allclose(results.accuracy_matrix, 1.0), "Every condition should be recovered."
        assert results.patterns.dimensions == ('condition', 'feature', 'session', 'subject')
        assert set(results.to_dataframe().columns) >= {'condition', 'compared_to', 'accuracy'}

    def test_pairwise_fills_both_cells(self):
        config = MCPAConfig(test_handle=RSAClassifier(), conditions=(0, 1, 2),
                            opts_struct={'similarity_space': False, 'metric': 'euclidean', 'pairwise': True},
                            verbose=False)
        results = NFoldDecoder(config).run(self.patterns)
        matrix = results.accuracy_matrix[:, :, 0, :]
        off_diagonal = ~np.eye(3, dtype=bool)
        assert np.allclose(matrix[off_diagonal], 1.0), "Every pair should be oriented correctly."
        assert np.all(np.isnan(matrix[~off_diagonal])), "Pairs never fill the diagonal."
        assert np.allclose(matrix, np.transpose(matrix, (1, 0, 2)), equal_nan=True)

    def test_pairwise_three_conditions_in_similarity_space(self):
        config = MCPAConfig(test_handle=RSAClassifier(), conditions=(0, 1, 2),
                            opts_struct={'similarity_space': True, 'metric': 'pearson', 'pairwise': True},
                            verbose=False)
        results = NFoldDecoder(config).run(self.patterns)
        matrix = results.accuracy_matrix[:, :, 0, :]
        off_diagonal = ~np.eye(3, dtype=bool)
        assert np.allclose(matrix[off_diagonal], 1.0), "Three conditions should still be oriented pairwise."

    def test_model_based(self):
        config = MCPAConfig(test_handle=RSAClassifier(), conditions=(0, 1, 2),
                            opts_struct={'similarity_space': True, 'metric': 'pearson'},
                            verbose=False, random_state=0)
        results = ModelBasedDecoder(config, np.corrcoef(self.prototypes)).run(self.patterns)
        assert results.test_type == 'model_based'
        assert np.allclose(results.accuracy_matrix, 1.0)

    def test_model_based_needs_three_conditions(self):
        config = MCPAConfig(test_handle=RSAClassifier(), verbose=False)
        with pytest.raises(ValueError, match="at least 3 conditions"):
            ModelBasedDecoder(config, np.eye(2)).run(self.patterns)
