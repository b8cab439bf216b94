import pytest

import numpy as np
from mcpa.base import ClassifierKind
from mcpa.classifiers import MCPAClassifier, SVMClassifier, classify_subset
from mcpa.utils import remove_nan_features


class TestInjectedClassifiers:
    def setup_method(self):
        rng = np.random.default_rng(0)
        self.n_features = 8
        self.centroids = {'A': rng.standard_normal(self.n_features) * 3,
                          'B': rng.standard_normal(self.n_features) * 3}
        self.group_labels = np.array(['A'] * 6 + ['B'] * 6)
        self.group_data = np.vstack([self.centroids[label] + rng.normal(0, 0.1, self.n_features)
                                     for label in self.group_labels])
        self.subj_labels = np.array(['A', 'B', 'B'])
        self.subj_data = np.vstack([self.centroids[label] + rng.normal(0, 0.1, self.n_features)
                                    for label in self.subj_labels])

    def test_mcpa_classifier(self):
        predicted = MCPAClassifier()(self.group_data, self.group_labels, self.subj_data)
        assert predicted == ['A', 'B', 'B'], "Rows should go to the nearest centroid by correlation."
        assert MCPAClassifier.kind is ClassifierKind.MCPA

    def test_mcpa_classifier_undefined_row(self):
        subj_data = self.subj_data.copy()
        subj_data[0] = np.nan
        predicted = MCPAClassifier()(self.group_data, self.group_labels, subj_data)
        assert predicted[0] is None, "A row without data cannot be classified."

    def test_svm_classifier(self):
        classifier = SVMClassifier()
        predicted = classifier(self.group_data, self.group_labels, self.subj_data, {'C': 0.5})
        assert list(predicted) == ['A', 'B', 'B']
        assert classifier.C == 0.5, "Options should set the estimator parameters."

    def test_svm_scaler_fit_on_training_rows(self):
        classifier = SVMClassifier().fit(self.group_data, self.group_labels)
        scaler = classifier.pipeline.named_steps['standardscaler']
        assert np.allclose(scaler.mean_, self.group_data.mean(axis=0)), "Scaling must use training statistics."
        # a single test row cannot be standardized on its own
        assert list(classifier.predict(self.subj_data[:1])) == ['A']

    def test_svm_set_params_resets_fit(self):
        classifier = SVMClassifier().fit(self.group_data, self.group_labels)
        classifier.set_params(C=2.0)
        assert classifier.get_params() == {'C': 2.0, 'kernel': 'linear', 'random_state': None}
        with pytest.raises(ValueError, match="not fitted"):
            classifier.predict(self.subj_data)

    def test_svm_invalid_param(self):
        with pytest.raises(ValueError, match="Invalid parameter"):
            SVMClassifier().set_params(gamma=1.0)

    def test_svm_not_fitted(self):
        with pytest.raises(ValueError, match="not fitted"):
            SVMClassifier().predict(self.subj_data)

    def test_remove_nan_features(self):
        train = self.group_data.copy()
        train[0, 2] = np.nan
        cleaned_train, cleaned_test = remove_nan_features(train, self.subj_data)
        assert cleaned_train.shape[1] == self.n_features - 1
        assert cleaned_test.shape[1] == self.n_features - 1, "Features must be dropped from both arrays."


class TestClassifySubset:
    def setup_method(self):
        self.group_data = np.arange(24, dtype=float).reshape(6, 4)
        self.group_labels = np.array(['0', '0', '0', '1', '1', '1'])
        self.subj_data = np.zeros((4, 4))
        self.subj_labels = np.array(['0', '0', '1', '1'])

    def test_accuracy_per_condition(self):
        def fixed(group_data, group_labels, subj_data, opts):
            return ['0', '1', '1', '1']

        accuracy = classify_subset(fixed, self.group_data, self.group_labels, self.subj_data,
                                   self.subj_labels, [0, 2], ['0', '1'])
        assert np.allclose(accuracy, [0.5, 1.0])

    def test_subset_columns_are_passed(self):
        seen = {}

        def spy(group_data, group_labels, subj_data, opts):
            seen['group'] = group_data
            seen['opts'] = opts
            return list(group_labels[:len(subj_data)])

        classify_subset(spy, self.group_data, self.group_labels, self.subj_data,
                        self.subj_labels, [1, 3], ['0', '1'], {'C': 2})
        assert np.array_equal(seen['group'], self.group_data[:, [1, 3]]), "Only subset columns should be passed."
        assert seen['opts'] == {'C': 2}

    def test_condition_without_test_rows(self):
        accuracy = classify_subset(lambda *args: ['0', '0', '1', '1'], self.group_data, self.group_labels,
                                   self.subj_data, self.subj_labels, [0], ['0', '1', '2'])
        assert np.isnan(accuracy[2]), "A condition with no test rows has no accuracy."

    def test_classifier_errors_propagate(self):
        def broken(*args):
            raise RuntimeError("solver failed")

        with pytest.raises(RuntimeError, match="solver failed"):
            classify_subset(broken, self.group_data, self.group_labels, self.subj_data,
                            self.subj_labels, [0], ['0', '1'])
