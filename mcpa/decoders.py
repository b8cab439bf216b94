import numpy as np
import time
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from tqdm import tqdm

from mcpa.base import ClassifierKind
from mcpa.classifiers import classify_subset
from mcpa.config import MCPAConfig
from mcpa.dimensions import parse_token, recommend_dimensions
from mcpa.loaders import MCPAPatterns, finalize_patterns, summarize_patterns, validate_final_dimensions
from mcpa.results import MCPAResults
from mcpa.rsa import RSAClassifier, RSAOptions, ReferenceModel
from mcpa.splitting import FOLD_AXES, condition_label, condition_patterns, split_test_and_train
from mcpa.subsets import build_subsets
from mcpa.utils import minmax_scale_patterns

logger = logging.getLogger(__name__)


class DecoderState(Enum):
    INITIALIZED = 'initialized'
    SUMMARIZING = 'summarizing'
    FOLDING = 'folding'
    COMPLETE = 'complete'


class NFoldDecoder:
    """
    Leave-one-participant-out decoding over channel subsets.

    Two conditions go through the injected binary classifier; three or more
    go through the RSA classifier.
    """
    test_type = 'between'

    def __init__(self, config: MCPAConfig):
        self.config = config
        self.state = DecoderState.INITIALIZED
        self.results: Optional[MCPAResults] = None
        self.rsa_handle = None
        self.rsa_options: Dict[str, Any] = {}

    def run(self, patterns: MCPAPatterns) -> MCPAResults:
        """
        Run the complete cross-validation

        Parameters:
        -----------
        patterns : MCPAPatterns
            Epoched patterns with at least condition, feature and subject axes

        Returns:
        --------
        MCPAResults with the accuracies of every participant and subset
        """
        self.state = DecoderState.SUMMARIZING
        config = self._validate(patterns)
        patterns = self._select(patterns, config)

        summarize_dimensions, final_dimensions = self._dimensions(config)
        summarized = self._summarize(patterns, config, summarize_dimensions, final_dimensions)

        subsets = build_subsets(summarized.incl_channels, config.setsize,
                                config.max_sets, config.random_state)
        if config.verbose:
            logger.info(f"Analysing {subsets.n_sets} of {subsets.n_possible} possible subsets "
                        f"of {subsets.setsize} channels")

        self.results = MCPAResults(
            patterns=summarized,
            conditions=config.conditions,
            condition_labels=tuple(condition_label(c) for c in config.conditions),
            subsets=subsets,
            summarize_dimensions=tuple(summarize_dimensions),
            final_dimensions=tuple(final_dimensions),
            test_type=self.test_type
        )

        if config.n_conditions > 2:
            self.rsa_handle = self._rsa_handle(config)
            self.rsa_options = self._rsa_options(self.rsa_handle, config)

        self.state = DecoderState.FOLDING
        n_subj = summarized.size('subject')
        for s_idx in range(n_subj):
            if config.verbose:
                logger.info(f"Running {subsets.n_sets} feature subsets for Subject {s_idx + 1} / {n_subj}")
            start = time.time()

            if config.n_conditions == 2:
                self._run_binary_fold(s_idx, summarized, config)
            else:
                self._run_rsa_fold(s_idx, summarized, config)

            self.results.fold_durations[s_idx] = time.time() - start
            if config.verbose:
                logger.info(f"Subject {s_idx + 1} done in {self.results.fold_durations[s_idx] / 60:.1f} mins")

        self.state = DecoderState.COMPLETE
        return self.results

    def _validate(self, patterns: MCPAPatterns) -> MCPAConfig:
        if self.config.within_subjects:
            raise ValueError("Leave-one-participant-out decoding needs within_subjects=False")
        n_sessions = patterns.size('session') if 'session' in patterns.dimensions else None
        config = self.config.validate(n_channels=patterns.size('feature'),
                                      n_subjects=patterns.size('subject'),
                                      n_sessions=n_sessions)
        if len(config.incl_subjects) < 2:
            raise ValueError("Leave-one-participant-out decoding needs at least 2 participants")
        return config

    def _select(self, patterns: MCPAPatterns, config: MCPAConfig) -> MCPAPatterns:
        """Restrict the patterns to the included participants, channels and sessions"""
        selected = patterns.select('subject', config.incl_subjects).select('feature', config.incl_channels)
        if config.incl_sessions is not None and 'session' in selected.dimensions:
            selected = selected.select('session', config.incl_sessions)
        if config.norm_data:
            selected = minmax_scale_patterns(selected, config.minmax, config.norm_within_sessions)
        return selected

    def _dimensions(self, config: MCPAConfig) -> Tuple[List[str], List[str]]:
        """Configured dimension recipes, with recommended ones filling the gaps"""
        handle = config.test_handle
        if config.classifier_kind is None and hasattr(handle, 'recommend_dimensions'):
            recommended = handle.recommend_dimensions(config.within_subjects)
        else:
            recommended = recommend_dimensions(config.kind, config.within_subjects)

        summarize_dimensions = config.summarize_dimensions
        if summarize_dimensions is None:
            summarize_dimensions = recommended[0]
            logger.warning(f"No summarize_dimensions given; using recommended {summarize_dimensions} "
                           f"for a '{config.kind.value}' classifier")
        final_dimensions = config.final_dimensions
        if final_dimensions is None:
            final_dimensions = recommended[1]
            logger.warning(f"No final_dimensions given; using recommended {final_dimensions} "
                           f"for a '{config.kind.value}' classifier")
        return list(summarize_dimensions), list(final_dimensions)

    def _summarize(self, patterns: MCPAPatterns, config: MCPAConfig,
                   summarize_dimensions: List[str], final_dimensions: List[str]) -> MCPAPatterns:
        if config.verbose:
            logger.info(f"Summarizing dimensions with {getattr(config.summary_handle, '__name__', 'summary_handle')}:")
            logger.info(f"{patterns.describe()}")
        summarized = summarize_patterns(config.summary_handle, patterns, summarize_dimensions)
        if config.verbose:
            logger.info(f"-> {summarized.describe()}")

        for name in FOLD_AXES:
            if name not in summarized.dimensions:
                raise ValueError(f"Axis '{name}' was summarized away; participant-level decoding "
                                 f"needs {list(FOLD_AXES)} to remain")

        validate_final_dimensions(summarized, final_dimensions)
        # Recipes that merge a fold axis describe the splitter's row layout
        plain_tokens = {token for token in final_dimensions if len(parse_token(token)) == 1}
        if all(name in plain_tokens for name in FOLD_AXES):
            summarized = finalize_patterns(summarized, final_dimensions)
            if config.verbose:
                logger.info(f"Final dimensions: {summarized.describe()}")
        return summarized

    def _run_binary_fold(self, s_idx: int, patterns: MCPAPatterns, config: MCPAConfig):
        results = self.results
        group_data, group_labels, subj_data, subj_labels = split_test_and_train(
            s_idx, config.conditions, patterns)

        fold_accuracy = np.full((config.n_conditions, results.n_sets, results.n_channels), np.nan)
        for set_idx in tqdm(range(results.n_sets), desc=f"Subject {s_idx + 1}",
                            disable=not config.verbose):
            positions = results.subsets.positions[set_idx]
            accuracy = classify_subset(config.test_handle, group_data, group_labels,
                                       subj_data, subj_labels, positions,
                                       results.condition_labels, config.classifier_options)
            fold_accuracy[:, set_idx, positions] = accuracy[:, None]

        results.record_binary_fold(s_idx, fold_accuracy)

    def _rsa_handle(self, config: MCPAConfig):
        if config.kind is ClassifierKind.RSA:
            return config.test_handle
        logger.warning(f"{config.n_conditions} conditions are decoded with the RSA classifier; "
                       f"the '{config.kind.value}' test_handle is not used")
        return RSAClassifier()

    @staticmethod
    def _rsa_options(handle, config: MCPAConfig) -> Dict[str, Any]:
        """Classifier options with the similarity space and metric settled once per run"""
        opts = dict(getattr(handle, 'defaults', {}))
        opts.update(config.classifier_options)
        opts.update(RSAOptions.from_dict(opts).to_dict())
        return opts

    def _training_model(self, group: np.ndarray, positions: np.ndarray):
        return group[:, positions]

    def _run_rsa_fold(self, s_idx: int, patterns: MCPAPatterns, config: MCPAConfig):
        results = self.results
        labels = list(results.condition_labels)

        collapsed = condition_patterns(patterns, config.conditions)
        others = [d for d in collapsed.dimensions if d not in FOLD_AXES]
        ordered = collapsed.reorder(['condition', 'feature'] + others + ['subject'])
        group = ordered.exclude('subject', s_idx).patterns
        subj = ordered.select('subject', [s_idx]).patterns[..., 0]

        for set_idx in tqdm(range(results.n_sets), desc=f"Subject {s_idx + 1}",
                            disable=not config.verbose):
            positions = results.subsets.positions[set_idx]
            result = self.rsa_handle(self._training_model(group, positions), labels,
                                     subj[:, positions], labels, self.rsa_options)
            results.record_rsa_fold(s_idx, set_idx, result)


class ModelBasedDecoder(NFoldDecoder):
    """
    Decode every participant against a fixed semantic model instead of the
    other participants' data.

    The model is either a square condition x condition similarity matrix or
    (n_dimensions x n_conditions) feature data whose columns are correlated
    with opts_struct['corr_stat'] (default 'spearman').
    """
    test_type = 'model_based'

    def __init__(self, config: MCPAConfig, semantic_model: np.ndarray):
        super().__init__(config)
        self.reference = ReferenceModel.from_array(
            semantic_model, config.opts_struct.get('corr_stat', 'spearman'))

    def _validate(self, patterns: MCPAPatterns) -> MCPAConfig:
        if self.config.n_conditions < 3:
            raise ValueError("Model-based decoding needs at least 3 conditions; two conditions "
                             "give a single similarity value to align")
        if self.reference.n_conditions != self.config.n_conditions:
            raise ValueError(f"Semantic model has {self.reference.n_conditions} conditions but "
                             f"{self.config.n_conditions} conditions were given")
        return super()._validate(patterns)

    def _training_model(self, group: np.ndarray, positions: np.ndarray):
        return self.reference
