#!/usr/bin/env python
"""
Run leave-one-participant-out MCPA decoding on epoched patterns
"""
import argparse
import logging
from pathlib import Path
import numpy as np

from mcpa.classifiers import MCPAClassifier, SVMClassifier
from mcpa.config import MCPAConfig
from mcpa.decoders import ModelBasedDecoder, NFoldDecoder
from mcpa.dimensions import RAW_DIMENSIONS
from mcpa.loaders import MCPAPatterns
from mcpa.rsa import RSAClassifier

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

CLASSIFIERS = {
    'mcpa': MCPAClassifier,
    'svm': SVMClassifier,
    'rsa': RSAClassifier,
}


def parse_condition(text: str):
    """'0' -> 0, 'A+B' -> ('A', 'B'), '0+1' -> (0, 1)"""
    parts = text.split('+')
    if all(part.isdigit() for part in parts):
        parts = [int(part) for part in parts]
    return parts[0] if len(parts) == 1 else tuple(parts)


def load_patterns(path: Path) -> MCPAPatterns:
    """Read patterns saved with np.savez (patterns, event_types, optional dimensions)"""
    with np.load(path, allow_pickle=False) as data:
        dimensions = tuple(data['dimensions']) if 'dimensions' in data else RAW_DIMENSIONS
        return MCPAPatterns(
            patterns=data['patterns'],
            dimensions=tuple(str(d) for d in dimensions),
            event_types=tuple(str(e) for e in data['event_types']),
            incl_subjects=data['subject_ids'] if 'subject_ids' in data else None
        )


def main():
    parser = argparse.ArgumentParser(description='Run MCPA cross-validation')
    parser.add_argument('--patterns', type=str, required=True,
                       help='Path to .npz file with patterns and event_types arrays')
    parser.add_argument('--conditions', type=str, nargs='+', default=['0', '1'],
                       help="Conditions as event type names or 0-based indices; join with '+' "
                            "to pool event types (e.g. A+B C)")
    parser.add_argument('--classifier', choices=sorted(CLASSIFIERS), default='mcpa',
                       help='Classifier to inject')
    parser.add_argument('--setsize', type=int, default=None,
                       help='Channels per subset (default: all channels)')
    parser.add_argument('--max_sets', type=int, default=1_000_000,
                       help='Maximum number of channel subsets')
    parser.add_argument('--metric', type=str, default=None,
                       help='RSA correlation type or distance metric')
    parser.add_argument('--pairwise', action='store_true',
                       help='Use pairwise instead of n-way RSA classification')
    parser.add_argument('--semantic_model', type=str, default=None,
                       help='.npy file with a condition x condition model (model-based decoding)')
    parser.add_argument('--norm_data', action='store_true',
                       help='Min-max scale features per participant before decoding')
    parser.add_argument('--seed', type=int, default=None,
                       help='Random seed for subset subsampling and tie breaking')
    parser.add_argument('--output', type=str, default=None,
                       help='Output CSV file path')

    args = parser.parse_args()

    patterns = load_patterns(Path(args.patterns))
    logger.info(f"Loaded patterns: {patterns.describe()} {patterns.shape}")

    opts = {'pairwise': args.pairwise}
    if args.metric:
        opts['metric'] = args.metric

    config = MCPAConfig(
        conditions=[parse_condition(c) for c in args.conditions],
        test_handle=CLASSIFIERS[args.classifier](),
        setsize=args.setsize,
        max_sets=args.max_sets,
        opts_struct=opts,
        norm_data=args.norm_data,
        random_state=args.seed
    )

    if args.semantic_model:
        decoder = ModelBasedDecoder(config, np.load(args.semantic_model))
    else:
        decoder = NFoldDecoder(config)
    results = decoder.run(patterns).to_dataframe()

    output_path = args.output or f"mcpa_results_{Path(args.patterns).stem}_{args.classifier}.csv"
    results.to_csv(output_path, index=False)
    print(f"Results saved to {output_path}")

    print(f"\nAnalysis complete for {results['subject_id'].nunique()} participants")
    print(f"Mean accuracy: {results['accuracy'].mean():.3f}")


if __name__ == '__main__':
    main()
