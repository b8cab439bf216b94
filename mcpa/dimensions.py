import logging
from typing import List, Sequence, Tuple, Union

from mcpa.base import ClassifierKind

logger = logging.getLogger(__name__)

# Axis order of a freshly epoched pattern tensor
RAW_DIMENSIONS = ('condition', 'repetition', 'time', 'feature', 'session', 'subject')

MERGE_SEPARATOR = 'X'
MERGED_NAME_SEPARATOR = '+'

_RECOMMENDED = {
    # (kind, within_subjects): (summarize_dimensions, final_dimensions)
    (ClassifierKind.MCPA, True): (['repetition', 'time'],
                                  ['conditionXsession', 'feature']),
    (ClassifierKind.MCPA, False): (['repetitionXsession', 'repetition+session', 'time'],
                                   ['conditionXsubject', 'feature']),
    (ClassifierKind.RSA, True): (['repetition', 'time'],
                                 ['condition', 'feature', 'session']),
    (ClassifierKind.RSA, False): (['repetition', 'time'],
                                  ['condition', 'feature', 'session', 'subject']),
    (ClassifierKind.OTHER, True): (['time'],
                                   ['conditionXrepetitionXsession', 'feature']),
    (ClassifierKind.OTHER, False): (['repetitionXsession', 'time'],
                                    ['conditionXrepetition+sessionXsubject', 'feature']),
}


def recommend_dimensions(kind: Union[ClassifierKind, str],
                         within_subjects: bool = False) -> Tuple[List[str], List[str]]:
    """
    Recommend summarize and final dimension recipes for a classifier family.

    Parameters:
    -----------
    kind : ClassifierKind or str
        Classifier family ('mcpa', 'rsa' or 'other')
    within_subjects : bool
        Whether cross-validation folds within participants (sessions) rather
        than between participants

    Returns:
    --------
    Tuple[List[str], List[str]] : summarize_dimensions, final_dimensions
    """
    kind = ClassifierKind(kind)
    summarize, final = _RECOMMENDED[(kind, bool(within_subjects))]
    return list(summarize), list(final)


def parse_token(token: str) -> List[str]:
    """Split a recipe token into the axis names it refers to ('AXB' -> ['A', 'B'])"""
    names = token.split(MERGE_SEPARATOR)
    if any(name == '' for name in names):
        raise ValueError(f"Malformed dimension token: '{token}'")
    return names


def merged_name(names: Sequence[str]) -> str:
    """Name of the axis produced by merging the given axes"""
    return MERGED_NAME_SEPARATOR.join(names)


def recipe_names(recipe: Sequence[str]) -> List[str]:
    """All axis names referenced by a recipe, in order of appearance"""
    names = []
    for token in recipe:
        names.extend(parse_token(token))
    return names
