"""
Learning style variants and dominant-style classification.
"""

from enum import Enum
from typing import Dict, Mapping, Tuple, Union


class LearningStyle(str, Enum):
    """Learning style label of a profile."""
    VISUAL = "visual"
    AUDITORY = "auditory"
    KINESTHETIC = "kinesthetic"
    MIXED = "mixed"

    @property
    def is_category(self) -> bool:
        """True for the three scored categories, False for MIXED."""
        return self is not LearningStyle.MIXED


CATEGORIES: Tuple[LearningStyle, ...] = (
    LearningStyle.VISUAL,
    LearningStyle.AUDITORY,
    LearningStyle.KINESTHETIC,
)

MIXED_THRESHOLD = 10.0


def zero_scores() -> Dict[str, float]:
    """Score map with every category at 0."""
    return {style.value: 0.0 for style in CATEGORIES}


def normalize_scores(scores: Mapping[Union[str, LearningStyle], float]) -> Dict[str, float]:
    """Key a score map by category value; missing categories score 0."""
    normalized = zero_scores()
    for key, value in scores.items():
        style = LearningStyle(key)
        if not style.is_category:
            raise ValueError("'mixed' is not a scored category")
        normalized[style.value] = float(value)
    return normalized


def classify_dominant_style(
    scores: Mapping[Union[str, LearningStyle], float],
    threshold: float = MIXED_THRESHOLD
) -> LearningStyle:
    """
    Return the argmax category, or MIXED when any other category is within
    `threshold` points of the maximum.
    """
    normalized = normalize_scores(scores)
    leader = max(CATEGORIES, key=lambda style: normalized[style.value])
    top = normalized[leader.value]

    close = [
        style for style in CATEGORIES
        if top - normalized[style.value] <= threshold
    ]
    if len(close) > 1:
        return LearningStyle.MIXED
    return leader
