"""
Deterministic questionnaire scoring.
"""

from typing import Dict, Any, Mapping, Optional

from learncore.core.styles import CATEGORIES, zero_scores
from learncore.shared.config import ScoringConfig, settings
from learncore.shared.exceptions import IncompleteDataError, ValidationError
from learncore.shared.logging import get_logger
from learncore.store.models import Questionnaire, QuestionnaireResponse

logger = get_logger(__name__)


class ScoringEngine:
    """Convert questionnaire answers into visual/auditory/kinesthetic scores (0-100)."""

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or settings.scoring

    def validate_answers(self, answers: Mapping[str, Any]) -> None:
        """
        Every answer must be an integer on the Likert scale.

        Raises:
            ValidationError naming the first offending item
        """
        low, high = self.config.min_likert_value, self.config.max_likert_value
        for item_id, value in answers.items():
            # bool is an int subclass
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"Answer for item {item_id!r} must be an integer, got {value!r}")
            if not low <= value <= high:
                raise ValidationError(
                    f"Answer for item {item_id!r} must be between {low} and {high}, got {value}"
                )

    def calculate_scores(
        self,
        response: QuestionnaireResponse,
        questionnaire: Questionnaire
    ) -> Dict[str, float]:
        """
        Score a response.

        Invalid answer values raise ValidationError. Empty answers or an
        item-less questionnaire yield all-zero scores.
        """
        self.validate_answers(response.answers)

        try:
            return self._score(response.answers, questionnaire)
        except IncompleteDataError as e:
            logger.warning(
                f"Scoring response {response.id} of questionnaire {questionnaire.id} "
                f"returned zero scores: {str(e)}"
            )
            return zero_scores()

    def _score(self, answers: Mapping[str, Any], questionnaire: Questionnaire) -> Dict[str, float]:
        if not answers:
            raise IncompleteDataError("response has no answers")
        if not questionnaire.items:
            raise IncompleteDataError("questionnaire has no items")

        scores = zero_scores()
        for category, items in questionnaire.items_by_category().items():
            if not items:
                continue

            rule = questionnaire.scoring_rules.get(category)
            rule_items = set(rule.item_ids) if rule and rule.item_ids else None

            counted = [item for item in items if rule_items is None or item.id in rule_items]
            raw_sum = sum(answers.get(item.id, 0) for item in counted)

            max_raw = self.config.max_likert_value * len(counted)
            if rule is not None:
                raw_sum *= rule.weight
                if rule.max_score:
                    max_raw = rule.max_score

            scores[category] = self._clamp(raw_sum * 100 / max_raw) if max_raw else 0.0

        return scores

    @staticmethod
    def _clamp(value: float) -> float:
        return max(0.0, min(100.0, value))

    def completion_percentage(
        self,
        response: QuestionnaireResponse,
        questionnaire: Questionnaire
    ) -> float:
        """Share of questionnaire items the response answered (0-100)."""
        total = questionnaire.total_items
        if total == 0:
            return 0.0
        answered = sum(1 for item_id in questionnaire.item_ids() if item_id in response.answers)
        return answered * 100 / total

    def category_answers(
        self,
        response: QuestionnaireResponse,
        questionnaire: Questionnaire
    ) -> Dict[str, list]:
        """Answered values grouped by category, for consistency checks."""
        grouped = {style.value: [] for style in CATEGORIES}
        for category, items in questionnaire.items_by_category().items():
            for item in items:
                if item.id in response.answers:
                    grouped[category].append(response.answers[item.id])
        return grouped
