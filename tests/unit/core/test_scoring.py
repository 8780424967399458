"""
Tests for deterministic questionnaire scoring.
"""

import pytest

from learncore.core.scoring import ScoringEngine
from learncore.shared.exceptions import ValidationError
from learncore.store.models import Questionnaire, QuestionnaireResponse, ScoringRule


def _response(answers):
    return QuestionnaireResponse(learner_id="s-001", questionnaire_id="lsq-v1", answers=answers)


def test_category_scores(questionnaire, visual_answers):
    scores = ScoringEngine().calculate_scores(_response(visual_answers), questionnaire)

    assert scores == {"visual": 100.0, "auditory": 60.0, "kinesthetic": 20.0}


def test_all_fives_sum_to_300(questionnaire):
    answers = {f"q{i}": 5 for i in range(1, 10)}
    scores = ScoringEngine().calculate_scores(_response(answers), questionnaire)

    assert sum(scores.values()) == pytest.approx(300.0)


def test_unanswered_items_count_as_zero(questionnaire):
    scores = ScoringEngine().calculate_scores(_response({"q1": 5}), questionnaire)

    assert scores["visual"] == pytest.approx(100 / 3)
    assert scores["auditory"] == 0.0


@pytest.mark.parametrize("value", [0, 6, 3.5, "4", True, None])
def test_invalid_answers_rejected(questionnaire, value):
    """Test that values outside the 1-5 integer scale fail before scoring."""
    with pytest.raises(ValidationError):
        ScoringEngine().calculate_scores(_response({"q1": value}), questionnaire)


def test_empty_answers_soft_fail_to_zero(questionnaire):
    scores = ScoringEngine().calculate_scores(_response({}), questionnaire)

    assert scores == {"visual": 0.0, "auditory": 0.0, "kinesthetic": 0.0}


def test_itemless_questionnaire_soft_fails_to_zero():
    empty = Questionnaire(id="empty")
    scores = ScoringEngine().calculate_scores(_response({"q1": 3}), empty)

    assert scores == {"visual": 0.0, "auditory": 0.0, "kinesthetic": 0.0}


def test_scoring_rule_weight_and_max_score(questionnaire, visual_answers):
    weighted = questionnaire.model_copy(update={"scoring_rules": {
        "visual": ScoringRule(weight=0.5),
        "auditory": ScoringRule(max_score=10),
    }})

    scores = ScoringEngine().calculate_scores(_response(visual_answers), weighted)

    assert scores["visual"] == 50.0
    # 9 / 10 * 100
    assert scores["auditory"] == 90.0
    assert scores["kinesthetic"] == 20.0


def test_scores_are_clamped(questionnaire, visual_answers):
    boosted = questionnaire.model_copy(update={"scoring_rules": {"visual": ScoringRule(weight=3.0)}})

    scores = ScoringEngine().calculate_scores(_response(visual_answers), boosted)

    assert scores["visual"] == 100.0


def test_completion_percentage(questionnaire):
    engine = ScoringEngine()
    partial = _response({f"q{i}": 3 for i in range(1, 7)})

    assert engine.completion_percentage(partial, questionnaire) == pytest.approx(200 / 3)
    assert engine.completion_percentage(partial, Questionnaire(id="empty")) == 0.0
