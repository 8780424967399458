"""
End-to-end test: questionnaire -> learning style profile -> recommendations -> analytics.
"""

import json

import pytest

from learncore.core.pipeline import LearningCore
from learncore.core.styles import LearningStyle
from learncore.shared.cache import MemoryCache
from learncore.shared.exceptions import ValidationError
from learncore.shared.result import FallbackReason
from learncore.store.models import LearningActivity, ResponseStatus

STYLE_REPLY = {
    "visual_score": 50,
    "auditory_score": 60,
    "kinesthetic_score": 20,
    "reasoning": "Strong preference for diagrams",
}
RECOMMENDATION_REPLY = {
    "recommended_content": [
        {"content_id": 2, "relevance_score": 90, "reason": "Infographic suits a visual learner"},
        {"content_id": 4, "relevance_score": 60, "reason": "General overview"},
    ]
}


@pytest.fixture
def routed_generator(mock_generator):
    """Answer style prompts and ranking prompts with different canned replies."""

    def reply(prompt):
        if "recommended_content" in prompt:
            return json.dumps(RECOMMENDATION_REPLY)
        return json.dumps(STYLE_REPLY)

    mock_generator.generate.side_effect = reply
    return mock_generator


@pytest.mark.asyncio
async def test_end_to_end_learning_pipeline(
    store, clock, learner, questionnaire, catalog, visual_answers, routed_generator
):
    """Test complete flow: submit survey -> classify -> recommend -> log activity -> aggregate."""
    core = LearningCore(store, generator=routed_generator, cache=MemoryCache(), clock=clock)

    outcome = await core.submit_questionnaire("s-001", "lsq-v1", visual_answers, session_id="sess-1", limit=3)

    # Survey is closed and scored
    assert outcome.response.status == ResponseStatus.COMPLETED
    assert outcome.response.calculated_scores == outcome.classification.final_scores

    # Blended profile: visual 0.6 * 100 + 0.4 * 50
    assert outcome.classification.fallback_reason is None
    assert outcome.classification.final_scores["visual"] == 80.0
    assert store.get_profile("s-001").dominant_style == LearningStyle.VISUAL

    # Ranked by the collaborator and persisted
    assert [entry.content.id for entry in outcome.recommendations] == [2, 4]
    assert {r.content_id for r in store.list_recommendations("s-001")} == {2, 4}

    # Learner engages with the recommendations
    core.recommendations.mark_viewed("s-001", 2)
    core.recommendations.mark_completed("s-001", 4)
    store.record_activity(LearningActivity(
        learner_id="s-001", content_id=2, activity_type="view",
        duration_seconds=600, session_id="sess-1", created_at=clock.now(),
    ))
    store.record_activity(LearningActivity(
        learner_id="s-001", content_id=4, activity_type="complete",
        duration_seconds=1200, session_id="sess-1", created_at=clock.now(),
    ))

    summary = core.recompute_analytics(clock.now().date(), weekly=True)

    assert summary.learners == 1
    assert summary.failures == {}
    # No assessments that day: performance metrics are skipped
    assert summary.daily_samples == 6
    assert summary.rollup_samples == 6

    analytics = core.analytics.range_query("s-001", clock.now().date(), clock.now().date())
    assert analytics.engagement.content_views == 1.0
    assert analytics.engagement.completions == 1.0
    assert analytics.time_metrics.total_hours == pytest.approx(0.5)

    effectiveness = core.recommendations.effectiveness("s-001")
    assert effectiveness.view_rate == 50.0
    assert effectiveness.completion_rate == 50.0

    # Completed content is no longer recommended
    refreshed = await core.recommendations.generate("s-001", limit=3)
    assert 4 not in [entry.content.id for entry in refreshed]


@pytest.mark.asyncio
async def test_pipeline_without_text_generation(store, clock, learner, questionnaire, catalog, visual_answers):
    """Test that the whole flow works on deterministic paths alone."""
    core = LearningCore(store, cache=MemoryCache(), clock=clock, use_llm=False)

    outcome = await core.submit_questionnaire("s-001", "lsq-v1", visual_answers, limit=3)

    assert outcome.classification.fallback_reason == FallbackReason.UNAVAILABLE
    assert outcome.classification.final_scores == {"visual": 100.0, "auditory": 60.0, "kinesthetic": 20.0}
    assert [entry.content.id for entry in outcome.recommendations] == [2, 1, 4]
    assert all(entry.source == "rules" for entry in outcome.recommendations)


@pytest.mark.asyncio
async def test_questionnaire_cannot_be_resubmitted(store, clock, learner, questionnaire, catalog, visual_answers):
    core = LearningCore(store, cache=MemoryCache(), clock=clock, use_llm=False)
    await core.submit_questionnaire("s-001", "lsq-v1", visual_answers)

    with pytest.raises(ValidationError):
        await core.submit_questionnaire("s-001", "lsq-v1", visual_answers)


def test_recompute_continues_after_failure(store, clock, learner, monkeypatch):
    core = LearningCore(store, cache=MemoryCache(), clock=clock, use_llm=False)
    original = core.analytics.daily_analytics

    def flaky(learner_id, day):
        if learner_id == "s-broken":
            raise RuntimeError("corrupt activity log")
        return original(learner_id, day)

    monkeypatch.setattr(core.analytics, "daily_analytics", flaky)

    summary = core.recompute_analytics(clock.now().date(), learner_ids=["s-broken", "s-001"])

    assert summary.learners == 1
    assert summary.daily_samples == 6
    assert summary.failures == {"s-broken": "corrupt activity log"}
