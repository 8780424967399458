"""
Tests for the recommendation engine: retrieval, ranking, fallback, persistence.
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from learncore.core.recommendation import RecommendationEngine
from learncore.core.styles import LearningStyle
from learncore.shared.cache import MemoryCache
from learncore.shared.exceptions import NotFoundError, ValidationError
from learncore.store.models import Assessment, ContentItem, ContentStyle, DifficultyLevel, LearningActivity


def _engine(store, clock, generator=None, cache=None):
    return RecommendationEngine(store, generator=generator, cache=cache, clock=clock)


def _ids(ranked):
    return [entry.content.id for entry in ranked]


@pytest.fixture
def visual_learner(learner, make_profile):
    make_profile("s-001", style=LearningStyle.VISUAL)
    return learner


@pytest.mark.asyncio
async def test_rule_based_ranking(store, clock, catalog, visual_learner):
    """Test the deterministic ranking used without a collaborator."""
    ranked = await _engine(store, clock).generate("s-001", limit=2)

    # 2: style + rating + popularity = 0.95; 1 and 4 tie at 0.9
    assert _ids(ranked) == [2, 1]
    assert [entry.relevance_score for entry in ranked] == [0.95, 0.9]
    assert all(entry.source == "rules" for entry in ranked)


@pytest.mark.asyncio
async def test_never_exceeds_limit_or_returns_completed(store, clock, catalog, visual_learner):
    store.record_activity(LearningActivity(
        learner_id="s-001", content_id=2, activity_type="complete", created_at=clock.now()
    ))

    ranked = await _engine(store, clock).generate("s-001", limit=2)

    assert len(ranked) <= 2
    assert 2 not in _ids(ranked)
    assert _ids(ranked) == [1, 4]


@pytest.mark.asyncio
async def test_other_grades_and_inactive_content_excluded(store, clock, catalog, visual_learner):
    ranked = await _engine(store, clock).generate("s-001", limit=10)

    assert 6 not in _ids(ranked)
    assert 7 not in _ids(ranked)


@pytest.mark.asyncio
async def test_mixed_learner_only_gets_content_for_all(store, clock, catalog, learner, make_profile):
    make_profile("s-001", style=LearningStyle.MIXED, visual=60.0, auditory=58.0, kinesthetic=20.0)

    ranked = await _engine(store, clock).generate("s-001", limit=1)

    assert _ids(ranked) == [4]


@pytest.mark.asyncio
async def test_filters_broaden_when_short(store, clock, catalog, visual_learner):
    """Test that difficulty, then style, are dropped to reach the limit."""
    store.record_assessment(Assessment(learner_id="s-001", topic="cells", percentage=90.0,
                                       created_at=clock.now() - timedelta(days=1)))
    engine = _engine(store, clock)

    assert engine.difficulty_for_score(90.0) == DifficultyLevel.ADVANCED
    ranked = await engine.generate("s-001", limit=5)

    assert sorted(_ids(ranked)) == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_difficulty_band_thresholds(store, clock):
    engine = _engine(store, clock)

    assert engine.difficulty_for_score(None) is None
    assert engine.difficulty_for_score(80.0) == DifficultyLevel.ADVANCED
    assert engine.difficulty_for_score(60.0) == DifficultyLevel.INTERMEDIATE
    assert engine.difficulty_for_score(59.9) == DifficultyLevel.BEGINNER


@pytest.mark.asyncio
async def test_ai_ranking(store, clock, catalog, visual_learner, mock_generator):
    mock_generator.set_response({"recommended_content": [
        {"content_id": 4, "relevance_score": 90, "reason": "Broad overview"},
        {"content_id": 1, "relevance_score": 0.7, "reason": "Diagrams"},
        {"content_id": 999, "relevance_score": 80, "reason": "Not a candidate"},
    ]})

    ranked = await _engine(store, clock, generator=mock_generator).generate("s-001", limit=3)

    assert _ids(ranked) == [4, 1]
    assert ranked[0].relevance_score == pytest.approx(0.9)
    assert ranked[0].reason == "Broad overview"
    assert all(entry.source == "ai" for entry in ranked)


@pytest.mark.asyncio
async def test_unparsable_ai_equals_rule_output(store, clock, catalog, visual_learner, mock_generator):
    """Test that an unusable reply produces exactly the rule-based list."""
    baseline = await _engine(store, clock).generate("s-001", limit=3)

    mock_generator.set_response("Sorry, I cannot help with that.")
    ranked = await _engine(store, clock, generator=mock_generator).generate("s-001", limit=3)

    assert [(e.content.id, e.relevance_score, e.reason) for e in ranked] == \
        [(e.content.id, e.relevance_score, e.reason) for e in baseline]


@pytest.mark.asyncio
async def test_empty_ai_ranking_uses_rules(store, clock, catalog, visual_learner, mock_generator):
    mock_generator.set_response({"recommended_content": [{"content_id": 999, "relevance_score": 50}]})

    ranked = await _engine(store, clock, generator=mock_generator).generate("s-001", limit=2)

    assert _ids(ranked) == [2, 1]
    assert ranked[0].source == "rules"


@pytest.mark.asyncio
async def test_retrieval_failure_degrades_to_popular(store, clock, catalog, visual_learner):
    engine = _engine(store, clock)

    with patch.object(engine, "_retrieve", side_effect=RuntimeError("catalog offline")):
        ranked = await engine.generate("s-001", limit=2)

    # view count desc within grade 10
    assert _ids(ranked) == [3, 2]
    assert all(entry.source == "popular" for entry in ranked)


@pytest.mark.asyncio
async def test_validation_and_not_found(store, clock, learner):
    engine = _engine(store, clock)

    with pytest.raises(ValidationError):
        await engine.generate("s-001", limit=0)
    with pytest.raises(NotFoundError):
        await engine.generate("nobody")


@pytest.mark.asyncio
async def test_persistence_preserves_flags(store, clock, catalog, visual_learner):
    engine = _engine(store, clock)
    await engine.generate("s-001", limit=2)
    assert engine.mark_viewed("s-001", 2)

    clock.advance(timedelta(hours=30))
    await engine.generate("s-001", limit=2)

    row = store.get_recommendation("s-001", 2)
    assert row.is_viewed is True
    assert row.updated_at == clock.now()
    assert row.algorithm_version == "1.0"
    assert row.recommendation_type == "hybrid"


@pytest.mark.asyncio
async def test_stale_rows_pruned(store, clock, catalog, visual_learner):
    engine = _engine(store, clock)
    await engine.generate("s-001", limit=3)
    assert {r.content_id for r in store.list_recommendations("s-001")} == {2, 1, 4}

    clock.advance(timedelta(hours=25))
    await engine.generate("s-001", limit=1)

    assert [r.content_id for r in store.list_recommendations("s-001")] == [2]


@pytest.mark.asyncio
async def test_results_cached_and_deduplicated(store, clock, catalog, visual_learner, mock_generator):
    mock_generator.set_response({"recommended_content": [{"content_id": 1, "relevance_score": 80}]})
    engine = _engine(store, clock, generator=mock_generator, cache=MemoryCache())

    first, second = await asyncio.gather(engine.generate("s-001", limit=2), engine.generate("s-001", limit=2))
    third = await engine.generate("s-001", limit=2)

    assert mock_generator.generate.await_count == 1
    assert _ids(first) == _ids(second) == _ids(third) == [1]


@pytest.mark.asyncio
async def test_completion_invalidates_cache(store, clock, catalog, visual_learner):
    engine = _engine(store, clock, cache=MemoryCache())
    first = await engine.generate("s-001", limit=2)
    assert _ids(first) == [2, 1]

    assert engine.mark_completed("s-001", 2)
    second = await engine.generate("s-001", limit=2)

    assert 2 not in _ids(second)


def test_mark_without_row_is_noop(store, clock):
    engine = _engine(store, clock)

    assert engine.mark_viewed("s-001", 1) is False
    assert engine.mark_completed("s-001", 1) is False


def test_effectiveness_zero_denominators(store, clock, learner):
    metrics = _engine(store, clock).effectiveness("s-001")

    assert metrics.total == 0
    assert metrics.view_rate == 0.0
    assert metrics.completion_rate == 0.0
    assert metrics.engagement_score == 0.0


@pytest.mark.asyncio
async def test_effectiveness_rates(store, clock, catalog, visual_learner):
    engine = _engine(store, clock)
    await engine.generate("s-001", limit=2)
    engine.mark_viewed("s-001", 2)
    engine.mark_completed("s-001", 1)
    for activity_type in ("view", "click", "complete"):
        store.record_activity(LearningActivity(
            learner_id="s-001", content_id=1, activity_type=activity_type, created_at=clock.now()
        ))

    metrics = engine.effectiveness("s-001")

    assert metrics.total == 2
    assert metrics.view_rate == 50.0
    assert metrics.completion_rate == 50.0
    assert metrics.engagement_score == 100.0


@pytest.mark.asyncio
async def test_stored_recommendations_ordering(store, clock, catalog, visual_learner):
    engine = _engine(store, clock)
    await engine.generate("s-001", limit=3)

    stored = engine.stored_recommendations("s-001", limit=2)

    assert [r.content_id for r in stored] == [2, 1]


@pytest.mark.asyncio
async def test_cached_list_drops_content_completed_since(store, clock, catalog, visual_learner):
    """Test that a completion logged as an activity is excluded from a cached list."""
    engine = _engine(store, clock, cache=MemoryCache())
    first = await engine.generate("s-001", limit=2)
    assert _ids(first) == [2, 1]

    store.record_activity(LearningActivity(
        learner_id="s-001", content_id=2, activity_type="complete", created_at=clock.now()
    ))
    second = await engine.generate("s-001", limit=2)

    assert 2 not in _ids(second)
    assert _ids(second) == [1]


@pytest.mark.asyncio
async def test_empty_result_is_not_cached(store, clock, visual_learner):
    engine = _engine(store, clock, cache=MemoryCache())
    assert await engine.generate("s-001", limit=2) == []

    store.save_content(ContentItem(id=10, title="New chart pack", topic="cells", grade_level="10",
                                   target_style=ContentStyle.VISUAL, rating=4.0, view_count=5))
    ranked = await engine.generate("s-001", limit=2)

    assert _ids(ranked) == [10]
