"""
Content recommendation: candidate retrieval, AI ranking with a rule-based
fallback, persistence and effectiveness tracking.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, Field

from learncore.core.prompts import (
    RECOMMENDATION_KEY,
    build_recommendation_prompt,
    parse_ranked_content,
)
from learncore.core.styles import LearningStyle
from learncore.shared.cache import Cache, NullCache, SingleFlight, make_cache_key
from learncore.shared.clock import Clock, RequestIdentity, SystemClock, ANONYMOUS
from learncore.shared.config import CacheConfig, RecommendationConfig, settings
from learncore.shared.exceptions import NotFoundError, ValidationError
from learncore.shared.llm import TextGenerator, request_json
from learncore.shared.logging import get_logger, log_with_context
from learncore.shared.result import Ok, Result
from learncore.store.database import LearningStore
from learncore.store.models import (
    ContentItem,
    ContentStyle,
    DifficultyLevel,
    Learner,
    LearningStyleProfile,
    Recommendation,
)

logger = get_logger(__name__)

RECOMMENDATION_OPERATION = "recommendations"


class RankedContent(BaseModel):
    """One ranked content item returned to the caller."""
    content: ContentItem
    relevance_score: float = Field(ge=0.0, le=1.0)
    reason: str = ""
    source: str = "rules"  # ai, rules, popular


@dataclass
class RecommendationEffectiveness:
    """How a learner engages with their recommendations."""
    total: int
    viewed: int
    completed: int
    view_rate: float
    completion_rate: float
    engagement_score: float


class RecommendationEngine:
    """Rank and persist content recommendations for learners."""

    def __init__(
        self,
        store: LearningStore,
        generator: Optional[TextGenerator] = None,
        cache: Optional[Cache] = None,
        config: Optional[RecommendationConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None,
        identity: RequestIdentity = ANONYMOUS,
        single_flight: Optional[SingleFlight] = None
    ):
        self.store = store
        self.generator = generator
        self.cache = cache or NullCache()
        self.config = config or settings.recommendation
        self.cache_config = cache_config or settings.cache
        self.clock = clock or SystemClock()
        self.identity = identity
        self.single_flight = single_flight or SingleFlight()

    async def generate(self, learner_id: str, limit: Optional[int] = None) -> List[RankedContent]:
        """
        Ranked recommendations for a learner, at most `limit` items, never
        content the learner already completed.

        Raises:
            ValidationError: limit < 1
            NotFoundError: unknown learner
        """
        limit = self.config.default_limit if limit is None else limit
        if limit < 1:
            raise ValidationError(f"limit must be at least 1, got {limit}")

        learner = self.store.get_learner(learner_id)
        if learner is None:
            raise NotFoundError("Learner", learner_id)

        key = make_cache_key(RECOMMENDATION_OPERATION, learner_id, {"limit": limit})
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Using cached recommendations for learner {learner_id}")
            # Completion activities are logged outside this engine
            completed = self.store.completed_content_ids(learner_id)
            ranked = [RankedContent.model_validate(entry) for entry in cached]
            return [entry for entry in ranked if entry.content.id not in completed][:limit]

        return await self.single_flight.run(key, lambda: self._generate(learner, limit, key))

    async def _generate(self, learner: Learner, limit: int, key: str) -> List[RankedContent]:
        profile = self.store.get_profile(learner.id)
        completed = self.store.completed_content_ids(learner.id)

        try:
            average = self._average_score(learner.id)
            candidates = self._retrieve(learner, profile, completed, average, limit)
            ranked = await self._rank(learner, profile, candidates, average)
        except Exception as e:
            logger.error(f"Recommendation ranking failed for learner {learner.id}: {str(e)}")
            ranked = self._popular(learner, completed, limit)

        ranked = ranked[:limit]
        self._persist(learner.id, ranked)
        # An empty list would hide content added to the catalog later
        if ranked:
            self.cache.set(
                key,
                [entry.model_dump(mode="json") for entry in ranked],
                self.cache_config.recommendation_ttl_seconds
            )

        log_with_context(
            logger,
            logging.INFO,
            f"Generated {len(ranked)} recommendations",
            learner_id=learner.id,
            action="generate_recommendations",
            session_id=self.identity.session_id,
            actor_id=self.identity.actor_id,
            sources=sorted({entry.source for entry in ranked}),
        )
        return ranked

    # Candidate retrieval

    def _average_score(self, learner_id: str) -> Optional[float]:
        since = self.clock.now() - timedelta(days=self.config.performance_window_days)
        return self.store.average_assessment_percentage(learner_id, since)

    def difficulty_for_score(self, average: Optional[float]) -> Optional[DifficultyLevel]:
        """Difficulty band for an average assessment percentage; None without assessments."""
        if average is None:
            return None
        if average >= self.config.advanced_threshold:
            return DifficultyLevel.ADVANCED
        if average >= self.config.intermediate_threshold:
            return DifficultyLevel.INTERMEDIATE
        return DifficultyLevel.BEGINNER

    @staticmethod
    def _style_targets(profile: Optional[LearningStyleProfile]) -> Optional[List[str]]:
        if profile is None:
            return None
        if profile.dominant_style == LearningStyle.MIXED:
            return [ContentStyle.ALL.value]
        return [profile.dominant_style.value, ContentStyle.ALL.value]

    def _retrieve(
        self,
        learner: Learner,
        profile: Optional[LearningStyleProfile],
        completed: set,
        average: Optional[float],
        limit: int
    ) -> List[ContentItem]:
        """Filtered candidates, broadening (difficulty, then style) while short of `limit`."""
        pool = limit * self.config.candidate_multiplier
        styles = self._style_targets(profile)
        difficulty = self.difficulty_for_score(average)

        stages = [
            (styles, difficulty.value if difficulty else None),
            (styles, None),
            (None, None),
        ]
        candidates: List[ContentItem] = []
        for stage_styles, stage_difficulty in stages:
            candidates = self.store.find_content(
                learner.grade_level,
                target_styles=stage_styles,
                difficulty_level=stage_difficulty,
                exclude_ids=completed,
                limit=pool,
            )
            if len(candidates) >= limit:
                break

        if not candidates:
            candidates = self.store.find_content(
                learner.grade_level, exclude_ids=completed, limit=pool, order_by="popularity"
            )
        return candidates

    # Scoring

    async def _rank(
        self,
        learner: Learner,
        profile: Optional[LearningStyleProfile],
        candidates: List[ContentItem],
        average: Optional[float]
    ) -> List[RankedContent]:
        if not candidates:
            return []

        ai_ranked = await self._rank_with_ai(learner, profile, candidates, average)
        if ai_ranked.is_ok and ai_ranked.value:
            return ai_ranked.value

        reason = ai_ranked.reason.value if not ai_ranked.is_ok else "empty ranking"
        logger.info(f"Falling back to rule-based ranking for learner {learner.id}: {reason}")
        return self.rank_with_rules(profile, candidates, average)

    async def _rank_with_ai(
        self,
        learner: Learner,
        profile: Optional[LearningStyleProfile],
        candidates: List[ContentItem],
        average: Optional[float]
    ) -> Result:
        prompt = build_recommendation_prompt(
            self.learner_profile(learner, profile, average), candidates
        )
        reply = await request_json(self.generator, prompt, required_keys=(RECOMMENDATION_KEY,))
        if not reply.is_ok:
            return reply

        by_id = {item.id: item for item in candidates}
        parsed = parse_ranked_content(reply.value, list(by_id))
        if not parsed.is_ok:
            return parsed

        ranked = [
            RankedContent(
                content=by_id[content_id],
                relevance_score=score,
                reason=reason,
                source="ai",
            )
            for content_id, score, reason in parsed.value
        ]
        # sorted() is stable, so ties keep the AI's order
        return Ok(sorted(ranked, key=lambda entry: entry.relevance_score, reverse=True))

    def rank_with_rules(
        self,
        profile: Optional[LearningStyleProfile],
        candidates: List[ContentItem],
        average: Optional[float]
    ) -> List[RankedContent]:
        """Deterministic ranking used whenever the AI ranking is unusable."""
        preferred = self.difficulty_for_score(average)
        ranked = []
        for item in candidates:
            score = self.config.base_score
            matches = []
            if profile is not None and item.suits_style(profile.dominant_style):
                score += self.config.style_match_bonus
                matches.append("learning style")
            if preferred is not None and item.difficulty_level == preferred:
                score += self.config.difficulty_match_bonus
                matches.append("difficulty")
            if item.rating > self.config.rating_threshold:
                score += self.config.rating_bonus
                matches.append("rating")
            if item.view_count > self.config.popularity_threshold:
                score += self.config.popularity_bonus
                matches.append("popularity")

            reason = f"Rule-based match on {', '.join(matches)}" if matches else "Rule-based match"
            ranked.append(RankedContent(
                content=item,
                relevance_score=round(min(score, 1.0), 4),
                reason=reason,
                source="rules",
            ))

        return sorted(ranked, key=lambda entry: entry.relevance_score, reverse=True)

    def _popular(self, learner: Learner, completed: set, limit: int) -> List[RankedContent]:
        items = self.store.find_content(
            learner.grade_level, exclude_ids=completed, limit=limit, order_by="popularity"
        )
        return [
            RankedContent(
                content=item,
                relevance_score=self.config.base_score,
                reason=f"Popular with grade {learner.grade_level} learners",
                source="popular",
            )
            for item in items
        ]

    def learner_profile(
        self,
        learner: Learner,
        profile: Optional[LearningStyleProfile],
        average: Optional[float]
    ) -> Dict[str, Any]:
        """Learner summary sent along with the candidates."""
        now = self.clock.now()
        performance_since = now - timedelta(days=self.config.performance_window_days)

        return {
            "learning_style": {
                "visual": profile.visual_score,
                "auditory": profile.auditory_score,
                "kinesthetic": profile.kinesthetic_score,
                "dominant": profile.dominant_style.value,
            } if profile else None,
            "grade_level": learner.grade_level,
            "interests": learner.interests,
            "average_score": round(average, 2) if average is not None else None,
            "recent_topics": self.store.recent_topics(
                learner.id,
                now - timedelta(days=self.config.recent_topics_days),
                self.config.max_recent_topics
            ),
            "weak_topics": self.store.topics_by_performance(
                learner.id, performance_since, self.config.max_topic_list,
                below=self.config.intermediate_threshold
            ),
            "strong_topics": self.store.topics_by_performance(
                learner.id, performance_since, self.config.max_topic_list,
                at_least=self.config.advanced_threshold
            ),
        }

    # Persistence and tracking

    def _persist(self, learner_id: str, ranked: List[RankedContent]) -> None:
        """Upsert the returned items, then prune rows older than the retention window."""
        now = self.clock.now()
        for entry in ranked:
            self.store.upsert_recommendation(
                learner_id=learner_id,
                content_id=entry.content.id,
                relevance_score=entry.relevance_score,
                reason=entry.reason,
                algorithm_version=self.config.algorithm_version,
                recommendation_type=self.config.recommendation_type,
                now=now,
            )

        removed = self.store.delete_stale_recommendations(
            learner_id, now - timedelta(hours=self.config.retention_hours)
        )
        if removed:
            logger.debug(f"Removed {removed} stale recommendations for learner {learner_id}")

    def mark_viewed(self, learner_id: str, content_id: int) -> bool:
        """Flag a recommendation as viewed; False when none exists."""
        updated = self.store.mark_recommendation_viewed(learner_id, content_id, self.clock.now())
        if not updated:
            logger.debug(f"No recommendation of content {content_id} for learner {learner_id}")
        return updated

    def mark_completed(self, learner_id: str, content_id: int) -> bool:
        """Flag a recommendation as completed and drop the learner's cached lists."""
        updated = self.store.mark_recommendation_completed(learner_id, content_id, self.clock.now())
        if updated:
            self.cache.invalidate_prefix(f"{RECOMMENDATION_OPERATION}:{learner_id}:")
            log_with_context(
                logger,
                logging.INFO,
                f"Recommendation of content {content_id} completed",
                learner_id=learner_id,
                action="complete_recommendation",
                session_id=self.identity.session_id,
                actor_id=self.identity.actor_id,
            )
        return updated

    def stored_recommendations(self, learner_id: str, limit: Optional[int] = None) -> List[Recommendation]:
        """Persisted recommendations, most relevant and most recent first."""
        limit = self.config.default_limit if limit is None else limit
        return self.store.list_recommendations(learner_id, limit=limit)

    def effectiveness(self, learner_id: str) -> RecommendationEffectiveness:
        """View, completion and engagement rates (percentages); 0 for empty denominators."""
        total = self.store.count_recommendations(learner_id)
        viewed = self.store.count_recommendations(learner_id, viewed=True)
        completed = self.store.count_recommendations(learner_id, completed=True)

        since = self.clock.now() - timedelta(days=self.config.engagement_window_days)
        recent_recommendations = self.store.count_recommendations(learner_id, created_since=since)
        recent_activities = self.store.count_activities(learner_id, since)

        engagement = 0.0
        if recent_recommendations:
            engagement = min(recent_activities / recent_recommendations * 100, 100.0)

        return RecommendationEffectiveness(
            total=total,
            viewed=viewed,
            completed=completed,
            view_rate=round(viewed / total * 100, 2) if total else 0.0,
            completion_rate=round(completed / total * 100, 2) if total else 0.0,
            engagement_score=round(engagement, 2),
        )
