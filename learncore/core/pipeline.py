"""
Main learncore pipeline: survey -> classification -> recommendations, plus
the analytics recomputation entry point.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Any, List, Optional

from learncore.core.analytics import AnalyticsAggregationEngine
from learncore.core.classification import ClassificationResult, ClassificationService
from learncore.core.recommendation import RankedContent, RecommendationEngine
from learncore.core.scoring import ScoringEngine
from learncore.core.surveys import SurveyService
from learncore.shared.cache import Cache, SingleFlight, build_cache
from learncore.shared.clock import Clock, RequestIdentity, SystemClock, ANONYMOUS
from learncore.shared.config import LearnCoreSettings, settings as default_settings
from learncore.shared.llm import LLMClient, LLMError, TextGenerator
from learncore.shared.logging import get_logger
from learncore.store.database import LearningStore
from learncore.store.models import QuestionnaireResponse

logger = get_logger(__name__)


@dataclass
class SurveyOutcome:
    """Result of submitting a questionnaire end to end."""
    response: QuestionnaireResponse
    classification: ClassificationResult
    recommendations: List[RankedContent]


@dataclass
class RecomputeSummary:
    """Counts from one analytics recomputation run."""
    day: date
    learners: int = 0
    daily_samples: int = 0
    rollup_samples: int = 0
    failures: Dict[str, str] = field(default_factory=dict)


class LearningCore:
    """Wires the store, cache, text generator and the core services together."""

    def __init__(
        self,
        store: Optional[LearningStore] = None,
        generator: Optional[TextGenerator] = None,
        cache: Optional[Cache] = None,
        clock: Optional[Clock] = None,
        identity: RequestIdentity = ANONYMOUS,
        config: Optional[LearnCoreSettings] = None,
        use_llm: bool = True
    ):
        self.config = config or default_settings
        self.store = store or LearningStore(self.config.store.db_path, self.config.store.busy_timeout_seconds)
        self.cache = cache or build_cache(self.config.cache)
        self.clock = clock or SystemClock()
        self.identity = identity

        if generator is None and use_llm:
            generator = self._build_generator()
        self.generator = generator

        single_flight = SingleFlight()
        self.scoring = ScoringEngine(self.config.scoring)
        self.surveys = SurveyService(self.store, self.scoring, self.clock, identity)
        self.classification = ClassificationService(
            self.store,
            generator=self.generator,
            cache=self.cache,
            scoring=self.scoring,
            config=self.config.classification,
            cache_config=self.config.cache,
            clock=self.clock,
            identity=identity,
            single_flight=single_flight,
        )
        self.recommendations = RecommendationEngine(
            self.store,
            generator=self.generator,
            cache=self.cache,
            config=self.config.recommendation,
            cache_config=self.config.cache,
            clock=self.clock,
            identity=identity,
            single_flight=single_flight,
        )
        self.analytics = AnalyticsAggregationEngine(
            self.store, self.config.analytics, self.clock, identity
        )

    def _build_generator(self) -> Optional[TextGenerator]:
        llm = self.config.llm
        try:
            return LLMClient(
                provider=llm.provider,
                model=llm.default_model,
                temperature=llm.temperature,
                max_tokens=llm.max_tokens,
            )
        except LLMError as e:
            logger.warning(f"Text generation disabled, using deterministic paths only: {str(e)}")
            return None

    async def submit_questionnaire(
        self,
        learner_id: str,
        questionnaire_id: str,
        answers: Dict[str, Any],
        session_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> SurveyOutcome:
        """
        Answer and complete a questionnaire, classify the learner and
        refresh their recommendations.
        """
        response = self.surveys.start(learner_id, questionnaire_id, session_id=session_id)
        self.surveys.record_answers(response.id, answers)
        response = self.surveys.complete(response.id)

        classification = await self.classification.analyze(response.id)
        # The profile changed, so cached lists are stale
        self.cache.invalidate_prefix(f"recommendations:{learner_id}:")
        recommendations = await self.recommendations.generate(learner_id, limit)

        return SurveyOutcome(
            response=self.store.get_response(response.id),
            classification=classification,
            recommendations=recommendations,
        )

    def recompute_analytics(
        self,
        day: date,
        learner_ids: Optional[List[str]] = None,
        weekly: bool = False
    ) -> RecomputeSummary:
        """
        Recompute daily metrics for `day`; with `weekly`, also roll up the
        week ending on `day`.

        A failure for one learner is recorded and the run continues.
        """
        if learner_ids is None:
            learner_ids = [learner.id for learner in self.store.list_learners()]

        summary = RecomputeSummary(day=day)
        for learner_id in learner_ids:
            try:
                summary.daily_samples += len(self.analytics.daily_analytics(learner_id, day))
                if weekly:
                    week_start = day - timedelta(days=6)
                    summary.rollup_samples += len(self.analytics.weekly_rollup(learner_id, week_start))
                summary.learners += 1
            except Exception as e:
                logger.error(f"Analytics recomputation failed for learner {learner_id}: {str(e)}")
                summary.failures[learner_id] = str(e)

        return summary
