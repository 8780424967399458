"""
Learning style classification: blend deterministic and AI-assisted scores,
persist the learner's profile, and report evolution and peer standing.
"""

import logging
import statistics
from dataclasses import dataclass, field
from typing import Dict, Any, Iterator, List, Mapping, Optional

from learncore.core.prompts import (
    STYLE_SCORE_KEYS,
    build_learning_style_prompt,
    parse_style_estimate,
)
from learncore.core.scoring import ScoringEngine
from learncore.core.styles import CATEGORIES, LearningStyle, classify_dominant_style
from learncore.shared.cache import Cache, NullCache, SingleFlight, make_cache_key
from learncore.shared.clock import Clock, RequestIdentity, SystemClock, ANONYMOUS
from learncore.shared.config import CacheConfig, ClassificationConfig, settings
from learncore.shared.exceptions import NotFoundError, ValidationError
from learncore.shared.llm import TextGenerator, request_json
from learncore.shared.logging import get_logger, log_with_context
from learncore.shared.result import Ok, FallbackReason, Result
from learncore.store.database import LearningStore
from learncore.store.models import (
    Learner,
    LearningStyleProfile,
    Questionnaire,
    QuestionnaireResponse,
    ResponseStatus,
    StylePoint,
)

logger = get_logger(__name__)

AI_ESTIMATE_OPERATION = "learning_style_ai"


@dataclass
class ClassificationResult:
    """Outcome of analyzing one completed questionnaire response."""
    profile: LearningStyleProfile
    deterministic_scores: Dict[str, float]
    ai_scores: Dict[str, float]
    final_scores: Dict[str, float]
    completion: float
    consistency: float
    fallback_reason: Optional[FallbackReason] = None
    ai_analysis: Optional[Dict[str, Any]] = None
    high_confidence: bool = False

    @property
    def dominant_style(self) -> LearningStyle:
        return self.profile.dominant_style

    @property
    def confidence(self) -> float:
        return self.profile.confidence_score

    @property
    def used_fallback(self) -> bool:
        return self.fallback_reason is not None


@dataclass
class PeerComparison:
    """A learner's scores against their grade and class cohort."""
    learner_id: str
    learner_scores: Dict[str, float]
    cohort_averages: Dict[str, float]
    percentiles: Dict[str, float]
    cohort_size: int = 0
    style_distribution: Dict[str, int] = field(default_factory=dict)


class StyleEvolution:
    """
    Historical classifications of one learner, oldest first.

    Each iteration re-reads the store, so the sequence can be walked more than once.
    """

    def __init__(self, store: LearningStore, learner_id: str):
        self.store = store
        self.learner_id = learner_id

    def __iter__(self) -> Iterator[StylePoint]:
        return self.store.iter_profile_history(self.learner_id)


def answer_consistency(
    category_answers: Mapping[str, List[int]],
    max_variance: float = 4.0,
    default: float = 50.0
) -> float:
    """
    Mean of `100 - variance / max_variance * 100` over categories with at
    least two answers (population variance, floored at 0); `default` otherwise.
    """
    per_category = []
    for values in category_answers.values():
        if len(values) < 2:
            continue
        variance = statistics.pvariance(values)
        per_category.append(max(0.0, 100.0 - variance / max_variance * 100.0))

    if not per_category:
        return default
    return sum(per_category) / len(per_category)


def blend_scores(
    deterministic: Mapping[str, float],
    ai: Mapping[str, float],
    deterministic_weight: float,
    ai_weight: float
) -> Dict[str, float]:
    """Weighted combination per category, clamped to 0-100."""
    blended = {}
    for style in CATEGORIES:
        value = deterministic_weight * deterministic[style.value] + ai_weight * ai[style.value]
        blended[style.value] = round(max(0.0, min(100.0, value)), 2)
    return blended


class ClassificationService:
    """Classify learners from completed questionnaires."""

    def __init__(
        self,
        store: LearningStore,
        generator: Optional[TextGenerator] = None,
        cache: Optional[Cache] = None,
        scoring: Optional[ScoringEngine] = None,
        config: Optional[ClassificationConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None,
        identity: RequestIdentity = ANONYMOUS,
        single_flight: Optional[SingleFlight] = None
    ):
        self.store = store
        self.generator = generator
        self.cache = cache or NullCache()
        self.scoring = scoring or ScoringEngine()
        self.config = config or settings.classification
        self.cache_config = cache_config or settings.cache
        self.clock = clock or SystemClock()
        self.identity = identity
        self.single_flight = single_flight or SingleFlight()

    async def analyze(self, response_id: int) -> ClassificationResult:
        """
        Classify the learner behind a completed response and upsert their profile.

        AI failures never raise; the deterministic scores stand in and the
        reason is recorded on the result and in the profile's survey data.

        Raises:
            NotFoundError: response, questionnaire or learner missing
            ValidationError: response not completed
        """
        response = self.store.get_response(response_id)
        if response is None:
            raise NotFoundError("QuestionnaireResponse", response_id)
        if response.status != ResponseStatus.COMPLETED:
            raise ValidationError(
                f"Questionnaire response {response_id} is {response.status.value}, not completed"
            )
        questionnaire = self.store.get_questionnaire(response.questionnaire_id)
        if questionnaire is None:
            raise NotFoundError("Questionnaire", response.questionnaire_id)
        learner = self.store.get_learner(response.learner_id)
        if learner is None:
            raise NotFoundError("Learner", response.learner_id)

        deterministic = self.scoring.calculate_scores(response, questionnaire)

        estimate = await self._ai_estimate(response, questionnaire, self._learner_context(learner))
        if estimate.is_ok:
            ai_scores = estimate.value["scores"]
            ai_analysis = estimate.value["payload"]
            fallback_reason = None
        else:
            ai_scores = dict(deterministic)
            ai_analysis = None
            fallback_reason = estimate.reason

        final = blend_scores(
            deterministic, ai_scores,
            self.config.deterministic_weight, self.config.ai_weight
        )
        dominant = classify_dominant_style(final, self.config.mixed_threshold)

        completion = self.scoring.completion_percentage(response, questionnaire)
        consistency = answer_consistency(
            self.scoring.category_answers(response, questionnaire),
            max_variance=self.config.max_answer_variance,
            default=self.config.default_consistency,
        )
        confidence = self.confidence(final, completion, consistency)

        profile = self.store.upsert_profile(LearningStyleProfile(
            learner_id=learner.id,
            visual_score=final[LearningStyle.VISUAL.value],
            auditory_score=final[LearningStyle.AUDITORY.value],
            kinesthetic_score=final[LearningStyle.KINESTHETIC.value],
            dominant_style=dominant,
            confidence_score=confidence,
            analysis_date=self.clock.now(),
            response_id=response.id,
            survey_data={
                "answers": response.answers,
                "deterministic_scores": deterministic,
                "ai_analysis": ai_analysis,
                "fallback_reason": fallback_reason.value if fallback_reason else None,
            },
        ))
        self.store.update_response(response.model_copy(update={"calculated_scores": final}))

        log_with_context(
            logger,
            logging.INFO,
            f"Classified learner as {dominant.value} (confidence {confidence:.1f})",
            learner_id=learner.id,
            action="classify_learning_style",
            session_id=self.identity.session_id or response.session_id,
            actor_id=self.identity.actor_id,
            response_id=response.id,
            fallback_reason=fallback_reason.value if fallback_reason else None,
        )

        return ClassificationResult(
            profile=profile,
            deterministic_scores=deterministic,
            ai_scores=ai_scores,
            final_scores=final,
            completion=completion,
            consistency=consistency,
            fallback_reason=fallback_reason,
            ai_analysis=ai_analysis,
            high_confidence=profile.is_high_confidence(self.config.high_confidence_threshold),
        )

    def confidence(
        self,
        scores: Mapping[str, float],
        completion: float,
        consistency: float
    ) -> float:
        """Weighted spread, completion and consistency, clamped to 0-100."""
        spread = max(scores.values()) - min(scores.values())
        value = (
            self.config.spread_weight * spread
            + self.config.completion_weight * completion
            + self.config.consistency_weight * consistency
        )
        return round(max(0.0, min(100.0, value)), 2)

    async def _ai_estimate(
        self,
        response: QuestionnaireResponse,
        questionnaire: Questionnaire,
        learner_context: Dict[str, Any]
    ) -> Result:
        """AI category scores for a response, cached and de-duplicated while in flight."""
        key = make_cache_key(AI_ESTIMATE_OPERATION, response.id, {"answers": response.answers})

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Using cached AI estimate for response {response.id}")
            return Ok(cached)

        item_categories = {item.id: item.category.value for item in questionnaire.items}
        prompt = build_learning_style_prompt(response.answers, item_categories, learner_context)

        async def request() -> Result:
            reply = await request_json(self.generator, prompt, required_keys=STYLE_SCORE_KEYS)
            if not reply.is_ok:
                return reply
            parsed = parse_style_estimate(reply.value)
            if not parsed.is_ok:
                return parsed

            estimate = {"scores": parsed.value, "payload": reply.value}
            self.cache.set(key, estimate, self.cache_config.classification_ttl_seconds)
            return Ok(estimate)

        return await self.single_flight.run(key, request)

    @staticmethod
    def _learner_context(learner: Learner) -> Dict[str, Any]:
        return {
            "grade": learner.grade_level,
            "class": learner.class_name,
            "major": learner.major,
            "interests": learner.interests,
            "language": learner.preferred_language,
        }

    def style_evolution(self, learner_id: str) -> StyleEvolution:
        return StyleEvolution(self.store, learner_id)

    def peer_comparison(self, learner_id: str) -> PeerComparison:
        """
        Compare a learner with profiled peers of the same grade and class.

        Percentile per category = share of the cohort (the learner included)
        scoring strictly lower.

        Raises:
            NotFoundError: unknown learner or learner without a profile
        """
        learner = self.store.get_learner(learner_id)
        if learner is None:
            raise NotFoundError("Learner", learner_id)
        profile = self.store.get_profile(learner_id)
        if profile is None:
            raise NotFoundError("LearningStyleProfile", learner_id)

        cohort = self.store.list_cohort_profiles(learner.grade_level, learner.class_name)
        size = len(cohort)

        averages: Dict[str, float] = {}
        percentiles: Dict[str, float] = {}
        for style in CATEGORIES:
            own = profile.scores[style.value]
            values = [peer.scores[style.value] for peer in cohort]
            averages[style.value] = round(sum(values) / size, 2) if size else 0.0
            lower = sum(1 for value in values if value < own)
            percentiles[style.value] = round(lower / size * 100, 1) if size else 0.0

        distribution: Dict[str, int] = {}
        for peer in cohort:
            distribution[peer.dominant_style.value] = distribution.get(peer.dominant_style.value, 0) + 1

        return PeerComparison(
            learner_id=learner_id,
            learner_scores=profile.scores,
            cohort_averages=averages,
            percentiles=percentiles,
            cohort_size=size,
            style_distribution=distribution,
        )
