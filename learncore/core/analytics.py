"""
Learning analytics aggregation: daily metrics from activity and assessment
logs, period rollups, range summaries with trend series, and cohort views.
"""

import calendar
import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from learncore.shared.clock import Clock, RequestIdentity, SystemClock, ANONYMOUS
from learncore.shared.config import AnalyticsConfig, settings
from learncore.shared.exceptions import ValidationError
from learncore.shared.logging import get_logger, log_with_context
from learncore.store.database import LearningStore
from learncore.store.models import AggregationPeriod, LearningActivity, MetricSample

logger = get_logger(__name__)


class MetricType(str, Enum):
    """Stored metric identifiers."""
    ENGAGEMENT_SCORE = "engagement_score"
    SESSION_COUNT = "session_count"
    CONTENT_VIEWS = "content_views"
    CONTENT_COMPLETIONS = "content_completions"
    AVG_ASSESSMENT_SCORE = "avg_assessment_score"
    ASSESSMENT_COUNT = "assessment_count"
    IMPROVEMENT_TREND = "improvement_trend"
    TOTAL_STUDY_TIME = "total_study_time"  # hours
    AVG_SESSION_DURATION = "avg_session_duration"  # minutes


class AggregationKind(str, Enum):
    SUM = "sum"
    AVERAGE = "average"


AGGREGATION_KINDS: Dict[str, AggregationKind] = {
    MetricType.SESSION_COUNT.value: AggregationKind.SUM,
    MetricType.CONTENT_VIEWS.value: AggregationKind.SUM,
    MetricType.CONTENT_COMPLETIONS.value: AggregationKind.SUM,
    MetricType.ASSESSMENT_COUNT.value: AggregationKind.SUM,
    MetricType.TOTAL_STUDY_TIME.value: AggregationKind.SUM,
    MetricType.ENGAGEMENT_SCORE.value: AggregationKind.AVERAGE,
    MetricType.AVG_ASSESSMENT_SCORE.value: AggregationKind.AVERAGE,
    MetricType.IMPROVEMENT_TREND.value: AggregationKind.AVERAGE,
    MetricType.AVG_SESSION_DURATION.value: AggregationKind.AVERAGE,
}

TREND_METRICS = (
    MetricType.ENGAGEMENT_SCORE.value,
    MetricType.AVG_ASSESSMENT_SCORE.value,
    MetricType.TOTAL_STUDY_TIME.value,
)


def aggregate(metric_type: str, values: List[float]) -> float:
    """Combine daily values using the fixed lookup table; unknown types are summed."""
    if not values:
        return 0.0
    kind = AGGREGATION_KINDS.get(metric_type, AggregationKind.SUM)
    if kind == AggregationKind.AVERAGE:
        return sum(values) / len(values)
    return sum(values)


class EngagementSummary(BaseModel):
    score: float = 0.0
    sessions: float = 0.0
    content_views: float = 0.0
    completions: float = 0.0


class PerformanceSummary(BaseModel):
    avg_score: float = 0.0
    total_assessments: float = 0.0
    improvement_trend: float = 0.0


class TimeSummary(BaseModel):
    total_hours: float = 0.0
    avg_session_minutes: float = 0.0


class TrendPoint(BaseModel):
    day: date
    value: float


class LearnerAnalytics(BaseModel):
    """Summary of a learner's daily metrics over an inclusive date range."""
    learner_id: str
    start: date
    end: date
    engagement: EngagementSummary = Field(default_factory=EngagementSummary)
    performance: PerformanceSummary = Field(default_factory=PerformanceSummary)
    time_metrics: TimeSummary = Field(default_factory=TimeSummary)
    trends: Dict[str, List[TrendPoint]] = Field(default_factory=dict)

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


class ClassAverages(BaseModel):
    engagement_score: float = 0.0
    performance_score: float = 0.0
    study_hours: float = 0.0
    completion_rate: float = 0.0


class RankingEntry(BaseModel):
    learner_id: str
    rank: int
    score: float


class RiskAssessment(BaseModel):
    learner_id: str
    risk_factors: List[str]
    risk_level: str  # high, medium


class CohortAnalytics(BaseModel):
    """Cohort-level view over several learners' range summaries."""
    start: date
    end: date
    learners: List[LearnerAnalytics] = Field(default_factory=list)
    class_average: ClassAverages = Field(default_factory=ClassAverages)
    distribution: Dict[str, float] = Field(default_factory=dict)
    performance_ranking: List[RankingEntry] = Field(default_factory=list)
    at_risk: List[RiskAssessment] = Field(default_factory=list)


def assess_risk(
    learner_id: str,
    engagement: float,
    avg_score: float,
    weekly_hours: float,
    config: Optional[AnalyticsConfig] = None
) -> Optional[RiskAssessment]:
    """
    Flag a learner when any threshold is crossed.

    Risk level is "high" with two or more factors, "medium" with one.
    Returns None when no threshold is crossed.
    """
    config = config or settings.analytics

    factors = []
    if engagement < config.risk_engagement_threshold:
        factors.append("low_engagement")
    if avg_score < config.risk_performance_threshold:
        factors.append("low_performance")
    if weekly_hours < config.risk_weekly_hours_threshold:
        factors.append("insufficient_study_time")

    if not factors:
        return None
    return RiskAssessment(
        learner_id=learner_id,
        risk_factors=factors,
        risk_level="high" if len(factors) >= 2 else "medium",
    )


def period_window(period_start: date, period: AggregationPeriod) -> Tuple[date, date]:
    """Inclusive (first, last) day of the rollup window that `period_start` opens or falls in."""
    if period == AggregationPeriod.WEEKLY:
        return period_start, period_start + timedelta(days=6)
    if period == AggregationPeriod.MONTHLY:
        first = period_start.replace(day=1)
        last_day = calendar.monthrange(first.year, first.month)[1]
        return first, first.replace(day=last_day)
    if period == AggregationPeriod.QUARTERLY:
        first_month = (period_start.month - 1) // 3 * 3 + 1
        first = date(period_start.year, first_month, 1)
        last_month = first_month + 2
        last_day = calendar.monthrange(first.year, last_month)[1]
        return first, date(first.year, last_month, last_day)
    raise ValidationError(f"Cannot roll up into {period.value} samples")


class AnalyticsAggregationEngine:
    """Compute and read back aggregated learning metrics."""

    def __init__(
        self,
        store: LearningStore,
        config: Optional[AnalyticsConfig] = None,
        clock: Optional[Clock] = None,
        identity: RequestIdentity = ANONYMOUS
    ):
        self.store = store
        self.config = config or settings.analytics
        self.clock = clock or SystemClock()
        self.identity = identity

    def daily_analytics(self, learner_id: str, day: date) -> Dict[str, float]:
        """
        Compute and upsert the daily samples for one learner and day.

        Performance metrics are written only when the day has assessments.
        Re-running for the same day overwrites the previous samples.

        Returns:
            metric type -> value for every sample written
        """
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)

        activities = self.store.list_activities(learner_id, start, end)
        sessions = self._session_durations(activities)

        metrics: Dict[str, float] = {
            MetricType.ENGAGEMENT_SCORE.value: self.engagement_score(activities),
            MetricType.SESSION_COUNT.value: float(len(sessions)),
            MetricType.CONTENT_VIEWS.value: float(
                sum(1 for activity in activities if activity.activity_type == "view")
            ),
            MetricType.CONTENT_COMPLETIONS.value: float(
                sum(1 for activity in activities if activity.activity_type == "complete")
            ),
        }

        assessments = self.store.list_assessments(learner_id, start, end)
        if assessments:
            metrics[MetricType.AVG_ASSESSMENT_SCORE.value] = (
                sum(a.percentage for a in assessments) / len(assessments)
            )
            metrics[MetricType.ASSESSMENT_COUNT.value] = float(len(assessments))
            metrics[MetricType.IMPROVEMENT_TREND.value] = self.improvement_trend(learner_id, end)

        metrics[MetricType.TOTAL_STUDY_TIME.value] = (
            sum(activity.duration_seconds for activity in activities) / 3600
        )
        metrics[MetricType.AVG_SESSION_DURATION.value] = (
            sum(sessions.values()) / len(sessions) / 60 if sessions else 0.0
        )

        context = {
            "calculated_at": self.clock.now().isoformat(),
            "version": self.config.metric_version,
        }
        for metric_type, value in metrics.items():
            self.store.upsert_metric(MetricSample(
                learner_id=learner_id,
                metric_type=metric_type,
                value=value,
                calculation_date=day,
                aggregation_period=AggregationPeriod.DAILY,
                context=context,
            ))

        log_with_context(
            logger,
            logging.INFO,
            f"Stored {len(metrics)} daily metrics for {day.isoformat()}",
            learner_id=learner_id,
            action="daily_analytics",
            session_id=self.identity.session_id,
            actor_id=self.identity.actor_id,
        )
        return metrics

    def engagement_score(self, activities: Iterable[LearningActivity]) -> float:
        """Weighted activity score; 100 means every activity was a completion."""
        activities = list(activities)
        if not activities:
            return 0.0

        total_weight = sum(
            self.config.activity_weights.get(activity.activity_type, self.config.default_activity_weight)
            for activity in activities
        )
        return total_weight / (len(activities) * self.config.max_activity_weight) * 100

    def improvement_trend(self, learner_id: str, until: datetime) -> float:
        """Mean successive delta over the most recent assessments before `until`."""
        recent = self.store.recent_assessments(learner_id, until, self.config.improvement_window)
        if len(recent) < 2:
            return 0.0

        scores = [assessment.percentage for assessment in recent]
        deltas = [current - previous for previous, current in zip(scores, scores[1:])]
        return sum(deltas) / len(deltas)

    @staticmethod
    def _session_durations(activities: Iterable[LearningActivity]) -> Dict[Optional[str], int]:
        # Activities without a session id count as one implicit session
        durations: Dict[Optional[str], int] = defaultdict(int)
        for activity in activities:
            durations[activity.session_id] += activity.duration_seconds
        return dict(durations)

    def weekly_rollup(self, learner_id: str, week_start: date) -> Dict[str, float]:
        return self.rollup(learner_id, week_start, AggregationPeriod.WEEKLY)

    def rollup(
        self,
        learner_id: str,
        period_start: date,
        period: AggregationPeriod
    ) -> Dict[str, float]:
        """
        Aggregate daily samples into one sample per metric type for the period.

        Weekly windows start at `period_start`; monthly and quarterly windows
        are the calendar month or quarter containing it.
        """
        first, last = period_window(period_start, period)

        grouped: Dict[str, List[float]] = defaultdict(list)
        for sample in self.store.list_metrics(learner_id, AggregationPeriod.DAILY, first, last):
            grouped[sample.metric_type].append(sample.value)

        results: Dict[str, float] = {}
        for metric_type, values in grouped.items():
            value = aggregate(metric_type, values)
            self.store.upsert_metric(MetricSample(
                learner_id=learner_id,
                metric_type=metric_type,
                value=value,
                calculation_date=first,
                aggregation_period=period,
                context={
                    "calculated_at": self.clock.now().isoformat(),
                    "period_end": last.isoformat(),
                    "data_points": len(values),
                    "version": self.config.metric_version,
                },
            ))
            results[metric_type] = value

        logger.info(
            f"Rolled up {len(results)} {period.value} metrics for learner {learner_id} "
            f"({first.isoformat()} to {last.isoformat()})"
        )
        return results

    def range_query(self, learner_id: str, start: date, end: date) -> LearnerAnalytics:
        """
        Summary of daily samples between start and end (inclusive) with
        zero-filled trend series.

        Raises:
            ValidationError: end before start
        """
        if end < start:
            raise ValidationError(f"Range end {end.isoformat()} is before start {start.isoformat()}")

        by_type: Dict[str, Dict[date, float]] = defaultdict(dict)
        for sample in self.store.list_metrics(learner_id, AggregationPeriod.DAILY, start, end):
            by_type[sample.metric_type][sample.calculation_date] = sample.value

        def values(metric: MetricType) -> List[float]:
            return list(by_type.get(metric.value, {}).values())

        def mean(metric: MetricType) -> float:
            data = values(metric)
            return sum(data) / len(data) if data else 0.0

        def total(metric: MetricType) -> float:
            return sum(values(metric))

        days = [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
        trends = {
            metric_type: [
                TrendPoint(day=day, value=by_type.get(metric_type, {}).get(day, 0.0))
                for day in days
            ]
            for metric_type in TREND_METRICS
        }

        return LearnerAnalytics(
            learner_id=learner_id,
            start=start,
            end=end,
            engagement=EngagementSummary(
                score=mean(MetricType.ENGAGEMENT_SCORE),
                sessions=total(MetricType.SESSION_COUNT),
                content_views=total(MetricType.CONTENT_VIEWS),
                completions=total(MetricType.CONTENT_COMPLETIONS),
            ),
            performance=PerformanceSummary(
                avg_score=mean(MetricType.AVG_ASSESSMENT_SCORE),
                total_assessments=total(MetricType.ASSESSMENT_COUNT),
                improvement_trend=mean(MetricType.IMPROVEMENT_TREND),
            ),
            time_metrics=TimeSummary(
                total_hours=total(MetricType.TOTAL_STUDY_TIME),
                avg_session_minutes=mean(MetricType.AVG_SESSION_DURATION),
            ),
            trends=trends,
        )

    def cohort_analytics(self, learner_ids: List[str], start: date, end: date) -> CohortAnalytics:
        """Class averages, style distribution, performance ranking and at-risk learners."""
        summaries = [self.range_query(learner_id, start, end) for learner_id in learner_ids]
        count = len(summaries)
        days = (end - start).days + 1

        views = sum(summary.engagement.content_views for summary in summaries)
        completions = sum(summary.engagement.completions for summary in summaries)
        class_average = ClassAverages(
            engagement_score=sum(s.engagement.score for s in summaries) / count if count else 0.0,
            performance_score=sum(s.performance.avg_score for s in summaries) / count if count else 0.0,
            study_hours=sum(s.time_metrics.total_hours for s in summaries) / count if count else 0.0,
            completion_rate=completions / views * 100 if views else 0.0,
        )

        # sorted() is stable: ties keep the input order
        ranked = sorted(summaries, key=lambda summary: summary.performance.avg_score, reverse=True)
        ranking = [
            RankingEntry(learner_id=summary.learner_id, rank=index + 1, score=summary.performance.avg_score)
            for index, summary in enumerate(ranked)
        ]

        at_risk = []
        for summary in summaries:
            weekly_hours = summary.time_metrics.total_hours * 7 / days
            risk = assess_risk(
                summary.learner_id,
                summary.engagement.score,
                summary.performance.avg_score,
                weekly_hours,
                self.config,
            )
            if risk is not None:
                at_risk.append(risk)

        return CohortAnalytics(
            start=start,
            end=end,
            learners=summaries,
            class_average=class_average,
            distribution=self.style_distribution(learner_ids),
            performance_ranking=ranking,
            at_risk=at_risk,
        )

    def style_distribution(self, learner_ids: Iterable[str]) -> Dict[str, float]:
        """Percentage of profiled learners per dominant style."""
        counts: Dict[str, int] = defaultdict(int)
        for learner_id in learner_ids:
            profile = self.store.get_profile(learner_id)
            if profile is not None:
                counts[profile.dominant_style.value] += 1

        profiled = sum(counts.values())
        return {
            style: round(count / profiled * 100, 2)
            for style, count in counts.items()
        } if profiled else {}
