"""
Pydantic models for the learning store.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator

from learncore.core.styles import LearningStyle, CATEGORIES


class ResponseStatus(str, Enum):
    """Questionnaire response lifecycle state."""
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class AggregationPeriod(str, Enum):
    """Time bucket of a stored metric sample."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class ContentStyle(str, Enum):
    """Learning style a content item targets."""
    VISUAL = "visual"
    AUDITORY = "auditory"
    KINESTHETIC = "kinesthetic"
    ALL = "all"


class DifficultyLevel(str, Enum):
    """Content and assessment difficulty band."""
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class Learner(BaseModel):
    """Learner identity and profile-setup attributes."""
    id: str
    grade_level: str
    class_name: Optional[str] = None
    major: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    preferred_language: str = "id"


class QuestionnaireItem(BaseModel):
    """One Likert item tagged with the category it measures."""
    id: str
    category: LearningStyle
    text: str = ""

    @field_validator("category")
    @classmethod
    def _category_is_scored(cls, value: LearningStyle) -> LearningStyle:
        if not value.is_category:
            raise ValueError("item category must be visual, auditory or kinesthetic")
        return value


class ScoringRule(BaseModel):
    """Per-category scoring override."""
    item_ids: List[str] = Field(default_factory=list)
    weight: float = 1.0
    max_score: Optional[float] = None


class Questionnaire(BaseModel):
    """Learning style questionnaire."""
    id: str
    title: str = ""
    version: str = "1.0"
    language: str = "id"
    items: List[QuestionnaireItem] = Field(default_factory=list)
    scoring_rules: Dict[str, ScoringRule] = Field(default_factory=dict)
    is_active: bool = True
    published_at: Optional[datetime] = None

    @property
    def total_items(self) -> int:
        return len(self.items)

    def item_ids(self) -> List[str]:
        return [item.id for item in self.items]

    def items_by_category(self) -> Dict[str, List[QuestionnaireItem]]:
        grouped: Dict[str, List[QuestionnaireItem]] = {style.value: [] for style in CATEGORIES}
        for item in self.items:
            grouped[item.category.value].append(item)
        return grouped


class QuestionnaireResponse(BaseModel):
    """A learner's answers to one questionnaire."""
    id: Optional[int] = None
    learner_id: str
    questionnaire_id: str
    answers: Dict[str, Any] = Field(default_factory=dict)
    status: ResponseStatus = ResponseStatus.STARTED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    time_spent_seconds: Optional[int] = None
    session_id: Optional[str] = None
    calculated_scores: Optional[Dict[str, float]] = None


class LearningStyleProfile(BaseModel):
    """Current learning style classification of a learner."""
    id: Optional[int] = None
    learner_id: str
    visual_score: float = Field(ge=0.0, le=100.0)
    auditory_score: float = Field(ge=0.0, le=100.0)
    kinesthetic_score: float = Field(ge=0.0, le=100.0)
    dominant_style: LearningStyle
    confidence_score: float = Field(ge=0.0, le=100.0)
    analysis_date: datetime
    response_id: Optional[int] = None
    survey_data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def scores(self) -> Dict[str, float]:
        return {
            LearningStyle.VISUAL.value: self.visual_score,
            LearningStyle.AUDITORY.value: self.auditory_score,
            LearningStyle.KINESTHETIC.value: self.kinesthetic_score,
        }

    def style_percentages(self) -> Dict[str, float]:
        """Scores rescaled to sum to 100."""
        total = sum(self.scores.values())
        if total == 0:
            return {style: 0.0 for style in self.scores}
        return {style: round(score / total * 100, 1) for style, score in self.scores.items()}

    def is_high_confidence(self, threshold: float = 80.0) -> bool:
        return self.confidence_score >= threshold


class StylePoint(BaseModel):
    """One historical classification, for charting."""
    analysis_date: date
    visual: float
    auditory: float
    kinesthetic: float
    dominant_style: LearningStyle


class ContentItem(BaseModel):
    """Catalog entry owned by the content-management subsystem."""
    id: int
    title: str = ""
    description: str = ""
    subject: str = ""
    topic: str = ""
    grade_level: str
    content_type: str = "article"
    target_style: ContentStyle = ContentStyle.ALL
    difficulty_level: DifficultyLevel = DifficultyLevel.BEGINNER
    rating: float = 0.0
    view_count: int = 0
    is_active: bool = True

    def suits_style(self, style: LearningStyle) -> bool:
        """Content for 'all', or targeting exactly this style."""
        return self.target_style == ContentStyle.ALL or self.target_style.value == style.value


class Recommendation(BaseModel):
    """Persisted (learner, content) recommendation."""
    id: Optional[int] = None
    learner_id: str
    content_id: int
    relevance_score: float = Field(ge=0.0, le=1.0)
    reason: str = ""
    algorithm_version: str = "1.0"
    recommendation_type: str = "hybrid"
    is_viewed: bool = False
    viewed_at: Optional[datetime] = None
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MetricSample(BaseModel):
    """Aggregated metric value for one learner, date and period."""
    id: Optional[int] = None
    learner_id: str
    metric_type: str
    value: float
    calculation_date: date
    aggregation_period: AggregationPeriod = AggregationPeriod.DAILY
    context: Dict[str, Any] = Field(default_factory=dict)


class LearningActivity(BaseModel):
    """Raw activity log entry."""
    id: Optional[int] = None
    learner_id: str
    content_id: Optional[int] = None
    activity_type: str
    duration_seconds: int = 0
    session_id: Optional[str] = None
    created_at: datetime


class Assessment(BaseModel):
    """Graded assessment result."""
    id: Optional[int] = None
    learner_id: str
    subject: str = ""
    topic: str = ""
    percentage: float = Field(ge=0.0, le=100.0)
    difficulty_level: Optional[DifficultyLevel] = None
    created_at: datetime
