"""
Configuration management for learncore.
Loads from config/learncore.yaml and environment variables.
"""

from pathlib import Path
from typing import Optional, Dict, Any
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator


class LLMConfig(BaseSettings):
    """Text-generation collaborator configuration."""
    provider: str = Field(default="openai")  # openai, anthropic
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    default_model: str = Field(default="gpt-4o-mini")
    temperature: float = Field(default=0.0)
    max_tokens: int = Field(default=2000)
    timeout_seconds: float = Field(default=20.0)

    model_config = SettingsConfigDict(env_prefix="LLM_", extra="ignore")


class StoreConfig(BaseSettings):
    """SQLite persistence configuration."""
    db_path: Path = Field(default=Path("data/learncore.sqlite"))
    busy_timeout_seconds: float = Field(default=30.0)

    model_config = SettingsConfigDict(env_prefix="STORE_", extra="ignore")


class CacheConfig(BaseSettings):
    """Result cache configuration."""
    backend: str = Field(default="memory")  # memory, sqlite, tiered, none
    sqlite_path: Path = Field(default=Path("data/learncore_cache.sqlite"))
    classification_ttl_seconds: int = Field(default=3600)
    recommendation_ttl_seconds: int = Field(default=3600)

    model_config = SettingsConfigDict(env_prefix="CACHE_", extra="ignore")


class ScoringConfig(BaseSettings):
    """Questionnaire scoring configuration."""
    min_likert_value: int = Field(default=1)
    max_likert_value: int = Field(default=5)

    model_config = SettingsConfigDict(env_prefix="SCORING_", extra="ignore")


class ClassificationConfig(BaseSettings):
    """Learning style classification weights and thresholds."""
    deterministic_weight: float = Field(default=0.6)
    ai_weight: float = Field(default=0.4)
    mixed_threshold: float = Field(default=10.0)
    spread_weight: float = Field(default=0.4)
    completion_weight: float = Field(default=0.3)
    consistency_weight: float = Field(default=0.3)
    default_consistency: float = Field(default=50.0)
    max_answer_variance: float = Field(default=4.0)  # 1-5 scale
    high_confidence_threshold: float = Field(default=80.0)

    model_config = SettingsConfigDict(env_prefix="CLASSIFICATION_", extra="ignore")

    @field_validator(
        "deterministic_weight", "ai_weight",
        "spread_weight", "completion_weight", "consistency_weight"
    )
    @classmethod
    def _weight_in_unit_interval(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"weight must be within [0, 1], got {value}")
        return value

    @model_validator(mode="after")
    def _blend_weights_sum_to_one(self) -> "ClassificationConfig":
        if abs(self.deterministic_weight + self.ai_weight - 1.0) > 1e-6:
            raise ValueError("deterministic_weight + ai_weight must equal 1")
        return self


class RecommendationConfig(BaseSettings):
    """Recommendation engine configuration."""
    default_limit: int = Field(default=10)
    candidate_multiplier: int = Field(default=3)
    retention_hours: int = Field(default=24)
    algorithm_version: str = Field(default="1.0")
    recommendation_type: str = Field(default="hybrid")
    performance_window_days: int = Field(default=30)
    recent_topics_days: int = Field(default=7)
    engagement_window_days: int = Field(default=7)
    max_recent_topics: int = Field(default=5)
    max_topic_list: int = Field(default=3)
    advanced_threshold: float = Field(default=80.0)
    intermediate_threshold: float = Field(default=60.0)

    # Rule-based fallback scoring
    base_score: float = Field(default=0.5)
    style_match_bonus: float = Field(default=0.3)
    difficulty_match_bonus: float = Field(default=0.2)
    rating_bonus: float = Field(default=0.1)
    popularity_bonus: float = Field(default=0.05)
    rating_threshold: float = Field(default=3.0)
    popularity_threshold: int = Field(default=100)

    model_config = SettingsConfigDict(env_prefix="RECOMMENDATION_", extra="ignore")


class AnalyticsConfig(BaseSettings):
    """Analytics aggregation configuration."""
    activity_weights: Dict[str, float] = Field(default_factory=lambda: {
        "view": 1.0,
        "click": 1.5,
        "download": 2.0,
        "complete": 3.0,
    })
    default_activity_weight: float = Field(default=1.0)
    max_activity_weight: float = Field(default=3.0)
    improvement_window: int = Field(default=5)
    risk_engagement_threshold: float = Field(default=30.0)
    risk_performance_threshold: float = Field(default=60.0)
    risk_weekly_hours_threshold: float = Field(default=2.0)
    metric_version: str = Field(default="1.0")

    model_config = SettingsConfigDict(env_prefix="ANALYTICS_", extra="ignore")


class LearnCoreSettings(BaseSettings):
    """Main learncore configuration."""
    env: str = Field(default="dev", alias="LEARNCORE_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[Path] = Field(default=None, alias="LOG_FILE")

    # Sub-configurations
    llm: LLMConfig = Field(default_factory=LLMConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    recommendation: RecommendationConfig = Field(default_factory=RecommendationConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow"
    )

    @classmethod
    def load_from_yaml(cls, config_path: Optional[Path] = None) -> "LearnCoreSettings":
        """Load settings from YAML file and merge with environment variables."""
        if config_path is None:
            config_path = Path("config/learncore.yaml")

        config_dict: Dict[str, Any] = {}

        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}
                config_dict = yaml_data.get("learncore", {}) or {}

        return cls(**config_dict)


# Global settings instance
_settings: Optional[LearnCoreSettings] = None


def get_settings() -> LearnCoreSettings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = LearnCoreSettings.load_from_yaml()
    return _settings


# Alias for convenience
settings = get_settings()
