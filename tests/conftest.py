"""
Pytest fixtures for learncore tests.
"""

import json
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from learncore.core.styles import LearningStyle
from learncore.shared.clock import FixedClock
from learncore.store.database import LearningStore
from learncore.store.models import (
    ContentItem,
    ContentStyle,
    DifficultyLevel,
    Learner,
    LearningStyleProfile,
    Questionnaire,
    QuestionnaireItem,
    QuestionnaireResponse,
    ResponseStatus,
)

NOW = datetime(2025, 3, 10, 12, 0, 0)


@pytest.fixture
def clock():
    """Clock pinned to 2025-03-10 12:00 UTC."""
    return FixedClock(NOW)


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store per test."""
    return LearningStore(tmp_path / "learncore.sqlite")


@pytest.fixture
def mock_generator():
    """Mock text generator that returns canned text."""
    mock = AsyncMock()

    def set_response(response):
        """Set the reply text (a dict is serialized as JSON)."""
        if isinstance(response, dict):
            response = json.dumps(response)
        mock.generate.return_value = response

    mock.generate.return_value = "{}"
    mock.set_response = set_response

    return mock


@pytest.fixture
def learner(store):
    return store.save_learner(Learner(
        id="s-001",
        grade_level="10",
        class_name="10A",
        major="science",
        interests=["math", "physics"],
    ))


@pytest.fixture
def questionnaire(store):
    """Nine items: q1-q3 visual, q4-q6 auditory, q7-q9 kinesthetic."""
    categories = (
        [LearningStyle.VISUAL] * 3
        + [LearningStyle.AUDITORY] * 3
        + [LearningStyle.KINESTHETIC] * 3
    )
    items = [
        QuestionnaireItem(id=f"q{index}", category=category, text=f"Statement {index}")
        for index, category in enumerate(categories, start=1)
    ]
    return store.save_questionnaire(Questionnaire(
        id="lsq-v1",
        title="Learning style questionnaire",
        items=items,
        published_at=NOW,
    ))


@pytest.fixture
def visual_answers():
    """Visual 5s, auditory 3s, kinesthetic 1s -> scores 100 / 60 / 20."""
    answers = {}
    for index in range(1, 10):
        answers[f"q{index}"] = 5 if index <= 3 else 3 if index <= 6 else 1
    return answers


@pytest.fixture
def make_completed_response(store):
    """Factory for a completed response stored directly."""

    def factory(learner_id, questionnaire_id, answers):
        return store.create_response(QuestionnaireResponse(
            learner_id=learner_id,
            questionnaire_id=questionnaire_id,
            answers=answers,
            status=ResponseStatus.COMPLETED,
            started_at=NOW,
            completed_at=NOW,
        ))

    return factory


@pytest.fixture
def make_profile(store, clock):
    """Factory for a stored learning style profile."""

    def factory(learner_id, style=LearningStyle.VISUAL, visual=80.0, auditory=40.0, kinesthetic=30.0):
        return store.upsert_profile(LearningStyleProfile(
            learner_id=learner_id,
            visual_score=visual,
            auditory_score=auditory,
            kinesthetic_score=kinesthetic,
            dominant_style=style,
            confidence_score=75.0,
            analysis_date=clock.now(),
        ))

    return factory


@pytest.fixture
def catalog(store):
    """Content catalog for grade 10 plus items that must never be candidates."""
    items = [
        ContentItem(id=1, title="Diagrams of cells", topic="cells", grade_level="10",
                    target_style=ContentStyle.VISUAL, difficulty_level=DifficultyLevel.BEGINNER,
                    rating=4.5, view_count=50),
        ContentItem(id=2, title="Infographic: photosynthesis", topic="photosynthesis", grade_level="10",
                    target_style=ContentStyle.VISUAL, difficulty_level=DifficultyLevel.INTERMEDIATE,
                    rating=4.0, view_count=200),
        ContentItem(id=3, title="Podcast: genetics", topic="genetics", grade_level="10",
                    target_style=ContentStyle.AUDITORY, difficulty_level=DifficultyLevel.BEGINNER,
                    rating=4.8, view_count=500),
        ContentItem(id=4, title="Ecology overview", topic="ecology", grade_level="10",
                    target_style=ContentStyle.ALL, difficulty_level=DifficultyLevel.BEGINNER,
                    rating=3.5, view_count=20),
        ContentItem(id=5, title="Lab: enzymes", topic="enzymes", grade_level="10",
                    target_style=ContentStyle.KINESTHETIC, difficulty_level=DifficultyLevel.ADVANCED,
                    rating=2.0, view_count=10),
        ContentItem(id=6, title="Grade 11 chart pack", topic="cells", grade_level="11",
                    target_style=ContentStyle.VISUAL, rating=5.0, view_count=900),
        ContentItem(id=7, title="Retired slides", topic="cells", grade_level="10",
                    target_style=ContentStyle.VISUAL, rating=5.0, view_count=900, is_active=False),
    ]
    for item in items:
        store.save_content(item)
    return items
