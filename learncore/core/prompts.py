"""
Prompt templates for the text-generation collaborator and parsers for its replies.

Templates can be overridden by files in config/prompts/.
"""

import json
from pathlib import Path
from typing import Dict, Any, List, Mapping, Optional, Sequence, Tuple

from learncore.core.styles import CATEGORIES
from learncore.shared.logging import get_logger
from learncore.shared.result import Ok, Err, FallbackReason, Result
from learncore.store.models import ContentItem

logger = get_logger(__name__)

PROMPT_DIR = Path("config/prompts")

STYLE_SCORE_KEYS = ("visual_score", "auditory_score", "kinesthetic_score")
RECOMMENDATION_KEY = "recommended_content"

LEARNING_STYLE_TEMPLATE = """Analyze this high school student's learning style based on their survey responses.

Student context:
{learner_context}

Survey responses (item id: answer on a 1-5 scale, with the category each item measures):
{survey_responses}

Respond with a single JSON object:
{
    "visual_score": 0-100,
    "auditory_score": 0-100,
    "kinesthetic_score": 0-100,
    "dominant_style": "visual|auditory|kinesthetic|mixed",
    "reasoning": "Brief explanation of the analysis"
}
"""

RECOMMENDATION_TEMPLATE = """Rank learning content for a high school student.

Student learning profile:
{learner_profile}

Candidate content:
{candidates}

Score only the candidates listed above. Respond with a single JSON object:
{
    "recommended_content": [
        {
            "content_id": 123,
            "relevance_score": 0-100,
            "reason": "Why this content matches the student's learning style"
        }
    ]
}
"""


def _load_template(name: str, default: str) -> str:
    path = PROMPT_DIR / name
    if path.exists():
        return path.read_text(encoding="utf-8")
    return default


def build_learning_style_prompt(
    answers: Mapping[str, Any],
    item_categories: Mapping[str, str],
    learner_context: Dict[str, Any]
) -> str:
    """Prompt asking for visual/auditory/kinesthetic scores."""
    lines = [
        f"- {item_id}: {value} ({item_categories.get(item_id, 'unknown')})"
        for item_id, value in sorted(answers.items())
    ]
    template = _load_template("learning_style.md", LEARNING_STYLE_TEMPLATE)
    return template.replace(
        "{learner_context}", json.dumps(learner_context, indent=2, ensure_ascii=False)
    ).replace(
        "{survey_responses}", "\n".join(lines)
    )


def build_recommendation_prompt(
    learner_profile: Dict[str, Any],
    candidates: Sequence[ContentItem]
) -> str:
    """Prompt asking for a relevance score per candidate."""
    serialized = [
        {
            "content_id": item.id,
            "title": item.title,
            "description": item.description[:200],
            "subject": item.subject,
            "topic": item.topic,
            "content_type": item.content_type,
            "target_style": item.target_style.value,
            "difficulty_level": item.difficulty_level.value,
            "rating": item.rating,
        }
        for item in candidates
    ]
    template = _load_template("recommendation.md", RECOMMENDATION_TEMPLATE)
    return template.replace(
        "{learner_profile}", json.dumps(learner_profile, indent=2, ensure_ascii=False, default=str)
    ).replace(
        "{candidates}", json.dumps(serialized, indent=2, ensure_ascii=False)
    )


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def parse_style_estimate(payload: Dict[str, Any]) -> Result:
    """Read the three category scores (clamped to 0-100) from a reply payload."""
    scores: Dict[str, float] = {}
    for style, key in zip(CATEGORIES, STYLE_SCORE_KEYS):
        number = _as_number(payload.get(key))
        if number is None:
            return Err(FallbackReason.INVALID_PAYLOAD, f"{key} is not a number")
        scores[style.value] = max(0.0, min(100.0, number))
    return Ok(scores)


def parse_ranked_content(
    payload: Dict[str, Any],
    known_ids: Sequence[int]
) -> Result:
    """
    Read (content_id, relevance 0-1, reason) triples for recognized candidates.

    Relevance given on a 0-100 scale is rescaled; ids not among the
    candidates and entries without a usable score are dropped.
    """
    entries = payload.get(RECOMMENDATION_KEY)
    if not isinstance(entries, list):
        return Err(FallbackReason.INVALID_PAYLOAD, f"{RECOMMENDATION_KEY} is not a list")

    known = set(known_ids)
    ranked: List[Tuple[int, float, str]] = []
    seen = set()
    for entry in entries:
        if not isinstance(entry, dict):
            continue

        content_id = _as_number(entry.get("content_id"))
        if content_id is None or not content_id.is_integer():
            continue
        content_id = int(content_id)
        if content_id not in known or content_id in seen:
            continue

        score = _as_number(entry.get("relevance_score"))
        if score is None or score < 0 or score > 100:
            continue
        if score > 1:
            score = score / 100

        seen.add(content_id)
        ranked.append((content_id, score, str(entry.get("reason") or "")))

    if len(ranked) < len(entries):
        logger.debug(f"Dropped {len(entries) - len(ranked)} unrecognized ranking entries")

    return Ok(ranked)
