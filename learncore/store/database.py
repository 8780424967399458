"""
LearningStore: SQLite + WAL mode persistence for the learning core.

Upserts are explicit find-or-create-then-update operations run inside an
immediate transaction, so concurrent writers converge on one row per natural key.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterator, Iterable, Set, Tuple

from learncore.shared.config import settings
from learncore.shared.exceptions import UniqueConstraintError
from learncore.shared.logging import get_logger
from learncore.store.models import (
    AggregationPeriod,
    Assessment,
    ContentItem,
    Learner,
    LearningActivity,
    LearningStyleProfile,
    MetricSample,
    Questionnaire,
    QuestionnaireResponse,
    Recommendation,
    StylePoint,
)

logger = get_logger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamp so string comparison matches time order."""
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class LearningStore:
    """Persistence collaborator for learners, surveys, profiles, content, recommendations and metrics."""

    def __init__(self, db_path: Optional[Path] = None, timeout: Optional[float] = None):
        self.db_path = Path(db_path or settings.store.db_path)
        self.timeout = timeout or settings.store.busy_timeout_seconds
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            conn.executescript("""
                CREATE TABLE IF NOT EXISTS learners (
                    id TEXT PRIMARY KEY,
                    grade_level TEXT NOT NULL,
                    class_name TEXT,
                    major TEXT,
                    interests_json TEXT NOT NULL DEFAULT '[]',
                    preferred_language TEXT NOT NULL DEFAULT 'id'
                );

                CREATE TABLE IF NOT EXISTS questionnaires (
                    id TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS questionnaire_responses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL,
                    questionnaire_id TEXT NOT NULL,
                    answers_json TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    time_spent_seconds INTEGER,
                    session_id TEXT,
                    calculated_scores_json TEXT,
                    UNIQUE (learner_id, questionnaire_id)
                );

                CREATE TABLE IF NOT EXISTS learning_style_profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL UNIQUE,
                    visual_score REAL NOT NULL,
                    auditory_score REAL NOT NULL,
                    kinesthetic_score REAL NOT NULL,
                    dominant_style TEXT NOT NULL,
                    confidence_score REAL NOT NULL,
                    analysis_date TEXT NOT NULL,
                    response_id INTEGER,
                    survey_data_json TEXT NOT NULL DEFAULT '{}'
                );

                CREATE TABLE IF NOT EXISTS profile_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL,
                    visual_score REAL NOT NULL,
                    auditory_score REAL NOT NULL,
                    kinesthetic_score REAL NOT NULL,
                    dominant_style TEXT NOT NULL,
                    analysis_date TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS content_items (
                    id INTEGER PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    description TEXT NOT NULL DEFAULT '',
                    subject TEXT NOT NULL DEFAULT '',
                    topic TEXT NOT NULL DEFAULT '',
                    grade_level TEXT NOT NULL,
                    content_type TEXT NOT NULL,
                    target_style TEXT NOT NULL,
                    difficulty_level TEXT NOT NULL,
                    rating REAL NOT NULL DEFAULT 0,
                    view_count INTEGER NOT NULL DEFAULT 0,
                    is_active BOOLEAN NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS recommendations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL,
                    content_id INTEGER NOT NULL,
                    relevance_score REAL NOT NULL,
                    reason TEXT NOT NULL DEFAULT '',
                    algorithm_version TEXT NOT NULL,
                    recommendation_type TEXT NOT NULL,
                    is_viewed BOOLEAN NOT NULL DEFAULT 0,
                    viewed_at TEXT,
                    is_completed BOOLEAN NOT NULL DEFAULT 0,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (learner_id, content_id)
                );

                CREATE TABLE IF NOT EXISTS metric_samples (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL,
                    metric_type TEXT NOT NULL,
                    value REAL NOT NULL,
                    calculation_date TEXT NOT NULL,
                    aggregation_period TEXT NOT NULL,
                    context_json TEXT NOT NULL DEFAULT '{}',
                    UNIQUE (learner_id, metric_type, calculation_date, aggregation_period)
                );

                CREATE TABLE IF NOT EXISTS learning_activities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL,
                    content_id INTEGER,
                    activity_type TEXT NOT NULL,
                    duration_seconds INTEGER NOT NULL DEFAULT 0,
                    session_id TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS assessments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL,
                    subject TEXT NOT NULL DEFAULT '',
                    topic TEXT NOT NULL DEFAULT '',
                    percentage REAL NOT NULL,
                    difficulty_level TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_history_learner ON profile_history(learner_id, analysis_date);
                CREATE INDEX IF NOT EXISTS idx_content_grade ON content_items(grade_level, is_active);
                CREATE INDEX IF NOT EXISTS idx_recommendations_learner ON recommendations(learner_id);
                CREATE INDEX IF NOT EXISTS idx_metrics_learner ON metric_samples(learner_id, aggregation_period, calculation_date);
                CREATE INDEX IF NOT EXISTS idx_activities_learner ON learning_activities(learner_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_assessments_learner ON assessments(learner_id, created_at);
            """)

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        """Immediate (write-locked) transaction for find-or-create-then-update."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _find_or_create(
        self,
        conn: sqlite3.Connection,
        table: str,
        natural_key: Dict[str, Any],
        values: Dict[str, Any]
    ) -> Tuple[int, bool]:
        """
        Return (row id, created) for the row matching `natural_key`.

        Raises:
            UniqueConstraintError if the key matches more than one row
        """
        where = " AND ".join(f"{column} = ?" for column in natural_key)
        rows = conn.execute(
            f"SELECT id FROM {table} WHERE {where}",
            tuple(natural_key.values())
        ).fetchall()

        if len(rows) > 1:
            raise UniqueConstraintError(
                f"{table} holds {len(rows)} rows for natural key {natural_key}"
            )
        if rows:
            return rows[0]["id"], False

        columns = {**natural_key, **values}
        placeholders = ", ".join("?" for _ in columns)
        cursor = conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(columns.values())
        )
        return cursor.lastrowid, True

    # Learners

    def save_learner(self, learner: Learner) -> Learner:
        with self._get_connection() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO learners
                   (id, grade_level, class_name, major, interests_json, preferred_language)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    learner.id,
                    learner.grade_level,
                    learner.class_name,
                    learner.major,
                    json.dumps(learner.interests),
                    learner.preferred_language,
                )
            )
        return learner

    def get_learner(self, learner_id: str) -> Optional[Learner]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM learners WHERE id = ?", (learner_id,)).fetchone()
        return self._row_to_learner(row) if row else None

    def list_learners(
        self,
        grade_level: Optional[str] = None,
        class_name: Optional[str] = None
    ) -> List[Learner]:
        clauses, params = [], []
        if grade_level is not None:
            clauses.append("grade_level = ?")
            params.append(grade_level)
        if class_name is not None:
            clauses.append("class_name = ?")
            params.append(class_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_connection() as conn:
            rows = conn.execute(f"SELECT * FROM learners {where} ORDER BY id", params).fetchall()
        return [self._row_to_learner(row) for row in rows]

    @staticmethod
    def _row_to_learner(row: sqlite3.Row) -> Learner:
        return Learner(
            id=row["id"],
            grade_level=row["grade_level"],
            class_name=row["class_name"],
            major=row["major"],
            interests=json.loads(row["interests_json"]),
            preferred_language=row["preferred_language"],
        )

    # Questionnaires and responses

    def save_questionnaire(self, questionnaire: Questionnaire) -> Questionnaire:
        with self._get_connection() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO questionnaires (id, payload_json, is_active)
                   VALUES (?, ?, ?)""",
                (questionnaire.id, questionnaire.model_dump_json(), int(questionnaire.is_active))
            )
        return questionnaire

    def get_questionnaire(self, questionnaire_id: str) -> Optional[Questionnaire]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT payload_json, is_active FROM questionnaires WHERE id = ?",
                (questionnaire_id,)
            ).fetchone()
        if not row:
            return None
        questionnaire = Questionnaire.model_validate_json(row["payload_json"])
        questionnaire.is_active = bool(row["is_active"])
        return questionnaire

    def set_questionnaire_active(self, questionnaire_id: str, active: bool) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE questionnaires SET is_active = ? WHERE id = ?",
                (int(active), questionnaire_id)
            )
            return cursor.rowcount > 0

    def create_response(self, response: QuestionnaireResponse) -> QuestionnaireResponse:
        """
        Insert a new response.

        Raises:
            UniqueConstraintError if the learner already has a response to the questionnaire
        """
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """INSERT INTO questionnaire_responses
                       (learner_id, questionnaire_id, answers_json, status, started_at,
                        completed_at, time_spent_seconds, session_id, calculated_scores_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    self._response_values(response)
                )
                response_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise UniqueConstraintError(
                f"Response already exists for learner {response.learner_id} "
                f"and questionnaire {response.questionnaire_id}"
            ) from e
        return response.model_copy(update={"id": response_id})

    def update_response(self, response: QuestionnaireResponse) -> QuestionnaireResponse:
        with self._get_connection() as conn:
            conn.execute(
                """UPDATE questionnaire_responses
                   SET learner_id = ?, questionnaire_id = ?, answers_json = ?, status = ?,
                       started_at = ?, completed_at = ?, time_spent_seconds = ?,
                       session_id = ?, calculated_scores_json = ?
                   WHERE id = ?""",
                (*self._response_values(response), response.id)
            )
        return response

    def get_response(self, response_id: int) -> Optional[QuestionnaireResponse]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM questionnaire_responses WHERE id = ?",
                (response_id,)
            ).fetchone()
        return self._row_to_response(row) if row else None

    def find_response(self, learner_id: str, questionnaire_id: str) -> Optional[QuestionnaireResponse]:
        with self._get_connection() as conn:
            row = conn.execute(
                """SELECT * FROM questionnaire_responses
                   WHERE learner_id = ? AND questionnaire_id = ?""",
                (learner_id, questionnaire_id)
            ).fetchone()
        return self._row_to_response(row) if row else None

    @staticmethod
    def _response_values(response: QuestionnaireResponse) -> tuple:
        return (
            response.learner_id,
            response.questionnaire_id,
            json.dumps(response.answers),
            response.status.value,
            _ts(response.started_at),
            _ts(response.completed_at),
            response.time_spent_seconds,
            response.session_id,
            json.dumps(response.calculated_scores) if response.calculated_scores is not None else None,
        )

    @staticmethod
    def _row_to_response(row: sqlite3.Row) -> QuestionnaireResponse:
        scores = row["calculated_scores_json"]
        return QuestionnaireResponse(
            id=row["id"],
            learner_id=row["learner_id"],
            questionnaire_id=row["questionnaire_id"],
            answers=json.loads(row["answers_json"]),
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            time_spent_seconds=row["time_spent_seconds"],
            session_id=row["session_id"],
            calculated_scores=json.loads(scores) if scores else None,
        )

    # Learning style profiles

    def upsert_profile(self, profile: LearningStyleProfile) -> LearningStyleProfile:
        """Find-or-create the learner's current profile, update it and append history."""
        values = {
            "visual_score": profile.visual_score,
            "auditory_score": profile.auditory_score,
            "kinesthetic_score": profile.kinesthetic_score,
            "dominant_style": profile.dominant_style.value,
            "confidence_score": profile.confidence_score,
            "analysis_date": _ts(profile.analysis_date),
            "response_id": profile.response_id,
            "survey_data_json": json.dumps(profile.survey_data, default=str),
        }

        with self._transaction() as conn:
            profile_id, created = self._find_or_create(
                conn, "learning_style_profiles", {"learner_id": profile.learner_id}, values
            )
            if not created:
                assignments = ", ".join(f"{column} = ?" for column in values)
                conn.execute(
                    f"UPDATE learning_style_profiles SET {assignments} WHERE id = ?",
                    (*values.values(), profile_id)
                )
            conn.execute(
                """INSERT INTO profile_history
                   (learner_id, visual_score, auditory_score, kinesthetic_score,
                    dominant_style, analysis_date)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    profile.learner_id,
                    profile.visual_score,
                    profile.auditory_score,
                    profile.kinesthetic_score,
                    profile.dominant_style.value,
                    _ts(profile.analysis_date),
                )
            )

        return profile.model_copy(update={"id": profile_id})

    def get_profile(self, learner_id: str) -> Optional[LearningStyleProfile]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM learning_style_profiles WHERE learner_id = ?",
                (learner_id,)
            ).fetchone()
        return self._row_to_profile(row) if row else None

    def iter_profile_history(self, learner_id: str) -> Iterator[StylePoint]:
        """Historical classifications, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM profile_history
                   WHERE learner_id = ?
                   ORDER BY analysis_date ASC, id ASC""",
                (learner_id,)
            ).fetchall()

        for row in rows:
            yield StylePoint(
                analysis_date=_parse_ts(row["analysis_date"]).date(),
                visual=row["visual_score"],
                auditory=row["auditory_score"],
                kinesthetic=row["kinesthetic_score"],
                dominant_style=row["dominant_style"],
            )

    def list_cohort_profiles(
        self,
        grade_level: str,
        class_name: Optional[str]
    ) -> List[LearningStyleProfile]:
        """Current profiles of learners in the same grade and class."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT p.* FROM learning_style_profiles p
                   JOIN learners l ON l.id = p.learner_id
                   WHERE l.grade_level = ? AND l.class_name IS ?
                   ORDER BY p.learner_id""",
                (grade_level, class_name)
            ).fetchall()
        return [self._row_to_profile(row) for row in rows]

    @staticmethod
    def _row_to_profile(row: sqlite3.Row) -> LearningStyleProfile:
        return LearningStyleProfile(
            id=row["id"],
            learner_id=row["learner_id"],
            visual_score=row["visual_score"],
            auditory_score=row["auditory_score"],
            kinesthetic_score=row["kinesthetic_score"],
            dominant_style=row["dominant_style"],
            confidence_score=row["confidence_score"],
            analysis_date=_parse_ts(row["analysis_date"]),
            response_id=row["response_id"],
            survey_data=json.loads(row["survey_data_json"]),
        )

    # Content catalog

    def save_content(self, item: ContentItem) -> ContentItem:
        with self._get_connection() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO content_items
                   (id, title, description, subject, topic, grade_level, content_type,
                    target_style, difficulty_level, rating, view_count, is_active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    item.id,
                    item.title,
                    item.description,
                    item.subject,
                    item.topic,
                    item.grade_level,
                    item.content_type,
                    item.target_style.value,
                    item.difficulty_level.value,
                    item.rating,
                    item.view_count,
                    int(item.is_active),
                )
            )
        return item

    def get_content(self, content_id: int) -> Optional[ContentItem]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM content_items WHERE id = ?", (content_id,)).fetchone()
        return self._row_to_content(row) if row else None

    def find_content(
        self,
        grade_level: str,
        target_styles: Optional[Iterable[str]] = None,
        difficulty_level: Optional[str] = None,
        exclude_ids: Optional[Iterable[int]] = None,
        limit: Optional[int] = None,
        order_by: str = "rating"
    ) -> List[ContentItem]:
        """
        Active content for a grade, optionally filtered by target style and difficulty.

        order_by: "rating" (rating, then views) or "popularity" (views, then rating)
        """
        clauses = ["is_active = 1", "grade_level = ?"]
        params: List[Any] = [grade_level]

        styles = list(target_styles) if target_styles is not None else None
        if styles is not None:
            clauses.append(f"target_style IN ({', '.join('?' for _ in styles)})")
            params.extend(styles)
        if difficulty_level is not None:
            clauses.append("difficulty_level = ?")
            params.append(difficulty_level)
        excluded = list(exclude_ids or [])
        if excluded:
            clauses.append(f"id NOT IN ({', '.join('?' for _ in excluded)})")
            params.extend(excluded)

        if order_by == "popularity":
            order = "view_count DESC, rating DESC, id ASC"
        else:
            order = "rating DESC, view_count DESC, id ASC"

        query = f"SELECT * FROM content_items WHERE {' AND '.join(clauses)} ORDER BY {order}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_content(row) for row in rows]

    @staticmethod
    def _row_to_content(row: sqlite3.Row) -> ContentItem:
        return ContentItem(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            subject=row["subject"],
            topic=row["topic"],
            grade_level=row["grade_level"],
            content_type=row["content_type"],
            target_style=row["target_style"],
            difficulty_level=row["difficulty_level"],
            rating=row["rating"],
            view_count=row["view_count"],
            is_active=bool(row["is_active"]),
        )

    # Recommendations

    def upsert_recommendation(
        self,
        learner_id: str,
        content_id: int,
        relevance_score: float,
        reason: str,
        algorithm_version: str,
        recommendation_type: str,
        now: datetime
    ) -> Recommendation:
        """Find-or-create the (learner, content) row; viewed/completed flags are never reset."""
        values = {
            "relevance_score": relevance_score,
            "reason": reason,
            "algorithm_version": algorithm_version,
            "recommendation_type": recommendation_type,
            "updated_at": _ts(now),
        }

        with self._transaction() as conn:
            rec_id, created = self._find_or_create(
                conn,
                "recommendations",
                {"learner_id": learner_id, "content_id": content_id},
                {**values, "created_at": _ts(now)}
            )
            if not created:
                assignments = ", ".join(f"{column} = ?" for column in values)
                conn.execute(
                    f"UPDATE recommendations SET {assignments} WHERE id = ?",
                    (*values.values(), rec_id)
                )
            row = conn.execute("SELECT * FROM recommendations WHERE id = ?", (rec_id,)).fetchone()

        return self._row_to_recommendation(row)

    def delete_stale_recommendations(self, learner_id: str, refreshed_before: datetime) -> int:
        """Drop rows not refreshed since `refreshed_before`; completed rows are kept."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """DELETE FROM recommendations
                   WHERE learner_id = ? AND updated_at < ? AND is_completed = 0""",
                (learner_id, _ts(refreshed_before))
            )
            return cursor.rowcount

    def get_recommendation(self, learner_id: str, content_id: int) -> Optional[Recommendation]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM recommendations WHERE learner_id = ? AND content_id = ?",
                (learner_id, content_id)
            ).fetchone()
        return self._row_to_recommendation(row) if row else None

    def list_recommendations(self, learner_id: str, limit: Optional[int] = None) -> List[Recommendation]:
        query = """SELECT * FROM recommendations WHERE learner_id = ?
                   ORDER BY relevance_score DESC, created_at DESC, id ASC"""
        params: List[Any] = [learner_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_recommendation(row) for row in rows]

    def mark_recommendation_viewed(self, learner_id: str, content_id: int, at: datetime) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """UPDATE recommendations
                   SET is_viewed = 1, viewed_at = COALESCE(viewed_at, ?)
                   WHERE learner_id = ? AND content_id = ?""",
                (_ts(at), learner_id, content_id)
            )
            return cursor.rowcount > 0

    def mark_recommendation_completed(self, learner_id: str, content_id: int, at: datetime) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """UPDATE recommendations
                   SET is_completed = 1, completed_at = COALESCE(completed_at, ?)
                   WHERE learner_id = ? AND content_id = ?""",
                (_ts(at), learner_id, content_id)
            )
            return cursor.rowcount > 0

    def count_recommendations(
        self,
        learner_id: str,
        viewed: Optional[bool] = None,
        completed: Optional[bool] = None,
        created_since: Optional[datetime] = None
    ) -> int:
        clauses = ["learner_id = ?"]
        params: List[Any] = [learner_id]
        if viewed is not None:
            clauses.append("is_viewed = ?")
            params.append(int(viewed))
        if completed is not None:
            clauses.append("is_completed = ?")
            params.append(int(completed))
        if created_since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(created_since))

        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM recommendations WHERE {' AND '.join(clauses)}",
                params
            ).fetchone()
        return row[0]

    @staticmethod
    def _row_to_recommendation(row: sqlite3.Row) -> Recommendation:
        return Recommendation(
            id=row["id"],
            learner_id=row["learner_id"],
            content_id=row["content_id"],
            relevance_score=row["relevance_score"],
            reason=row["reason"],
            algorithm_version=row["algorithm_version"],
            recommendation_type=row["recommendation_type"],
            is_viewed=bool(row["is_viewed"]),
            viewed_at=_parse_ts(row["viewed_at"]),
            is_completed=bool(row["is_completed"]),
            completed_at=_parse_ts(row["completed_at"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    # Activity and assessment logs

    def record_activity(self, activity: LearningActivity) -> LearningActivity:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """INSERT INTO learning_activities
                   (learner_id, content_id, activity_type, duration_seconds, session_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    activity.learner_id,
                    activity.content_id,
                    activity.activity_type,
                    activity.duration_seconds,
                    activity.session_id,
                    _ts(activity.created_at),
                )
            )
            activity_id = cursor.lastrowid
        return activity.model_copy(update={"id": activity_id})

    def list_activities(self, learner_id: str, start: datetime, end: datetime) -> List[LearningActivity]:
        """Activities with start <= created_at < end."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM learning_activities
                   WHERE learner_id = ? AND created_at >= ? AND created_at < ?
                   ORDER BY created_at ASC, id ASC""",
                (learner_id, _ts(start), _ts(end))
            ).fetchall()
        return [
            LearningActivity(
                id=row["id"],
                learner_id=row["learner_id"],
                content_id=row["content_id"],
                activity_type=row["activity_type"],
                duration_seconds=row["duration_seconds"],
                session_id=row["session_id"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    def count_activities(self, learner_id: str, since: datetime) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM learning_activities WHERE learner_id = ? AND created_at >= ?",
                (learner_id, _ts(since))
            ).fetchone()
        return row[0]

    def completed_content_ids(self, learner_id: str) -> Set[int]:
        """Content completed per the activity log or a completed recommendation."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT content_id FROM learning_activities
                   WHERE learner_id = ? AND activity_type = 'complete' AND content_id IS NOT NULL
                   UNION
                   SELECT content_id FROM recommendations
                   WHERE learner_id = ? AND is_completed = 1""",
                (learner_id, learner_id)
            ).fetchall()
        return {row[0] for row in rows}

    def recent_topics(self, learner_id: str, since: datetime, limit: int) -> List[str]:
        """Distinct topics of content touched since `since`, most recent first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT c.topic, MAX(a.created_at) AS last_seen
                   FROM learning_activities a
                   JOIN content_items c ON c.id = a.content_id
                   WHERE a.learner_id = ? AND a.created_at >= ? AND c.topic != ''
                   GROUP BY c.topic
                   ORDER BY last_seen DESC
                   LIMIT ?""",
                (learner_id, _ts(since), limit)
            ).fetchall()
        return [row["topic"] for row in rows]

    def record_assessment(self, assessment: Assessment) -> Assessment:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """INSERT INTO assessments
                   (learner_id, subject, topic, percentage, difficulty_level, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    assessment.learner_id,
                    assessment.subject,
                    assessment.topic,
                    assessment.percentage,
                    assessment.difficulty_level.value if assessment.difficulty_level else None,
                    _ts(assessment.created_at),
                )
            )
            assessment_id = cursor.lastrowid
        return assessment.model_copy(update={"id": assessment_id})

    def list_assessments(
        self,
        learner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Assessment]:
        """Assessments with start <= created_at < end, oldest first."""
        clauses = ["learner_id = ?"]
        params: List[Any] = [learner_id]
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(start))
        if end is not None:
            clauses.append("created_at < ?")
            params.append(_ts(end))

        with self._get_connection() as conn:
            rows = conn.execute(
                f"""SELECT * FROM assessments WHERE {' AND '.join(clauses)}
                    ORDER BY created_at ASC, id ASC""",
                params
            ).fetchall()
        return [self._row_to_assessment(row) for row in rows]

    def recent_assessments(self, learner_id: str, until: datetime, limit: int) -> List[Assessment]:
        """The `limit` most recent assessments before `until`, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM assessments
                   WHERE learner_id = ? AND created_at < ?
                   ORDER BY created_at DESC, id DESC
                   LIMIT ?""",
                (learner_id, _ts(until), limit)
            ).fetchall()
        return [self._row_to_assessment(row) for row in reversed(rows)]

    def average_assessment_percentage(self, learner_id: str, since: datetime) -> Optional[float]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT AVG(percentage) FROM assessments WHERE learner_id = ? AND created_at >= ?",
                (learner_id, _ts(since))
            ).fetchone()
        return row[0]

    def topics_by_performance(
        self,
        learner_id: str,
        since: datetime,
        limit: int,
        below: Optional[float] = None,
        at_least: Optional[float] = None
    ) -> List[str]:
        """Distinct assessed topics filtered by percentage, most recent first."""
        clauses = ["learner_id = ?", "created_at >= ?", "topic != ''"]
        params: List[Any] = [learner_id, _ts(since)]
        if below is not None:
            clauses.append("percentage < ?")
            params.append(below)
        if at_least is not None:
            clauses.append("percentage >= ?")
            params.append(at_least)
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(
                f"""SELECT topic, MAX(created_at) AS last_seen FROM assessments
                    WHERE {' AND '.join(clauses)}
                    GROUP BY topic
                    ORDER BY last_seen DESC
                    LIMIT ?""",
                params
            ).fetchall()
        return [row["topic"] for row in rows]

    @staticmethod
    def _row_to_assessment(row: sqlite3.Row) -> Assessment:
        return Assessment(
            id=row["id"],
            learner_id=row["learner_id"],
            subject=row["subject"],
            topic=row["topic"],
            percentage=row["percentage"],
            difficulty_level=row["difficulty_level"],
            created_at=_parse_ts(row["created_at"]),
        )

    # Metric samples

    def upsert_metric(self, sample: MetricSample) -> MetricSample:
        """Find-or-create by (learner, metric type, date, period) and overwrite the value."""
        natural_key = {
            "learner_id": sample.learner_id,
            "metric_type": sample.metric_type,
            "calculation_date": sample.calculation_date.isoformat(),
            "aggregation_period": sample.aggregation_period.value,
        }
        values = {
            "value": sample.value,
            "context_json": json.dumps(sample.context, default=str),
        }

        with self._transaction() as conn:
            sample_id, created = self._find_or_create(conn, "metric_samples", natural_key, values)
            if not created:
                conn.execute(
                    "UPDATE metric_samples SET value = ?, context_json = ? WHERE id = ?",
                    (*values.values(), sample_id)
                )

        return sample.model_copy(update={"id": sample_id})

    def list_metrics(
        self,
        learner_id: str,
        period: AggregationPeriod,
        start: date,
        end: date,
        metric_type: Optional[str] = None
    ) -> List[MetricSample]:
        """Samples with start <= calculation_date <= end."""
        clauses = [
            "learner_id = ?",
            "aggregation_period = ?",
            "calculation_date >= ?",
            "calculation_date <= ?",
        ]
        params: List[Any] = [learner_id, period.value, start.isoformat(), end.isoformat()]
        if metric_type is not None:
            clauses.append("metric_type = ?")
            params.append(metric_type)

        with self._get_connection() as conn:
            rows = conn.execute(
                f"""SELECT * FROM metric_samples WHERE {' AND '.join(clauses)}
                    ORDER BY calculation_date ASC, metric_type ASC""",
                params
            ).fetchall()
        return [
            MetricSample(
                id=row["id"],
                learner_id=row["learner_id"],
                metric_type=row["metric_type"],
                value=row["value"],
                calculation_date=date.fromisoformat(row["calculation_date"]),
                aggregation_period=row["aggregation_period"],
                context=json.loads(row["context_json"]),
            )
            for row in rows
        ]
