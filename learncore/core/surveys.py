"""
Questionnaire response lifecycle: start, answer, complete, abandon.
"""

import logging
from typing import Dict, Any, Optional

from learncore.core.scoring import ScoringEngine
from learncore.shared.clock import Clock, RequestIdentity, SystemClock, ANONYMOUS
from learncore.shared.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from learncore.shared.logging import get_logger, log_with_context
from learncore.store.database import LearningStore
from learncore.store.models import QuestionnaireResponse, ResponseStatus

logger = get_logger(__name__)


ALLOWED_TRANSITIONS = {
    ResponseStatus.STARTED: {ResponseStatus.IN_PROGRESS, ResponseStatus.ABANDONED},
    ResponseStatus.IN_PROGRESS: {
        ResponseStatus.IN_PROGRESS,
        ResponseStatus.COMPLETED,
        ResponseStatus.ABANDONED,
    },
    ResponseStatus.COMPLETED: set(),
    ResponseStatus.ABANDONED: set(),
}


def ensure_transition(current: ResponseStatus, target: ResponseStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move questionnaire response from {current.value} to {target.value}"
        )


class SurveyService:
    """Drive a questionnaire response through its status state machine."""

    def __init__(
        self,
        store: LearningStore,
        scoring: Optional[ScoringEngine] = None,
        clock: Optional[Clock] = None,
        identity: RequestIdentity = ANONYMOUS
    ):
        self.store = store
        self.scoring = scoring or ScoringEngine()
        self.clock = clock or SystemClock()
        self.identity = identity

    def start(
        self,
        learner_id: str,
        questionnaire_id: str,
        session_id: Optional[str] = None
    ) -> QuestionnaireResponse:
        """
        Open a response for (learner, questionnaire).

        An already-open response for the pair is returned unchanged.

        Raises:
            NotFoundError: unknown learner or questionnaire
            ValidationError: inactive questionnaire, or the pair's response is closed
        """
        if self.store.get_learner(learner_id) is None:
            raise NotFoundError("Learner", learner_id)
        questionnaire = self.store.get_questionnaire(questionnaire_id)
        if questionnaire is None:
            raise NotFoundError("Questionnaire", questionnaire_id)
        if not questionnaire.is_active:
            raise ValidationError(f"Questionnaire {questionnaire_id!r} is not active")

        existing = self.store.find_response(learner_id, questionnaire_id)
        if existing is not None:
            if existing.status in (ResponseStatus.COMPLETED, ResponseStatus.ABANDONED):
                raise ValidationError(
                    f"Learner {learner_id!r} already has a {existing.status.value} response "
                    f"to questionnaire {questionnaire_id!r}"
                )
            return existing

        response = self.store.create_response(QuestionnaireResponse(
            learner_id=learner_id,
            questionnaire_id=questionnaire_id,
            status=ResponseStatus.STARTED,
            started_at=self.clock.now(),
            session_id=session_id or self.identity.session_id,
        ))
        self._log(response, "survey_started")
        return response

    def record_answers(self, response_id: int, answers: Dict[str, Any]) -> QuestionnaireResponse:
        """
        Merge answers into an open response.

        Raises:
            ValidationError: unknown item ids or values outside the Likert scale
            InvalidTransitionError: the response is completed or abandoned
        """
        response = self._load(response_id)
        ensure_transition(response.status, ResponseStatus.IN_PROGRESS)

        questionnaire = self.store.get_questionnaire(response.questionnaire_id)
        if questionnaire is None:
            raise NotFoundError("Questionnaire", response.questionnaire_id)

        known = set(questionnaire.item_ids())
        unknown = sorted(item_id for item_id in answers if item_id not in known)
        if unknown:
            raise ValidationError(f"Unknown questionnaire items: {', '.join(unknown)}")
        self.scoring.validate_answers(answers)

        merged = {**response.answers, **answers}
        updated = response.model_copy(update={
            "answers": merged,
            "status": ResponseStatus.IN_PROGRESS,
        })
        self.store.update_response(updated)
        return updated

    def complete(self, response_id: int) -> QuestionnaireResponse:
        """Close an in-progress response and snapshot its deterministic scores."""
        response = self._load(response_id)
        ensure_transition(response.status, ResponseStatus.COMPLETED)

        questionnaire = self.store.get_questionnaire(response.questionnaire_id)
        if questionnaire is None:
            raise NotFoundError("Questionnaire", response.questionnaire_id)

        now = self.clock.now()
        time_spent = None
        if response.started_at is not None:
            time_spent = max(0, int((now - response.started_at).total_seconds()))

        updated = response.model_copy(update={
            "status": ResponseStatus.COMPLETED,
            "completed_at": now,
            "time_spent_seconds": time_spent,
            "calculated_scores": self.scoring.calculate_scores(response, questionnaire),
        })
        self.store.update_response(updated)
        self._log(updated, "survey_completed")
        return updated

    def abandon(self, response_id: int) -> QuestionnaireResponse:
        response = self._load(response_id)
        ensure_transition(response.status, ResponseStatus.ABANDONED)

        updated = response.model_copy(update={"status": ResponseStatus.ABANDONED})
        self.store.update_response(updated)
        self._log(updated, "survey_abandoned")
        return updated

    def _load(self, response_id: int) -> QuestionnaireResponse:
        response = self.store.get_response(response_id)
        if response is None:
            raise NotFoundError("QuestionnaireResponse", response_id)
        return response

    def _log(self, response: QuestionnaireResponse, action: str) -> None:
        log_with_context(
            logger,
            logging.INFO,
            f"Questionnaire response {response.id} is {response.status.value}",
            learner_id=response.learner_id,
            action=action,
            session_id=response.session_id or self.identity.session_id,
            actor_id=self.identity.actor_id,
            questionnaire_id=response.questionnaire_id,
        )
