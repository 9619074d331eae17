"""Feedback recorder: the one permitted mutation of a stored order intent."""

from __future__ import annotations

from typing import Optional

from ...core.errors import AlreadyRecorded, NotFound
from ...core.logging_config import get_logger
from ...db.intent_repository import OrderIntentRepository
from ...schemas.order import AgentFeedback, OrderIntentDto

logger = get_logger(__name__)

VALID_FEEDBACK = ("correct", "incorrect")


class FeedbackRecorder:
    def __init__(self, repository: OrderIntentRepository) -> None:
        self.repository = repository

    async def record_feedback(
        self,
        intent_id: str,
        feedback: AgentFeedback,
        tenant_id: Optional[str] = None,
    ) -> OrderIntentDto:
        """Set agentFeedback once; a second call raises AlreadyRecorded."""
        if feedback not in VALID_FEEDBACK:
            raise ValueError(f"feedback must be one of {VALID_FEEDBACK}, got {feedback!r}")
        try:
            updated = await self.repository.set_feedback(intent_id, feedback, tenant_id=tenant_id)
        except NotFound:
            logger.warning("intent_feedback_not_found", intent_id=intent_id)
            raise
        except AlreadyRecorded:
            logger.info("intent_feedback_already_recorded", intent_id=intent_id)
            raise
        logger.info(
            "intent_feedback_recorded",
            intent_id=intent_id,
            feedback=feedback,
            tenant_id=updated.tenant_id,
            conversation_id=updated.conversation_id,
        )
        return updated
