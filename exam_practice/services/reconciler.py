"""
services/reconciler.py

Writes a finished attempt to the system of record.

Step 1: PATCH score + completion time (failure -> warning only).
Step 2: one submission record per question, issued concurrently;
        each failure is counted on its own and never cancels the others.
The locally computed result is never changed by either step.
"""

import asyncio
import logging
from typing import Dict, Optional

from pydantic import BaseModel

from exam_practice.models.question_model import Question
from exam_practice.models.session_state import PracticeTestSession
from exam_practice.services.backend_client import BackendError
from exam_practice.services.exam_service import is_correct
from exam_practice.services.session_records import SessionRecords

logger = logging.getLogger(__name__)


class ReconcileReport(BaseModel):
    score_saved: bool = False
    score_error: Optional[str] = None
    submissions_saved: int = 0
    submissions_total: int = 0


class ResultReconciler:
    def __init__(self, records: SessionRecords):
        self.records = records

    async def persist(self, session: PracticeTestSession, answers: Dict[int, str], score: float) -> ReconcileReport:
        report = ReconcileReport(submissions_total=len(session.questions))

        try:
            await self.records.save_score(session.id, score)
            report.score_saved = True
            logger.info(f"Practice test {session.id} score saved: {score}")
        except BackendError as e:
            report.score_error = e.message
            logger.error(f"Practice test {session.id} score not saved: {e.message}")

        results = await asyncio.gather(
            *(
                self._submit(session.id, question, answers.get(idx, ""))
                for idx, question in enumerate(session.questions)
            ),
            return_exceptions=True,
        )
        for idx, outcome in enumerate(results):
            if isinstance(outcome, Exception):
                logger.warning(f"Failed to save submission for question {idx}: {outcome}")
            else:
                report.submissions_saved += 1

        logger.info(f"Saved {report.submissions_saved}/{report.submissions_total} question submissions")
        if report.submissions_saved < report.submissions_total:
            logger.warning(
                f"Some submissions failed. Success: {report.submissions_saved}/{report.submissions_total}"
            )
        return report

    async def _submit(self, session_id: int, question: Question, user_answer: str) -> None:
        await self.records.post_submission(
            session_id, question.id, user_answer, is_correct(user_answer, question.correct_option),
        )
