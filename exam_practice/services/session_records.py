"""
services/session_records.py

Practice-test system of record: session creation, score update,
per-question submissions.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from exam_practice.models.question_model import Exam, Question, Subject
from exam_practice.services.backend_client import BackendClient, BackendError, iri

logger = logging.getLogger(__name__)


class SessionRecords:
    def __init__(self, client: BackendClient):
        self.client = client

    async def create_session(
        self, exam: Exam, subject: Subject, user_id: int, questions: List[Question],
    ) -> int:
        """Register a new attempt and return its id."""
        created = await self.client.post_json(
            "/api/practice_tests",
            {
                "exam": iri("exams", exam.id),
                "user": iri("users", user_id),
                "questions": [iri("questions", q.id) for q in questions],
                "subject": iri("subjects", subject.id),
            },
        )
        session_id = _created_id(created)
        if session_id is None:
            raise BackendError("Failed to start test: no session id returned")
        logger.info(f"practice test {session_id} created ({len(questions)} questions)")
        return session_id

    async def save_score(self, session_id: int, score: float, completed_at: Optional[datetime] = None) -> None:
        completed_at = completed_at or datetime.now(timezone.utc)
        await self.client.patch_json(
            iri("practice_tests", session_id),
            {"score": score, "completedAt": completed_at.isoformat()},
        )

    async def post_submission(self, session_id: int, question_id: int, user_answer: str, correct: bool) -> None:
        await self.client.post_json(
            "/api/test_submissions",
            {
                "practiceTest": iri("practice_tests", session_id),
                "question": iri("questions", question_id),
                "userAnswer": user_answer,
                "isCorrect": correct,
            },
        )


def _created_id(data) -> Optional[int]:
    if not isinstance(data, dict):
        return None
    if data.get("id") is not None:
        try:
            return int(data["id"])
        except (TypeError, ValueError):
            pass
    tail = str(data.get("@id") or "").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else None
