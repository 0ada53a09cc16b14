"""
services/assist_cache.py

Per-question AI assistance with at-most-once charging.

Three independent tracks per question index:
  - explanation : Hidden -> (charge) -> Loading -> Shown, Shown <-> Hidden for free
  - check answer: Unchecked -> (charge) -> Checking -> Checked (terminal)
  - example     : Absent -> (charge) -> Generating -> Present, regeneration charges again

Once a track is authorized the user always gets something renderable:
unparseable replies are turned into a fallback payload, and fetch failures
are not refunded.
"""

import asyncio
import json
import logging
from typing import Callable, Dict, Optional

from config import (
    CHECK_ANSWER_DELAY, CHECK_ANSWER_PRICE, EXPLANATION_PRICE, GENERATE_EXAMPLE_PRICE,
)
from exam_practice.models.question_model import Question
from exam_practice.models.session_state import AssistState, ExampleRecord, ExplanationRecord
from exam_practice.services.ai_client import AIServiceError, TextGenerationClient, clean_json_response
from exam_practice.services.exam_service import is_correct
from exam_practice.services.ledger import TOP_UP_URL, Ledger

logger = logging.getLogger(__name__)

Notify = Callable[..., None]

FALLBACK_EXAMPLE = ExampleRecord(
    question=(
        "Another example: How would you apply the same concept from the previous "
        "question in a different scenario?"
    ),
    answer="The correct approach would be similar, focusing on the core principles of the topic.",
    explanation=(
        "This topic requires understanding of fundamental principles. "
        "Practice with different scenarios to master the concept."
    ),
    key_points=[
        "Understand the core concept",
        "Apply to different scenarios",
        "Practice regularly",
    ],
)


# ── Reply parsing ────────────────────────────────────────────────────────────

def _load_json_object(content: str) -> Optional[dict]:
    cleaned = clean_json_response(content)
    if not cleaned:
        return None
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_explanation(content: str) -> ExplanationRecord:
    """Structured reply -> record; anything else becomes the explanation text."""
    data = _load_json_object(content)
    if data is None:
        logger.warning(f"AI response was not valid JSON, using raw content: {content[:200]!r}")
        return ExplanationRecord(explanation=content)

    steps = data.get("stepByStep") or []
    return ExplanationRecord(
        explanation=str(data.get("explanation") or content),
        correct_answer=str(data.get("correctAnswer") or ""),
        reasoning=str(data.get("reasoning") or ""),
        step_by_step=[str(s) for s in steps if s] if isinstance(steps, list) else [],
    )


def parse_example(content: str, topic_name: Optional[str]) -> ExampleRecord:
    """Structured reply -> record with per-key defaults; free text -> synthesized record."""
    data = _load_json_object(content)
    if data is None:
        return ExampleRecord(
            question=f"Practice applying {topic_name or 'this concept'}: {content[:150]}...",
            answer="Study the explanation below to understand the correct approach.",
            explanation=content,
            key_points=[
                "Break down complex problems into steps",
                "Look for patterns in similar questions",
                "Always verify your understanding",
            ],
        )

    key_points = data.get("keyPoints")
    key_points = [str(p) for p in key_points if p] if isinstance(key_points, list) else []
    return ExampleRecord(
        question=str(data.get("question") or (
            f"Another example on {topic_name or 'this topic'}: "
            "Apply the same concept to a different situation."
        )),
        answer=str(data.get("answer") or "The correct approach involves applying the core principles."),
        explanation=str(data.get("explanation") or (
            "This demonstrates how the same concept applies in different contexts."
        )),
        key_points=key_points or [
            "Master the core concept first",
            "Practice with variations",
            "Understand the 'why' behind answers",
        ],
    )


def explanation_apology(error: Exception) -> ExplanationRecord:
    return ExplanationRecord(
        explanation=(
            f"Sorry, we could not fetch an explanation for this question ({error}). "
            "Please try again later."
        )
    )


# ── Cache ────────────────────────────────────────────────────────────────────

class AssistCache:
    def __init__(
        self,
        ledger: Ledger,
        ai: TextGenerationClient,
        notify: Notify,
        *,
        explanation_price: int = EXPLANATION_PRICE,
        check_price: int = CHECK_ANSWER_PRICE,
        example_price: int = GENERATE_EXAMPLE_PRICE,
        check_delay: float = CHECK_ANSWER_DELAY,
    ) -> None:
        self.ledger = ledger
        self.ai = ai
        self.notify = notify
        self.explanation_price = explanation_price
        self.check_price = check_price
        self.example_price = example_price
        self.check_delay = check_delay
        self.states: Dict[int, AssistState] = {}

    def state(self, index: int) -> AssistState:
        if index not in self.states:
            self.states[index] = AssistState()
        return self.states[index]

    def clear(self) -> None:
        # In-flight fetches keep a reference to their old AssistState and land there.
        self.states = {}

    async def authorize(self, price: int, description: str) -> bool:
        auth = await self.ledger.authorize(price, description)
        if auth.granted:
            self.notify("success", auth.reason)
        else:
            self.notify("error", auth.reason, action=TOP_UP_URL)
        return auth.granted

    # ── Explanation track ──────────────────────────────────────────────────

    async def toggle_explanation(self, index: int, question: Question) -> AssistState:
        st = self.state(index)
        if st.show_explanation:
            st.show_explanation = False
            return st
        return await self.show_explanation(index, question)

    async def show_explanation(self, index: int, question: Question) -> AssistState:
        """Charges only for the first fetch of this question's explanation."""
        st = self.state(index)
        if st.explanation is not None:
            st.show_explanation = True
            return st
        if st.loading_explanation:
            return st

        st.loading_explanation = True
        try:
            if not await self.authorize(self.explanation_price, f"AI Solution for Question {index + 1}"):
                return st
            await self._fetch_explanation(st, index, question)
        finally:
            st.loading_explanation = False
        return st

    async def _fetch_explanation(self, st: AssistState, index: int, question: Question) -> None:
        logger.info(f"Fetching AI solution for question {index}")
        try:
            content = await self.ai.explain(question)
            st.explanation = parse_explanation(content)
        except AIServiceError as e:
            logger.error(f"Error fetching AI solution for question {index}: {e}")
            st.explanation = explanation_apology(e)
            self.notify("error", "AI explanation temporarily unavailable. Showing basic feedback.")
        st.show_explanation = True

    # ── Check-answer track ─────────────────────────────────────────────────

    async def check_answer(self, index: int, question: Question, user_answer: Optional[str]) -> Optional[bool]:
        """
        Returns the check outcome, or None when the check did not run
        (no answer, denied, already in flight). An already checked index
        returns the earlier outcome without charging.
        """
        if not user_answer:
            self.notify("error", "Please select an answer first")
            return None

        st = self.state(index)
        if st.answer_checked:
            self.notify("info", "You've already checked this answer")
            return st.last_check_correct
        if st.checking_answer:
            return None

        version = st.answer_version
        st.checking_answer = True
        try:
            if not await self.authorize(self.check_price, f"Check Answer for Question {index + 1}"):
                return None
            if self.check_delay:
                await asyncio.sleep(self.check_delay)
            if st.answer_version != version:
                logger.info(f"answer to question {index} changed during its check, result dropped")
                self.notify("info", "Your answer changed. Check it again to see the result.")
                return None
            correct = is_correct(user_answer, question.correct_option)
            st.answer_checked = True
            st.last_check_correct = correct
        finally:
            st.checking_answer = False

        self.notify(
            "success" if correct else "info",
            "Correct! Well done!" if correct else "Not quite. Check the explanation for details.",
        )
        if not correct and not st.show_explanation and st is self.states.get(index):
            await self.show_explanation(index, question)
        return correct

    def invalidate_check(self, index: int) -> None:
        """A changed answer hides the earlier check result (the charge stands)."""
        st = self.state(index)
        st.answer_version += 1
        st.answer_checked = False
        st.last_check_correct = None

    # ── Example track ──────────────────────────────────────────────────────

    async def generate_example(
        self, index: int, question: Question, subject_name: str = "", exam_name: str = "",
    ) -> AssistState:
        st = self.state(index)
        if st.generating_example:
            return st

        regenerating = st.example is not None
        st.generating_example = True
        try:
            if not await self.authorize(
                self.example_price, f"Generate another example for Question {index + 1}",
            ):
                return st
            if regenerating:
                st.example = None

            topic_name = question.topic.name if question.topic else None
            try:
                content = await self.ai.generate_example(question, subject_name, exam_name)
            except AIServiceError as e:
                logger.error(f"Error generating example for question {index}: {e}")
                self.notify("error", "Failed to generate example. Please try again.")
                if not regenerating:
                    st.example = FALLBACK_EXAMPLE.model_copy(deep=True)
                return st

            st.example = parse_example(content, topic_name)
            self.notify("success", "Practice example generated! Study the breakdown below.")
        finally:
            st.generating_example = False
        return st
