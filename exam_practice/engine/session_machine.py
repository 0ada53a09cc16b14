"""
engine/session_machine.py

Practice-test session state machine.

    exams -> subjects -> test_setup -> test -> results
              ^  ^__________________________|  |
              |________________________________|

Owns the view, the answer map, the countdown and submission; drives the
question-bank loader, the assist cache (and through it the ledger) and the
result reconciler. Operations never raise: collaborator failures become
notices and the machine stays in a consistent view.

Timeout policy: the forced submission at 0 seconds is free and is persisted
like a manual one. Only a manual submission is charged.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from config import (
    CHECK_ANSWER_DELAY, DEFAULT_TEST_QUESTIONS, DEFAULT_TIME_MINUTES, MAX_TEST_QUESTIONS,
    MAX_TIME_MINUTES, MIN_TEST_QUESTIONS, MIN_TIME_MINUTES, SUBMIT_TEST_PRICE,
)
from exam_practice.models.question_model import Exam, Subject
from exam_practice.models.session_state import (
    Notice, PracticeTestSession, TestResults, TestSetup, ViewState,
)
from exam_practice.services.ai_client import TextGenerationClient
from exam_practice.services.assist_cache import AssistCache
from exam_practice.services.backend_client import BackendClient, BackendError
from exam_practice.services.exam_service import (
    calculate_score, calculate_topic_scores, count_correct, get_incorrect_indices,
)
from exam_practice.services.ledger import FreeQuotaStore, Ledger
from exam_practice.services.question_bank import NoQuestionsAvailable, QuestionBankLoader
from exam_practice.services.reconciler import ReconcileReport, ResultReconciler
from exam_practice.services.session_records import SessionRecords

logger = logging.getLogger(__name__)


def format_time(seconds: int) -> str:
    return f"{seconds // 60}:{seconds % 60:02d}"


class SessionMachine:
    def __init__(
        self,
        user_id: int,
        loader: QuestionBankLoader,
        ledger: Ledger,
        ai: TextGenerationClient,
        records: SessionRecords,
        *,
        live_clock: bool = True,
        submit_price: int = SUBMIT_TEST_PRICE,
        check_delay: float = CHECK_ANSWER_DELAY,
    ) -> None:
        self.user_id = user_id
        self.loader = loader
        self.ledger = ledger
        self.records = records
        self.reconciler = ResultReconciler(records)
        self.assist = AssistCache(ledger, ai, self.notify, check_delay=check_delay)
        self.live_clock = live_clock
        self.submit_price = submit_price

        self.notices: List[Notice] = []
        self.view = ViewState.SELECTING_EXAM
        self.exams: List[Exam] = []
        self.subjects: List[Subject] = []
        self.selected_exam: Optional[Exam] = None
        self.selected_subject: Optional[Subject] = None
        self.setup = TestSetup()
        self.session: Optional[PracticeTestSession] = None
        self.results: Optional[TestResults] = None
        self.report: Optional[ReconcileReport] = None
        self.loading = False
        self._submitting = False
        self._countdown: Optional[asyncio.Task] = None

    @classmethod
    def for_user(
        cls,
        user_id: int,
        client: BackendClient,
        ai: TextGenerationClient,
        store: FreeQuotaStore,
        **kwargs,
    ) -> "SessionMachine":
        return cls(
            user_id,
            QuestionBankLoader(client),
            Ledger(client, user_id, store),
            ai,
            SessionRecords(client),
            **kwargs,
        )

    # ── Notices ────────────────────────────────────────────────────────────

    def notify(self, level: str, message: str, action: Optional[str] = None) -> None:
        self.notices.append(Notice(level=level, message=message, action=action))

    def drain_notices(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        return notices

    # ── Exam / subject selection ───────────────────────────────────────────

    async def open(self) -> None:
        """First load after login: balance and exam list."""
        await self.ledger.refresh_balance()
        await self.load_exams()

    async def load_exams(self) -> List[Exam]:
        self.loading = True
        try:
            self.exams = await self.loader.list_exams()
        except BackendError as e:
            logger.error(f"fetchExams error: {e.message}")
            self.notify("error", "Failed to load exams")
        finally:
            self.loading = False
        return self.exams

    async def select_exam(self, exam_id: int) -> bool:
        exam = next((e for e in self.exams if e.id == exam_id), None)
        if exam is None:
            self.notify("error", "Exam not found")
            return False

        self.loading = True
        try:
            subjects = await self.loader.list_subjects_with_questions(exam)
        except BackendError as e:
            logger.error(f"fetchSubjects error: {e.message}")
            self.notify("error", "Failed to load subjects")
            self.view = ViewState.SELECTING_EXAM
            return False
        finally:
            self.loading = False

        self.subjects = subjects
        self.selected_exam = exam
        self.view = ViewState.SELECTING_SUBJECT
        return True

    def select_subject(self, subject_id: int) -> bool:
        if self.view != ViewState.SELECTING_SUBJECT:
            self.notify("error", "Select an exam first")
            return False
        subject = next((s for s in self.subjects if s.id == subject_id), None)
        if subject is None:
            self.notify("error", "Subject not found")
            return False

        self.selected_subject = subject
        self.setup = TestSetup(
            number_of_questions=max(MIN_TEST_QUESTIONS, min(DEFAULT_TEST_QUESTIONS, subject.question_count)),
            time_in_minutes=DEFAULT_TIME_MINUTES,
        )
        self.view = ViewState.CONFIGURING_TEST
        return True

    @property
    def max_questions(self) -> int:
        if self.selected_subject is None:
            return 0
        return min(self.selected_subject.question_count, MAX_TEST_QUESTIONS)

    def configure(self, number_of_questions: int, time_in_minutes: int) -> bool:
        if self.view != ViewState.CONFIGURING_TEST:
            self.notify("error", "Choose a subject first")
            return False
        if not MIN_TEST_QUESTIONS <= number_of_questions <= self.max_questions:
            self.notify("error", f"Choose between {MIN_TEST_QUESTIONS} and {self.max_questions} questions")
            return False
        if not MIN_TIME_MINUTES <= time_in_minutes <= MAX_TIME_MINUTES:
            self.notify("error", f"Time must be between {MIN_TIME_MINUTES} and {MAX_TIME_MINUTES} minutes")
            return False
        self.setup = TestSetup(number_of_questions=number_of_questions, time_in_minutes=time_in_minutes)
        return True

    # ── Test lifecycle ─────────────────────────────────────────────────────

    async def start_test(self) -> bool:
        if self.view != ViewState.CONFIGURING_TEST or not self.selected_subject or not self.selected_exam:
            self.notify("error", "Choose a subject before starting a test")
            return False

        exam, subject, setup = self.selected_exam, self.selected_subject, self.setup
        logger.info(
            f"Starting test for subject {subject.name} ({subject.id}), exam {exam.name} ({exam.id}): "
            f"{setup.number_of_questions} questions, {setup.time_in_minutes} minutes"
        )

        self.loading = True
        try:
            questions = await self.loader.sample_questions(exam, subject, setup.number_of_questions)
            if len(questions) < setup.number_of_questions:
                self.notify(
                    "info",
                    f"Only {len(questions)} questions available. Starting with {len(questions)} questions.",
                )
            session_id = await self.records.create_session(exam, subject, self.user_id, questions)
        except NoQuestionsAvailable as e:
            self.notify("error", str(e))
            return False
        except BackendError as e:
            logger.error(f"startTest error: {e.message}")
            self.notify("error", e.message or "Failed to start test")
            return False
        finally:
            self.loading = False

        if self.view != ViewState.CONFIGURING_TEST or self.selected_subject is not subject:
            logger.info(f"practice test {session_id} abandoned before it started")
            return False

        seconds = setup.time_in_minutes * 60
        self.session = PracticeTestSession(
            id=session_id,
            exam=exam,
            subject=subject,
            questions=questions,
            time_left=seconds,
            time_limit_seconds=seconds,
        )
        self.results = None
        self.report = None
        self.assist.clear()
        self.view = ViewState.IN_PROGRESS
        if self.live_clock:
            self._countdown = asyncio.create_task(self.run_countdown(self.session))
        self.notify("success", f"Practice test started for {subject.name}!")
        return True

    def _require_test(self) -> Optional[PracticeTestSession]:
        if self.view != ViewState.IN_PROGRESS or self.session is None:
            self.notify("error", "No test in progress")
            return None
        return self.session

    def _index(self, session: PracticeTestSession, index: Optional[int]) -> Optional[int]:
        idx = session.current_index if index is None else index
        if not 0 <= idx < session.total:
            self.notify("error", "Question not found")
            return None
        return idx

    def select_option(self, option_text: str, index: Optional[int] = None) -> bool:
        session = self._require_test()
        if session is None:
            return False
        idx = self._index(session, index)
        if idx is None:
            return False
        if option_text not in session.questions[idx].options:
            self.notify("error", "That option does not belong to this question")
            return False

        session.answers[idx] = option_text
        self.assist.invalidate_check(idx)
        return True

    def navigate(self, index: int) -> int:
        session = self._require_test()
        if session is None:
            return 0
        session.current_index = max(0, min(index, session.total - 1))
        return session.current_index

    def next_question(self) -> int:
        current = self.session.current_index if self.session else 0
        return self.navigate(current + 1)

    def previous_question(self) -> int:
        current = self.session.current_index if self.session else 0
        return self.navigate(current - 1)

    # ── Assistance ─────────────────────────────────────────────────────────

    async def toggle_explanation(self, index: Optional[int] = None) -> bool:
        session = self._require_test()
        idx = self._index(session, index) if session else None
        if idx is None:
            return False
        st = await self.assist.toggle_explanation(idx, session.questions[idx])
        return st.show_explanation

    async def check_answer(self, index: Optional[int] = None) -> Optional[bool]:
        session = self._require_test()
        idx = self._index(session, index) if session else None
        if idx is None:
            return None
        return await self.assist.check_answer(idx, session.questions[idx], session.answers.get(idx))

    async def generate_example(self, index: Optional[int] = None) -> bool:
        session = self._require_test()
        idx = self._index(session, index) if session else None
        if idx is None:
            return False
        st = await self.assist.generate_example(
            idx, session.questions[idx], session.subject.name, session.exam.name,
        )
        return st.example is not None

    # ── Countdown / submission ─────────────────────────────────────────────

    async def tick(self) -> int:
        """One second off the countdown; reaching zero forces submission."""
        session = self.session
        if self.view != ViewState.IN_PROGRESS or session is None:
            return 0
        if session.time_left > 0:
            session.time_left -= 1
        if session.time_left == 0 and not self._submitting:
            logger.info(f"practice test {session.id}: time up, forcing submission")
            self.notify("warning", "Time is up! Submitting your test.")
            await self._finish(session, forced=True)
        return session.time_left

    async def run_countdown(self, session: PracticeTestSession) -> None:
        while self.view == ViewState.IN_PROGRESS and self.session is session and session.time_left > 0:
            await asyncio.sleep(1)
            if self.session is not session:
                break
            await self.tick()

    def _stop_countdown(self) -> None:
        task, self._countdown = self._countdown, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def submit(self) -> Optional[TestResults]:
        """Manual submission; charged, and refused when the charge is denied."""
        session = self._require_test()
        if session is None or self._submitting:
            return None

        if not await self.assist.authorize(self.submit_price, f"Submit Test: {session.subject.name}"):
            return None
        if self.session is not session or self.view != ViewState.IN_PROGRESS:
            # the countdown got there first while the charge was pending
            logger.warning(f"practice test {session.id}: submitted by timeout during manual submit")
            return self.results
        return await self._finish(session, forced=False)

    async def _finish(self, session: PracticeTestSession, forced: bool) -> TestResults:
        self._submitting = True
        self.loading = True
        self._stop_countdown()
        try:
            answers = dict(session.answers)
            correct = count_correct(session.questions, answers)
            score = calculate_score(session.questions, answers)
            logger.info(f"practice test {session.id}: {correct}/{session.total} correct, score {score:.1f}")

            report = await self.reconciler.persist(session, answers, score)
            results = TestResults(
                score=score,
                correct=correct,
                total=session.total,
                time_taken=session.elapsed,
                forced=forced,
                saved=report.score_saved,
                submissions_saved=report.submissions_saved,
            )
            if self.session is not session:
                # left via a back transition while saving; the attempt stays discarded
                logger.info(f"practice test {session.id}: discarded while its results were being saved")
                return results

            if report.score_saved:
                self.notify("success", "Test completed and saved!")
            else:
                self.notify("error", "Could not save results to server (showing local results)")

            self.report = report
            self.results = results
            self.view = ViewState.SHOWING_RESULTS
            return results
        finally:
            self._submitting = False
            self.loading = False

    # ── Back transitions ───────────────────────────────────────────────────

    def _discard_session(self) -> None:
        self._stop_countdown()
        self.session = None
        self.results = None
        self.report = None
        self.assist.clear()

    def back_to_subjects(self) -> bool:
        if self.selected_exam is None:
            self.notify("error", "Select an exam first")
            return False
        self._discard_session()
        self.selected_subject = None
        self.view = ViewState.SELECTING_SUBJECT
        return True

    def back_to_exams(self) -> None:
        self._discard_session()
        self.selected_subject = None
        self.view = ViewState.SELECTING_EXAM

    def reset(self) -> None:
        self._discard_session()
        self.selected_exam = None
        self.selected_subject = None
        self.subjects = []
        self.setup = TestSetup()
        self.view = ViewState.SELECTING_EXAM

    def close(self) -> None:
        self._stop_countdown()

    # ── Views ──────────────────────────────────────────────────────────────

    def question_view(self, index: int) -> Optional[Dict[str, Any]]:
        session = self.session
        if session is None or not 0 <= index < session.total:
            return None
        q = session.questions[index]
        st = self.assist.state(index)
        reveal = self.view == ViewState.SHOWING_RESULTS
        return {
            "index": index,
            "total": session.total,
            "id": q.id,
            "question_text": q.question_text,
            "options": q.options,
            "labelled_options": q.labelled_options(),
            "topic": q.topic.name if q.topic else None,
            "saved_answer": session.answers.get(index, ""),
            "correct_option": q.correct_option if reveal or st.answer_checked else None,
            "assist": st.model_dump(),
        }

    def snapshot(self) -> Dict[str, Any]:
        session = self.session
        data: Dict[str, Any] = {
            "view": self.view.value,
            "loading": self.loading,
            "balance": self.ledger.balance,
            "free_remaining": self.ledger.free_remaining,
            "prices": {
                "check_answer": self.ledger.price_label(self.assist.check_price),
                "explanation": self.ledger.price_label(self.assist.explanation_price),
                "generate_example": self.ledger.price_label(self.assist.example_price),
                "submit": self.ledger.price_label(self.submit_price),
            },
            "exam": self.selected_exam.model_dump() if self.selected_exam else None,
            "subject": self.selected_subject.model_dump() if self.selected_subject else None,
            "setup": self.setup.model_dump(),
            "max_questions": self.max_questions,
            "session": None,
            "results": self.results.model_dump() if self.results else None,
        }
        if session is not None:
            data["session"] = {
                "id": session.id,
                "current_index": session.current_index,
                "total": session.total,
                "answered_count": len(session.answers),
                "time_left": session.time_left,
                "time_left_display": format_time(session.time_left),
            }
        return data

    def results_view(self) -> Optional[Dict[str, Any]]:
        if self.results is None or self.session is None:
            return None
        session = self.session
        return {
            **self.results.model_dump(),
            "time_taken_display": format_time(self.results.time_taken),
            "topic_scores": calculate_topic_scores(session.questions, session.answers),
            "incorrect_indices": get_incorrect_indices(session.questions, session.answers),
            "review": [
                {
                    "index": idx,
                    "question_text": q.question_text,
                    "user_answer": session.answers.get(idx, ""),
                    "correct_option": q.correct_option,
                }
                for idx, q in enumerate(session.questions)
            ],
        }
