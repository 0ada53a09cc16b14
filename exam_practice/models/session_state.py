"""
models/session_state.py

Runtime state of a practice-test session.
Pydantic BaseModel based, no I/O.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from config import (
    DEFAULT_TEST_QUESTIONS, DEFAULT_TIME_MINUTES,
    MAX_TIME_MINUTES, MIN_TEST_QUESTIONS, MIN_TIME_MINUTES,
)
from exam_practice.models.question_model import Exam, Question, Subject


class ViewState(str, Enum):
    SELECTING_EXAM = "exams"
    SELECTING_SUBJECT = "subjects"
    CONFIGURING_TEST = "test_setup"
    IN_PROGRESS = "test"
    SHOWING_RESULTS = "results"


class Identity(BaseModel):
    """Claims of the bearer token issued by the identity service."""
    user_id: int
    token: str = Field(..., repr=False)
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    roles: List[str] = Field(default_factory=list)
    is_verified: bool = True


class TestSetup(BaseModel):
    number_of_questions: int = Field(
        default=DEFAULT_TEST_QUESTIONS,
        ge=MIN_TEST_QUESTIONS,
        description="Number of questions to sample"
    )
    time_in_minutes: int = Field(
        default=DEFAULT_TIME_MINUTES,
        ge=MIN_TIME_MINUTES,
        le=MAX_TIME_MINUTES,
        description="Time limit in minutes"
    )

    model_config = {"frozen": True}


class PracticeTestSession(BaseModel):
    """
    The attempt in progress.

    Attributes:
        id:                 Session id assigned by the system of record.
        questions:          Sampled questions, fixed for the whole session.
        answers:            {question index: chosen option text}
        time_left:          Remaining seconds on the countdown.
        time_limit_seconds: Countdown seed, used to compute time taken.
        current_index:      Question currently displayed (0-based).
    """

    id: int
    exam: Exam
    subject: Subject
    questions: List[Question]
    answers: Dict[int, str] = Field(default_factory=dict)
    time_left: int = Field(default=0, ge=0)
    time_limit_seconds: int = Field(default=0, ge=0)
    current_index: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def elapsed(self) -> int:
        return self.time_limit_seconds - self.time_left


class ExplanationRecord(BaseModel):
    explanation: str
    correct_answer: str = ""
    reasoning: str = ""
    step_by_step: List[str] = Field(default_factory=list)


class ExampleRecord(BaseModel):
    question: str
    answer: str
    explanation: str
    key_points: List[str] = Field(default_factory=list)


class AssistState(BaseModel):
    """Per-question assistance state; lives only as long as one session."""
    explanation: Optional[ExplanationRecord] = None
    example: Optional[ExampleRecord] = None
    show_explanation: bool = False
    loading_explanation: bool = False
    checking_answer: bool = False
    answer_checked: bool = False
    last_check_correct: Optional[bool] = None
    answer_version: int = Field(0, description="Bumped on every answer change")
    generating_example: bool = False


class TestResults(BaseModel):
    """Computed once at submission, never merged back into the session."""
    score: float = Field(..., ge=0.0, le=100.0)
    correct: int
    total: int
    time_taken: int
    forced: bool = False
    saved: bool = False
    submissions_saved: int = 0

    model_config = {"frozen": True}


class Authorization(BaseModel):
    granted: bool
    via: Optional[str] = Field(None, description='"free" or "balance" when granted')
    reason: str = ""
    balance: int = 0


class Notice(BaseModel):
    level: str = Field("info", description="success | info | warning | error")
    message: str
    action: Optional[str] = Field(None, description="Follow-up link, e.g. top-up page")
