from typing import List, Optional

from pydantic import BaseModel, Field


class Exam(BaseModel):
    """
    Exam body sitting (e.g. WAEC 2023, JAMB 2024).
    Supplied by the question-bank service, immutable once fetched.
    """
    id: int = Field(..., description="Exam identifier")
    name: str = Field(..., description="Exam name")
    year: int = Field(0, description="Exam year")


UNKNOWN_EXAM = Exam(id=0, name="Unknown", year=0)


class Subject(BaseModel):
    id: int = Field(..., description="Subject identifier")
    name: str = Field("Unnamed Subject", description="Subject name")
    question_count: int = Field(
        0,
        ge=0,
        description="Number of questions for (exam, subject), computed by the loader"
    )
    exam: Optional[Exam] = Field(None, description="Owning exam")


class Topic(BaseModel):
    id: int = Field(0, description="Topic identifier (0 = placeholder)")
    name: str = Field("Topic", description="Topic name")


PLACEHOLDER_TOPIC_ID = 0


class Question(BaseModel):
    """
    Practice question, normalized by the question-bank loader.

    `correct_option` always holds the literal option text (never a letter)
    once loaded. It is the only correctness oracle for a session.
    """
    id: int = Field(
        ...,
        description="Question identifier"
    )
    question_text: str = Field(
        "",
        description="Question body"
    )
    options: List[str] = Field(
        default_factory=list,
        description="Ordered options, labelled A, B, C... by position"
    )
    correct_option: str = Field(
        "",
        description="Correct option as literal text"
    )
    subject: Optional[Subject] = None
    exam: Optional[Exam] = None
    topic: Optional[Topic] = None

    @property
    def has_valid_answer(self) -> bool:
        """The correct option matches one of the options by trimmed text."""
        target = self.correct_option.strip()
        return bool(target) and any(opt.strip() == target for opt in self.options)

    def labelled_options(self) -> List[str]:
        return [f"{chr(65 + idx)}. {opt}" for idx, opt in enumerate(self.options)]


class QuestionDraft(BaseModel):
    """Question extracted from an OCR scan, not yet stored in the question bank."""
    number: int = 0
    question: str = ""
    options: List[str] = Field(default_factory=list)
