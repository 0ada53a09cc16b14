"""
services/question_bank.py

Question-bank loader: exams, subjects with practice material, and
randomized per-(exam, subject) question samples.

Design:
- Cross references arrive inline (dict) or as an IRI string ("/api/exams/3").
  ReferenceResolver handles both, once, for every call site.
- Options and the correct option are normalized at load time. Downstream code
  only ever sees `Question.options` (list) and `Question.correct_option` (text).
- A broken reference degrades to a placeholder; a failed fetch aborts the load.
"""

import asyncio
import logging
import random
import re
from typing import Any, Dict, List, Optional

from exam_practice.models.question_model import (
    PLACEHOLDER_TOPIC_ID, UNKNOWN_EXAM, Exam, Question, Subject, Topic,
)
from exam_practice.services.backend_client import BackendClient, BackendError

logger = logging.getLogger(__name__)

_IRI_ID_RE = re.compile(r"/(\d+)$")
_OPTION_LETTERS = ("A", "B", "C", "D", "E", "F")
_OPTION_FIELDS = ("optionA", "optionB", "optionC", "optionD")


class NoQuestionsAvailable(Exception):
    """No question in the bank matches the requested exam and subject."""


# ══════════════════════════════════════════════════════════════════════════════
# Reference handling
# ══════════════════════════════════════════════════════════════════════════════

def extract_id(ref: Any) -> Optional[int]:
    """Resource id from an IRI, an inline `@id`, or an inline `id`."""
    if ref is None:
        return None
    if isinstance(ref, str):
        match = _IRI_ID_RE.search(ref)
        return int(match.group(1)) if match else None
    if isinstance(ref, dict):
        if ref.get("@id"):
            return extract_id(ref["@id"])
        if ref.get("id") is not None:
            try:
                return int(str(ref["id"]))
            except ValueError:
                return None
    return None


class ReferenceResolver:
    """resolve(ref) -> entity dict, following IRIs with one cached fetch each."""

    def __init__(self, client: BackendClient):
        self.client = client
        self._cache: Dict[str, Optional[dict]] = {}

    async def resolve(self, ref: Any) -> Optional[dict]:
        if isinstance(ref, dict):
            return ref
        if not isinstance(ref, str) or not ref:
            return None
        if ref not in self._cache:
            try:
                data = await self.client.get_json(ref)
                self._cache[ref] = data if isinstance(data, dict) else None
            except BackendError as e:
                logger.error(f"Error resolving {ref}: {e.message}")
                self._cache[ref] = None
        return self._cache[ref]


def exam_from_data(data: Optional[dict]) -> Exam:
    if not data:
        return UNKNOWN_EXAM
    exam_id = extract_id(data)
    if exam_id is None:
        return UNKNOWN_EXAM
    try:
        year = int(data.get("year") or 0)
    except (TypeError, ValueError):
        year = 0
    return Exam(id=exam_id, name=data.get("name") or "Unknown", year=year)


def topic_from_ref(ref: Any) -> Optional[Topic]:
    if not ref:
        return None
    if isinstance(ref, str):
        return Topic(id=PLACEHOLDER_TOPIC_ID, name="Topic")
    return Topic(id=extract_id(ref) or PLACEHOLDER_TOPIC_ID, name=ref.get("name") or "Topic")


# ══════════════════════════════════════════════════════════════════════════════
# Option normalization
# ══════════════════════════════════════════════════════════════════════════════

def normalize_options(item: dict) -> List[str]:
    """
    Accepts `options` as a list or a lettered mapping (A..F), falling back to
    discrete optionA..optionD fields. Empty entries are dropped.
    """
    raw = item.get("options")
    opts: List[str] = []
    if isinstance(raw, list):
        opts = [str(o) for o in raw]
    elif isinstance(raw, dict):
        opts = [str(raw[letter]) for letter in _OPTION_LETTERS if raw.get(letter)]

    if not opts:
        opts = [str(item[field]) for field in _OPTION_FIELDS if item.get(field)]
    return opts


def normalize_correct_option(raw: Optional[str], options: List[str]) -> str:
    """
    A single letter is resolved to the option at that position; any other value
    is used verbatim. An out-of-range letter is kept as-is and logged.
    """
    if not raw:
        return ""
    if len(raw) == 1:
        index = ord(raw.upper()) - 65
        if 0 <= index < len(options):
            return options[index]
        logger.warning(f"correct option letter {raw!r} out of range for {len(options)} options")
        return raw
    return raw


# ══════════════════════════════════════════════════════════════════════════════
# Loader
# ══════════════════════════════════════════════════════════════════════════════

class QuestionBankLoader:
    def __init__(self, client: BackendClient, rng: Optional[random.Random] = None):
        self.client = client
        self.resolver = ReferenceResolver(client)
        self.rng = rng or random.Random()

    async def list_exams(self) -> List[Exam]:
        items = await self.client.get_collection("/api/exams")
        return [exam_from_data(e) for e in items]

    async def list_subjects_with_questions(self, exam: Exam) -> List[Subject]:
        """Subjects of `exam` that have at least one question."""
        all_subjects = await self.client.get_collection("/api/subjects")
        logger.info(f"Total subjects in system: {len(all_subjects)}")

        candidates = await asyncio.gather(
            *(self._subject_for_exam(s, exam) for s in all_subjects)
        )
        subjects = [s for s in candidates if s is not None and s.question_count > 0]
        logger.info(
            f"Found {len(subjects)} subjects with questions for exam {exam.name}: "
            f"{[f'{s.name} ({s.question_count})' for s in subjects]}"
        )
        return subjects

    async def _subject_for_exam(self, item: dict, exam: Exam) -> Optional[Subject]:
        subject_exam = exam_from_data(await self.resolver.resolve(item.get("exam")))
        if subject_exam.id != exam.id:
            return None

        subject_id = extract_id(item)
        if subject_id is None:
            return None

        try:
            matching = await self.client.get_collection(
                "/api/questions", params={"exam.id": exam.id, "subject.id": subject_id},
            )
            question_count = len(matching)
        except BackendError as e:
            logger.warning(f"question count failed for subject {subject_id}: {e.message}")
            question_count = 0

        return Subject(
            id=subject_id,
            name=item.get("name") or "Unnamed Subject",
            question_count=question_count,
            exam=exam,
        )

    async def sample_questions(self, exam: Exam, subject: Subject, count: int) -> List[Question]:
        """
        Random sample of up to `count` questions for (exam, subject).

        Raises:
            NoQuestionsAvailable: nothing in the bank matches.
            BackendError:         the question fetch failed.
        """
        all_questions = await self.client.get_collection("/api/questions")
        logger.info(f"Total questions fetched from API: {len(all_questions)}")

        matching = [
            q for q in all_questions
            if extract_id(q.get("exam")) == exam.id and extract_id(q.get("subject")) == subject.id
        ]
        logger.info(f"Filtered to {len(matching)} questions for {subject.name} in {exam.name}")
        if not matching:
            raise NoQuestionsAvailable(f"No questions available for {subject.name}")

        self.rng.shuffle(matching)
        selected = matching[:min(count, len(matching))]
        return [self._to_question(q, exam, subject) for q in selected]

    def _to_question(self, item: dict, exam: Exam, subject: Subject) -> Question:
        options = normalize_options(item)
        question = Question(
            id=extract_id(item) or 0,
            question_text=item.get("questionText") or "",
            options=options,
            correct_option=normalize_correct_option(item.get("correctOption"), options),
            subject=subject.model_copy(update={"exam": None}),
            exam=exam,
            topic=topic_from_ref(item.get("topic")),
        )
        if not question.has_valid_answer:
            logger.warning(f"Q{question.id}: correct option {question.correct_option!r} matches no option")
        return question
