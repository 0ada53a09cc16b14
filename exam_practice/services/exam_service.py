"""
services/exam_service.py

Scoring and result analysis.
Pure Python functions: no UI code, no global state changes.
"""

from collections import defaultdict
from typing import Dict, List, Optional

from exam_practice.models.question_model import Question


def is_correct(user_answer: Optional[str], correct_option: str) -> bool:
    """
    Trimmed exact match between the chosen option text and the correct option.
    Unanswered questions and questions without a correct option are never correct.
    """
    if not user_answer or not correct_option:
        return False
    return user_answer.strip() == correct_option.strip()


def count_correct(
    questions: List[Question],
    answers: Dict[int, str],
) -> int:
    """`answers` is keyed by question index, not question id."""
    return sum(
        1
        for idx, q in enumerate(questions)
        if is_correct(answers.get(idx), q.correct_option)
    )


def calculate_score(
    questions: List[Question],
    answers: Dict[int, str],
) -> float:
    """
    Percentage score on a 0-100 scale.

    Args:
        questions: Session questions in display order.
        answers:   {question index: chosen option text}

    Returns:
        100 * correct / total, unrounded. 0.0 for an empty question list.
    """
    if not questions:
        return 0.0
    return count_correct(questions, answers) / len(questions) * 100


def get_incorrect_indices(
    questions: List[Question],
    answers: Dict[int, str],
) -> List[int]:
    """Indices of wrong or unanswered questions, in original order (review list)."""
    return [
        idx
        for idx, q in enumerate(questions)
        if not is_correct(answers.get(idx), q.correct_option)
    ]


def calculate_topic_scores(
    questions: List[Question],
    answers: Dict[int, str],
) -> List[Dict[str, object]]:
    """
    Per-topic breakdown.

    Returns:
        [{"topic": str, "total": int, "correct": int,
          "incorrect": int, "unanswered": int, "score": float}, ...]
        sorted by topic name.
    """
    buckets: Dict[str, Dict[str, int]] = defaultdict(
        lambda: {"total": 0, "correct": 0, "incorrect": 0, "unanswered": 0}
    )

    for idx, q in enumerate(questions):
        topic = q.topic.name if q.topic else "General"
        buckets[topic]["total"] += 1

        user_ans = answers.get(idx)
        if not user_ans:
            buckets[topic]["unanswered"] += 1
        elif is_correct(user_ans, q.correct_option):
            buckets[topic]["correct"] += 1
        else:
            buckets[topic]["incorrect"] += 1

    result = []
    for topic in sorted(buckets):
        b = buckets[topic]
        score = round(b["correct"] / b["total"] * 100, 1) if b["total"] else 0.0
        result.append({"topic": topic, **b, "score": score})
    return result
