"""Tests for the question-bank loader and reference normalization."""
import random

import pytest

from conftest import run
from exam_practice.models.question_model import Exam, Subject
from exam_practice.services.backend_client import BackendError
from exam_practice.services.question_bank import (
    NoQuestionsAvailable, QuestionBankLoader, ReferenceResolver, extract_id,
    normalize_correct_option, normalize_options, topic_from_ref,
)

WAEC = Exam(id=1, name="WAEC", year=2023)
MATHS = Subject(id=10, name="Mathematics", question_count=3, exam=WAEC)


# ── References ───────────────────────────────────────────────────────────────

def test_extract_id_from_iri():
    assert extract_id("/api/exams/3") == 3


def test_extract_id_from_inline_objects():
    assert extract_id({"@id": "/api/subjects/12"}) == 12
    assert extract_id({"id": 4}) == 4
    assert extract_id({"id": "9"}) == 9


def test_extract_id_unusable_references():
    assert extract_id(None) is None
    assert extract_id("/api/exams/") is None
    assert extract_id({"name": "no id"}) is None
    assert extract_id({"id": "abc"}) is None


def test_topic_iri_becomes_placeholder():
    topic = topic_from_ref("/api/topics/2")
    assert topic.id == 0
    assert topic.name == "Topic"


def test_inline_topic_is_kept():
    topic = topic_from_ref({"id": 5, "name": "Algebra"})
    assert (topic.id, topic.name) == (5, "Algebra")


def test_resolver_fetches_each_iri_once(backend):
    resolver = ReferenceResolver(backend.client())

    async def scenario():
        first = await resolver.resolve("/api/exams/1")
        second = await resolver.resolve("/api/exams/1")
        return first, second

    first, second = run(scenario())
    assert first["name"] == "WAEC"
    assert second is first
    assert backend.calls_to("GET", "/api/exams/1") == 1


def test_resolver_returns_none_for_missing_entity(backend):
    resolver = ReferenceResolver(backend.client())
    assert run(resolver.resolve("/api/exams/99")) is None


# ── Options ──────────────────────────────────────────────────────────────────

def test_options_from_list():
    assert normalize_options({"options": ["2", "4"]}) == ["2", "4"]


def test_options_from_lettered_mapping_keep_letter_order():
    item = {"options": {"B": "Abuja", "A": "Lagos", "C": "", "D": "Ibadan"}}
    assert normalize_options(item) == ["Lagos", "Abuja", "Ibadan"]


def test_options_from_discrete_fields():
    item = {"optionA": "x", "optionB": "y", "optionC": "z", "optionD": ""}
    assert normalize_options(item) == ["x", "y", "z"]


def test_options_missing_entirely():
    assert normalize_options({}) == []


def test_correct_letter_resolves_to_option_text():
    assert normalize_correct_option("B", ["2", "4", "6"]) == "4"
    assert normalize_correct_option("c", ["2", "4", "6"]) == "6"


def test_correct_option_text_is_used_verbatim():
    assert normalize_correct_option("Abuja", ["Lagos", "Abuja"]) == "Abuja"


def test_out_of_range_letter_is_kept_raw():
    assert normalize_correct_option("E", ["a", "b"]) == "E"


def test_missing_correct_option():
    assert normalize_correct_option(None, ["a"]) == ""


# ── Loader ───────────────────────────────────────────────────────────────────

def test_list_exams_unwraps_hydra_collection(backend):
    exams = run(QuestionBankLoader(backend.client()).list_exams())
    assert [(e.id, e.name, e.year) for e in exams] == [(1, "WAEC", 2023), (2, "JAMB", 2024)]


def test_subjects_filtered_to_exam_with_questions(backend):
    subjects = run(QuestionBankLoader(backend.client()).list_subjects_with_questions(WAEC))
    assert [(s.id, s.name, s.question_count) for s in subjects] == [
        (10, "Mathematics", 3),
        (11, "English", 1),
    ]
    assert all(s.exam == WAEC for s in subjects)


def test_subject_count_failure_counts_as_zero(backend, monkeypatch):
    loader = QuestionBankLoader(backend.client())
    real = loader.client.get_collection

    async def flaky(path, params=None):
        if params and params.get("subject.id") == 11:
            raise BackendError("count failed", 500)
        return await real(path, params=params)

    monkeypatch.setattr(loader.client, "get_collection", flaky)
    subjects = run(loader.list_subjects_with_questions(WAEC))
    assert [s.id for s in subjects] == [10]


def test_subject_list_failure_propagates(backend):
    backend.fail_paths["GET /api/subjects"] = 500
    with pytest.raises(BackendError):
        run(QuestionBankLoader(backend.client()).list_subjects_with_questions(WAEC))


def test_sample_normalizes_every_question(backend):
    loader = QuestionBankLoader(backend.client(), rng=random.Random(0))
    questions = run(loader.sample_questions(WAEC, MATHS, 10))

    by_id = {q.id: q for q in questions}
    assert set(by_id) == {101, 102, 103}
    assert by_id[101].correct_option == "4"
    assert by_id[101].topic.name == "Algebra"
    assert by_id[102].options == ["Lagos", "Abuja", "Kano", "Ibadan"]
    assert by_id[102].correct_option == "Abuja"
    assert by_id[102].topic.id == 0
    assert by_id[103].options == ["x", "y", "z", "w"]
    assert by_id[103].correct_option == "z"
    assert by_id[103].topic is None
    assert all(q.has_valid_answer for q in questions)
    assert all(q.exam == WAEC and q.subject.id == 10 for q in questions)


def test_sample_truncates_to_requested_count(backend):
    loader = QuestionBankLoader(backend.client(), rng=random.Random(1))
    questions = run(loader.sample_questions(WAEC, MATHS, 2))
    assert len(questions) == 2
    assert len({q.id for q in questions}) == 2
    assert {q.id for q in questions} <= {101, 102, 103}


def test_sample_order_follows_rng(backend):
    ids_a = [q.id for q in run(QuestionBankLoader(backend.client(), rng=random.Random(5)).sample_questions(WAEC, MATHS, 3))]
    ids_b = [q.id for q in run(QuestionBankLoader(backend.client(), rng=random.Random(5)).sample_questions(WAEC, MATHS, 3))]
    assert ids_a == ids_b


def test_sample_without_matches_raises(backend):
    physics = Subject(id=12, name="Physics", question_count=0, exam=WAEC)
    with pytest.raises(NoQuestionsAvailable, match="No questions available for Physics"):
        run(QuestionBankLoader(backend.client()).sample_questions(WAEC, physics, 5))


def test_sample_fetch_failure_propagates(backend):
    backend.network_down = True
    with pytest.raises(BackendError):
        run(QuestionBankLoader(backend.client()).sample_questions(WAEC, MATHS, 5))
