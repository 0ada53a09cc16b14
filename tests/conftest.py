"""
Shared fakes: an in-memory platform backend behind httpx.MockTransport and a
scripted text-generation client.
"""

import asyncio
import json
import random
import re
from typing import Any, Dict, List, Optional

import httpx
import pytest
from jose import jwt

from exam_practice.engine.session_machine import SessionMachine
from exam_practice.services.ai_client import AIServiceError
from exam_practice.services.backend_client import BackendClient
from exam_practice.services.ledger import FreeQuotaStore, Ledger
from exam_practice.services.question_bank import QuestionBankLoader, extract_id
from exam_practice.services.session_records import SessionRecords

USER_ID = 7


def run(coro):
    return asyncio.run(coro)


def make_token(**claims: Any) -> str:
    payload = {"id": USER_ID, "email": "ada@example.com", "firstName": "Ada",
               "lastName": "Obi", "roles": ["ROLE_USER"], "isVerified": True}
    payload.update(claims)
    return jwt.encode(payload, "test-secret", algorithm="HS256")


EXAMS = [
    {"@id": "/api/exams/1", "id": 1, "name": "WAEC", "year": "2023"},
    {"@id": "/api/exams/2", "id": 2, "name": "JAMB", "year": 2024},
]

SUBJECTS = [
    {"@id": "/api/subjects/10", "id": 10, "name": "Mathematics", "exam": "/api/exams/1"},
    {"@id": "/api/subjects/11", "id": 11, "name": "English", "exam": {"id": 1, "name": "WAEC", "year": 2023}},
    {"@id": "/api/subjects/12", "id": 12, "name": "Physics", "exam": "/api/exams/1"},
    {"@id": "/api/subjects/13", "id": 13, "name": "Biology", "exam": "/api/exams/2"},
    {"@id": "/api/subjects/14", "id": 14, "name": "Orphan", "exam": "/api/exams/99"},
]

QUESTIONS = [
    {
        "id": 101, "questionText": "What is 2 + 2?",
        "options": ["2", "4", "6", "8"], "correctOption": "B",
        "exam": "/api/exams/1", "subject": "/api/subjects/10",
        "topic": {"id": 5, "name": "Algebra"},
    },
    {
        "id": 102, "questionText": "Capital of Nigeria?",
        "options": {"A": "Lagos", "B": "Abuja", "C": "Kano", "D": "Ibadan"},
        "correctOption": "Abuja",
        "exam": {"@id": "/api/exams/1"}, "subject": {"@id": "/api/subjects/10"},
        "topic": "/api/topics/2",
    },
    {
        "id": 103, "questionText": "Pick z",
        "optionA": "x", "optionB": "y", "optionC": "z", "optionD": "w",
        "correctOption": "C",
        "exam": {"id": 1}, "subject": {"id": "10"},
    },
    {
        "id": 104, "questionText": "Synonym of big",
        "options": ["large", "small"], "correctOption": "A",
        "exam": "/api/exams/1", "subject": "/api/subjects/11",
    },
    {
        "id": 105, "questionText": "Cell powerhouse",
        "options": ["Nucleus", "Mitochondria"], "correctOption": "B",
        "exam": "/api/exams/2", "subject": "/api/subjects/13",
    },
]


class FakeBackend:
    """Question bank + finance + practice-test records, all in memory."""

    def __init__(self, balance: int = 100):
        self.balance = balance
        self.calls: List[tuple] = []
        self.fail_paths: Dict[str, int] = {}
        self.network_down = False
        self.fail_submission_ids: set = set()
        self.omit_balance = False
        self.render_balance = lambda amount: amount
        self.created_tests: List[dict] = []
        self.patches: List[dict] = []
        self.submissions: List[dict] = []
        self.next_test_id = 77
        self.login_error: Optional[dict] = None
        self.token = make_token()
        self.transport = httpx.MockTransport(self.handle)

    def client(self) -> BackendClient:
        return BackendClient("token", base_url="http://backend.test", transport=self.transport)

    def calls_to(self, method: str, path: str) -> int:
        return sum(1 for m, p in self.calls if m == method and p == path)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method
        self.calls.append((method, path))

        if self.network_down:
            raise httpx.ConnectError("connection refused", request=request)
        status = self.fail_paths.get(f"{method} {path}")
        if status:
            return httpx.Response(status, json={"hydra:description": f"{path} exploded"})

        body = json.loads(request.content) if request.content else None

        if method == "POST" and path == "/api/login_check":
            if self.login_error:
                return httpx.Response(401, json=self.login_error)
            return httpx.Response(200, json={"token": self.token})

        if method == "GET" and path == "/api/exams":
            return httpx.Response(200, json={"hydra:member": EXAMS})
        match = re.fullmatch(r"/api/exams/(\d+)", path)
        if method == "GET" and match:
            exam = next((e for e in EXAMS if e["id"] == int(match.group(1))), None)
            if exam is None:
                return httpx.Response(404, json={"detail": "Not Found"})
            return httpx.Response(200, json=exam)

        if method == "GET" and path == "/api/subjects":
            return httpx.Response(200, json=SUBJECTS)

        if method == "GET" and path == "/api/questions":
            exam_id = request.url.params.get("exam.id")
            subject_id = request.url.params.get("subject.id")
            items = QUESTIONS
            if exam_id and subject_id:
                items = [q for q in QUESTIONS if _ids(q) == (int(exam_id), int(subject_id))]
            return httpx.Response(200, json={"member": items})

        if method == "GET" and path == "/api/me/finance":
            return httpx.Response(200, json={"balance": self.render_balance(self.balance)})

        if method == "POST" and path == "/api/me/deduct-balance":
            amount = body["amount"]
            if amount > self.balance:
                return httpx.Response(400, json={"message": "Insufficient funds"})
            self.balance -= amount
            return httpx.Response(200, json={} if self.omit_balance else {"balance": self.render_balance(self.balance)})

        if method == "POST" and path == "/api/practice_tests":
            self.created_tests.append(body)
            test_id = self.next_test_id
            return httpx.Response(201, json={"@id": f"/api/practice_tests/{test_id}"})

        if method == "PATCH" and path.startswith("/api/practice_tests/"):
            self.patches.append(body)
            return httpx.Response(200, json={"id": int(path.rsplit("/", 1)[-1]), **body})

        if method == "POST" and path == "/api/test_submissions":
            question_id = int(body["question"].rsplit("/", 1)[-1])
            if question_id in self.fail_submission_ids:
                return httpx.Response(422, json={"detail": "rejected"})
            self.submissions.append(body)
            return httpx.Response(201, json=body)

        return httpx.Response(404, json={"detail": f"no route {method} {path}"})


def _ids(q: dict) -> tuple:
    return extract_id(q.get("exam")), extract_id(q.get("subject"))


class FakeAI:
    """Scripted text-generation client. Entries that are exceptions are raised."""

    def __init__(self):
        self.explanations: List[Any] = []
        self.examples: List[Any] = []
        self.completions: List[Any] = []
        self.explain_calls = 0
        self.example_calls = 0

    @staticmethod
    def _next(queue: List[Any], default: str) -> str:
        reply = queue.pop(0) if queue else default
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def explain(self, question) -> str:
        self.explain_calls += 1
        return self._next(self.explanations, json.dumps({
            "explanation": f"Because of {question.question_text}",
            "correctAnswer": "B",
            "reasoning": "Work it out",
            "stepByStep": ["Read", "Solve"],
        }))

    async def generate_example(self, question, subject_name, exam_name) -> str:
        self.example_calls += 1
        return self._next(self.examples, json.dumps({
            "question": f"Example #{self.example_calls}",
            "answer": "42",
            "explanation": "Similar idea",
            "keyPoints": ["one", "two"],
        }))

    async def complete(self, system_prompt, user_content, max_retries=3, max_tokens=1500) -> str:
        return self._next(self.completions, '{"questions": []}')


AI_DOWN = AIServiceError("AI service error: boom")


class CountingLedger(Ledger):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.authorize_calls = 0

    async def authorize(self, price, description=""):
        self.authorize_calls += 1
        return await super().authorize(price, description)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store(tmp_path):
    return FreeQuotaStore(str(tmp_path / "quota.json"))


@pytest.fixture
def ai():
    return FakeAI()


@pytest.fixture
def make_machine(backend, store, ai):
    def _make(balance: int = 100, free_used: int = 0, seed: int = 3, live_clock: bool = False) -> SessionMachine:
        backend.balance = balance
        store.save(USER_ID, free_used)
        client = backend.client()
        ledger = CountingLedger(client, USER_ID, store, balance=balance)
        return SessionMachine(
            USER_ID,
            QuestionBankLoader(client, rng=random.Random(seed)),
            ledger,
            ai,
            SessionRecords(client),
            live_clock=live_clock,
            check_delay=0,
        )
    return _make
