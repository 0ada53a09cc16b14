"""
api/routes.py — FastAPI endpoints over the practice session engine
"""

from typing import Any, Dict

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from pydantic import BaseModel

import api.session as session
from config import MAX_UPLOAD_SIZE
from exam_practice.engine.session_machine import SessionMachine
from exam_practice.models.session_state import ViewState
from exam_practice.services.backend_client import BackendClient, BackendError, VerificationRequired
from exam_practice.services.ocr_ingest import OCRError, ingest

router = APIRouter()

# ── Pydantic request bodies ──────────────────────────────────────────────────

class LoginBody(BaseModel):
    username: str
    password: str

class SetupBody(BaseModel):
    number_of_questions: int
    time_in_minutes: int

class AnswerBody(BaseModel):
    option: str
    index: int | None = None

class NavigateBody(BaseModel):
    index: int = 0

class BackBody(BaseModel):
    target: str = "subjects"


# ── Helpers ──────────────────────────────────────────────────────────────────

def _engine(request: Request) -> SessionMachine:
    engine = session.get(request.state.session_id, "engine")
    if engine is None:
        raise HTTPException(status_code=401, detail="Please log in to continue.")
    return engine


def _reply(engine: SessionMachine, **payload: Any) -> Dict[str, Any]:
    return {
        **payload,
        "state": engine.snapshot(),
        "notices": [n.model_dump() for n in engine.drain_notices()],
    }


# ── Endpoints ────────────────────────────────────────────────────────────────

@router.post("/api/login")
async def login(body: LoginBody, request: Request):
    app = request.app
    client = BackendClient(transport=app.state.backend_transport)
    try:
        identity = await client.login(body.username.strip(), body.password)
    except VerificationRequired as e:
        await client.aclose()
        raise HTTPException(status_code=403, detail=e.message)
    except BackendError as e:
        await client.aclose()
        raise HTTPException(status_code=401, detail=e.message or "Invalid credentials")

    sid = request.state.session_id
    await session.close_state(session.reset(sid))

    engine = SessionMachine.for_user(
        identity.user_id, client, app.state.ai, app.state.quota_store,
        live_clock=app.state.live_clock,
    )
    session.put(sid, "identity", identity)
    session.put(sid, "client", client)
    session.put(sid, "engine", engine)

    await engine.open()
    return _reply(
        engine,
        ok=True,
        user={"id": identity.user_id, "email": identity.email, "roles": identity.roles},
        exams=[e.model_dump() for e in engine.exams],
    )


@router.post("/api/logout")
async def logout(request: Request):
    await session.close_state(session.reset(request.state.session_id))
    return {"ok": True}


@router.get("/api/balance")
async def balance(request: Request):
    engine = _engine(request)
    value = await engine.ledger.refresh_balance()
    return _reply(engine, balance=value, free_remaining=engine.ledger.free_remaining)


@router.get("/api/state")
async def state(request: Request):
    return _reply(_engine(request))


@router.get("/api/exams")
async def list_exams(request: Request):
    engine = _engine(request)
    exams = await engine.load_exams()
    return _reply(engine, exams=[e.model_dump() for e in exams])


@router.post("/api/exams/{exam_id}/select")
async def select_exam(exam_id: int, request: Request):
    engine = _engine(request)
    ok = await engine.select_exam(exam_id)
    return _reply(engine, ok=ok, subjects=[s.model_dump() for s in engine.subjects])


@router.post("/api/subjects/{subject_id}/select")
async def select_subject(subject_id: int, request: Request):
    engine = _engine(request)
    return _reply(engine, ok=engine.select_subject(subject_id))


@router.post("/api/setup")
async def configure(body: SetupBody, request: Request):
    engine = _engine(request)
    ok = engine.configure(body.number_of_questions, body.time_in_minutes)
    return _reply(engine, ok=ok)


@router.post("/api/start")
async def start_test(request: Request):
    engine = _engine(request)
    ok = await engine.start_test()
    return _reply(engine, ok=ok, question=engine.question_view(0) if ok else None)


@router.get("/api/question/{index}")
async def get_question(index: int, request: Request):
    engine = _engine(request)
    data = engine.question_view(index)
    if data is None:
        raise HTTPException(status_code=404, detail="Question not found.")
    return _reply(engine, question=data)


@router.post("/api/answer")
async def save_answer(body: AnswerBody, request: Request):
    engine = _engine(request)
    ok = engine.select_option(body.option, body.index)
    return _reply(engine, ok=ok)


@router.post("/api/navigate")
async def navigate(body: NavigateBody, request: Request):
    engine = _engine(request)
    if engine.view != ViewState.IN_PROGRESS:
        raise HTTPException(status_code=400, detail="No test in progress.")
    idx = engine.navigate(body.index)
    return _reply(engine, index=idx, question=engine.question_view(idx))


@router.post("/api/assist/{index}/explanation")
async def toggle_explanation(index: int, request: Request):
    engine = _engine(request)
    shown = await engine.toggle_explanation(index)
    return _reply(engine, shown=shown, question=engine.question_view(index))


@router.post("/api/assist/{index}/check")
async def check_answer(index: int, request: Request):
    engine = _engine(request)
    correct = await engine.check_answer(index)
    return _reply(engine, correct=correct, question=engine.question_view(index))


@router.post("/api/assist/{index}/example")
async def generate_example(index: int, request: Request):
    engine = _engine(request)
    ok = await engine.generate_example(index)
    return _reply(engine, ok=ok, question=engine.question_view(index))


@router.post("/api/submit")
async def submit_test(request: Request):
    engine = _engine(request)
    results = await engine.submit()
    return _reply(engine, ok=results is not None, results=engine.results_view())


@router.get("/api/results")
async def get_results(request: Request):
    engine = _engine(request)
    data = engine.results_view()
    if data is None:
        raise HTTPException(status_code=404, detail="No results yet.")
    return _reply(engine, results=data)


@router.post("/api/back")
async def go_back(body: BackBody, request: Request):
    engine = _engine(request)
    if body.target == "subjects":
        ok = engine.back_to_subjects()
    elif body.target == "exams":
        engine.back_to_exams()
        ok = True
    else:
        raise HTTPException(status_code=400, detail="target must be 'subjects' or 'exams'.")
    return _reply(engine, ok=ok)


@router.post("/api/reset")
async def reset_test(request: Request):
    engine = _engine(request)
    engine.reset()
    return _reply(engine, ok=True)


@router.post("/api/ocr")
async def ocr_upload(request: Request, file: UploadFile = File(...)):
    identity = session.get(request.state.session_id, "identity")
    if identity is None:
        raise HTTPException(status_code=401, detail="Please log in to continue.")
    if not set(identity.roles) & {"ROLE_ADMIN", "ROLE_STAFF"}:
        raise HTTPException(status_code=403, detail="Question ingestion is restricted to staff.")

    file_bytes = await file.read()
    if not file_bytes:
        raise HTTPException(status_code=400, detail="No file provided")
    if len(file_bytes) > MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File is too large (max 10MB).")

    try:
        drafts, raw_text = await ingest(file_bytes, file.filename or "upload.png", request.app.state.ai)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except OCRError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "ok": True,
        "count": len(drafts),
        "questions": [d.model_dump() for d in drafts],
        "raw": raw_text if not drafts else None,
    }
