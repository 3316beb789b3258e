"""
Assessment API: FastAPI
Run: python -m quiz_api.main  (or uvicorn quiz_api.main:app --reload)
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from assessment.database import Database
from assessment.errors import InvalidTransition
from assessment.identity import derive_key
from assessment.models import Assessment, Question, QuizMode
from assessment.notifier import Notifier
from assessment.scheduler import engine
from assessment.session import QuizSession
from config.settings import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=settings.LOG_LEVEL,
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Assessment Engine", version="1.0")
app.add_middleware(CORSMiddleware, allow_origins=["*"],
                   allow_methods=["*"], allow_headers=["*"])

db = Database(settings.DB_PATH)
notifier: Optional[Notifier] = None
sessions: Dict[str, QuizSession] = {}
_touched: Dict[str, float] = {}
_clock = time.monotonic


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


class QuestionPayload(BaseModel):
    question: str
    options: List[str]
    correct_answer: int = 0

    def to_question(self) -> Question:
        return Question(text=self.question, options=tuple(self.options),
                        correct_index=self.correct_answer)


class AssessmentPayload(BaseModel):
    id: str
    module_id: str
    title: str = ""
    questions: List[QuestionPayload]
    passing_score: int = Field(70, ge=0, le=100)
    time_limit_minutes: int = Field(30, ge=0)


class StartPayload(BaseModel):
    user_id: str
    assessment: AssessmentPayload
    mode: QuizMode = QuizMode.PRACTICE


class ModePayload(BaseModel):
    mode: QuizMode


class AnswerPayload(BaseModel):
    question_index: int
    option_index: int


class NavigatePayload(BaseModel):
    index: int


class NotePayload(BaseModel):
    text: str = ""


class SchedulePayload(BaseModel):
    ease_factor: float = 2.5
    repetitions: int = Field(0, ge=0)
    interval: Optional[int] = None
    quality: int


async def _evict_idle():
    now = _clock()
    idle = [sid for sid, t in _touched.items() if now - t > settings.SESSION_TTL_SECONDS]
    for sid in idle:
        _touched.pop(sid, None)
        s = sessions.pop(sid, None)
        if s is not None:
            logger.info(f"session {sid} idle, evicting")
            await s.close()


async def _get(sid: str) -> QuizSession:
    await _evict_idle()
    s = sessions.get(sid)
    if not s:
        raise HTTPException(404, "session not found")
    _touched[sid] = _clock()
    return s


def _view(sid: str, s: QuizSession) -> dict:
    return {"id": sid, **s.snapshot()}


@app.post("/api/sessions")
async def start_session(p: StartPayload):
    a = p.assessment
    assessment = Assessment(
        id=a.id, module_id=a.module_id, title=a.title,
        questions=[q.to_question() for q in a.questions],
        passing_score=a.passing_score, time_limit_minutes=a.time_limit_minutes,
    )
    await _evict_idle()
    s = QuizSession(assessment, p.user_id, db, notifier)
    await s.select_mode(p.mode)
    sid = uuid.uuid4().hex
    sessions[sid] = s
    _touched[sid] = _clock()
    logger.info(f"session {sid} started: {p.user_id} on {a.id} ({p.mode.value})")
    return _view(sid, s)


@app.get("/api/sessions/{sid}")
async def get_session(sid: str):
    return _view(sid, await _get(sid))


@app.post("/api/sessions/{sid}/mode")
async def select_mode(sid: str, p: ModePayload):
    s = await _get(sid)
    await s.select_mode(p.mode)
    return _view(sid, s)


@app.post("/api/sessions/{sid}/answers")
async def select_answer(sid: str, p: AnswerPayload):
    s = await _get(sid)
    s.select_answer(p.question_index, p.option_index)
    return _view(sid, s)


@app.post("/api/sessions/{sid}/navigate")
async def navigate(sid: str, p: NavigatePayload):
    s = await _get(sid)
    s.go_to(p.index)
    return _view(sid, s)


@app.post("/api/sessions/{sid}/next")
async def next_question(sid: str):
    s = await _get(sid)
    s.next()
    return _view(sid, s)


@app.post("/api/sessions/{sid}/previous")
async def previous_question(sid: str):
    s = await _get(sid)
    s.previous()
    return _view(sid, s)


@app.post("/api/sessions/{sid}/bookmarks/{index}")
async def toggle_bookmark(sid: str, index: int):
    s = await _get(sid)
    s.toggle_bookmark(index)
    return _view(sid, s)


@app.put("/api/sessions/{sid}/notes/{index}")
async def set_note(sid: str, index: int, p: NotePayload):
    s = await _get(sid)
    s.set_note(index, p.text)
    return _view(sid, s)


@app.post("/api/sessions/{sid}/pause")
async def pause(sid: str):
    s = await _get(sid)
    s.pause()
    return _view(sid, s)


@app.post("/api/sessions/{sid}/resume")
async def resume(sid: str):
    s = await _get(sid)
    s.resume()
    return _view(sid, s)


@app.post("/api/sessions/{sid}/submit")
async def submit(sid: str):
    s = await _get(sid)
    await s.submit()
    return _view(sid, s)


@app.post("/api/sessions/{sid}/reset")
async def reset(sid: str):
    s = await _get(sid)
    await s.reset()
    return _view(sid, s)


@app.delete("/api/sessions/{sid}")
async def close_session(sid: str):
    s = sessions.pop(sid, None)
    if not s:
        raise HTTPException(404, "session not found")
    _touched.pop(sid, None)
    await s.close()
    return {"success": True}


@app.post("/api/questions/key")
async def question_key(p: QuestionPayload):
    return {"key": derive_key(p.to_question())}


@app.post("/api/recall/schedule")
async def schedule(p: SchedulePayload):
    s = engine.schedule(p.ease_factor, p.repetitions, p.quality, prior_interval=p.interval)
    return {"ease_factor": s.ease_factor, "interval": s.interval, "repetitions": s.repetitions}


@app.get("/api/recall/due")
async def due(user_id: str, module_id: str):
    return await db.list_due(user_id, module_id, datetime.now(timezone.utc))


@app.on_event("startup")
async def startup():
    global notifier
    await db.init()
    if settings.NOTIFY_BASE_URL:
        notifier = Notifier(settings.NOTIFY_BASE_URL, settings.NOTIFY_TIMEOUT)
    logger.info("Assessment API started")


@app.on_event("shutdown")
async def shutdown():
    for s in list(sessions.values()):
        await s.close()
    sessions.clear()
    _touched.clear()
    if notifier is not None:
        await notifier.aclose()


def run():
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    run()
