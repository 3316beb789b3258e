import json, os, aiosqlite
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from assessment.models import Bookmark, QuizMode, RecallRecord, SessionRecord

DB_PATH = os.environ.get("DB_PATH", "data/assessment.db")

CREATE_SQL = """
CREATE TABLE IF NOT EXISTS quiz_sessions (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id            TEXT    NOT NULL,
    assessment_id      TEXT    NOT NULL,
    module_id          TEXT    NOT NULL,
    mode               TEXT    NOT NULL,
    questions_order    TEXT    DEFAULT '[]',
    time_limit_seconds INTEGER,
    answers            TEXT    DEFAULT '{}',
    is_completed       INTEGER DEFAULT 0,
    created_at         TEXT,
    updated_at         TEXT,
    completed_at       TEXT,
    time_spent_seconds INTEGER
);
CREATE TABLE IF NOT EXISTS bookmarks (
    user_id        TEXT    NOT NULL,
    module_id      TEXT    NOT NULL,
    question_index INTEGER NOT NULL,
    question_key   TEXT    NOT NULL,
    note           TEXT,
    updated_at     TEXT,
    PRIMARY KEY (user_id, module_id, question_index)
);
CREATE TABLE IF NOT EXISTS recall_records (
    user_id      TEXT    NOT NULL,
    module_id    TEXT    NOT NULL,
    question_key TEXT    NOT NULL,
    ease_factor  REAL    DEFAULT 2.5,
    interval     INTEGER DEFAULT 0,
    repetitions  INTEGER DEFAULT 0,
    next_due     TEXT    NOT NULL,
    last_review  TEXT,
    PRIMARY KEY (user_id, module_id, question_key)
);
CREATE INDEX IF NOT EXISTS ix_recall_due ON recall_records (user_id, module_id, next_due);
CREATE TABLE IF NOT EXISTS attempts (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id       TEXT    NOT NULL,
    assessment_id TEXT    NOT NULL,
    answers       TEXT    DEFAULT '{}',
    score         INTEGER NOT NULL,
    passed        INTEGER NOT NULL,
    created_at    TEXT
);
CREATE TABLE IF NOT EXISTS progress (
    user_id            TEXT    NOT NULL,
    module_id          TEXT    NOT NULL,
    status             TEXT    NOT NULL,
    completion_percent INTEGER DEFAULT 0,
    completed_at       TEXT,
    PRIMARY KEY (user_id, module_id)
);
"""

# columns update_session may touch
_SESSION_PATCHABLE = {"answers", "is_completed", "completed_at", "time_spent_seconds"}


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _answers_json(answers: Dict[int, int]) -> str:
    return json.dumps({str(k): v for k, v in answers.items()})


def _answers(raw: Optional[str]) -> Dict[int, int]:
    return {int(k): v for k, v in json.loads(raw or "{}").items()}


def _session_row(r) -> SessionRecord:
    return SessionRecord(
        id=r[0], user_id=r[1], assessment_id=r[2], module_id=r[3],
        mode=QuizMode(r[4]),
        questions_order=json.loads(r[5] or "[]"),
        time_limit_seconds=r[6],
        answers=_answers(r[7]),
        is_completed=bool(r[8]),
        created_at=_dt(r[9]),
        completed_at=_dt(r[11]),
        time_spent_seconds=r[12],
    )


def _recall_row(r) -> RecallRecord:
    return RecallRecord(
        user_id=r[0], module_id=r[1], question_key=r[2],
        ease_factor=r[3], interval=r[4], repetitions=r[5],
        next_due=_dt(r[6]), last_review=_dt(r[7]),
    )


class Database:
    """SQLite store behind the engine's session, bookmark, recall and attempt calls."""

    def __init__(self, path: str = DB_PATH):
        self.path = path
        folder = os.path.dirname(path)
        if folder:
            os.makedirs(folder, exist_ok=True)

    async def init(self):
        async with aiosqlite.connect(self.path) as d:
            await d.executescript(CREATE_SQL)
            await d.commit()

    # ── sessions ──────────────────────────────────────────────────────
    async def create_session(self, s: SessionRecord) -> int:
        async with aiosqlite.connect(self.path) as d:
            cur = await d.execute(
                """INSERT INTO quiz_sessions
                   (user_id,assessment_id,module_id,mode,questions_order,
                    time_limit_seconds,answers,is_completed,created_at,updated_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?)""",
                (s.user_id, s.assessment_id, s.module_id, QuizMode(s.mode).value,
                 json.dumps(s.questions_order), s.time_limit_seconds,
                 _answers_json(s.answers), int(s.is_completed),
                 _iso(s.created_at), _now())
            )
            await d.commit()
            return cur.lastrowid

    async def update_session(self, session_id: int, patch: Dict[str, Any]):
        unknown = set(patch) - _SESSION_PATCHABLE
        if unknown:
            raise ValueError(f"cannot patch session columns: {sorted(unknown)}")
        values = dict(patch)
        if "answers" in values:
            values["answers"] = _answers_json(values["answers"])
        if "is_completed" in values:
            values["is_completed"] = int(values["is_completed"])
        if "completed_at" in values:
            values["completed_at"] = _iso(values["completed_at"])
        values["updated_at"] = _now()
        cols = ",".join(f"{k}=?" for k in values)
        async with aiosqlite.connect(self.path) as d:
            await d.execute(f"UPDATE quiz_sessions SET {cols} WHERE id=?",
                            (*values.values(), session_id))
            await d.commit()

    async def get_session(self, session_id: int) -> Optional[SessionRecord]:
        async with aiosqlite.connect(self.path) as d:
            async with d.execute("SELECT * FROM quiz_sessions WHERE id=?", (session_id,)) as c:
                r = await c.fetchone()
                return _session_row(r) if r else None

    # ── bookmarks & notes ─────────────────────────────────────────────
    async def upsert_bookmark(self, user_id: str, module_id: str, question_index: int,
                              question_key: str, note: Optional[str] = None):
        async with aiosqlite.connect(self.path) as d:
            await d.execute(
                """INSERT INTO bookmarks (user_id,module_id,question_index,question_key,note,updated_at)
                   VALUES (?,?,?,?,?,?)
                   ON CONFLICT (user_id,module_id,question_index) DO UPDATE SET
                   question_key=excluded.question_key, note=excluded.note,
                   updated_at=excluded.updated_at""",
                (user_id, module_id, question_index, question_key, note, _now())
            )
            await d.commit()

    async def delete_bookmark(self, user_id: str, module_id: str, question_index: int) -> bool:
        async with aiosqlite.connect(self.path) as d:
            c = await d.execute(
                "DELETE FROM bookmarks WHERE user_id=? AND module_id=? AND question_index=?",
                (user_id, module_id, question_index)
            )
            await d.commit()
            return c.rowcount > 0

    async def list_bookmarks(self, user_id: str, module_id: str) -> List[Bookmark]:
        async with aiosqlite.connect(self.path) as d:
            async with d.execute(
                """SELECT question_index,question_key,note FROM bookmarks
                   WHERE user_id=? AND module_id=? ORDER BY question_index""",
                (user_id, module_id)
            ) as c:
                return [Bookmark(user_id=user_id, module_id=module_id,
                                 question_index=r[0], question_key=r[1], note=r[2])
                        for r in await c.fetchall()]

    # ── recall ────────────────────────────────────────────────────────
    async def get_recall_record(self, user_id: str, module_id: str,
                                question_key: str) -> Optional[RecallRecord]:
        async with aiosqlite.connect(self.path) as d:
            async with d.execute(
                """SELECT * FROM recall_records
                   WHERE user_id=? AND module_id=? AND question_key=?""",
                (user_id, module_id, question_key)
            ) as c:
                r = await c.fetchone()
                return _recall_row(r) if r else None

    async def upsert_recall_record(self, rec: RecallRecord):
        async with aiosqlite.connect(self.path) as d:
            await d.execute(
                """INSERT INTO recall_records
                   (user_id,module_id,question_key,ease_factor,interval,repetitions,next_due,last_review)
                   VALUES (?,?,?,?,?,?,?,?)
                   ON CONFLICT (user_id,module_id,question_key) DO UPDATE SET
                   ease_factor=excluded.ease_factor, interval=excluded.interval,
                   repetitions=excluded.repetitions, next_due=excluded.next_due,
                   last_review=excluded.last_review""",
                (rec.user_id, rec.module_id, rec.question_key, rec.ease_factor,
                 rec.interval, rec.repetitions, _iso(rec.next_due), _iso(rec.last_review))
            )
            await d.commit()

    async def list_due(self, user_id: str, module_id: str,
                       now: Optional[datetime] = None) -> List[str]:
        now_iso = _iso(now) if now else _now()
        async with aiosqlite.connect(self.path) as d:
            async with d.execute(
                """SELECT question_key FROM recall_records
                   WHERE user_id=? AND module_id=? AND next_due<=? ORDER BY next_due""",
                (user_id, module_id, now_iso)
            ) as c:
                return [r[0] for r in await c.fetchall()]

    # ── attempts & progress ───────────────────────────────────────────
    async def record_attempt(self, user_id: str, assessment_id: str,
                             answers: Dict[int, int], score: int, passed: bool) -> int:
        async with aiosqlite.connect(self.path) as d:
            cur = await d.execute(
                """INSERT INTO attempts (user_id,assessment_id,answers,score,passed,created_at)
                   VALUES (?,?,?,?,?,?)""",
                (user_id, assessment_id, _answers_json(answers), score, int(passed), _now())
            )
            await d.commit()
            return cur.lastrowid

    async def list_attempts(self, user_id: str, assessment_id: str) -> List[dict]:
        async with aiosqlite.connect(self.path) as d:
            async with d.execute(
                """SELECT id,answers,score,passed,created_at FROM attempts
                   WHERE user_id=? AND assessment_id=? ORDER BY id""",
                (user_id, assessment_id)
            ) as c:
                return [{"id": r[0], "answers": _answers(r[1]), "score": r[2],
                         "passed": bool(r[3]), "created_at": r[4]}
                        for r in await c.fetchall()]

    async def mark_module_completed(self, user_id: str, module_id: str):
        async with aiosqlite.connect(self.path) as d:
            await d.execute(
                """INSERT INTO progress (user_id,module_id,status,completion_percent,completed_at)
                   VALUES (?,?,'completed',100,?)
                   ON CONFLICT (user_id,module_id) DO UPDATE SET
                   status='completed', completion_percent=100,
                   completed_at=excluded.completed_at""",
                (user_id, module_id, _now())
            )
            await d.commit()

    async def get_progress(self, user_id: str, module_id: str) -> Optional[dict]:
        async with aiosqlite.connect(self.path) as d:
            async with d.execute(
                "SELECT status,completion_percent,completed_at FROM progress WHERE user_id=? AND module_id=?",
                (user_id, module_id)
            ) as c:
                r = await c.fetchone()
                return {"status": r[0], "completion_percent": r[1], "completed_at": r[2]} if r else None
