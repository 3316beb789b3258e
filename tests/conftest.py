import os
import sys
import tempfile

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# keep the API module's database out of the working tree
os.environ.setdefault("DB_PATH", os.path.join(tempfile.mkdtemp(), "assessment.db"))

from assessment.database import Database
from assessment.models import Assessment, Bookmark, Question


QUESTIONS = [
    Question("Normal adult resting heart rate?", ("30-50", "60-100", "110-140"), 1),
    Question("First step for an unresponsive adult?", ("Check scene safety", "Give water", "Leave"), 0),
    Question("Compression depth for adult CPR?", ("1 cm", "2 cm", "5-6 cm"), 2),
]


def make_assessment(questions=None, passing_score=70, time_limit_minutes=30):
    return Assessment(id="asm-1", module_id="mod-1",
                      questions=list(questions or QUESTIONS),
                      passing_score=passing_score,
                      time_limit_minutes=time_limit_minutes,
                      title="Vital signs")


class FakeStore:
    """In-memory stand-in for the persistence layer that records every call."""

    def __init__(self):
        self.calls = []
        self.sessions = {}
        self.bookmarks = {}
        self.recall = {}
        self.attempts = []
        self.completed_modules = []
        self.due_keys = []

    async def create_session(self, record):
        self.calls.append(("create_session", record.mode))
        sid = len(self.sessions) + 1
        self.sessions[sid] = {"record": record, "patches": []}
        return sid

    async def update_session(self, session_id, patch):
        self.calls.append(("update_session", session_id))
        self.sessions[session_id]["patches"].append(patch)

    async def upsert_bookmark(self, user_id, module_id, question_index, question_key, note=None):
        self.calls.append(("upsert_bookmark", question_index, note))
        self.bookmarks[(user_id, module_id, question_index)] = Bookmark(
            user_id, module_id, question_index, question_key, note)

    async def delete_bookmark(self, user_id, module_id, question_index):
        self.calls.append(("delete_bookmark", question_index))
        return self.bookmarks.pop((user_id, module_id, question_index), None) is not None

    async def list_bookmarks(self, user_id, module_id):
        return [b for (u, m, _), b in sorted(self.bookmarks.items())
                if u == user_id and m == module_id]

    async def get_recall_record(self, user_id, module_id, question_key):
        return self.recall.get((user_id, module_id, question_key))

    async def upsert_recall_record(self, rec):
        self.calls.append(("upsert_recall_record", rec.question_key))
        self.recall[(rec.user_id, rec.module_id, rec.question_key)] = rec

    async def list_due(self, user_id, module_id, now=None):
        return list(self.due_keys)

    async def record_attempt(self, user_id, assessment_id, answers, score, passed):
        self.attempts.append({"user_id": user_id, "assessment_id": assessment_id,
                              "answers": answers, "score": score, "passed": passed})
        return len(self.attempts)

    async def mark_module_completed(self, user_id, module_id):
        self.completed_modules.append((user_id, module_id))


class FailingStore(FakeStore):
    """Every write fails the way an unreachable database would."""

    async def _fail(self, *args, **kwargs):
        raise ConnectionError("database unreachable")

    create_session = _fail
    update_session = _fail
    upsert_bookmark = _fail
    delete_bookmark = _fail
    list_bookmarks = _fail
    get_recall_record = _fail
    upsert_recall_record = _fail
    list_due = _fail
    record_attempt = _fail
    mark_module_completed = _fail


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def _send(self, *event):
        self.sent.append(event)
        if self.fail:
            raise ConnectionError("notification endpoint down")

    async def award_points(self, user_id, points, reason):
        await self._send("award_points", user_id, points)

    async def request_certificate(self, user_id, module_id):
        await self._send("request_certificate", user_id, module_id)

    async def update_streak(self, user_id):
        await self._send("update_streak", user_id)


@pytest.fixture
def assessment():
    return make_assessment()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def database(tmp_path):
    return Database(str(tmp_path / "test.db"))
