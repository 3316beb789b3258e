"""
Quiz session state machine.

selecting_mode -> in_progress -> submitting -> completed, with a running/paused
timer inside in_progress for timed mode. Local state changes happen
synchronously; every persistence or notification call runs as a detached task
whose failure is logged and never rolls local state back.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from assessment.analytics import analytics
from assessment.errors import InvalidTransition
from assessment.identity import derive_key
from assessment.models import (
    Assessment, QuizMode, RecallRecord, Result, SessionRecord, SessionState,
)
from assessment.scheduler import engine, is_due
from config.settings import settings

logger = logging.getLogger(__name__)


class QuizSession:

    def __init__(self, assessment: Assessment, user_id: str, store, notifier=None, *,
                 tick_seconds: Optional[float] = None,
                 hurry_seconds: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        if not assessment.questions:
            raise ValueError("assessment has no questions")
        self.assessment = assessment
        self.user_id = user_id
        self.store = store
        self.notifier = notifier
        self.tick_seconds = settings.TICK_SECONDS if tick_seconds is None else tick_seconds
        self.hurry_seconds = settings.HURRY_SECONDS if hurry_seconds is None else hurry_seconds
        self._clock = clock

        self.state = SessionState.SELECTING_MODE
        self.mode = QuizMode.PRACTICE
        self.current_index = 0
        self.answers: Dict[int, int] = {}
        self.bookmarks: Set[int] = set()
        self.notes: Dict[int, str] = {}
        self.due_indices: List[int] = []
        self.time_remaining = assessment.time_budget_seconds
        self.paused = False
        self.result: Optional[Result] = None
        self.session_id: Optional[int] = None

        self._keys = [derive_key(q) for q in assessment.questions]
        self._answered_in_mode = False
        self._started_at = clock()
        self._timer: Optional[asyncio.Task] = None
        self._session_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._bookmark_lock = asyncio.Lock()
        self._session_lock = asyncio.Lock()
        self._recall_locks: Dict[str, asyncio.Lock] = {}
        self._bookmark_writes: Set[asyncio.Task] = set()

    # ── derived state ─────────────────────────────────────────────────
    @property
    def questions(self):
        return self.assessment.questions

    @property
    def module_id(self) -> str:
        return self.assessment.module_id

    @property
    def total(self) -> int:
        return len(self.questions)

    def key_for(self, question_index: int) -> str:
        self._check_index(question_index)
        return self._keys[question_index]

    @property
    def can_go_previous(self) -> bool:
        return self.current_index > 0

    @property
    def can_go_next(self) -> bool:
        return self.current_index < self.total - 1

    @property
    def on_last_question(self) -> bool:
        return self.current_index == self.total - 1

    @property
    def progress(self) -> float:
        return (self.current_index + 1) / self.total

    @property
    def timer_running(self) -> bool:
        return (self.mode == QuizMode.TIMED and self.state == SessionState.IN_PROGRESS
                and not self.paused)

    @property
    def is_hurry(self) -> bool:
        return analytics.is_hurry(self.time_remaining, self.hurry_seconds)

    @property
    def elapsed_seconds(self) -> int:
        if self.mode == QuizMode.TIMED:
            return self.assessment.time_budget_seconds - self.time_remaining
        return int(self._clock() - self._started_at)

    def snapshot(self) -> Dict[str, Any]:
        budget = self.assessment.time_budget_seconds
        snap = {
            "state": self.state.value,
            "mode": self.mode.value,
            "current_index": self.current_index,
            "total": self.total,
            "answers": dict(self.answers),
            "bookmarks": sorted(self.bookmarks),
            "notes": dict(self.notes),
            "due_indices": list(self.due_indices),
            "can_go_previous": self.can_go_previous,
            "can_go_next": self.can_go_next,
            "on_last_question": self.on_last_question,
            "session_id": self.session_id,
            "result": None,
        }
        if self.mode == QuizMode.TIMED:
            snap.update({
                "time_remaining": self.time_remaining,
                "time_display": analytics.format_time(self.time_remaining),
                "time_percentage": analytics.time_percentage(self.time_remaining, budget),
                "paused": self.paused,
                "hurry": self.is_hurry,
            })
        if self.result is not None:
            r = self.result
            answered = sum(1 for o in r.outcomes if o.selected is not None)
            snap["result"] = {
                "score": r.score, "passed": r.passed,
                "correct": r.correct_count, "incorrect": r.incorrect_count,
                "total": r.total, "elapsed_seconds": r.elapsed_seconds,
                "questions_per_minute": analytics.questions_per_minute(answered, r.elapsed_seconds),
                "seconds_per_question": analytics.seconds_per_question(r.elapsed_seconds, answered),
                "outcomes": [{"index": o.index, "key": o.key, "selected": o.selected,
                              "correct_index": o.correct_index, "is_correct": o.is_correct}
                             for o in r.outcomes],
            }
        return snap

    # ── guards ────────────────────────────────────────────────────────
    def _require(self, operation: str, *states: SessionState):
        if self.state not in states:
            raise InvalidTransition(operation, self.state.value)

    def _check_index(self, question_index: int):
        if not 0 <= question_index < self.total:
            raise ValueError(f"question index {question_index} out of range 0..{self.total - 1}")

    # ── detached side effects ─────────────────────────────────────────
    def _spawn(self, coro, what: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, what))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @staticmethod
    async def _guard(coro, what: str):
        try:
            return await coro
        except Exception as e:
            logger.error(f"{what} failed: {e}")
            return None

    async def drain(self):
        """Wait for in-flight detached writes; their failures are already logged."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self):
        self._stop_timer()
        await self.drain()

    # ── session record ────────────────────────────────────────────────
    def _open_record(self):
        timed = self.mode == QuizMode.TIMED
        record = SessionRecord(
            user_id=self.user_id,
            assessment_id=self.assessment.id,
            module_id=self.module_id,
            mode=self.mode,
            questions_order=list(range(self.total)),
            time_limit_seconds=self.assessment.time_budget_seconds if timed else None,
        )
        self.session_id = None
        self._session_task = self._spawn(self._create_record(record), "create quiz session")

    async def _create_record(self, record: SessionRecord) -> int:
        sid = await self.store.create_session(record)
        # a reset may have opened a newer record meanwhile
        if self._session_task is asyncio.current_task():
            self.session_id = sid
        logger.info(f"quiz session {sid} created ({record.mode.value}) for {self.user_id}")
        return sid

    @staticmethod
    async def _record_id(task: Optional[asyncio.Task]) -> Optional[int]:
        if task is None:
            return None
        return await asyncio.shield(task)

    async def _sync_answers(self, task: Optional[asyncio.Task], answers: Dict[int, int]):
        sid = await self._record_id(task)
        if sid is None:
            logger.debug("answers kept local, no quiz session record")
            return
        async with self._session_lock:
            await self.store.update_session(sid, {"answers": answers})

    async def _complete_record(self, task: Optional[asyncio.Task], time_spent: Optional[int]):
        sid = await self._record_id(task)
        if sid is None:
            return
        async with self._session_lock:
            await self.store.update_session(sid, {
                "is_completed": True,
                "completed_at": datetime.now(timezone.utc),
                "time_spent_seconds": time_spent,
            })

    # ── mode ──────────────────────────────────────────────────────────
    async def select_mode(self, mode) -> None:
        mode = QuizMode(mode)
        self._require("select_mode", SessionState.SELECTING_MODE, SessionState.IN_PROGRESS)
        if self._answered_in_mode:
            raise InvalidTransition("select_mode", self.state.value,
                                    f"mode is locked once answers are recorded in {self.mode.value} mode")
        self._stop_timer()
        self.mode = mode
        self.current_index = 0
        self.time_remaining = self.assessment.time_budget_seconds
        self.paused = False
        self.due_indices = []
        self._started_at = self._clock()
        self._session_task = None
        self.session_id = None
        self.state = SessionState.IN_PROGRESS

        if mode != QuizMode.PRACTICE:
            self._open_record()
        await self._load_bookmarks()
        if mode == QuizMode.SPACED_REPETITION:
            await self._load_due()
        if mode == QuizMode.TIMED:
            self._start_timer()

    async def _load_bookmarks(self):
        # queued bookmark writes land before the reload
        if self._bookmark_writes:
            await asyncio.gather(*list(self._bookmark_writes))
        try:
            rows = await self.store.list_bookmarks(self.user_id, self.module_id)
        except Exception as e:
            logger.error(f"load bookmarks failed: {e}")
            return
        self.bookmarks = {b.question_index for b in rows if b.question_index < self.total}
        for b in rows:
            if b.question_index >= self.total:
                continue
            if b.note and b.question_index not in self.notes:
                self.notes[b.question_index] = b.note

    async def _load_due(self):
        try:
            keys = set(await self.store.list_due(self.user_id, self.module_id,
                                                 datetime.now(timezone.utc)))
        except Exception as e:
            logger.error(f"load due questions failed: {e}")
            return
        self.due_indices = [i for i, k in enumerate(self._keys) if k in keys]
        logger.debug(f"{len(self.due_indices)} of {self.total} questions due for review")

    # ── answers & navigation ──────────────────────────────────────────
    def select_answer(self, question_index: int, option_index: int):
        self._require("select_answer", SessionState.IN_PROGRESS)
        self._check_index(question_index)
        n_options = len(self.questions[question_index].options)
        if not 0 <= option_index < n_options:
            raise ValueError(f"option index {option_index} out of range 0..{n_options - 1}")
        self.answers[question_index] = option_index
        if self.mode != QuizMode.PRACTICE:
            self._answered_in_mode = True
            self._spawn(self._sync_answers(self._session_task, dict(self.answers)), "save answers")

    def go_to(self, index: int):
        self._require("go_to", SessionState.IN_PROGRESS)
        self._check_index(index)
        self.current_index = index

    def next(self):
        self._require("next", SessionState.IN_PROGRESS)
        if not self.can_go_next:
            raise InvalidTransition("next", self.state.value, "already on the last question, submit instead")
        self.current_index += 1

    def previous(self):
        self._require("previous", SessionState.IN_PROGRESS)
        if self.can_go_previous:
            self.current_index -= 1

    # ── bookmarks & notes ─────────────────────────────────────────────
    async def _write_bookmark(self, call, *args):
        async with self._bookmark_lock:
            await call(*args)

    def _spawn_bookmark_write(self, what: str, call, *args):
        task = self._spawn(self._write_bookmark(call, *args), what)
        self._bookmark_writes.add(task)
        task.add_done_callback(self._bookmark_writes.discard)

    def toggle_bookmark(self, question_index: int) -> bool:
        """Flip the bookmark on a question; returns whether it is now bookmarked."""
        self._require("toggle_bookmark", SessionState.IN_PROGRESS, SessionState.COMPLETED)
        self._check_index(question_index)
        if question_index in self.bookmarks:
            self.bookmarks.discard(question_index)
            self._spawn_bookmark_write("remove bookmark", self.store.delete_bookmark,
                                       self.user_id, self.module_id, question_index)
            return False
        self.bookmarks.add(question_index)
        self._spawn_bookmark_write("add bookmark", self.store.upsert_bookmark,
                                   self.user_id, self.module_id, question_index,
                                   self._keys[question_index],
                                   self.notes.get(question_index) or None)
        return True

    def set_note(self, question_index: int, text: str):
        self._require("set_note", SessionState.IN_PROGRESS, SessionState.COMPLETED)
        self._check_index(question_index)
        self.notes[question_index] = text
        if question_index in self.bookmarks:
            self._spawn_bookmark_write("save note", self.store.upsert_bookmark,
                                       self.user_id, self.module_id, question_index,
                                       self._keys[question_index], text or None)

    # ── timer ─────────────────────────────────────────────────────────
    def _start_timer(self):
        self._stop_timer()
        self._timer = asyncio.create_task(self._run_timer())

    def _stop_timer(self):
        task, self._timer = self._timer, None
        # an expiry tick submits from inside the timer task, which then ends on its own
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run_timer(self):
        while self.mode == QuizMode.TIMED and self.state == SessionState.IN_PROGRESS:
            await asyncio.sleep(self.tick_seconds)
            await self.tick()

    async def tick(self):
        if not self.timer_running:
            return
        if self.time_remaining <= 1:
            self.time_remaining = 0
            logger.info(f"time is up for {self.user_id} on {self.assessment.id}, submitting")
            await self.submit()
        else:
            self.time_remaining -= 1

    def pause(self):
        self._require("pause", SessionState.IN_PROGRESS)
        if self.mode != QuizMode.TIMED:
            raise InvalidTransition("pause", self.mode.value, "only timed sessions can pause")
        self.paused = True
        self._stop_timer()

    def resume(self):
        self._require("resume", SessionState.IN_PROGRESS)
        if self.mode != QuizMode.TIMED:
            raise InvalidTransition("resume", self.mode.value, "only timed sessions can resume")
        if self.paused:
            self.paused = False
            # a fresh tick period starts on resume
            self._start_timer()

    # ── submission ────────────────────────────────────────────────────
    async def submit(self) -> Result:
        self._require("submit", SessionState.IN_PROGRESS)
        self.state = SessionState.SUBMITTING
        self._stop_timer()
        result = analytics.compute_result(self.questions, self.answers,
                                          self.assessment.passing_score, self.elapsed_seconds)
        self.result = result
        self.state = SessionState.COMPLETED
        logger.info(f"{self.user_id} scored {result.score}% on {self.assessment.id} "
                    f"({result.correct_count}/{result.total}, {self.mode.value})")
        self._dispatch(result, dict(self.answers))
        return result

    def _dispatch(self, result: Result, answers: Dict[int, int]):
        if self.mode == QuizMode.SPACED_REPETITION:
            now = datetime.now(timezone.utc)
            for o in result.outcomes:
                self._spawn(self._update_recall(o.key, engine.quality_for(o.is_correct), now),
                            f"update recall record {o.key}")
        self._spawn(self.store.record_attempt(self.user_id, self.assessment.id, answers,
                                              result.score, result.passed),
                    "record attempt")
        if self._session_task is not None:
            timed = self.mode == QuizMode.TIMED
            self._spawn(self._complete_record(self._session_task,
                                              result.elapsed_seconds if timed else None),
                        "complete quiz session")
        self._notify(result)

    async def _update_recall(self, key: str, quality: int, now: datetime):
        lock = self._recall_locks.setdefault(key, asyncio.Lock())
        async with lock:
            rec = await self.store.get_recall_record(self.user_id, self.module_id, key)
            if rec is None:
                rec = RecallRecord(user_id=self.user_id, module_id=self.module_id,
                                   question_key=key, ease_factor=settings.DEFAULT_EASE)
            reviewed = engine.review(rec, quality, now)
            await self.store.upsert_recall_record(reviewed)
        if not is_due(reviewed, now):
            self.due_indices = [i for i in self.due_indices if self._keys[i] != key]

    def _notify(self, result: Result):
        if result.passed:
            self._spawn(self.store.mark_module_completed(self.user_id, self.module_id),
                        "mark module completed")
        if self.notifier is None:
            logger.debug("no notifier configured, skipping points/certificate/streak")
            return
        points = analytics.points_for(result.score, result.passed,
                                      settings.PASS_POINTS_MAX, settings.PARTICIPATION_POINTS)
        if result.passed:
            self._spawn(self.notifier.award_points(
                self.user_id, points, f"Completed assessment with {result.score}% score"),
                "award points")
            self._spawn(self.notifier.request_certificate(self.user_id, self.module_id),
                        "request certificate")
            self._spawn(self.notifier.update_streak(self.user_id), "update streak")
        else:
            self._spawn(self.notifier.award_points(
                self.user_id, points, "Completed assessment (participation)"),
                "award participation points")

    async def reset(self):
        self._require("reset", SessionState.IN_PROGRESS, SessionState.COMPLETED)
        self._stop_timer()
        self.current_index = 0
        self.answers = {}
        self.result = None
        self.time_remaining = self.assessment.time_budget_seconds
        self.paused = False
        self._answered_in_mode = False
        self._started_at = self._clock()
        self._session_task = None
        self.session_id = None
        self.state = SessionState.IN_PROGRESS
        if self.mode != QuizMode.PRACTICE:
            self._open_record()
        if self.mode == QuizMode.TIMED:
            self._start_timer()
