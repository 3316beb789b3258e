from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QuizMode(str, Enum):
    PRACTICE = "practice"
    TIMED = "timed"
    SPACED_REPETITION = "spaced_repetition"


class SessionState(str, Enum):
    SELECTING_MODE = "selecting_mode"
    IN_PROGRESS = "in_progress"
    SUBMITTING = "submitting"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Question:
    text: str
    options: Tuple[str, ...] = ()
    correct_index: int = 0

    def __post_init__(self):
        # lists from JSON payloads are frozen into tuples
        object.__setattr__(self, "options", tuple(self.options))


@dataclass
class Assessment:
    id: str
    module_id: str
    questions: List[Question]
    passing_score: int = 70
    time_limit_minutes: int = 30
    title: str = ""

    @property
    def time_budget_seconds(self) -> int:
        return self.time_limit_minutes * 60


@dataclass
class SessionRecord:
    user_id: str
    assessment_id: str
    module_id: str
    mode: QuizMode
    questions_order: List[int] = field(default_factory=list)
    time_limit_seconds: Optional[int] = None
    answers: Dict[int, int] = field(default_factory=dict)
    is_completed: bool = False
    created_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    time_spent_seconds: Optional[int] = None
    id: Optional[int] = None


@dataclass
class Bookmark:
    user_id: str
    module_id: str
    question_index: int
    question_key: str
    note: Optional[str] = None


@dataclass
class RecallRecord:
    user_id: str
    module_id: str
    question_key: str
    ease_factor: float = 2.5
    interval: int = 0
    repetitions: int = 0
    next_due: datetime = field(default_factory=_now)
    last_review: Optional[datetime] = None


@dataclass(frozen=True)
class Schedule:
    ease_factor: float
    interval: int
    repetitions: int


@dataclass(frozen=True)
class QuestionOutcome:
    index: int
    key: str
    selected: Optional[int]
    correct_index: int
    is_correct: bool


@dataclass(frozen=True)
class Result:
    score: int
    passed: bool
    correct_count: int
    total: int
    outcomes: Tuple[QuestionOutcome, ...]
    elapsed_seconds: int

    @property
    def incorrect_count(self) -> int:
        return self.total - self.correct_count
