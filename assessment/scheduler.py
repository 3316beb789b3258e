from datetime import datetime, timedelta, timezone
from typing import Optional
from assessment.analytics import round_half_up
from assessment.errors import InvalidQuality
from assessment.models import RecallRecord, Schedule

def _now() -> datetime:
    return datetime.now(timezone.utc)


def due_date(graded_at: datetime, interval: int) -> datetime:
    return graded_at + timedelta(days=interval)


def is_due(record: RecallRecord, now: Optional[datetime] = None) -> bool:
    return record.next_due <= (now or _now())


class SM2Engine:
    """SM-2 scheduling: pure functions of prior state and a 0-5 quality score."""
    MIN_EASE = 1.3
    DEFAULT_EASE = 2.5
    FIRST_INTERVAL = 1
    SECOND_INTERVAL = 6
    CORRECT_QUALITY = 4
    INCORRECT_QUALITY = 2

    @staticmethod
    def validate_quality(quality) -> int:
        # bool is an int subclass but never a grade
        if isinstance(quality, bool) or not isinstance(quality, int) or not 0 <= quality <= 5:
            raise InvalidQuality(quality)
        return quality

    @staticmethod
    def schedule(prior_ease: float, prior_repetitions: int, quality: int,
                 prior_interval: Optional[int] = None) -> Schedule:
        SM2Engine.validate_quality(quality)
        if prior_repetitions < 0:
            raise ValueError(f"repetitions must be >= 0, got {prior_repetitions}")

        if quality < 3:
            ease = max(SM2Engine.MIN_EASE, prior_ease - 0.2)
        elif quality == 5:
            ease = prior_ease + 0.1
        else:
            ease = prior_ease

        if quality < 3:
            return Schedule(ease_factor=ease, interval=SM2Engine.FIRST_INTERVAL, repetitions=0)
        if prior_repetitions == 0:
            return Schedule(ease_factor=ease, interval=SM2Engine.FIRST_INTERVAL, repetitions=1)
        if prior_repetitions == 1:
            return Schedule(ease_factor=ease, interval=SM2Engine.SECOND_INTERVAL, repetitions=2)

        if prior_interval is None:
            # the second success always lands on the fixed six-day step
            if prior_repetitions != 2:
                raise ValueError("prior_interval is required after the third repetition")
            prior_interval = SM2Engine.SECOND_INTERVAL
        return Schedule(ease_factor=ease,
                        interval=round_half_up(prior_interval * ease),
                        repetitions=prior_repetitions + 1)

    @staticmethod
    def review(record: RecallRecord, quality: int,
               now: Optional[datetime] = None) -> RecallRecord:
        """Grade one encounter of a question and move its due date forward."""
        now = now or _now()
        s = SM2Engine.schedule(record.ease_factor, record.repetitions, quality,
                               prior_interval=record.interval)
        record.ease_factor = s.ease_factor
        record.interval = s.interval
        record.repetitions = s.repetitions
        record.next_due = due_date(now, s.interval)
        record.last_review = now
        return record

    @staticmethod
    def quality_for(correct: bool) -> int:
        return SM2Engine.CORRECT_QUALITY if correct else SM2Engine.INCORRECT_QUALITY

engine = SM2Engine()
