import math
from typing import Dict, List, Optional
from assessment.identity import derive_key
from assessment.models import Question, QuestionOutcome, Result


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values, unlike the builtin."""
    return int(math.floor(value + 0.5))


class AnalyticsEngine:

    @staticmethod
    def compute_result(questions: List[Question], answers: Dict[int, int],
                       passing_score: int, elapsed_seconds: int = 0) -> Result:
        outcomes = []
        for i, q in enumerate(questions):
            selected = answers.get(i)
            outcomes.append(QuestionOutcome(
                index=i, key=derive_key(q), selected=selected,
                correct_index=q.correct_index,
                is_correct=selected is not None and selected == q.correct_index,
            ))
        correct = sum(1 for o in outcomes if o.is_correct)
        total = len(questions)
        score = round_half_up(100 * correct / total) if total else 0
        return Result(score=score, passed=score >= passing_score,
                      correct_count=correct, total=total,
                      outcomes=tuple(outcomes),
                      elapsed_seconds=max(0, int(elapsed_seconds)))

    @staticmethod
    def points_for(score: int, passed: bool, max_points: int = 50,
                   participation: int = 10) -> int:
        if not passed:
            return participation
        return round_half_up(score / 100 * max_points)

    @staticmethod
    def format_time(seconds: int) -> str:
        seconds = max(0, int(seconds))
        return f"{seconds // 60}:{seconds % 60:02d}"

    @staticmethod
    def time_percentage(remaining: int, budget: int) -> float:
        if budget <= 0:
            return 0.0
        return round(max(0, remaining) / budget * 100, 1)

    @staticmethod
    def is_hurry(remaining: int, threshold: int = 60) -> bool:
        return remaining < threshold

    @staticmethod
    def questions_per_minute(answered: int, elapsed_seconds: int) -> float:
        if elapsed_seconds <= 0:
            return 0.0
        return round(answered / (elapsed_seconds / 60), 2)

    @staticmethod
    def seconds_per_question(elapsed_seconds: int, answered: int) -> Optional[float]:
        if answered <= 0:
            return None
        return round(elapsed_seconds / answered, 1)

analytics = AnalyticsEngine()
