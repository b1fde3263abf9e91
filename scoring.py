# scoring.py
# -----------------------------------------------------------------------------
# Exam scoring: per-question correctness, totals, percentage, percentile bucket.
# Pure functions only (no DB, no network) so submit can call it before any write.
# -----------------------------------------------------------------------------

from typing import Any, Dict, List, Mapping, Optional

NO_ANSWER = "No answer"

# Completion counts as a pass at or above this percentage (stats only).
PASS_THRESHOLD = 70

# (min percentage, bucket). Static heuristic, not a population percentile.
PERCENTILE_STEPS = (
    (90, 5),
    (80, 10),
    (70, 20),
    (60, 30),
    (50, 50),
)
PERCENTILE_FLOOR = 70

# Feedback wording bands, independent of PERCENTILE_STEPS.
PERFORMANCE_BANDS = (
    (90, "excellent"),
    (75, "good"),
    (60, "satisfactory"),
)
PERFORMANCE_FLOOR = "needs improvement"


def percentile_bucket(percentage: float) -> int:
    for threshold, bucket in PERCENTILE_STEPS:
        if percentage >= threshold:
            return bucket
    return PERCENTILE_FLOOR


def performance_label(percentage: float) -> str:
    for threshold, label in PERFORMANCE_BANDS:
        if percentage >= threshold:
            return label
    return PERFORMANCE_FLOOR


def is_passing(percentage: float) -> bool:
    return percentage >= PASS_THRESHOLD


def answers_match(answer: Optional[str], correct_answer: Optional[str]) -> bool:
    """Case-insensitive exact match; an empty or missing answer never matches."""
    if not answer:
        return False
    return str(answer).lower() == str(correct_answer or "").lower()


def score_exam(questions: List[Dict[str, Any]],
               submitted_answers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Grade a sparse answer map against an exam's questions.

    `questions` must already be in display order; every question yields one
    report row whether it was answered or not. Returns
    {score, max_score, percentage, report, percentile_bucket}.
    """
    answers = submitted_answers or {}

    max_score = 0
    score = 0
    report: List[Dict[str, Any]] = []

    for q in questions:
        qid = str(q.get("id"))
        points = int(q.get("points") or 0)
        max_score += points

        user_answer = answers.get(qid)
        correct = answers_match(user_answer, q.get("correct_answer"))
        if correct:
            score += points

        report.append({
            "id": qid,
            "text": q.get("text") or "",
            "type": q.get("type"),
            "userAnswer": user_answer if user_answer else NO_ANSWER,
            "correctAnswer": q.get("correct_answer"),
            "isCorrect": correct,
            "explanation": q.get("explanation"),
            "points": points,
        })

    # A zero-point exam scores 0%, never a division error.
    percentage = (score / max_score) * 100 if max_score > 0 else 0.0

    return {
        "score": score,
        "max_score": max_score,
        "percentage": percentage,
        "report": report,
        "percentile_bucket": percentile_bucket(percentage),
    }
