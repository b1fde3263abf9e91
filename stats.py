# stats.py
# -----------------------------------------------------------------------------
# Per-user aggregates touched after an attempt completes:
# - user_stats: totals, pass/fail, running average, per-subject averages
# - streaks: consecutive active days
# Best effort: callers swallow failures so submission is never blocked.
# -----------------------------------------------------------------------------

import json
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from scoring import is_passing


def _as_float(v: Any) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


def _as_date(v: Any) -> Optional[date]:
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    if isinstance(v, str) and v:
        try:
            return date.fromisoformat(v[:10])
        except ValueError:
            return None
    return None


def next_user_stats(current: Optional[Dict[str, Any]], subject: str,
                    percentage: float, time_spent: int) -> Dict[str, Any]:
    cur = current or {}
    total = int(cur.get("total_exams") or 0)
    new_total = total + 1
    passed = is_passing(percentage)

    subjects = cur.get("subject_stats") or {}
    if isinstance(subjects, str):
        subjects = json.loads(subjects or "{}")
    subjects = {k: dict(v) for k, v in subjects.items()}
    entry = subjects.setdefault(subject, {"count": 0, "totalScore": 0, "avgScore": 0})
    entry["count"] = int(entry.get("count") or 0) + 1
    entry["totalScore"] = _as_float(entry.get("totalScore")) + percentage
    entry["avgScore"] = entry["totalScore"] / entry["count"]

    return {
        "total_exams": new_total,
        "exams_passed": int(cur.get("exams_passed") or 0) + (1 if passed else 0),
        "exams_failed": int(cur.get("exams_failed") or 0) + (0 if passed else 1),
        "avg_score": (_as_float(cur.get("avg_score")) * total + percentage) / new_total,
        "total_time_spent": int(cur.get("total_time_spent") or 0) + int(time_spent or 0),
        "subject_stats": subjects,
    }


def next_streak(current: Optional[Dict[str, Any]], today: date, question_count: int) -> Dict[str, Any]:
    if not current:
        return {
            "current_streak": 1,
            "longest_streak": 1,
            "last_active_date": today,
            "total_exams": 1,
            "total_questions": question_count,
        }

    streak = int(current.get("current_streak") or 0)
    last = _as_date(current.get("last_active_date"))
    days = (today - last).days if last else None
    if days == 0:
        pass
    elif days == 1:
        streak += 1
    else:
        streak = 1

    return {
        "current_streak": streak,
        "longest_streak": max(streak, int(current.get("longest_streak") or 0)),
        "last_active_date": today,
        "total_exams": int(current.get("total_exams") or 0) + 1,
        "total_questions": int(current.get("total_questions") or 0) + question_count,
    }


def create_completion_recorder(deps: Dict[str, Any]) -> Callable[..., None]:
    """
    Returns record(user_id, exam, percentage, time_spent).
    Required deps: fetch_one, execute
    Optional deps: today (callable returning a date)
    """
    fetch_one: Callable = deps["fetch_one"]
    execute: Callable = deps["execute"]
    today_fn: Callable[[], date] = deps.get("today") or date.today

    def _record_user_stats(user_id: Any, subject: str, percentage: float, time_spent: int):
        cur = fetch_one("""
            SELECT total_exams, exams_passed, exams_failed, avg_score,
                   total_time_spent, subject_stats
              FROM public.user_stats
             WHERE user_id = %s;
        """, (user_id,))
        nxt = next_user_stats(cur, subject, percentage, time_spent)
        execute("""
            INSERT INTO public.user_stats
                (user_id, total_exams, exams_passed, exams_failed, avg_score,
                 total_time_spent, subject_stats, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, now())
            ON CONFLICT (user_id) DO UPDATE SET
                total_exams      = EXCLUDED.total_exams,
                exams_passed     = EXCLUDED.exams_passed,
                exams_failed     = EXCLUDED.exams_failed,
                avg_score        = EXCLUDED.avg_score,
                total_time_spent = EXCLUDED.total_time_spent,
                subject_stats    = EXCLUDED.subject_stats,
                updated_at       = now();
        """, (user_id, nxt["total_exams"], nxt["exams_passed"], nxt["exams_failed"],
              nxt["avg_score"], nxt["total_time_spent"], json.dumps(nxt["subject_stats"])))

    def _record_streak(user_id: Any, question_count: int):
        cur = fetch_one("""
            SELECT current_streak, longest_streak, last_active_date,
                   total_exams, total_questions
              FROM public.streaks
             WHERE user_id = %s;
        """, (user_id,))
        nxt = next_streak(cur, today_fn(), question_count)
        execute("""
            INSERT INTO public.streaks
                (user_id, current_streak, longest_streak, last_active_date,
                 total_exams, total_questions)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                current_streak   = EXCLUDED.current_streak,
                longest_streak   = EXCLUDED.longest_streak,
                last_active_date = EXCLUDED.last_active_date,
                total_exams      = EXCLUDED.total_exams,
                total_questions  = EXCLUDED.total_questions;
        """, (user_id, nxt["current_streak"], nxt["longest_streak"], nxt["last_active_date"],
              nxt["total_exams"], nxt["total_questions"]))

    def record(user_id: Any, exam: Dict[str, Any], percentage: float, time_spent: int):
        try:
            _record_user_stats(user_id, exam.get("subject") or "General", percentage, time_spent)
        except Exception as e:
            print(f"[stats] user_stats update failed for user {user_id}: {e}", flush=True)
        try:
            _record_streak(user_id, len(exam.get("questions") or []))
        except Exception as e:
            print(f"[stats] streak update failed for user {user_id}: {e}", flush=True)

    return record
