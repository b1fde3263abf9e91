import json
import sys
from datetime import date
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from stats import create_completion_recorder, next_streak, next_user_stats  # noqa: E402


def test_first_completion_creates_stats():
    nxt = next_user_stats(None, "Biology", 80.0, 120)
    assert nxt["total_exams"] == 1
    assert nxt["exams_passed"] == 1
    assert nxt["exams_failed"] == 0
    assert nxt["avg_score"] == pytest.approx(80.0)
    assert nxt["total_time_spent"] == 120
    assert nxt["subject_stats"] == {"Biology": {"count": 1, "totalScore": 80.0, "avgScore": 80.0}}


def test_running_average_and_failures():
    current = {
        "total_exams": 2, "exams_passed": 2, "exams_failed": 0, "avg_score": 90.0,
        "total_time_spent": 300,
        "subject_stats": json.dumps({"Biology": {"count": 2, "totalScore": 180, "avgScore": 90}}),
    }
    nxt = next_user_stats(current, "Biology", 60.0, 100)
    assert nxt["total_exams"] == 3
    assert nxt["exams_failed"] == 1
    assert nxt["avg_score"] == pytest.approx(80.0)
    assert nxt["total_time_spent"] == 400
    assert nxt["subject_stats"]["Biology"]["count"] == 3
    assert nxt["subject_stats"]["Biology"]["avgScore"] == pytest.approx(80.0)


def test_new_subject_is_added_alongside_existing():
    current = {"total_exams": 1, "avg_score": 50, "subject_stats": {"Math": {"count": 1, "totalScore": 50, "avgScore": 50}}}
    nxt = next_user_stats(current, "History", 100.0, 10)
    assert set(nxt["subject_stats"]) == {"Math", "History"}
    assert current["subject_stats"]["Math"]["count"] == 1


def test_streak_starts_at_one():
    nxt = next_streak(None, date(2026, 3, 2), 5)
    assert nxt["current_streak"] == 1
    assert nxt["longest_streak"] == 1
    assert nxt["total_questions"] == 5


@pytest.mark.parametrize(
    "last_active, expected",
    [(date(2026, 3, 2), 4), (date(2026, 3, 1), 5), (date(2026, 2, 25), 1)],
)
def test_streak_same_day_next_day_gap(last_active, expected):
    current = {"current_streak": 4, "longest_streak": 4, "last_active_date": last_active,
               "total_exams": 9, "total_questions": 40}
    nxt = next_streak(current, date(2026, 3, 2), 5)
    assert nxt["current_streak"] == expected
    assert nxt["longest_streak"] == max(4, expected)
    assert nxt["total_exams"] == 10
    assert nxt["total_questions"] == 45


class FakeDB:
    def __init__(self, fail_on=None):
        self.rows = {"public.user_stats": None, "public.streaks": None}
        self.executed = []
        self.fail_on = fail_on

    def fetch_one(self, sql, params=()):
        for table, row in self.rows.items():
            if f"FROM {table}" in sql:
                return row
        return None

    def execute(self, sql, params=()):
        if self.fail_on and self.fail_on in sql:
            raise RuntimeError(f"{self.fail_on} is locked")
        self.executed.append((sql, params))


EXAM = {"id": "exam-1", "subject": "Biology", "questions": [{"id": "q1"}, {"id": "q2"}]}


def test_recorder_upserts_both_tables():
    db = FakeDB()
    record = create_completion_recorder({"fetch_one": db.fetch_one, "execute": db.execute,
                                         "today": lambda: date(2026, 3, 2)})
    record(1, EXAM, 75.0, 200)

    assert len(db.executed) == 2
    stats_sql, stats_params = db.executed[0]
    assert "INSERT INTO public.user_stats" in stats_sql
    assert stats_params[:6] == (1, 1, 1, 0, 75.0, 200)
    assert json.loads(stats_params[6])["Biology"]["count"] == 1

    streak_sql, streak_params = db.executed[1]
    assert "INSERT INTO public.streaks" in streak_sql
    assert streak_params == (1, 1, 1, date(2026, 3, 2), 1, 2)


def test_recorder_keeps_going_when_one_update_fails():
    db = FakeDB(fail_on="public.user_stats")
    record = create_completion_recorder({"fetch_one": db.fetch_one, "execute": db.execute})
    record(1, EXAM, 40.0, 50)

    assert len(db.executed) == 1
    assert "public.streaks" in db.executed[0][0]
